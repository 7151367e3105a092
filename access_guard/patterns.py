"""Structural weaknesses that raw entropy overestimates.

Each rule is checked independently; any hit flags the secret.
"""

from __future__ import annotations

import string
from typing import Optional

from access_guard.models import UserContext

KEYBOARD_ROWS = ("1234567890", "qwertyuiop", "asdfghjkl", "zxcvbnm")

WALK_LENGTH = 4

ROLE_WORDS = ("password", "admin", "login", "root", "user")


def _keyboard_walks() -> frozenset[str]:
    walks = {"qwerty", "asdf", "zxcv"}
    for row in KEYBOARD_ROWS:
        for line in (row, row[::-1]):
            for i in range(len(line) - WALK_LENGTH + 1):
                walks.add(line[i:i + WALK_LENGTH])
    return frozenset(walks)


KEYBOARD_WALKS = _keyboard_walks()


class PatternDetector:

    def has_weak_structure(self, secret: str, user_context: Optional[UserContext] = None) -> bool:
        return self.has_common_pattern(secret) or self.leaks_personal_info(secret, user_context)

    def has_common_pattern(self, secret: str) -> bool:
        lowered = secret.lower()
        return (
            self.is_single_character(secret)
            or self.is_full_sequence(lowered)
            or any(walk in lowered for walk in KEYBOARD_WALKS)
            or any(word in lowered for word in ROLE_WORDS)
        )

    def leaks_personal_info(self, secret: str, user_context: Optional[UserContext]) -> bool:
        if user_context is None:
            return False
        lowered = secret.lower()
        return any(token in lowered for token in user_context.tokens())

    @staticmethod
    def is_single_character(secret: str) -> bool:
        return len(secret) >= 2 and len(set(secret)) == 1

    @staticmethod
    def is_full_sequence(lowered: str) -> bool:
        """Whole string is one ascending or descending digit or letter run."""
        if len(lowered) < 3:
            return False
        if not (all(c in string.digits for c in lowered)
                or all(c in string.ascii_lowercase for c in lowered)):
            return False
        steps = {ord(b) - ord(a) for a, b in zip(lowered, lowered[1:])}
        return steps == {1} or steps == {-1}

    @staticmethod
    def consecutive_run_length(secret: str) -> int:
        """Longest run of identical adjacent characters."""
        longest = run = 0
        previous = None
        for ch in secret:
            run = run + 1 if ch == previous else 1
            previous = ch
            longest = max(longest, run)
        return longest
