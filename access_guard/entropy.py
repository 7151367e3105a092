"""Character-pool entropy estimate for candidate secrets."""

from __future__ import annotations

import math
import string
from dataclasses import dataclass

LOWERCASE_POOL = 26
UPPERCASE_POOL = 26
DIGIT_POOL = 10
SYMBOL_POOL = 32  # printable ASCII punctuation


@dataclass(frozen=True)
class CharacterClasses:
    lower: bool
    upper: bool
    digits: bool
    symbols: bool


def character_classes(secret: str) -> CharacterClasses:
    """Which of the four classes occur in secret. Anything else counts as a symbol."""
    lower = upper = digits = symbols = False
    for ch in secret:
        if ch in string.ascii_lowercase:
            lower = True
        elif ch in string.ascii_uppercase:
            upper = True
        elif ch in string.digits:
            digits = True
        else:
            symbols = True
    return CharacterClasses(lower=lower, upper=upper, digits=digits, symbols=symbols)


class EntropyScorer:
    """length * log2(pool size), where the pool only counts classes present."""

    def pool_size(self, secret: str) -> int:
        classes = character_classes(secret)
        pool = 0
        if classes.lower:
            pool += LOWERCASE_POOL
        if classes.upper:
            pool += UPPERCASE_POOL
        if classes.digits:
            pool += DIGIT_POOL
        if classes.symbols:
            pool += SYMBOL_POOL
        return pool

    def score(self, secret: str) -> float:
        pool = self.pool_size(secret)
        if pool == 0:
            return 0.0
        return len(secret) * math.log2(pool)
