"""Password strength evaluation and generation.

evaluate() is additive/subtractive scoring over length, character classes,
entropy, repeats, structural patterns, personal info, a static common-password
set and the breach oracle, clamped to 0-100 and banded into a Strength.
It never raises: an internal failure yields a conservative very-weak result.
"""

from __future__ import annotations

import logging
import secrets
import string
import threading
from dataclasses import fields, replace
from typing import Optional

from access_guard.audit_log import AuditSink, emit_safely, make_event
from access_guard.breach import BreachCheck, BreachOracleClient
from access_guard.entropy import EntropyScorer, character_classes
from access_guard.models import (
    PasswordAnalysisResult,
    PasswordPolicy,
    UserContext,
    strength_for_score,
)
from access_guard.patterns import PatternDetector

logger = logging.getLogger(__name__)

SYMBOLS = "!@#$%^&*()_+-=[]{}|;:,.<>?"

COMMON_PASSWORDS: frozenset[str] = frozenset({
    "password", "password1", "password123", "123456", "123456789", "12345678",
    "qwerty", "qwerty123", "abc123", "admin", "admin123", "letmein",
    "welcome", "welcome123", "monkey", "dragon", "login", "ninja",
    "football", "baseball", "master", "shadow", "michael", "jennifer",
    "123123", "000000", "111111", "123qwe", "iloveyou", "sunshine",
    "trustno1", "princess", "passw0rd", "p@ssw0rd", "changeme",
})

MISSING_CLASS_FEEDBACK = {
    "lower": "Add lowercase letters",
    "upper": "Add uppercase letters",
    "digits": "Add numbers",
    "symbols": "Add special characters",
}

ANALYSIS_FAILED = "Password analysis failed; treat this password as unsafe"


class PolicyStore:
    """Holds the process-wide PasswordPolicy. Read-mostly; updates are explicit."""

    def __init__(self, policy: Optional[PasswordPolicy] = None):
        self._policy = policy or PasswordPolicy()
        self._lock = threading.Lock()

    @property
    def current(self) -> PasswordPolicy:
        return self._policy

    def update(self, **changes: object) -> PasswordPolicy:
        known = {f.name for f in fields(PasswordPolicy)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown policy fields: {sorted(unknown)}. Available: {sorted(known)}")
        with self._lock:
            self._policy = replace(self._policy, **changes)
            logger.info("Password policy updated: %s", ", ".join(sorted(changes)))
            return self._policy


class PasswordStrengthEvaluator:
    def __init__(
        self,
        breach_client: BreachOracleClient,
        policy_store: Optional[PolicyStore] = None,
        entropy: Optional[EntropyScorer] = None,
        patterns: Optional[PatternDetector] = None,
        audit: Optional[AuditSink] = None,
    ):
        self.breach_client = breach_client
        self.policy_store = policy_store or PolicyStore()
        self.entropy = entropy or EntropyScorer()
        self.patterns = patterns or PatternDetector()
        self.audit = audit

    async def evaluate(
        self,
        secret: str,
        policy: Optional[PasswordPolicy] = None,
        user_context: Optional[UserContext] = None,
        audit_identifier: Optional[str] = None,
    ) -> PasswordAnalysisResult:
        policy = policy or self.policy_store.current
        try:
            result = await self._score(secret, policy, user_context)
        except Exception as exc:
            logger.error("Password analysis failed: %s: %s", type(exc).__name__, exc)
            result = PasswordAnalysisResult(
                score=0, strength="very-weak", feedback=(ANALYSIS_FAILED,),
                is_compromised=False, entropy_bits=0.0, breach_status="unavailable",
            )
        if audit_identifier:
            emit_safely(self.audit, make_event(
                "password_analysis", "low", audit_identifier,
                {"score": result.score, "strength": result.strength,
                 "is_compromised": result.is_compromised,
                 "feedback_count": len(result.feedback)},
            ))
        return result

    async def _score(
        self, secret: str, policy: PasswordPolicy, user_context: Optional[UserContext],
    ) -> PasswordAnalysisResult:
        feedback: list[str] = []
        score = 0.0

        length = len(secret)
        score += min(25, 2 * length)
        if length < policy.min_length:
            feedback.append(f"Password must be at least {policy.min_length} characters long")
        if length > policy.max_length:
            feedback.append(f"Password must not exceed {policy.max_length} characters")

        classes = character_classes(secret)
        required = (
            ("lower", classes.lower, policy.require_lower, 10),
            ("upper", classes.upper, policy.require_upper, 10),
            ("digits", classes.digits, policy.require_numbers, 10),
            ("symbols", classes.symbols, policy.require_symbols, 15),
        )
        for name, present, is_required, points in required:
            if present:
                score += points
            elif is_required:
                feedback.append(MISSING_CLASS_FEEDBACK[name])

        entropy_bits = self.entropy.score(secret)
        score += min(20.0, entropy_bits / 3)

        if self.patterns.consecutive_run_length(secret) > policy.max_consecutive_repeats:
            score -= 10
            feedback.append("Avoid repeating the same character")

        if policy.prevent_common_patterns and self.patterns.has_common_pattern(secret):
            score -= 15
            feedback.append("Avoid common patterns such as sequences, keyboard walks or role words")

        if policy.prevent_personal_info and self.patterns.leaks_personal_info(secret, user_context):
            score -= 10
            feedback.append("Password should not contain your name, username or email")

        if secret.lower() in COMMON_PASSWORDS:
            score -= 20
            feedback.append("This is a commonly used password")

        breach: BreachCheck = await self.breach_client.check(secret)
        if breach.is_compromised:
            score -= 25
            feedback.append("This password has been found in data breaches")
        elif breach.status == "unavailable":
            feedback.append("Breach check unavailable; only the local denylist was consulted")

        final = int(round(max(0.0, min(100.0, score))))
        if final >= 80:
            feedback.insert(0, "Excellent password strength")
        elif final >= 60:
            feedback.insert(0, "Good password strength")

        return PasswordAnalysisResult(
            score=final,
            strength=strength_for_score(final),
            feedback=tuple(feedback),
            is_compromised=breach.is_compromised,
            entropy_bits=entropy_bits,
            breach_status=breach.status,
            breach_count=breach.count,
        )

    def generate(self, length: int = 16, policy: Optional[PasswordPolicy] = None) -> str:
        """Random password holding one character of every class the policy requires."""
        policy = policy or self.policy_store.current
        if length < 1:
            raise ValueError(f"length must be positive, got {length}")
        pools = [string.ascii_lowercase, string.ascii_uppercase, string.digits, SYMBOLS]
        flags = [policy.require_lower, policy.require_upper, policy.require_numbers, policy.require_symbols]
        required = [pool for pool, flag in zip(pools, flags) if flag] or [string.ascii_lowercase]
        length = max(length, len(required), policy.min_length)
        alphabet = "".join(pools)

        chars = [secrets.choice(pool) for pool in required]
        chars.extend(secrets.choice(alphabet) for _ in range(length - len(chars)))
        secrets.SystemRandom().shuffle(chars)
        return "".join(chars)
