"""Data models for password analysis, rate limiting and session validation.

Result types are frozen dataclasses with a to_dict() that fixes field order,
so JSON output is stable across runs. Policies are frozen too; the mutable
process-wide password policy lives in evaluator.PolicyStore.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Literal, Optional

Strength = Literal["very-weak", "weak", "fair", "good", "strong", "very-strong"]

BreachStatus = Literal["clean", "compromised", "unavailable"]

SecurityLevel = Literal["low", "medium", "high"]

Severity = Literal["low", "medium", "high", "critical"]


# (upper bound exclusive, band) pairs, checked in order
_BANDS: tuple[tuple[int, Strength], ...] = (
    (20, "very-weak"),
    (40, "weak"),
    (60, "fair"),
    (80, "good"),
    (90, "strong"),
)


def strength_for_score(score: float) -> Strength:
    """Map a clamped 0-100 score onto its strength band."""
    for upper, band in _BANDS:
        if score < upper:
            return band
    return "very-strong"


@dataclass(frozen=True)
class PasswordPolicy:
    min_length: int = 12
    require_upper: bool = True
    require_lower: bool = True
    require_numbers: bool = True
    require_symbols: bool = True
    max_consecutive_repeats: int = 2
    prevent_common_patterns: bool = True
    prevent_personal_info: bool = True
    max_length: int = 128

    def to_dict(self) -> dict:
        return {
            "min_length": self.min_length,
            "require_upper": self.require_upper,
            "require_lower": self.require_lower,
            "require_numbers": self.require_numbers,
            "require_symbols": self.require_symbols,
            "max_consecutive_repeats": self.max_consecutive_repeats,
            "prevent_common_patterns": self.prevent_common_patterns,
            "prevent_personal_info": self.prevent_personal_info,
            "max_length": self.max_length,
        }


@dataclass(frozen=True)
class UserContext:
    """Personal details a password should not contain."""

    email: Optional[str] = None
    name: Optional[str] = None
    username: Optional[str] = None

    def tokens(self) -> list[str]:
        """Lower-cased fragments of at least 3 characters."""
        raw: list[str] = []
        if self.email:
            raw.append(self.email.split("@", 1)[0])
        if self.name:
            raw.extend(self.name.split())
        if self.username:
            raw.append(self.username)
        return [t.lower() for t in raw if len(t) >= 3]


@dataclass(frozen=True)
class PasswordAnalysisResult:
    score: int
    strength: Strength
    feedback: tuple[str, ...]
    is_compromised: bool
    entropy_bits: float
    breach_status: BreachStatus = "unavailable"
    breach_count: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "strength": self.strength,
            "feedback": list(self.feedback),
            "is_compromised": self.is_compromised,
            "entropy_bits": round(self.entropy_bits, 2),
            "breach_status": self.breach_status,
            "breach_count": self.breach_count,
        }


@dataclass(frozen=True)
class RateLimitPolicy:
    max_attempts: int
    window_seconds: float
    block_seconds: float
    progressive: bool

    def to_dict(self) -> dict:
        # Wire format of the rate-limit authority uses milliseconds
        return {
            "maxAttempts": self.max_attempts,
            "windowMs": int(self.window_seconds * 1000),
            "blockDurationMs": int(self.block_seconds * 1000),
            "progressivePenalty": self.progressive,
        }


@dataclass
class RateLimitRecord:
    """Local, advisory mirror of one (action, identifier) key. Mutable."""

    identifier: str
    action: str
    attempts: int
    window_start: float
    last_attempt: float
    blocked: bool = False
    violations: int = 0
    blocked_until: float = 0.0

    def to_dict(self) -> dict:
        return {
            "identifier": self.identifier,
            "action": self.action,
            "attempts": self.attempts,
            "window_start": self.window_start,
            "last_attempt": self.last_attempt,
            "blocked": self.blocked,
            "violations": self.violations,
            "blocked_until": self.blocked_until,
        }


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_ts: float
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "reset_ts": self.reset_ts,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class RateLimitStats:
    violations: int
    blocked_actions: tuple[str, ...]

    def to_dict(self) -> dict:
        return {"violations": self.violations, "blocked_actions": list(self.blocked_actions)}


@dataclass(frozen=True)
class SessionToken:
    id: str
    token: str = field(repr=False)
    expires_at: float
    fingerprint: str
    server_validated: bool
    security_score: int

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "expires_at": self.expires_at,
            "fingerprint": self.fingerprint,
            "server_validated": self.server_validated,
            "security_score": self.security_score,
        }


@dataclass(frozen=True)
class ClientValidationRecord:
    session_id: str
    fingerprint_prefix: str
    timestamp: int  # epoch milliseconds
    checksum: str

    def to_json(self) -> str:
        return json.dumps({
            "sessionId": self.session_id,
            "fingerprint": self.fingerprint_prefix,
            "timestamp": self.timestamp,
            "checksum": self.checksum,
        })

    @classmethod
    def from_json(cls, raw: str) -> "ClientValidationRecord":
        """Parse a stored record. Raises ValueError on any malformed field."""
        try:
            data = json.loads(raw)
            record = cls(
                session_id=data["sessionId"],
                fingerprint_prefix=data["fingerprint"],
                timestamp=data["timestamp"],
                checksum=data["checksum"],
            )
        except (TypeError, KeyError, json.JSONDecodeError) as exc:
            raise ValueError(f"malformed validation record: {type(exc).__name__}") from exc
        if not all(isinstance(v, str) for v in (record.session_id, record.fingerprint_prefix, record.checksum)):
            raise ValueError("malformed validation record: non-string field")
        if not isinstance(record.timestamp, int) or isinstance(record.timestamp, bool):
            raise ValueError("malformed validation record: timestamp")
        return record


@dataclass(frozen=True)
class SessionValidationResult:
    is_valid: bool
    requires_revalidation: bool
    security_level: SecurityLevel
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "reason": self.reason,
            "requires_revalidation": self.requires_revalidation,
            "security_level": self.security_level,
        }


@dataclass(frozen=True)
class AuditEvent:
    event_type: str
    severity: Severity
    partial_identifier: str
    timestamp: str
    metadata: dict = field(default_factory=dict, hash=False)

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type,
            "severity": self.severity,
            "partial_identifier": self.partial_identifier,
            "metadata": self.metadata,
            "timestamp": self.timestamp,
        }
