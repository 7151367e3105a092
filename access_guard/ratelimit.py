"""Fail-secure rate limiting against a remote authority.

Per (action, identifier) key: Fresh -> Tracking -> Blocked -> (expiry) -> Fresh.

The authority is asked first and is authoritative. If it cannot be reached,
times out or answers malformed data, the request is denied. The local cache
mirrors authority answers; for progressive actions it may also tighten an
allowed answer (attempts over the limit, or a running block), but it never
turns a denial into an allowance.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

from access_guard.audit_log import AuditSink, emit_safely, make_event
from access_guard.authorities import AuthorityRateLimitAnswer, RateLimitAuthority
from access_guard.cache import RateLimitCache
from access_guard.models import (
    RateLimitDecision,
    RateLimitPolicy,
    RateLimitRecord,
    RateLimitStats,
)
from access_guard.security import partial_identifier

logger = logging.getLogger(__name__)

DEFAULT_POLICIES: dict[str, RateLimitPolicy] = {
    "login": RateLimitPolicy(max_attempts=5, window_seconds=15 * 60, block_seconds=30 * 60, progressive=True),
    "signup": RateLimitPolicy(max_attempts=3, window_seconds=60 * 60, block_seconds=60 * 60, progressive=True),
    "api": RateLimitPolicy(max_attempts=100, window_seconds=60, block_seconds=5 * 60, progressive=False),
    "demo_session": RateLimitPolicy(max_attempts=10, window_seconds=10 * 60, block_seconds=30 * 60, progressive=True),
}

FALLBACK_ACTION = "api"

ESCALATION_FACTOR = 0.5
ESCALATION_SECONDS = 60 * 60

# Progressive block durations double per violation, up to this multiple
MAX_PENALTY_MULTIPLIER = 8

# Violations older than this no longer raise the next penalty
PENALTY_MEMORY_SECONDS = 24 * 60 * 60

# Minimum clock time between sweeps of expired local state
PRUNE_INTERVAL_SECONDS = 60


class RateLimiter:
    def __init__(
        self,
        authority: RateLimitAuthority,
        policies: Optional[dict[str, RateLimitPolicy]] = None,
        timeout: float = 5.0,
        audit: Optional[AuditSink] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.authority = authority
        self.policies = dict(policies or DEFAULT_POLICIES)
        if FALLBACK_ACTION not in self.policies:
            raise ValueError(f"policies must define the {FALLBACK_ACTION!r} fallback action")
        self.timeout = timeout
        self.audit = audit
        self._clock = clock
        self._cache = RateLimitCache(clock=clock)
        self._escalated_until: dict[str, float] = {}
        self._violations: dict[str, tuple[int, float]] = {}
        self._last_prune = clock()

    def policy_for(self, action: str) -> RateLimitPolicy:
        return self.policies.get(action, self.policies[FALLBACK_ACTION])

    async def check(self, identifier: str, action: str = "api") -> RateLimitDecision:
        policy = self.policy_for(action)
        self._prune()
        try:
            answer = await asyncio.wait_for(
                self.authority.check(identifier, action, policy), timeout=self.timeout,
            )
            if not isinstance(answer, AuthorityRateLimitAnswer):
                raise TypeError(f"authority returned {type(answer).__name__}")
        except asyncio.TimeoutError:
            logger.warning("Rate-limit authority timed out for %s:%s, failing secure",
                           action, partial_identifier(identifier))
            return self._deny_unavailable(identifier, action, policy)
        except Exception as exc:
            logger.warning("Rate-limit authority unavailable for %s:%s, failing secure: %s",
                           action, partial_identifier(identifier), type(exc).__name__)
            return self._deny_unavailable(identifier, action, policy)

        record = self._cache.record_attempt(identifier, action, policy, violation=not answer.allowed)
        decision = RateLimitDecision(
            allowed=answer.allowed,
            remaining=max(0, answer.remaining),
            reset_ts=answer.reset_time_ms / 1000,
            reason=answer.reason,
        )
        if answer.allowed and policy.progressive:
            decision = self._tighten(decision, record, identifier, policy)
        elif not answer.allowed:
            self._penalize(record, policy)

        if not decision.allowed:
            self._audit_denial(identifier, action, decision, record)
        return decision

    def _tighten(
        self, decision: RateLimitDecision, record: RateLimitRecord,
        identifier: str, policy: RateLimitPolicy,
    ) -> RateLimitDecision:
        now = self._clock()
        if record.blocked_until > now:
            return RateLimitDecision(False, 0, record.blocked_until, "blocked")
        limit = self.effective_max(identifier, policy)
        if record.attempts > limit:
            record.blocked = True
            self._penalize(record, policy)
            return RateLimitDecision(False, 0, record.blocked_until, "local_limit_exceeded")
        return RateLimitDecision(
            decision.allowed, min(decision.remaining, limit - record.attempts),
            decision.reset_ts, decision.reason,
        )

    def _penalize(self, record: RateLimitRecord, policy: RateLimitPolicy) -> None:
        now = self._clock()
        if record.blocked_until > now:
            return
        key = RateLimitCache.key(record.action, record.identifier)
        count, last = self._violations.get(key, (0, 0.0))
        if now - last > PENALTY_MEMORY_SECONDS:
            count = 0
        count += 1
        self._violations[key] = (count, now)
        record.violations = count
        multiplier = 1
        if policy.progressive:
            multiplier = min(2 ** (count - 1), MAX_PENALTY_MULTIPLIER)
        record.blocked_until = now + policy.block_seconds * multiplier

    def _prune(self) -> None:
        """Forget expired records, stale violation history and lapsed escalations."""
        now = self._clock()
        if now - self._last_prune < PRUNE_INTERVAL_SECONDS:
            return
        self._last_prune = now
        self._cache.purge_expired()
        self._violations = {
            k: v for k, v in self._violations.items() if now - v[1] <= PENALTY_MEMORY_SECONDS
        }
        self._escalated_until = {k: t for k, t in self._escalated_until.items() if t > now}

    def effective_max(self, identifier: str, policy: RateLimitPolicy) -> int:
        if self._escalated_until.get(identifier, 0.0) > self._clock():
            return max(1, int(policy.max_attempts * ESCALATION_FACTOR))
        return policy.max_attempts

    def _deny_unavailable(self, identifier: str, action: str, policy: RateLimitPolicy) -> RateLimitDecision:
        decision = RateLimitDecision(
            allowed=False, remaining=0,
            reset_ts=self._clock() + policy.window_seconds,
            reason="authority_unavailable",
        )
        self._audit_denial(identifier, action, decision, None)
        return decision

    def _audit_denial(
        self, identifier: str, action: str,
        decision: RateLimitDecision, record: Optional[RateLimitRecord],
    ) -> None:
        emit_safely(self.audit, make_event(
            "rate_limit_violation", "medium", identifier,
            {"action": action, "reason": decision.reason,
             "attempts": record.attempts if record else None, "blocked": True},
        ))

    async def report_suspicious_activity(
        self, identifier: str, reason: str, metadata: Optional[dict] = None,
    ) -> bool:
        """Ask the authority to tighten this identifier's limits. Returns whether it accepted."""
        logger.warning("Suspicious activity from %s: %s", partial_identifier(identifier), reason)
        self._escalated_until[identifier] = self._clock() + ESCALATION_SECONDS
        emit_safely(self.audit, make_event(
            "suspicious_activity", "high", identifier, {"reason": reason, **(metadata or {})},
        ))
        try:
            await asyncio.wait_for(
                self.authority.escalate(identifier, reason, ESCALATION_FACTOR, ESCALATION_SECONDS),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.error("Escalation for %s timed out", partial_identifier(identifier))
            return False
        except Exception as exc:
            logger.error("Failed to report suspicious activity for %s: %s",
                         partial_identifier(identifier), type(exc).__name__)
            return False
        return True

    def local_record(self, identifier: str, action: str) -> Optional[RateLimitRecord]:
        return self._cache.get(action, identifier)

    def local_stats(self) -> RateLimitStats:
        blocked = [r for r in self._cache.records() if r.blocked]
        return RateLimitStats(
            violations=len(blocked),
            blocked_actions=tuple(sorted({r.action for r in blocked})),
        )

    def clear_local_cache(self) -> None:
        self._cache.clear()
        self._escalated_until.clear()
        self._violations.clear()
