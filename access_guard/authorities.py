"""Remote rate-limit and session authorities.

The authorities are the source of truth; services only reach them through
the RateLimitAuthority and SessionAuthority protocols. The HTTP clients post
JSON to the authority endpoints over a shared httpx.AsyncClient. The
in-memory authorities implement the same server-side rules in process, for
local development, the self-test and tests.

Every failure (transport error, non-200 status, malformed body) surfaces as
AuthorityError, which callers map to their conservative outcome.
"""

from __future__ import annotations

import hashlib
import secrets
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

import httpx

from access_guard.models import RateLimitPolicy, SecurityLevel


class AuthorityError(Exception):
    """Authority unreachable, refused the call, or answered malformed data."""


@dataclass(frozen=True)
class AuthorityRateLimitAnswer:
    allowed: bool
    remaining: int
    reset_time_ms: int
    reason: Optional[str] = None
    attempts: Optional[int] = None


@dataclass(frozen=True)
class AuthoritySessionAnswer:
    valid: bool
    reason: Optional[str] = None
    security_level: SecurityLevel = "medium"


class RateLimitAuthority(Protocol):
    async def check(self, identifier: str, action: str, policy: RateLimitPolicy) -> AuthorityRateLimitAnswer: ...

    async def escalate(self, identifier: str, reason: str, factor: float, duration_seconds: float) -> None: ...


class SessionAuthority(Protocol):
    async def create(self, session_id: str, fingerprint: str, security_score: int, user_agent: str) -> str: ...

    async def validate(self, session_id: str, token: str, fingerprint: str, user_agent: str) -> AuthoritySessionAnswer: ...

    async def revoke(self, session_id: str) -> None: ...


def security_level_for(score: int) -> SecurityLevel:
    if score >= 80:
        return "high"
    if score >= 60:
        return "medium"
    return "low"


def _safe_json(resp: httpx.Response) -> dict:
    try:
        data = resp.json()
    except ValueError as exc:
        raise AuthorityError(f"non-JSON body from {resp.request.url.path}") from exc
    if not isinstance(data, dict):
        raise AuthorityError(f"unexpected JSON shape from {resp.request.url.path}")
    return data


def _require(data: dict, key: str, kind: type) -> object:
    value = data.get(key)
    # bool is an int subclass; reject it where a number is expected
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise AuthorityError(f"field {key!r} missing or not {kind.__name__}")
    return value


class _HttpAuthority:
    def __init__(self, base_url: str, client: httpx.AsyncClient, api_key: Optional[str] = None):
        self._base_url = base_url.rstrip("/")
        self._client = client
        self._api_key = api_key

    async def _post(self, path: str, body: dict) -> dict:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        try:
            resp = await self._client.post(f"{self._base_url}{path}", json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise AuthorityError(f"{type(exc).__name__}: {exc}") from exc
        if resp.status_code != 200:
            raise AuthorityError(f"HTTP {resp.status_code} from {path}")
        return _safe_json(resp)


class HttpRateLimitAuthority(_HttpAuthority):
    async def check(self, identifier: str, action: str, policy: RateLimitPolicy) -> AuthorityRateLimitAnswer:
        data = await self._post("/rate-limit-check", {
            "identifier": identifier, "action": action, "config": policy.to_dict(),
        })
        attempts = data.get("attempts")
        reason = data.get("reason")
        return AuthorityRateLimitAnswer(
            allowed=_require(data, "allowed", bool),  # type: ignore[arg-type]
            remaining=_require(data, "remaining", int),  # type: ignore[arg-type]
            reset_time_ms=_require(data, "resetTime", int),  # type: ignore[arg-type]
            reason=reason if isinstance(reason, str) else None,
            attempts=attempts if isinstance(attempts, int) else None,
        )

    async def escalate(self, identifier: str, reason: str, factor: float, duration_seconds: float) -> None:
        await self._post("/rate-limit-escalate", {
            "identifier": identifier, "reason": reason,
            "escalationFactor": factor, "durationMs": int(duration_seconds * 1000),
        })


class HttpSessionAuthority(_HttpAuthority):
    async def create(self, session_id: str, fingerprint: str, security_score: int, user_agent: str) -> str:
        data = await self._post("/secure-session", {
            "action": "create", "sessionId": session_id, "deviceFingerprint": fingerprint,
            "securityScore": security_score, "userAgent": user_agent,
        })
        token = _require(data, "token", str)
        if not token:
            raise AuthorityError("empty session token")
        return token  # type: ignore[return-value]

    async def validate(self, session_id: str, token: str, fingerprint: str, user_agent: str) -> AuthoritySessionAnswer:
        data = await self._post("/secure-session", {
            "action": "validate", "sessionId": session_id, "token": token,
            "deviceFingerprint": fingerprint, "userAgent": user_agent,
        })
        level = data.get("securityLevel", "medium")
        reason = data.get("reason")
        return AuthoritySessionAnswer(
            valid=_require(data, "valid", bool),  # type: ignore[arg-type]
            reason=reason if isinstance(reason, str) else None,
            security_level=level if level in ("low", "medium", "high") else "low",
        )

    async def revoke(self, session_id: str) -> None:
        await self._post("/secure-session", {"action": "revoke", "sessionId": session_id})


@dataclass
class _ServerRecord:
    attempts: int
    window_start: float
    blocked_until: float = 0.0


class InMemoryRateLimitAuthority:
    """Server-side rate-limit rules: fixed window, block on overflow, escalation factor."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._records: dict[str, _ServerRecord] = {}
        self._escalations: dict[str, tuple[float, float]] = {}  # identifier -> (factor, until)
        self.calls = 0

    def _effective_max(self, identifier: str, policy: RateLimitPolicy, now: float) -> int:
        factor, until = self._escalations.get(identifier, (1.0, 0.0))
        if until <= now:
            return policy.max_attempts
        return max(1, int(policy.max_attempts * factor))

    async def check(self, identifier: str, action: str, policy: RateLimitPolicy) -> AuthorityRateLimitAnswer:
        self.calls += 1
        now = self._clock()
        key = f"{action}:{identifier}"
        limit = self._effective_max(identifier, policy, now)
        record = self._records.get(key)

        if record and record.blocked_until > now:
            return AuthorityRateLimitAnswer(
                allowed=False, remaining=0, reset_time_ms=int(record.blocked_until * 1000),
                reason="Rate limit exceeded - temporarily blocked", attempts=record.attempts,
            )
        if record is None or now - record.window_start > policy.window_seconds:
            self._records[key] = _ServerRecord(attempts=1, window_start=now)
            return AuthorityRateLimitAnswer(
                allowed=True, remaining=limit - 1,
                reset_time_ms=int((now + policy.window_seconds) * 1000), attempts=1,
            )

        record.attempts += 1
        if record.attempts > limit:
            record.blocked_until = now + policy.block_seconds
            return AuthorityRateLimitAnswer(
                allowed=False, remaining=0, reset_time_ms=int(record.blocked_until * 1000),
                reason="Rate limit exceeded", attempts=record.attempts,
            )
        return AuthorityRateLimitAnswer(
            allowed=True, remaining=limit - record.attempts,
            reset_time_ms=int((record.window_start + policy.window_seconds) * 1000),
            attempts=record.attempts,
        )

    async def escalate(self, identifier: str, reason: str, factor: float, duration_seconds: float) -> None:
        self._escalations[identifier] = (factor, self._clock() + duration_seconds)


@dataclass
class _ServerSession:
    token_hash: str
    fingerprint: str
    expires_at: float
    security_score: int
    user_agent: str
    active: bool = True
    last_activity: float = field(default_factory=time.time)


class InMemorySessionAuthority:
    """Server-side session rules: hashed tokens, expiry, per-device session cap."""

    MAX_SESSIONS_PER_DEVICE = 3

    def __init__(self, session_duration: float = 2 * 60 * 60, clock: Callable[[], float] = time.time):
        self._duration = session_duration
        self._clock = clock
        self.sessions: dict[str, _ServerSession] = {}

    @staticmethod
    def _hash(token: str) -> str:
        return hashlib.sha256(token.encode("utf-8", "surrogatepass")).hexdigest()

    async def create(self, session_id: str, fingerprint: str, security_score: int, user_agent: str) -> str:
        now = self._clock()
        active = [s for s in self.sessions.values()
                  if s.active and s.fingerprint == fingerprint and s.expires_at > now]
        if len(active) >= self.MAX_SESSIONS_PER_DEVICE:
            raise AuthorityError("Too many active sessions from this device")
        token = secrets.token_urlsafe(32)
        self.sessions[session_id] = _ServerSession(
            token_hash=self._hash(token), fingerprint=fingerprint,
            expires_at=now + self._duration, security_score=security_score,
            user_agent=user_agent, last_activity=now,
        )
        return token

    async def validate(self, session_id: str, token: str, fingerprint: str, user_agent: str) -> AuthoritySessionAnswer:
        now = self._clock()
        session = self.sessions.get(session_id)
        if session is None or not session.active:
            return AuthoritySessionAnswer(valid=False, reason="Session not found", security_level="low")
        if now > session.expires_at:
            session.active = False
            return AuthoritySessionAnswer(valid=False, reason="Session expired", security_level="low")
        if not secrets.compare_digest(session.token_hash, self._hash(token)):
            return AuthoritySessionAnswer(valid=False, reason="Invalid token", security_level="low")
        if session.fingerprint != fingerprint:
            return AuthoritySessionAnswer(valid=False, reason="Device fingerprint mismatch", security_level="low")
        session.last_activity = now
        return AuthoritySessionAnswer(valid=True, security_level=security_level_for(session.security_score))

    async def revoke(self, session_id: str) -> None:
        session = self.sessions.get(session_id)
        if session is not None:
            session.active = False
