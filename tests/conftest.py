"""Shared fakes: authorities, clocks and signal sources."""

import asyncio

import pytest

from access_guard.authorities import (
    AuthorityError,
    AuthorityRateLimitAnswer,
    AuthoritySessionAnswer,
)
from access_guard.breach import BreachOracleClient
from access_guard.capabilities import EnvironmentSignals, StaticSignalSource
from access_guard.evaluator import PasswordStrengthEvaluator


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CountingAuthority:
    """Rate-limit authority that always allows and counts calls."""

    def __init__(self, allowed: bool = True):
        self.allowed = allowed
        self.calls = 0
        self.escalations = []

    async def check(self, identifier, action, policy):
        self.calls += 1
        return AuthorityRateLimitAnswer(
            allowed=self.allowed, remaining=policy.max_attempts if self.allowed else 0,
            reset_time_ms=1_700_000_000_000, reason=None if self.allowed else "Rate limit exceeded",
            attempts=self.calls,
        )

    async def escalate(self, identifier, reason, factor, duration_seconds):
        self.escalations.append((identifier, reason, factor, duration_seconds))


class FailingAuthority:
    """Every call raises, like an unreachable service."""

    def __init__(self):
        self.calls = 0

    async def check(self, identifier, action, policy):
        self.calls += 1
        raise AuthorityError("connection refused")

    async def escalate(self, identifier, reason, factor, duration_seconds):
        raise AuthorityError("connection refused")

    async def create(self, session_id, fingerprint, security_score, user_agent):
        raise AuthorityError("connection refused")

    async def validate(self, session_id, token, fingerprint, user_agent):
        raise AuthorityError("connection refused")

    async def revoke(self, session_id):
        raise AuthorityError("connection refused")


class HangingAuthority:
    """Never answers within any reasonable timeout."""

    async def check(self, identifier, action, policy):
        await asyncio.sleep(10)

    async def escalate(self, identifier, reason, factor, duration_seconds):
        await asyncio.sleep(10)

    async def validate(self, session_id, token, fingerprint, user_agent):
        await asyncio.sleep(10)


class PermissiveSessionAuthority:
    """Accepts every session and ignores revocation."""

    def __init__(self, security_level="high"):
        self.security_level = security_level
        self.revoked = []

    async def create(self, session_id, fingerprint, security_score, user_agent):
        return "server-token-" + session_id[:8]

    async def validate(self, session_id, token, fingerprint, user_agent):
        return AuthoritySessionAnswer(valid=True, security_level=self.security_level)

    async def revoke(self, session_id):
        self.revoked.append(session_id)


FULL_SIGNALS = EnvironmentSignals(
    user_agent="Mozilla/5.0 (X11; Linux x86_64)",
    screen_width=1920,
    screen_height=1080,
    color_depth=24,
    language="en-US",
    languages=("en-US", "en"),
    timezone="Europe/Berlin",
    processor_count=8,
    platform="Linux x86_64",
    cookies_enabled=True,
    encrypted_transport=True,
    strong_crypto=True,
    secure_context=True,
    background_workers=True,
)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def signals():
    return StaticSignalSource(FULL_SIGNALS, renderer="Mesa|llvmpipe")


@pytest.fixture()
def offline_evaluator():
    return PasswordStrengthEvaluator(BreachOracleClient(None, offline=True))
