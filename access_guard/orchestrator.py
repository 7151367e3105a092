"""Composition root and the signup/login flow.

build_services() wires exactly one instance of each service; nothing in the
package holds module-level service singletons. open_services() also owns the
shared httpx client and flushes the audit log on exit.

Flow: rate limit -> (signup only) password gate -> session issuance.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Literal, Optional

import httpx

from access_guard.audit_log import AuditLog, AuditSink, MemoryAuditSink
from access_guard.authorities import (
    HttpRateLimitAuthority,
    HttpSessionAuthority,
    InMemoryRateLimitAuthority,
    InMemorySessionAuthority,
    RateLimitAuthority,
    SessionAuthority,
)
from access_guard.breach import BreachOracleClient
from access_guard.capabilities import (
    EnvironmentSignalSource,
    HostSignalSource,
    JsonFileStore,
    KeyValueStore,
    MemoryStore,
)
from access_guard.config import Settings
from access_guard.evaluator import PasswordStrengthEvaluator, PolicyStore
from access_guard.fingerprint import DeviceFingerprinter
from access_guard.models import (
    PasswordAnalysisResult,
    RateLimitDecision,
    SessionToken,
    UserContext,
)
from access_guard.ratelimit import RateLimiter
from access_guard.security import suppress_transport_logging
from access_guard.session import SessionSecurityManager

logger = logging.getLogger(__name__)

# Passwords below this band are refused at signup
SIGNUP_MIN_SCORE = 60

Stage = Literal["rate_limit", "password", "session", "complete"]


@dataclass(frozen=True)
class AccessServices:
    policy_store: PolicyStore
    evaluator: PasswordStrengthEvaluator
    rate_limiter: RateLimiter
    sessions: SessionSecurityManager
    audit: AuditSink


@dataclass(frozen=True)
class AccessOutcome:
    granted: bool
    stage: Stage
    rate_limit: RateLimitDecision
    analysis: Optional[PasswordAnalysisResult] = None
    session: Optional[SessionToken] = None

    def to_dict(self) -> dict:
        return {
            "granted": self.granted,
            "stage": self.stage,
            "rate_limit": self.rate_limit.to_dict(),
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "session": self.session.to_dict() if self.session else None,
        }


def build_services(
    settings: Settings,
    client: Optional[httpx.AsyncClient],
    *,
    offline: bool = False,
    rate_authority: Optional[RateLimitAuthority] = None,
    session_authority: Optional[SessionAuthority] = None,
    signals: Optional[EnvironmentSignalSource] = None,
    store: Optional[KeyValueStore] = None,
    audit: Optional[AuditSink] = None,
) -> AccessServices:
    """Wire the services. Without an authority URL, in-process authorities are used."""
    if audit is None:
        audit = AuditLog(settings.audit_log_path) if settings.audit_log_path else MemoryAuditSink()
    if store is None:
        store = JsonFileStore(settings.store_path) if settings.store_path else MemoryStore()

    authority_url = settings.authority_url
    if authority_url and client is not None:
        rate_authority = rate_authority or HttpRateLimitAuthority(
            authority_url, client, settings.authority_key)
        session_authority = session_authority or HttpSessionAuthority(
            authority_url, client, settings.authority_key)
    else:
        if rate_authority is None or session_authority is None:
            logger.info("No authority URL configured; using in-process authorities")
        rate_authority = rate_authority or InMemoryRateLimitAuthority()
        session_authority = session_authority or InMemorySessionAuthority()

    policy_store = PolicyStore()
    breach = BreachOracleClient(
        client, base_url=settings.breach_url, timeout=settings.breach_timeout,
        api_key=settings.breach_api_key, offline=offline,
    )
    sessions = SessionSecurityManager(
        session_authority,
        DeviceFingerprinter(signals or HostSignalSource(
            encrypted_transport=(settings.authority_url or "https:").startswith("https:"))),
        store,
        timeout=settings.authority_timeout,
        audit=audit,
    )
    sessions.initialize()
    return AccessServices(
        policy_store=policy_store,
        evaluator=PasswordStrengthEvaluator(breach, policy_store, audit=audit),
        rate_limiter=RateLimiter(rate_authority, timeout=settings.authority_timeout, audit=audit),
        sessions=sessions,
        audit=audit,
    )


@asynccontextmanager
async def open_services(settings: Settings, offline: bool = False, **overrides: object) -> AsyncIterator[AccessServices]:
    suppress_transport_logging()
    timeout = max(settings.breach_timeout, settings.authority_timeout)
    async with httpx.AsyncClient(timeout=timeout, max_redirects=0) as client:
        services = build_services(settings, client, offline=offline, **overrides)  # type: ignore[arg-type]
        try:
            yield services
        finally:
            if isinstance(services.audit, AuditLog):
                services.audit.flush()


class AccessOrchestrator:
    def __init__(self, services: AccessServices):
        self.services = services

    async def signup(
        self, identifier: str, secret: str, user_context: Optional[UserContext] = None,
    ) -> AccessOutcome:
        decision = await self.services.rate_limiter.check(identifier, "signup")
        if not decision.allowed:
            return AccessOutcome(False, "rate_limit", decision)
        analysis = await self.services.evaluator.evaluate(
            secret, user_context=user_context, audit_identifier=identifier,
        )
        if analysis.score < SIGNUP_MIN_SCORE or analysis.is_compromised:
            return AccessOutcome(False, "password", decision, analysis)
        session = await self.services.sessions.create_session()
        if not session.server_validated:
            return AccessOutcome(False, "session", decision, analysis, session)
        return AccessOutcome(True, "complete", decision, analysis, session)

    async def login(self, identifier: str) -> AccessOutcome:
        """Credential verification belongs to the caller; this gates and issues the session."""
        decision = await self.services.rate_limiter.check(identifier, "login")
        if not decision.allowed:
            return AccessOutcome(False, "rate_limit", decision)
        session = await self.services.sessions.create_session()
        if not session.server_validated:
            return AccessOutcome(False, "session", decision, session=session)
        return AccessOutcome(True, "complete", decision, session=session)
