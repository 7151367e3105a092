"""Session issuance, validation and revocation bound to a device fingerprint.

A session is valid only when BOTH the remote session authority accepts it and
the local ClientValidationRecord is intact. The record stores a 16-character
fingerprint prefix and a lightweight checksum; it detects local tampering
only, the authority's signature is the security boundary.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from typing import Callable, Optional

from access_guard.audit_log import AuditSink, emit_safely, make_event
from access_guard.authorities import SessionAuthority
from access_guard.capabilities import KeyValueStore
from access_guard.fingerprint import DeviceFingerprinter
from access_guard.models import ClientValidationRecord, SessionToken, SessionValidationResult
from access_guard.security import partial_identifier

logger = logging.getLogger(__name__)

SESSION_DURATION = 2 * 60 * 60
STALE_RECORD_SECONDS = 3 * 60 * 60
VALIDATION_KEY = "access_guard.session_validation"
FINGERPRINT_PREFIX_LENGTH = 16

TAMPERED = "Validation data tampered"
NO_RECORD = "No client validation data"
FINGERPRINT_MISMATCH = "Device fingerprint mismatch"
SERVICE_ERROR = "Validation service error"

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    sign = "-" if value < 0 else ""
    value = abs(value)
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return sign + "".join(reversed(digits))


def checksum(session_id: str, fingerprint_prefix: str, timestamp_ms: int) -> str:
    """32-bit signed rolling hash (h * 31 + c) in base 36.

    The timestamp loses its last 3 digits, so the value is stable within a
    one-second bucket of the stored timestamp.
    """
    combined = f"{session_id}{fingerprint_prefix}{timestamp_ms // 1000}"
    h = 0
    for ch in combined:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return _to_base36(h)


class SessionSecurityManager:
    def __init__(
        self,
        authority: SessionAuthority,
        fingerprinter: DeviceFingerprinter,
        store: KeyValueStore,
        timeout: float = 5.0,
        audit: Optional[AuditSink] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.authority = authority
        self.fingerprinter = fingerprinter
        self.store = store
        self.timeout = timeout
        self.audit = audit
        self._clock = clock

    def initialize(self) -> None:
        """Drop any record left over from a previous manager instance."""
        try:
            self.store.delete(VALIDATION_KEY)
        except Exception as exc:
            logger.warning("Could not clear session validation data: %s", type(exc).__name__)

    def security_score(self) -> int:
        score = 50
        try:
            signals = self.fingerprinter.source.signals()
        except Exception as exc:
            logger.warning("Security signals unavailable: %s", type(exc).__name__)
            return score
        if signals.encrypted_transport:
            score += 20
        if signals.strong_crypto:
            score += 15
        if signals.secure_context:
            score += 10
        if signals.background_workers:
            score += 5
        return min(score, 100)

    def _user_agent(self) -> str:
        try:
            return self.fingerprinter.source.signals().user_agent or "unknown"
        except Exception:
            return "unknown"

    async def create_session(self) -> SessionToken:
        """Mint a new session. On authority failure the token is not server-validated."""
        session_id = secrets.token_hex(32)
        score = self.security_score()
        now = self._clock()
        try:
            fingerprint = await self.fingerprinter.fingerprint()
        except Exception as exc:
            logger.error("Device fingerprint unavailable for session %s: %s",
                         partial_identifier(session_id), type(exc).__name__)
            return SessionToken(
                id=session_id, token="", expires_at=now, fingerprint="",
                server_validated=False, security_score=score,
            )
        try:
            token = await asyncio.wait_for(
                self.authority.create(session_id, fingerprint, score, self._user_agent()),
                timeout=self.timeout,
            )
        except Exception as exc:
            logger.error("Failed to create session %s: %s", partial_identifier(session_id), type(exc).__name__)
            return SessionToken(
                id=session_id, token="", expires_at=now, fingerprint=fingerprint,
                server_validated=False, security_score=score,
            )

        self._store_record(session_id, fingerprint, now)
        logger.info("Session %s created (security score %d)", partial_identifier(session_id), score)
        return SessionToken(
            id=session_id, token=token, expires_at=now + SESSION_DURATION,
            fingerprint=fingerprint, server_validated=True, security_score=score,
        )

    def _store_record(self, session_id: str, fingerprint: str, now: float) -> None:
        prefix = fingerprint[:FINGERPRINT_PREFIX_LENGTH]
        timestamp_ms = int(now * 1000)
        record = ClientValidationRecord(
            session_id=session_id, fingerprint_prefix=prefix, timestamp=timestamp_ms,
            checksum=checksum(session_id, prefix, timestamp_ms),
        )
        try:
            self.store.set(VALIDATION_KEY, record.to_json())
        except Exception as exc:
            # Without a record every later validation fails closed
            logger.warning("Failed to store client validation data: %s", type(exc).__name__)

    async def validate_session(self, session_id: str, token: str) -> SessionValidationResult:
        try:
            fingerprint = await self.fingerprinter.fingerprint()
            local_reason = self._check_local(session_id, fingerprint)
            try:
                answer = await asyncio.wait_for(
                    self.authority.validate(session_id, token, fingerprint, self._user_agent()),
                    timeout=self.timeout,
                )
            except Exception as exc:
                logger.warning("Session validation for %s failed: %s",
                               partial_identifier(session_id), type(exc).__name__)
                return SessionValidationResult(False, True, "low", SERVICE_ERROR)

            if not answer.valid:
                return SessionValidationResult(False, True, "low", answer.reason or "Invalid session")

            if local_reason is not None:
                if local_reason != NO_RECORD:
                    logger.error("Session %s rejected: %s", partial_identifier(session_id), local_reason)
                    emit_safely(self.audit, make_event(
                        "session_tamper_detected", "high", session_id, {"reason": local_reason},
                    ))
                return SessionValidationResult(False, True, "medium", local_reason)

            return SessionValidationResult(True, False, answer.security_level)
        except Exception as exc:
            logger.error("Session validation error: %s: %s", type(exc).__name__, exc)
            return SessionValidationResult(False, True, "low", "Validation error")

    def _check_local(self, session_id: str, fingerprint: str) -> Optional[str]:
        """Reason the local record rejects this session, or None when it agrees."""
        raw = self.store.get(VALIDATION_KEY)
        if raw is None:
            return NO_RECORD
        try:
            record = ClientValidationRecord.from_json(raw)
        except ValueError:
            return TAMPERED
        if record.session_id != session_id:
            return TAMPERED
        expected = checksum(record.session_id, record.fingerprint_prefix, record.timestamp)
        if not secrets.compare_digest(record.checksum, expected):
            return TAMPERED
        if record.fingerprint_prefix != fingerprint[:FINGERPRINT_PREFIX_LENGTH]:
            return FINGERPRINT_MISMATCH
        age = self._clock() - record.timestamp / 1000
        if age > STALE_RECORD_SECONDS:
            logger.warning("Client validation data for %s is %.1f hours old",
                           partial_identifier(session_id), age / 3600)
        return None

    async def revoke_session(self, session_id: str) -> bool:
        """Invalidate remotely, then always delete the local record. Returns remote success."""
        revoked = True
        try:
            await asyncio.wait_for(self.authority.revoke(session_id), timeout=self.timeout)
        except Exception as exc:
            revoked = False
            logger.error("Failed to revoke session %s remotely: %s",
                         partial_identifier(session_id), type(exc).__name__)
        finally:
            try:
                self.store.delete(VALIDATION_KEY)
            except Exception as exc:
                logger.error("Failed to delete client validation data: %s", type(exc).__name__)
        logger.info("Session %s revoked", partial_identifier(session_id))
        return revoked
