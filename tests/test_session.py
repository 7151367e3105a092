"""Tests for device fingerprinting, session management and client-side stores."""

import asyncio
import json
import logging
import os
import shutil
import stat

import httpx
import pytest

from access_guard.audit_log import MemoryAuditSink
from access_guard.authorities import (
    AuthorityError,
    HttpSessionAuthority,
    InMemorySessionAuthority,
    security_level_for,
)
from access_guard.capabilities import (
    EnvironmentSignals,
    HostSignalSource,
    JsonFileStore,
    MemoryStore,
    StaticSignalSource,
)
from access_guard.fingerprint import RENDERER_SENTINEL, SENTINEL, DeviceFingerprinter
from access_guard.session import (
    FINGERPRINT_MISMATCH,
    NO_RECORD,
    SERVICE_ERROR,
    TAMPERED,
    VALIDATION_KEY,
    SessionSecurityManager,
    checksum,
)

from conftest import FULL_SIGNALS, FailingAuthority, HangingAuthority, PermissiveSessionAuthority


class MutableSource:
    """Signal source whose signals can change between calls."""

    def __init__(self, signals=FULL_SIGNALS, renderer="Mesa|llvmpipe"):
        self.current = signals
        self.current_renderer = renderer

    def signals(self):
        return self.current

    def renderer(self):
        return self.current_renderer


class BrokenSource:
    def signals(self):
        raise OSError("sandboxed")

    def renderer(self):
        raise RuntimeError("no graphics context")


def _fingerprint(source):
    return asyncio.run(DeviceFingerprinter(source).fingerprint())


class TestDeviceFingerprinter:
    def test_components_in_order(self, signals):
        assert DeviceFingerprinter(signals).components() == [
            "Mozilla/5.0 (X11; Linux x86_64)",
            "1920x1080x24",
            "en-US",
            "en-US,en",
            "Europe/Berlin",
            "8",
            "Linux x86_64",
            "true",
            "Mesa|llvmpipe",
        ]

    def test_stable_sha256_hex(self, signals):
        first = _fingerprint(signals)
        assert first == _fingerprint(signals)
        assert len(first) == 64
        int(first, 16)

    @pytest.mark.parametrize("changes", [
        {"user_agent": "Mozilla/5.0 (Macintosh)"},
        {"screen_width": 1280},
        {"screen_height": 720},
        {"color_depth": 30},
        {"language": "de-DE"},
        {"languages": ("de-DE",)},
        {"timezone": "UTC"},
        {"processor_count": 4},
        {"platform": "MacIntel"},
        {"cookies_enabled": False},
    ])
    def test_any_signal_change_changes_fingerprint(self, signals, changes):
        changed = StaticSignalSource(FULL_SIGNALS.with_changes(**changes), renderer="Mesa|llvmpipe")
        assert _fingerprint(changed) != _fingerprint(signals)

    def test_renderer_change_changes_fingerprint(self, signals):
        other = StaticSignalSource(FULL_SIGNALS, renderer="NVIDIA|GeForce")
        assert _fingerprint(other) != _fingerprint(signals)

    def test_capabilities_not_part_of_fingerprint(self, signals):
        plain = StaticSignalSource(FULL_SIGNALS.with_changes(encrypted_transport=False), renderer="Mesa|llvmpipe")
        assert _fingerprint(plain) == _fingerprint(signals)

    def test_missing_signals_use_sentinels(self):
        components = DeviceFingerprinter(StaticSignalSource(EnvironmentSignals())).components()
        assert components[0] == SENTINEL
        assert components[1] == f"{SENTINEL}x{SENTINEL}x{SENTINEL}"
        assert components[-1] == RENDERER_SENTINEL

    def test_failing_source_still_fingerprints(self):
        components = DeviceFingerprinter(BrokenSource()).components()
        assert components[-1] == RENDERER_SENTINEL
        assert len(_fingerprint(BrokenSource())) == 64

    def test_failing_renderer_matches_missing_renderer(self):
        class NoRenderer(MutableSource):
            def renderer(self):
                raise RuntimeError("no graphics context")

        assert _fingerprint(NoRenderer()) == _fingerprint(MutableSource(renderer=None))

    def test_host_source(self):
        assert len(_fingerprint(HostSignalSource())) == 64

    def test_host_source_ignores_terminal_size(self, monkeypatch):
        monkeypatch.setattr(shutil, "get_terminal_size", lambda *a, **k: os.terminal_size((80, 24)))
        before = _fingerprint(HostSignalSource())
        monkeypatch.setattr(shutil, "get_terminal_size", lambda *a, **k: os.terminal_size((120, 40)))
        assert _fingerprint(HostSignalSource()) == before
        assert DeviceFingerprinter(HostSignalSource()).components()[1] == f"{SENTINEL}x{SENTINEL}x{SENTINEL}"

    def test_lone_surrogate_signal(self):
        source = StaticSignalSource(EnvironmentSignals(user_agent="agent\udcff", timezone="\ud800"))
        digest = _fingerprint(source)
        assert len(digest) == 64
        int(digest, 16)


class TestChecksum:
    def test_known_value(self):
        # "0" hashes to 48
        assert checksum("", "", 0) == "1c"

    def test_one_second_buckets(self):
        assert checksum("s", "p", 1_000) == checksum("s", "p", 1_999)
        assert checksum("s", "p", 1_999) != checksum("s", "p", 2_000)

    def test_depends_on_every_input(self):
        base = checksum("session", "prefix", 1_700_000_000_000)
        assert checksum("session2", "prefix", 1_700_000_000_000) != base
        assert checksum("session", "prefix2", 1_700_000_000_000) != base

    def test_signed_32_bit(self):
        value = checksum("a" * 64, "f" * 16, 1_700_000_000_000)
        assert abs(int(value, 36)) <= 2 ** 31


def _manager(authority=None, source=None, store=None, clock=None, audit=None, timeout=5.0):
    kwargs = {"timeout": timeout, "audit": audit}
    if clock is not None:
        kwargs["clock"] = clock
    return SessionSecurityManager(
        authority if authority is not None else InMemorySessionAuthority(),
        DeviceFingerprinter(source or MutableSource()),
        store if store is not None else MemoryStore(),
        **kwargs,
    )


def _create_and_validate(manager):
    async def _go():
        token = await manager.create_session()
        return token, await manager.validate_session(token.id, token.token)

    return asyncio.run(_go())


class TestSessionLifecycle:
    def test_create_and_validate(self):
        manager = _manager()
        token, result = _create_and_validate(manager)
        assert token.server_validated
        assert token.security_score == 100
        assert len(token.id) == 64
        assert result.is_valid
        assert not result.requires_revalidation
        assert result.security_level == "high"

    def test_record_written_on_create(self):
        store = MemoryStore()
        manager = _manager(store=store)
        token = asyncio.run(manager.create_session())
        record = json.loads(store.data[VALIDATION_KEY])
        assert set(record) == {"sessionId", "fingerprint", "timestamp", "checksum"}
        assert record["sessionId"] == token.id
        assert record["fingerprint"] == token.fingerprint[:16]

    def test_security_score_without_capabilities(self):
        source = MutableSource(signals=EnvironmentSignals(user_agent="plain"))
        assert _manager(source=source).security_score() == 50

    def test_security_level_bands(self):
        assert security_level_for(80) == "high"
        assert security_level_for(79) == "medium"
        assert security_level_for(60) == "medium"
        assert security_level_for(59) == "low"

    def test_low_score_session_is_low_level(self):
        source = MutableSource(signals=EnvironmentSignals(user_agent="plain"))
        _, result = _create_and_validate(_manager(source=source))
        assert result.is_valid
        assert result.security_level == "low"

    def test_create_failure_not_server_validated(self):
        store = MemoryStore()
        manager = _manager(authority=FailingAuthority(), store=store)
        token = asyncio.run(manager.create_session())
        assert not token.server_validated
        assert token.token == ""
        assert VALIDATION_KEY not in store.data

    def test_fingerprint_failure_not_server_validated(self):
        class ExplodingFingerprinter(DeviceFingerprinter):
            async def fingerprint(self):
                raise UnicodeEncodeError("utf-8", "\ud800", 0, 1, "surrogates not allowed")

        store = MemoryStore()
        authority = InMemorySessionAuthority()
        manager = SessionSecurityManager(authority, ExplodingFingerprinter(MutableSource()), store)
        token = asyncio.run(manager.create_session())
        assert not token.server_validated
        assert token.token == ""
        assert token.fingerprint == ""
        assert VALIDATION_KEY not in store.data

    def test_surrogate_user_agent_session_validates(self):
        source = MutableSource(signals=FULL_SIGNALS.with_changes(user_agent="agent\udcff"))
        token, result = _create_and_validate(_manager(source=source))
        assert token.server_validated
        assert result.is_valid

    def test_host_session_survives_terminal_resize(self, monkeypatch):
        monkeypatch.setattr(shutil, "get_terminal_size", lambda *a, **k: os.terminal_size((80, 24)))
        manager = _manager(source=HostSignalSource())
        token = asyncio.run(manager.create_session())
        assert token.server_validated
        monkeypatch.setattr(shutil, "get_terminal_size", lambda *a, **k: os.terminal_size((120, 40)))
        result = asyncio.run(manager.validate_session(token.id, token.token))
        assert result.is_valid

    def test_session_cap_per_device(self):
        manager = _manager()

        async def _go():
            return [await manager.create_session() for _ in range(4)]

        tokens = asyncio.run(_go())
        assert [t.server_validated for t in tokens] == [True, True, True, False]

    def test_initialize_drops_previous_record(self):
        store = MemoryStore()
        store.set(VALIDATION_KEY, "leftover")
        _manager(store=store).initialize()
        assert VALIDATION_KEY not in store.data

    def test_expired_session(self, clock):
        manager = _manager(authority=InMemorySessionAuthority(clock=clock), clock=clock)
        token = asyncio.run(manager.create_session())
        clock.advance(2 * 60 * 60 + 1)
        result = asyncio.run(manager.validate_session(token.id, token.token))
        assert not result.is_valid
        assert result.reason == "Session expired"

    def test_wrong_token(self):
        manager = _manager()
        token = asyncio.run(manager.create_session())
        result = asyncio.run(manager.validate_session(token.id, "forged"))
        assert not result.is_valid
        assert result.reason == "Invalid token"
        assert result.security_level == "low"


class TestTamperDetection:
    def _tamper(self, store, **changes):
        record = json.loads(store.data[VALIDATION_KEY])
        record.update(changes)
        store.data[VALIDATION_KEY] = json.dumps(record)

    @pytest.mark.parametrize("changes", [
        {"checksum": "0"},
        {"fingerprint": "0" * 16},
        {"timestamp": 1_000},
        {"sessionId": "f" * 64},
    ])
    def test_modified_record_rejected(self, changes):
        store = MemoryStore()
        audit = MemoryAuditSink()
        manager = _manager(store=store, audit=audit)
        token = asyncio.run(manager.create_session())
        self._tamper(store, **changes)
        result = asyncio.run(manager.validate_session(token.id, token.token))
        assert not result.is_valid
        assert result.reason == TAMPERED
        assert result.security_level == "medium"
        assert result.requires_revalidation
        (event,) = audit.of_type("session_tamper_detected")
        assert event.severity == "high"
        assert token.token not in json.dumps(event.to_dict())

    def test_unparseable_record_rejected(self):
        store = MemoryStore()
        manager = _manager(store=store)
        token = asyncio.run(manager.create_session())
        store.data[VALIDATION_KEY] = "{not json"
        result = asyncio.run(manager.validate_session(token.id, token.token))
        assert result.reason == TAMPERED

    def test_missing_record(self):
        store = MemoryStore()
        audit = MemoryAuditSink()
        manager = _manager(store=store, audit=audit)
        token = asyncio.run(manager.create_session())
        del store.data[VALIDATION_KEY]
        result = asyncio.run(manager.validate_session(token.id, token.token))
        assert not result.is_valid
        assert result.reason == NO_RECORD
        assert audit.of_type("session_tamper_detected") == []

    def test_fingerprint_change_rejected_by_authority(self):
        source = MutableSource()
        manager = _manager(source=source)
        token = asyncio.run(manager.create_session())
        source.current = FULL_SIGNALS.with_changes(timezone="Asia/Tokyo")
        result = asyncio.run(manager.validate_session(token.id, token.token))
        assert not result.is_valid
        assert result.reason == "Device fingerprint mismatch"
        assert result.security_level == "low"

    def test_fingerprint_change_caught_locally(self):
        source = MutableSource()
        manager = _manager(authority=PermissiveSessionAuthority(), source=source)
        token = asyncio.run(manager.create_session())
        source.current_renderer = "NVIDIA|GeForce"
        result = asyncio.run(manager.validate_session(token.id, token.token))
        assert not result.is_valid
        assert result.reason == FINGERPRINT_MISMATCH
        assert result.security_level == "medium"

    def test_stale_record_warns_but_passes(self, clock, caplog):
        authority = InMemorySessionAuthority(session_duration=24 * 60 * 60, clock=clock)
        manager = _manager(authority=authority, clock=clock)
        token = asyncio.run(manager.create_session())
        clock.advance(3 * 60 * 60 + 60)
        with caplog.at_level(logging.WARNING, logger="access_guard.session"):
            result = asyncio.run(manager.validate_session(token.id, token.token))
        assert result.is_valid
        assert "hours old" in caplog.text


class TestServiceFailure:
    def test_authority_error(self):
        store = MemoryStore()
        manager = _manager(authority=PermissiveSessionAuthority(), store=store)
        token = asyncio.run(manager.create_session())
        manager.authority = FailingAuthority()
        result = asyncio.run(manager.validate_session(token.id, token.token))
        assert not result.is_valid
        assert result.reason == SERVICE_ERROR
        assert result.security_level == "low"

    def test_authority_timeout(self):
        manager = _manager(authority=PermissiveSessionAuthority(), timeout=0.05)
        token = asyncio.run(manager.create_session())
        manager.authority = HangingAuthority()
        result = asyncio.run(manager.validate_session(token.id, token.token))
        assert result.reason == SERVICE_ERROR


class TestRevocation:
    def test_revoked_session_invalid(self):
        store = MemoryStore()
        manager = _manager(store=store)
        token = asyncio.run(manager.create_session())
        assert asyncio.run(manager.revoke_session(token.id))
        assert VALIDATION_KEY not in store.data
        result = asyncio.run(manager.validate_session(token.id, token.token))
        assert not result.is_valid
        assert result.reason == "Session not found"

    def test_revoke_is_final_even_if_authority_forgets(self):
        authority = PermissiveSessionAuthority()
        manager = _manager(authority=authority)
        token = asyncio.run(manager.create_session())
        asyncio.run(manager.revoke_session(token.id))
        assert authority.revoked == [token.id]
        result = asyncio.run(manager.validate_session(token.id, token.token))
        assert not result.is_valid
        assert result.reason == NO_RECORD

    def test_remote_failure_still_clears_local(self):
        store = MemoryStore()
        manager = _manager(authority=PermissiveSessionAuthority(), store=store)
        token = asyncio.run(manager.create_session())
        manager.authority = FailingAuthority()
        assert not asyncio.run(manager.revoke_session(token.id))
        assert VALIDATION_KEY not in store.data


class TestHttpSessionAuthority:
    def _client(self, handler):
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    def test_create_request_shape(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"token": "srv-token", "expiresAt": 1})

        async def _go():
            async with self._client(handler) as client:
                authority = HttpSessionAuthority("https://authority.test", client)
                return await _manager(authority=authority).create_session()

        token = asyncio.run(_go())
        assert token.server_validated
        assert token.token == "srv-token"
        (body,) = seen
        assert body["action"] == "create"
        assert body["sessionId"] == token.id
        assert body["deviceFingerprint"] == token.fingerprint
        assert body["securityScore"] == 100

    def test_create_without_token_fails(self):
        async def _go():
            async with self._client(lambda r: httpx.Response(200, json={"ok": True})) as client:
                authority = HttpSessionAuthority("https://authority.test", client)
                with pytest.raises(AuthorityError):
                    await authority.create("s", "f", 50, "ua")

        asyncio.run(_go())

    def test_validate_maps_answer(self):
        def handler(request):
            return httpx.Response(200, json={"valid": False, "reason": "Session expired", "securityLevel": "low"})

        async def _go():
            async with self._client(handler) as client:
                return await HttpSessionAuthority("https://authority.test", client).validate("s", "t", "f", "ua")

        answer = asyncio.run(_go())
        assert not answer.valid
        assert answer.reason == "Session expired"

    def test_unknown_level_downgraded(self):
        def handler(request):
            return httpx.Response(200, json={"valid": True, "securityLevel": "ultra"})

        async def _go():
            async with self._client(handler) as client:
                return await HttpSessionAuthority("https://authority.test", client).validate("s", "t", "f", "ua")

        assert asyncio.run(_go()).security_level == "low"


class TestJsonFileStore:
    def test_set_get_delete(self, tmp_path):
        store = JsonFileStore(tmp_path / "state" / "store.json")
        assert store.get("k") is None
        store.set("k", "v")
        assert store.get("k") == "v"
        store.delete("k")
        assert store.get("k") is None

    def test_owner_only_permissions(self, tmp_path):
        path = tmp_path / "store.json"
        JsonFileStore(path).set("k", "v")
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    def test_refuses_symlink(self, tmp_path):
        target = tmp_path / "elsewhere.json"
        target.write_text("{}")
        link = tmp_path / "store.json"
        link.symlink_to(target)
        with pytest.raises(PermissionError):
            JsonFileStore(link).set("k", "v")

    def test_unreadable_file_is_empty(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("garbage")
        assert JsonFileStore(path).get("k") is None

    def test_session_over_file_store(self, tmp_path):
        manager = _manager(store=JsonFileStore(tmp_path / "store.json"))
        _, result = _create_and_validate(manager)
        assert result.is_valid
