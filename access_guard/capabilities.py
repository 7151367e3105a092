"""Narrow capability interfaces injected into the core services.

KeyValueStore stands in for client-side persistent storage and
EnvironmentSignalSource for the client environment a fingerprint is derived
from. Network access goes through a shared httpx.AsyncClient.
"""

from __future__ import annotations

import json
import locale
import logging
import os
import platform
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional, Protocol

from access_guard.security import is_symlink_or_hardlink_attack

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStore:
    def __init__(self) -> None:
        self.data: dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class JsonFileStore:
    """Key-value pairs in a single JSON file, written with owner-only permissions."""

    def __init__(self, path: Path):
        self.path = path

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable store %s: %s", self.path, type(exc).__name__)
            return {}
        return {k: v for k, v in data.items() if isinstance(v, str)} if isinstance(data, dict) else {}

    def _save(self, data: dict[str, str]) -> None:
        if is_symlink_or_hardlink_attack(self.path):
            raise PermissionError(f"Refusing to write store through link: {self.path}")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2) + "\n")
        os.chmod(self.path, 0o600)

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def delete(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._save(data)


@dataclass(frozen=True)
class EnvironmentSignals:
    """Raw client signals. None means the signal could not be read."""

    user_agent: Optional[str] = None
    screen_width: Optional[int] = None
    screen_height: Optional[int] = None
    color_depth: Optional[int] = None
    language: Optional[str] = None
    languages: Optional[tuple[str, ...]] = None
    timezone: Optional[str] = None
    processor_count: Optional[int] = None
    platform: Optional[str] = None
    cookies_enabled: Optional[bool] = None
    # Capabilities feeding the session security score
    encrypted_transport: bool = False
    strong_crypto: bool = False
    secure_context: bool = False
    background_workers: bool = False

    def with_changes(self, **changes: object) -> "EnvironmentSignals":
        return replace(self, **changes)


class EnvironmentSignalSource(Protocol):
    def signals(self) -> EnvironmentSignals: ...

    def renderer(self) -> Optional[str]:
        """Graphics vendor|renderer string; may raise or return None."""
        ...


class StaticSignalSource:
    """Fixed signals, for tests and for replaying a captured client environment."""

    def __init__(self, signals: EnvironmentSignals, renderer: Optional[str] = None):
        self._signals = signals
        self._renderer = renderer

    def signals(self) -> EnvironmentSignals:
        return self._signals

    def renderer(self) -> Optional[str]:
        return self._renderer


class HostSignalSource:
    """Signals of the Python process host.

    There is no graphics context to probe, and the terminal size is left out
    because it changes on resize; screen signals stay unset.
    """

    def __init__(self, user_agent: str = "access-guard", encrypted_transport: bool = True):
        self._user_agent = user_agent
        self._encrypted_transport = encrypted_transport

    def signals(self) -> EnvironmentSignals:
        lang = locale.getlocale()[0]
        languages = tuple(p for p in os.environ.get("LANGUAGE", "").split(":") if p)
        return EnvironmentSignals(
            user_agent=f"{self._user_agent} python/{platform.python_version()}",
            language=lang,
            languages=languages or ((lang,) if lang else None),
            timezone=time.tzname[0] if time.tzname else None,
            processor_count=os.cpu_count(),
            platform=platform.platform(),
            encrypted_transport=self._encrypted_transport,
            strong_crypto=True,
            secure_context=self._encrypted_transport,
            background_workers=True,
        )

    def renderer(self) -> Optional[str]:
        return None
