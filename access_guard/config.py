"""Runtime settings from the process environment, optionally overlaid by a .env file."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import dotenv_values

from access_guard.breach import DEFAULT_BREACH_URL

ENV_PREFIX = "ACCESS_GUARD_"


def _float(env: Mapping[str, Optional[str]], name: str, default: float) -> float:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{ENV_PREFIX}{name} must be positive, got {raw!r}")
    return value


def _path(env: Mapping[str, Optional[str]], name: str) -> Optional[Path]:
    raw = env.get(ENV_PREFIX + name)
    return Path(raw).expanduser() if raw else None


@dataclass(frozen=True)
class Settings:
    breach_url: str = DEFAULT_BREACH_URL
    breach_api_key: Optional[str] = None
    breach_timeout: float = 5.0
    authority_url: Optional[str] = None
    authority_key: Optional[str] = None
    authority_timeout: float = 5.0
    store_path: Optional[Path] = None
    audit_log_path: Optional[Path] = None

    @property
    def uses_remote_authority(self) -> bool:
        return bool(self.authority_url)

    @classmethod
    def from_env(cls, env_path: Optional[Path] = None) -> "Settings":
        env: dict[str, Optional[str]] = dict(os.environ)
        if env_path is not None:
            if not env_path.exists():
                raise FileNotFoundError(f"Settings file not found: {env_path}")
            env.update({k: v for k, v in dotenv_values(env_path).items() if v is not None})
        return cls(
            breach_url=env.get(ENV_PREFIX + "BREACH_URL") or DEFAULT_BREACH_URL,
            breach_api_key=env.get(ENV_PREFIX + "BREACH_API_KEY") or None,
            breach_timeout=_float(env, "BREACH_TIMEOUT", 5.0),
            authority_url=env.get(ENV_PREFIX + "AUTHORITY_URL") or None,
            authority_key=env.get(ENV_PREFIX + "AUTHORITY_KEY") or None,
            authority_timeout=_float(env, "AUTHORITY_TIMEOUT", 5.0),
            store_path=_path(env, "STORE_PATH"),
            audit_log_path=_path(env, "AUDIT_LOG"),
        )
