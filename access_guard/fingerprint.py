"""Device fingerprint: SHA-256 over a fixed, ordered list of environment signals.

A missing or failing signal degrades to a sentinel instead of aborting, so
the fingerprint is always produced and stays deterministic for a stable
environment.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Callable, Optional

from access_guard.capabilities import EnvironmentSignals, EnvironmentSignalSource

logger = logging.getLogger(__name__)

SENTINEL = "unknown"
RENDERER_SENTINEL = "renderer_unavailable"
DELIMITER = "|"


def _or_sentinel(read: Callable[[], Optional[object]]) -> str:
    try:
        value = read()
    except Exception as exc:
        logger.debug("Fingerprint signal unavailable: %s", type(exc).__name__)
        return SENTINEL
    if value is None or value == "":
        return SENTINEL
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


class DeviceFingerprinter:
    def __init__(self, source: EnvironmentSignalSource):
        self.source = source

    def components(self) -> list[str]:
        """The ordered signal strings that get hashed."""
        try:
            s = self.source.signals()
        except Exception as exc:
            logger.warning("Environment signals unavailable: %s", type(exc).__name__)
            s = EnvironmentSignals()

        screen = "x".join(
            _or_sentinel(lambda v=v: v) for v in (s.screen_width, s.screen_height, s.color_depth)
        )
        return [
            _or_sentinel(lambda: s.user_agent),
            screen,
            _or_sentinel(lambda: s.language),
            _or_sentinel(lambda: ",".join(s.languages) if s.languages else None),
            _or_sentinel(lambda: s.timezone),
            _or_sentinel(lambda: s.processor_count),
            _or_sentinel(lambda: s.platform),
            _or_sentinel(lambda: s.cookies_enabled),
            self._renderer(),
        ]

    def _renderer(self) -> str:
        try:
            renderer = self.source.renderer()
        except Exception:
            return RENDERER_SENTINEL
        return renderer or RENDERER_SENTINEL

    async def fingerprint(self) -> str:
        combined = DELIMITER.join(self.components())
        return hashlib.sha256(combined.encode("utf-8", "surrogatepass")).hexdigest()
