"""Security audit sink: structured, append-only, fire-and-forget.

emit() never raises into the calling operation. AuditLog buffers JSON lines
and writes them on flush() with size rotation; MemoryAuditSink keeps events
in a list for inspection.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol

from access_guard.models import AuditEvent, Severity
from access_guard.security import partial_identifier

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    def emit(self, event: AuditEvent) -> None: ...


def make_event(
    event_type: str,
    severity: Severity,
    identifier: str = "",
    metadata: Optional[dict] = None,
) -> AuditEvent:
    return AuditEvent(
        event_type=event_type,
        severity=severity,
        partial_identifier=partial_identifier(identifier),
        timestamp=datetime.now(timezone.utc).isoformat(timespec="seconds"),
        metadata=dict(metadata or {}),
    )


def emit_safely(sink: Optional[AuditSink], event: AuditEvent) -> None:
    """Deliver an event, logging and dropping any sink failure."""
    if sink is None:
        return
    try:
        sink.emit(event)
    except Exception as exc:
        logger.error("Audit sink rejected %s event: %s: %s", event.event_type, type(exc).__name__, exc)


class MemoryAuditSink:
    """Keeps the most recent max_events events in memory."""

    def __init__(self, max_events: int = 1000) -> None:
        self.max_events = max_events
        self.events: list[AuditEvent] = []

    def emit(self, event: AuditEvent) -> None:
        self.events.append(event)
        if len(self.events) > self.max_events:
            del self.events[:len(self.events) - self.max_events]

    def of_type(self, event_type: str) -> list[AuditEvent]:
        return [e for e in self.events if e.event_type == event_type]


class AuditLog:
    """Append-only structured audit log with size rotation."""

    MAX_SIZE = 10 * 1024 * 1024  # 10 MB

    def __init__(self, path: Path):
        self.path = path
        self._entries: list[dict] = []

    def emit(self, event: AuditEvent) -> None:
        self._entries.append(event.to_dict())

    def flush(self) -> None:
        """Append buffered entries to the log file, rotating if oversized.

        Write failures are logged and the buffer is dropped; auditing must not
        break the operation being audited.
        """
        if not self._entries:
            return
        # Refuse to write through symlinks
        if self.path.is_symlink():
            logger.error("Refusing to write audit log through symlink %s", self.path)
            self._entries.clear()
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if self.path.exists() and self.path.stat().st_size > self.MAX_SIZE:
                rotated = self.path.with_suffix(".log.1")
                if rotated.exists():
                    rotated.unlink()
                self.path.rename(rotated)
            with self.path.open("a") as f:
                for entry in self._entries:
                    f.write(json.dumps(entry, ensure_ascii=False) + "\n")
        except OSError as exc:
            logger.error("Failed to write audit log %s: %s", self.path, exc)
        finally:
            self._entries.clear()

    @property
    def entry_count(self) -> int:
        return len(self._entries)
