"""Security utilities: identifier truncation, transport log suppression, link checks.

No full identifier, secret or session token is written to a log or audit
record; identifiers go through partial_identifier() first.
"""

from __future__ import annotations

import logging
from pathlib import Path

PARTIAL_LENGTH = 8


def suppress_transport_logging() -> None:
    """Prevent httpx/httpcore from logging request URLs and headers at DEBUG level."""
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)


def partial_identifier(identifier: str) -> str:
    """First 8 characters, the only form of an identifier that may be logged."""
    return identifier[:PARTIAL_LENGTH]


def is_symlink_or_hardlink_attack(path: Path) -> bool:
    """Detect symlink/hardlink attacks on storage paths."""
    if path.is_symlink():
        return True
    if path.exists():
        try:
            if path.resolve(strict=True) != path.absolute():
                return True
        except OSError:
            return True
    return False
