"""Breach-corpus lookup using the k-anonymity range protocol.

Only the first 5 hex characters of the SHA-1 digest leave the process:
GET {base_url}/range/{prefix} returns every known suffix for that prefix as
SUFFIX:COUNT lines, and the match happens locally.

Failures (timeout, transport error, non-200, malformed body) fall back to an
embedded denylist. A fallback miss is reported as "unavailable", never as
"clean".
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from access_guard.cache import VerdictCache
from access_guard.models import BreachStatus

logger = logging.getLogger(__name__)

DEFAULT_BREACH_URL = "https://api.pwnedpasswords.com"
PREFIX_LENGTH = 5

FALLBACK_PASSWORDS: frozenset[str] = frozenset({
    "password", "password1", "password123", "123456", "12345678", "123456789",
    "qwerty", "qwerty123", "abc123", "admin", "admin123", "letmein",
    "welcome", "welcome123", "monkey", "dragon", "iloveyou", "111111",
    "000000", "sunshine", "football", "baseball", "master", "shadow",
})


def sha1_hex(secret: str) -> str:
    # Lone surrogates (e.g. from surrogateescape-decoded input) still hash
    return hashlib.sha1(secret.encode("utf-8", "surrogatepass")).hexdigest().upper()


FALLBACK_DIGESTS: frozenset[str] = frozenset(
    {sha1_hex(p) for p in FALLBACK_PASSWORDS}
    | {
        "5BAA61E4C9B93F3F0682250B6CF8331B7EE68FD8",  # password
        "7C4A8D09CA3762AF61E59520943DC26494F8941B",  # 123456
    }
)


class MalformedRangeResponse(ValueError):
    pass


@dataclass(frozen=True)
class BreachCheck:
    status: BreachStatus
    count: Optional[int] = None

    @property
    def is_compromised(self) -> bool:
        return self.status == "compromised"


def parse_range_response(body: str) -> dict[str, int]:
    """Parse SUFFIX:COUNT lines. Any bad line rejects the whole body."""
    suffixes: dict[str, int] = {}
    for line in body.splitlines():
        line = line.strip()
        if not line:
            continue
        suffix, sep, count = line.partition(":")
        if not sep or not suffix:
            raise MalformedRangeResponse(f"line without SUFFIX:COUNT shape ({len(line)} chars)")
        try:
            suffixes[suffix.strip().upper()] = int(count.strip())
        except ValueError as exc:
            raise MalformedRangeResponse("non-integer count") from exc
    return suffixes


class BreachOracleClient:
    """Checks secrets against the remote breach corpus. Never raises."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient],
        base_url: str = DEFAULT_BREACH_URL,
        timeout: float = 5.0,
        api_key: Optional[str] = None,
        cache: Optional[VerdictCache[BreachCheck]] = None,
        offline: bool = False,
    ):
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._api_key = api_key
        self.cache: VerdictCache[BreachCheck] = cache if cache is not None else VerdictCache()
        self.offline = offline or client is None

    async def is_compromised(self, secret: str) -> bool:
        return (await self.check(secret)).is_compromised

    async def check(self, secret: str) -> BreachCheck:
        digest = sha1_hex(secret)
        cached = self.cache.get(digest)
        if cached is not None:
            return cached
        if self.offline or self._client is None:
            return self._fallback(secret, digest)
        try:
            suffixes = await self._fetch_range(self._client, digest[:PREFIX_LENGTH])
        except httpx.HTTPError as exc:
            logger.warning("Breach oracle unreachable, using local denylist: %s", type(exc).__name__)
            return self._fallback(secret, digest)
        except MalformedRangeResponse as exc:
            logger.warning("Breach oracle sent a malformed range response: %s", exc)
            return self._fallback(secret, digest)
        except Exception as exc:
            logger.error("Breach check failed: %s: %s", type(exc).__name__, exc)
            return self._fallback(secret, digest)

        count = suffixes.get(digest[PREFIX_LENGTH:], 0)
        # Padding entries carry a count of zero
        result = BreachCheck("compromised", count) if count > 0 else BreachCheck("clean")
        self.cache.put(digest, result)
        return result

    async def _fetch_range(self, client: httpx.AsyncClient, prefix: str) -> dict[str, int]:
        headers = {"Add-Padding": "true", "User-Agent": "access-guard-breach-check"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        resp = await client.get(
            f"{self._base_url}/range/{prefix}", headers=headers, timeout=self._timeout,
        )
        if resp.status_code != 200:
            raise httpx.HTTPStatusError(
                f"HTTP {resp.status_code}", request=resp.request, response=resp,
            )
        return parse_range_response(resp.text)

    @staticmethod
    def _fallback(secret: str, digest: str) -> BreachCheck:
        if digest in FALLBACK_DIGESTS or secret.lower() in FALLBACK_PASSWORDS:
            return BreachCheck("compromised")
        return BreachCheck("unavailable")
