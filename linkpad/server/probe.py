"""Outbound reachability check for a single URL."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from linkpad.app.links import LinkState
from linkpad.app.reconciler import ProbeResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)

# Error classifications surfaced next to an unreachable link.
INVALID_URL = "invalid-url"
TIMEOUT = "timeout"
DNS_NOT_FOUND = "dns-not-found"
CONNECTION_REFUSED = "connection-refused"
HTTP_ERROR = "http-error"
GENERIC_FAILURE = "generic-failure"

_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "temporary failure in name resolution",
    "no address associated",
    "name resolution",
)
_REFUSED_MARKERS = ("connection refused", "errno 111", "errno 61", "actively refused")


def validate_url(url: str) -> Optional[httpx.URL]:
    """Return the parsed URL, or None when it cannot be requested."""
    if not url:
        return None
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError, ValueError):
        return None
    if parsed.scheme not in ("http", "https") or not parsed.host:
        return None
    return parsed


def classify_transport_error(exc: httpx.HTTPError) -> tuple[str, str]:
    """Map an httpx failure to (message, classification)."""
    if isinstance(exc, httpx.TimeoutException):
        return "Timeout", TIMEOUT
    if isinstance(exc, httpx.ConnectError):
        text = f"{exc} {exc.__cause__ or ''}".lower()
        if any(marker in text for marker in _DNS_MARKERS):
            return "Domain not found", DNS_NOT_FOUND
        if any(marker in text for marker in _REFUSED_MARKERS):
            return "Connection refused", CONNECTION_REFUSED
    return "Connection failed", GENERIC_FAILURE


class LinkProber:
    """Awaitable prober: ``await prober(url) -> ProbeResult``.

    Any HTTP response means the server answered; codes below 400 count as
    reachable, 5xx never do, and 4xx only when ``client_errors_reachable``.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        *,
        client_errors_reachable: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout = timeout
        self.client_errors_reachable = client_errors_reachable
        self.http = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
            transport=transport,
        )

    def verdict(self, status_code: int) -> ProbeResult:
        reachable = status_code < 400 or (self.client_errors_reachable and status_code < 500)
        if reachable:
            return ProbeResult(LinkState.REACHABLE, http_status=status_code)
        return ProbeResult(
            LinkState.UNREACHABLE,
            http_status=status_code,
            error=f"HTTP {status_code}",
            error_kind=HTTP_ERROR,
        )

    async def __call__(self, url: str) -> ProbeResult:
        target = validate_url(url)
        if target is None:
            return ProbeResult(LinkState.UNREACHABLE, error="Invalid URL format", error_kind=INVALID_URL)
        try:
            # Status line only; the body is never read.
            async with self.http.stream("GET", target) as resp:
                status_code = resp.status_code
        except httpx.HTTPError as exc:
            message, kind = classify_transport_error(exc)
            logger.info(f"Link check {url} failed: {kind} ({exc})")
            return ProbeResult(LinkState.UNREACHABLE, error=message, error_kind=kind)
        return self.verdict(status_code)

    async def aclose(self) -> None:
        await self.http.aclose()
