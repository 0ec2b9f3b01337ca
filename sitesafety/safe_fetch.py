"""Fetch a user-supplied URL without becoming an SSRF vector.

Every hop (the first request and each redirect) is resolved and checked
before a connection is opened, and the request is pinned to the address that
passed the check. A single wall-clock deadline covers all hops and the body
read. Failures come back as ``FetchError`` values; nothing here raises.
"""
from __future__ import annotations

import ipaddress
import logging
import re
import socket
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Iterable
from urllib.parse import urljoin, urlparse

import httpx

from .models import FetchError, FetchResult

logger = logging.getLogger(__name__)

FETCH_TIMEOUT_S = 10.0
MAX_BODY_BYTES = 200 * 1024
MAX_REDIRECTS = 5

ALLOWED_SCHEMES = ("http", "https")
_REDIRECT_STATUSES = {301, 302, 303, 307, 308}

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 SiteSafetyChecker/0.1"
)

_SENSITIVE_REDIRECT_RE = re.compile(r"/(login|signin|session|auth|sso|cas|oauth|saml)\b", re.IGNORECASE)

Resolver = Callable[[str, int], Iterable[str]]


class _Rejected(Exception):
    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason
        self.message = message


class _DeadlineExceeded(Exception):
    pass


def resolve_host(hostname: str, port: int) -> list[str]:
    infos = socket.getaddrinfo(hostname, port, proto=socket.IPPROTO_TCP)
    return [info[4][0] for info in infos]


def is_blocked_address(addr: str) -> bool:
    ip = ipaddress.ip_address(addr.split("%", 1)[0])
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return (
        ip.is_loopback
        or ip.is_private
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
        or ip.is_unspecified
        or not ip.is_global
    )


def is_sensitive_redirect(final_url: str) -> bool:
    """True when a redirect landed on a login/auth/session style path."""
    return bool(_SENSITIVE_REDIRECT_RE.search(final_url or ""))


def _validate_target(url: str, resolver: Resolver) -> tuple[httpx.URL, str]:
    """Check scheme and every resolved address; return the parsed URL and the pinned IP."""
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError as exc:
        raise _Rejected("invalid_url", f"Invalid URL: {exc}") from exc

    if parsed.scheme not in ALLOWED_SCHEMES:
        raise _Rejected("unsupported_scheme", f"Blocked scheme: {parsed.scheme or '(none)'}")
    hostname = parsed.hostname
    if not hostname:
        raise _Rejected("invalid_url", "URL has no hostname")

    try:
        target = httpx.URL(url)
    except (httpx.InvalidURL, ValueError) as exc:
        raise _Rejected("invalid_url", f"Invalid URL: {exc}") from exc

    port = port or (443 if parsed.scheme == "https" else 80)
    try:
        addresses = list(resolver(hostname, port))
    except (OSError, UnicodeError) as exc:
        raise _Rejected("dns_failure", f"DNS resolution failed: {hostname}") from exc
    if not addresses:
        raise _Rejected("dns_failure", f"No addresses resolved for: {hostname}")

    for addr in addresses:
        try:
            blocked = is_blocked_address(addr)
        except ValueError as exc:
            raise _Rejected("ssrf_rejected", f"Unrecognised address {addr!r} for {hostname}") from exc
        if blocked:
            raise _Rejected("ssrf_rejected", f"Blocked address: {hostname} resolves to {addr}")

    return target, addresses[0]


def _pinned(target: httpx.URL, ip: str) -> httpx.URL:
    host = f"[{ip}]" if ":" in ip else ip
    return target.copy_with(host=host)


def _remaining(deadline: float) -> float:
    left = deadline - time.monotonic()
    if left <= 0:
        raise _DeadlineExceeded()
    return left


def _decode(body: bytes, res: httpx.Response) -> str:
    encoding = res.charset_encoding or "utf-8"
    try:
        return body.decode(encoding, errors="replace")
    except LookupError:
        return body.decode("utf-8", errors="replace")


def _is_textual(content_type: str | None) -> bool:
    if not content_type:
        return True
    ct = content_type.lower()
    return ct.startswith("text/") or "html" in ct or "xml" in ct


def _fetch(
    url: str,
    deadline: float,
    timeout_s: float,
    max_bytes: int,
    resolver: Resolver,
    transport: httpx.BaseTransport | None,
) -> FetchResult | FetchError:
    current = url.strip()
    redirected = False

    try:
        with httpx.Client(transport=transport, follow_redirects=False, trust_env=False) as client:
            for _ in range(MAX_REDIRECTS + 1):
                target, ip = _validate_target(current, resolver)
                request_headers = {
                    "host": target.netloc.decode("ascii"),
                    "user-agent": USER_AGENT,
                    "accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                    "accept-language": "ja,en-US;q=0.8,en;q=0.6",
                }
                extensions = {"sni_hostname": target.raw_host.decode("ascii")} if target.scheme == "https" else {}

                with client.stream(
                    "GET",
                    _pinned(target, ip),
                    headers=request_headers,
                    timeout=httpx.Timeout(_remaining(deadline)),
                    extensions=extensions,
                ) as res:
                    location = res.headers.get("location")
                    if res.status_code in _REDIRECT_STATUSES and location:
                        current = urljoin(current, location)
                        redirected = True
                        continue

                    content_type = res.headers.get("content-type")
                    body = bytearray()
                    truncated = False
                    if _is_textual(content_type):
                        for chunk in res.iter_bytes():
                            _remaining(deadline)
                            body.extend(chunk)
                            if len(body) > max_bytes:
                                truncated = True
                                del body[max_bytes:]
                                break

                    return FetchResult(
                        html=_decode(bytes(body), res),
                        headers={k.lower(): v for k, v in res.headers.items()},
                        redirected=redirected,
                        final_url=current,
                        status=res.status_code,
                        content_type=content_type,
                        truncated=truncated,
                    )

        return FetchError(reason="too_many_redirects", message=f"More than {MAX_REDIRECTS} redirects")
    except _Rejected as exc:
        logger.warning("Fetch rejected (%s): %s", exc.reason, exc.message)
        return FetchError(reason=exc.reason, message=exc.message)
    except (_DeadlineExceeded, httpx.TimeoutException):
        logger.warning("Fetch timed out after %.1fs: %s", timeout_s, url)
        return FetchError(reason="timeout", message=f"Timed out after {timeout_s:g} seconds")
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        logger.warning("Fetch failed for %s: %s", url, exc)
        return FetchError(reason="network_error", message=f"Network error: {type(exc).__name__}")



def fetch_page(
    url: str,
    *,
    timeout_s: float = FETCH_TIMEOUT_S,
    max_bytes: int = MAX_BODY_BYTES,
    resolver: Resolver = resolve_host,
    transport: httpx.BaseTransport | None = None,
) -> FetchResult | FetchError:
    """Fetch ``url`` within ``timeout_s`` seconds of wall-clock time.

    DNS lookups and socket reads have no overall limit of their own, so the
    work runs on a worker thread and the caller stops waiting at the
    deadline. The worker re-checks the same deadline between hops and body
    chunks and winds down on its own.
    """
    deadline = time.monotonic() + timeout_s
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="safe-fetch")
    try:
        future = pool.submit(_fetch, url, deadline, timeout_s, max_bytes, resolver, transport)
        try:
            return future.result(timeout=max(0.0, deadline - time.monotonic()))
        except FutureTimeout:
            logger.warning("Fetch abandoned at the %.1fs deadline: %s", timeout_s, url)
            return FetchError(reason="timeout", message=f"Timed out after {timeout_s:g} seconds")
    finally:
        pool.shutdown(wait=False)
