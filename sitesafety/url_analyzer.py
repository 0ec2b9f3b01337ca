"""Lexical trust heuristics for a URL.

Every check lives in ``URL_RULES``: a rule inspects the parsed URL and either
returns an issue or ``None``; a returned issue costs the rule's penalty on the
rule's dimension. Nothing here touches the network.
"""
from __future__ import annotations

import ipaddress
import logging
import re
import unicodedata
from dataclasses import dataclass
from typing import Callable, Literal
from urllib.parse import urlparse

from .models import UrlIssue, UrlSignal

logger = logging.getLogger(__name__)

RULESET_VERSION = "2024.1"

SUSPICIOUS_TLDS = frozenset({
    "xyz", "top", "icu", "buzz", "club", "online", "site", "fun", "monster", "click",
    "link", "work", "rest", "gq", "ml", "cf", "ga", "tk", "pw", "cc", "ws", "info",
    "bid", "stream", "racing", "download", "win", "review", "trade", "loan", "cricket",
    "science", "party", "date",
})

BRANDS = (
    "amazon", "rakuten", "yahoo", "google", "apple", "microsoft", "facebook", "instagram",
    "twitter", "paypal", "netflix", "docomo", "softbank", "mercari", "paypay",
    "smbc", "mufg", "mizuho", "jpbank", "aeon", "familymart", "lawson", "uniqlo",
)

# Only these registrable forms count as a brand's own domain (see DESIGN.md).
_BRAND_SUFFIXES = (".com", ".co.jp", ".jp")

SUSPICIOUS_PATH_KEYWORDS = (
    "login", "signin", "verify", "secure", "account", "update", "confirm", "banking", "wallet",
)

MAX_HOST_LABELS = 4
MAX_PATH_LENGTH = 200

Dimension = Literal["domain_trust", "tech_safety"]


@dataclass(frozen=True)
class ParsedUrl:
    scheme: str
    hostname: str
    origin: str
    path: str
    query: str


@dataclass(frozen=True)
class UrlRule:
    key: str
    dimension: Dimension
    penalty: int
    check: Callable[[ParsedUrl], UrlIssue | None]


def _check_scheme(u: ParsedUrl) -> UrlIssue | None:
    if u.scheme == "https":
        return None
    return UrlIssue(
        title="No SSL (HTTP)" if u.scheme == "http" else f"Non-HTTPS scheme ({u.scheme})",
        severity="high",
        description="The connection is not encrypted.",
    )


def _is_ip_literal(hostname: str) -> bool:
    try:
        ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return True


def _check_ip_host(u: ParsedUrl) -> UrlIssue | None:
    if not _is_ip_literal(u.hostname):
        return None
    return UrlIssue(
        title="IP address URL",
        severity="high",
        description="The site is addressed by a raw IP address instead of a domain name.",
    )


def _check_tld(u: ParsedUrl) -> UrlIssue | None:
    tld = u.hostname.rsplit(".", 1)[-1]
    if tld not in SUSPICIOUS_TLDS:
        return None
    return UrlIssue(
        title=f"Suspicious TLD (.{tld})",
        severity="medium",
        description="This top-level domain is heavily used by scam sites.",
    )


def _check_depth(u: ParsedUrl) -> UrlIssue | None:
    labels = u.hostname.split(".")
    if len(labels) <= MAX_HOST_LABELS:
        return None
    return UrlIssue(
        title="Excessive subdomains",
        severity="medium",
        description=f"The hostname has {len(labels)} labels.",
    )


def _is_brand_domain(hostname: str, brand: str) -> bool:
    for suffix in _BRAND_SUFFIXES:
        own = brand + suffix
        if hostname == own or hostname.endswith("." + own):
            return True
    return False


def _check_brand(u: ParsedUrl) -> UrlIssue | None:
    squashed = re.sub(r"[^a-z0-9]", "", u.hostname)
    for brand in BRANDS:
        if brand in squashed and not _is_brand_domain(u.hostname, brand):
            return UrlIssue(
                title=f"Possible brand impersonation ({brand})",
                severity="high",
                description=f'The hostname contains "{brand}" but is not an official {brand} domain.',
            )
    return None


def _decode_punycode_host(hostname: str) -> str:
    labels = []
    for label in hostname.split("."):
        if label.startswith("xn--"):
            try:
                label = label[4:].encode("ascii").decode("punycode")
            except (UnicodeError, ValueError):
                pass
        labels.append(label)
    return ".".join(labels)


def _scripts_of(text: str) -> tuple[bool, bool]:
    has_latin = has_other = False
    for ch in text:
        if not ch.isalpha():
            continue
        if unicodedata.name(ch, "").startswith("LATIN"):
            has_latin = True
        else:
            has_other = True
    return has_latin, has_other


def _check_homograph(u: ParsedUrl) -> UrlIssue | None:
    if "xn--" not in u.hostname:
        return None
    decoded = _decode_punycode_host(u.hostname)
    # The TLD itself is not part of the comparison: "例え.com" is a pure-script host.
    name_part = decoded.rsplit(".", 1)[0] if "." in decoded else decoded
    has_latin, has_other = _scripts_of(name_part)
    if not (has_latin and has_other):
        return None
    return UrlIssue(
        title="Possible IDN homograph",
        severity="high",
        description=f"The domain ({decoded}) mixes Latin and non-Latin characters, a common impersonation trick.",
    )


def _check_path_keywords(u: ParsedUrl) -> UrlIssue | None:
    haystack = (u.path + ("?" + u.query if u.query else "")).lower()
    found = [k for k in SUSPICIOUS_PATH_KEYWORDS if k in haystack]
    if len(found) < 2:
        return None
    return UrlIssue(
        title="Suspicious path keywords",
        severity="low",
        description="The URL contains " + ", ".join(f'"{k}"' for k in found) + ".",
    )


def _check_path_length(u: ParsedUrl) -> UrlIssue | None:
    # Query strings (gclid, utm_*, fbclid ...) are routinely long, so they are not counted.
    length = len(u.origin + u.path)
    if length <= MAX_PATH_LENGTH:
        return None
    return UrlIssue(
        title="Unusually long URL",
        severity="low",
        description=f"Path length: {length} characters.",
    )


URL_RULES: tuple[UrlRule, ...] = (
    UrlRule("scheme", "tech_safety", 30, _check_scheme),
    UrlRule("ip_host", "domain_trust", 40, _check_ip_host),
    UrlRule("suspicious_tld", "domain_trust", 20, _check_tld),
    UrlRule("subdomain_depth", "domain_trust", 15, _check_depth),
    UrlRule("brand_typosquat", "domain_trust", 30, _check_brand),
    UrlRule("idn_homograph", "domain_trust", 25, _check_homograph),
    UrlRule("path_keywords", "domain_trust", 10, _check_path_keywords),
    UrlRule("path_length", "domain_trust", 5, _check_path_length),
)


def parse_url(raw: str) -> ParsedUrl | None:
    value = (raw or "").strip()
    if not value:
        return None
    try:
        p = urlparse(value)
        p.port  # raises ValueError on a malformed port
    except ValueError:
        return None
    if not p.scheme or not p.hostname:
        return None
    hostname = p.hostname.lower().rstrip(".")
    if not hostname:
        return None
    if not hostname.isascii():
        # Compare hosts in their ASCII (punycode) form, as browsers send them.
        try:
            hostname = hostname.encode("idna").decode("ascii")
        except UnicodeError:
            return None
    host_port = p.netloc.rpartition("@")[2].lower()
    return ParsedUrl(
        scheme=p.scheme.lower(),
        hostname=hostname,
        origin=f"{p.scheme.lower()}://{host_port}",
        path=p.path,
        query=p.query,
    )


def _clamp(value: int) -> int:
    return max(0, min(100, int(value)))


def analyze_url(url: str, rules: tuple[UrlRule, ...] = URL_RULES) -> UrlSignal:
    parsed = parse_url(url)
    if parsed is None:
        return UrlSignal(
            domain_trust=0,
            tech_safety=0,
            issues=(UrlIssue(title="Invalid URL", severity="critical", description="The URL could not be parsed."),),
        )

    scores = {"domain_trust": 100, "tech_safety": 100}
    issues: list[UrlIssue] = []
    for rule in rules:
        issue = rule.check(parsed)
        if issue is None:
            continue
        scores[rule.dimension] -= rule.penalty
        issues.append(issue)

    logger.debug("URL rules v%s on %s: %d issue(s)", RULESET_VERSION, parsed.hostname, len(issues))
    return UrlSignal(
        domain_trust=_clamp(scores["domain_trust"]),
        tech_safety=_clamp(scores["tech_safety"]),
        issues=tuple(issues),
    )
