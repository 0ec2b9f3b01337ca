from __future__ import annotations

import logging
import re
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from .models import ContentSignal, Disclosure, FormInfo

logger = logging.getLogger(__name__)

MAX_BODY_CHARS = 10000
BODY_HEAD_CHARS = 8000
BODY_TAIL_CHARS = 2000
ELISION_MARKER = "\n[...]\n"

MAX_HEADINGS = 20
MAX_HEADING_CHARS = 200
MAX_META_CHARS = 200
MAX_EXTERNAL_DOMAINS = 20

_NON_VISIBLE_TAGS = ["script", "style", "noscript", "template"]

_CARD_FIELD_RE = re.compile(r"card|credit|cvv|ccv", re.IGNORECASE)
_HIDDEN_STYLE_RE = re.compile(
    r"display\s*:\s*none|visibility\s*:\s*hidden|opacity\s*:\s*0(?:\.0*)?\s*(?:;|!|$)",
    re.IGNORECASE,
)

# Analytics and tag managers routinely use one of these; only co-occurrence in
# a single inline script counts as obfuscation.
_OBFUSCATION_PATTERNS = (
    re.compile(r"eval\s*\("),
    re.compile(r"atob\s*\("),
    re.compile(r"fromCharCode"),
)
# Escape sequences count once a single line carries at least three of a kind.
_ESCAPE_PATTERNS = (
    re.compile(r"\\x[0-9a-f]{2}", re.IGNORECASE),
    re.compile(r"\\u[0-9a-f]{4}", re.IGNORECASE),
)
MIN_ESCAPES_PER_LINE = 3
_DOCUMENT_WRITE_RE = re.compile(r"document\.write\s*\(")
_UNESCAPE_RE = re.compile(r"unescape|decodeURI")
OBFUSCATION_MIN_PATTERNS = 2

# Corporate, law-office, medical and non-profit operator pages.
ORG_INFO_RE = re.compile(
    r"会社概要|企業情報|企業概要|運営会社|運営者情報|運営情報|事業者[名情]|販売[者業]|屋号"
    r"|事務所[概名情]|代表弁護士|弁護士登録番号|所属弁護士会|代表取締役|代表者|代表理事|理事長"
    r"|院長|施設長|クリニック概要|医院概要|病院概要|法人[概情]|団体概要|組織概要"
    r"|about\s*us|company\s*info|company\s*profile|corporate",
    re.IGNORECASE,
)
CONTACT_RE = re.compile(
    r"お問い合わせ|連絡先|contact|電話番号|tel[：:]|mail[：:]|所在地|住所|アクセス[マ情]|fax[：:]",
    re.IGNORECASE,
)
PRIVACY_RE = re.compile(r"プライバシー|privacy|個人情報保護", re.IGNORECASE)
COMMERCE_LAW_RE = re.compile(r"特定商取引|特商法|返品[特交]|返金[ポ規]", re.IGNORECASE)


def _collapse(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def truncate_body(text: str) -> str:
    """Keep short bodies whole; otherwise keep the head and the footer end."""
    if len(text) <= MAX_BODY_CHARS:
        return text
    return text[:BODY_HEAD_CHARS] + ELISION_MARKER + text[-BODY_TAIL_CHARS:]


def _has_escape_run(pattern: re.Pattern[str], code: str) -> bool:
    return any(len(pattern.findall(line)) >= MIN_ESCAPES_PER_LINE for line in code.splitlines())


def script_is_obfuscated(code: str) -> bool:
    hits = sum(1 for pattern in _OBFUSCATION_PATTERNS if pattern.search(code))
    hits += sum(1 for pattern in _ESCAPE_PATTERNS if _has_escape_run(pattern, code))
    if _DOCUMENT_WRITE_RE.search(code) and _UNESCAPE_RE.search(code):
        hits += 1
    return hits >= OBFUSCATION_MIN_PATTERNS


def _disclosure(pattern: re.Pattern[str], content: str, links: str) -> Disclosure:
    return Disclosure(
        in_content=bool(pattern.search(content)),
        in_links=bool(pattern.search(links)),
    )


def _transparency(full_text: str, link_text: str) -> dict[str, Disclosure]:
    return {
        "organization_info": _disclosure(ORG_INFO_RE, full_text, link_text),
        "contact": _disclosure(CONTACT_RE, full_text, link_text),
        "privacy_policy": _disclosure(PRIVACY_RE, full_text, link_text),
        "commerce_law": _disclosure(COMMERCE_LAW_RE, full_text, link_text),
    }


def extract_content(html: str, base_url: str) -> ContentSignal:
    """Turn fetched HTML into evidence signals.

    The document is parsed, never rendered: script bodies are only read as text.
    Operator-transparency markers are matched against the full, untruncated
    body text and, separately, against every link's text and href, so a
    disclosure that lives on a linked page still counts as present.
    """
    soup = BeautifulSoup(html or "", "lxml")

    title = _collapse(soup.title.get_text()) if soup.title else ""

    meta: dict[str, str] = {}
    for m in soup.find_all("meta"):
        name = m.get("name") or m.get("property") or ""
        content = m.get("content") or ""
        if name and content:
            meta[name.lower()] = content[:MAX_META_CHARS]

    headings: list[str] = []
    for h in soup.find_all(["h1", "h2", "h3"]):
        text = _collapse(h.get_text(" "))
        if text:
            headings.append(text[:MAX_HEADING_CHARS])
    headings = headings[:MAX_HEADINGS]

    base_host = urlparse(base_url).hostname or ""
    anchors = soup.find_all("a", href=True)
    external_hosts: list[str] = []
    link_strings: list[str] = []
    for a in anchors:
        href = a.get("href") or ""
        link_strings.append(a.get_text(" ").lower() + " " + href.lower())
        try:
            host = urlparse(urljoin(base_url, href.strip())).hostname
        except ValueError:
            continue
        if host and host != base_host:
            external_hosts.append(host)
    external_domains = list(dict.fromkeys(external_hosts))[:MAX_EXTERNAL_DOMAINS]

    forms: list[FormInfo] = []
    for f in soup.find_all("form"):
        inputs = f.find_all("input")
        types = [(i.get("type") or "text").lower() for i in inputs]
        names = [i.get("name") or "" for i in inputs]
        action = f.get("action")
        forms.append(FormInfo(
            action=urljoin(base_url, action) if action else "",
            method=(f.get("method") or "get").lower(),
            input_count=len(inputs),
            has_password="password" in types,
            has_card=any(_CARD_FIELD_RE.search(n) for n in names),
        ))

    inline_chars = 0
    obfuscated = False
    for s in soup.find_all("script"):
        if s.get("src"):
            continue
        code = s.string or ""
        inline_chars += len(code)
        if not obfuscated and script_is_obfuscated(code):
            obfuscated = True

    hidden = 0
    for el in soup.find_all(["input", "form"], style=True):
        if _HIDDEN_STYLE_RE.search(el.get("style") or ""):
            hidden += 1

    for tag in soup.find_all(_NON_VISIBLE_TAGS):
        tag.decompose()
    body_full = _collapse(soup.body.get_text(" ")) if soup.body else ""

    signal = ContentSignal(
        title=title,
        meta=meta,
        headings=headings,
        body_text=truncate_body(body_full),
        external_domains=external_domains,
        external_link_count=len(external_hosts),
        forms=forms,
        inline_script_chars=inline_chars,
        obfuscation_suspect=obfuscated,
        hidden_form_fields=hidden,
        **_transparency(body_full.lower(), " ".join(link_strings)),
    )
    logger.debug(
        "Extracted %s: %d chars, %d external domains, %d forms",
        base_url, len(body_full), len(external_domains), len(forms),
    )
    return signal


def content_from_text(text: str) -> ContentSignal:
    """Content signals for page text pasted by the user (no markup, no links)."""
    body_full = _collapse(text)
    return ContentSignal(
        body_text=truncate_body(body_full),
        **_transparency(body_full.lower(), ""),
    )
