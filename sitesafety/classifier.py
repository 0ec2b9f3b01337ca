"""
AI scam classifier backed by Google Gemini.
Only the input/output contract lives here: the evidence prompt that goes out
and the validation of the structured verdict that comes back.
"""
from __future__ import annotations

import json
import logging
import math
from datetime import date
from typing import Any

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from .config import AnalysisConfig
from .errors import ClassifierMalformedResponse, ClassifierRateLimited, ClassifierUnavailable
from .models import (
    DIMENSIONS,
    RISK_ORDER,
    ClassifierResult,
    ContentSignal,
    DetectedCategory,
    DimensionScores,
    Finding,
    UrlSignal,
)

logger = logging.getLogger(__name__)

_ALLOWED_CONFIDENCE = {"high", "medium", "low"}
_ALLOWED_SEVERITY = {"critical", "high", "medium", "low", "info"}

RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "scores": {
            "type": "OBJECT",
            "properties": {d: {"type": "NUMBER"} for d in DIMENSIONS},
            "required": list(DIMENSIONS),
        },
        "overall_risk": {"type": "STRING", "enum": list(RISK_ORDER)},
        "detected_categories": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "category": {"type": "STRING"},
                    "confidence": {"type": "STRING", "enum": ["high", "medium", "low"]},
                    "evidence": {"type": "STRING"},
                },
                "required": ["category", "confidence", "evidence"],
            },
        },
        "findings": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "dimension": {"type": "STRING"},
                    "severity": {"type": "STRING", "enum": ["critical", "high", "medium", "low", "info"]},
                    "title": {"type": "STRING"},
                    "description": {"type": "STRING"},
                    "quote": {"type": "STRING"},
                },
                "required": ["dimension", "severity", "title", "description"],
            },
        },
        "summary": {"type": "STRING"},
    },
    "required": ["scores", "overall_risk", "detected_categories", "findings", "summary"],
}

_SENSITIVITY_INSTRUCTIONS = {
    "high": (
        "## Sensitivity: HIGH\n"
        "Score aggressively when in doubt. Push grey-zone sites toward the dangerous side.\n"
    ),
    "low": (
        "## Sensitivity: LOW\n"
        "Only give low scores when there is clear evidence. Push grey-zone sites toward the safe side.\n"
    ),
}


def _disclosure_line(label: str, in_content: bool, in_links: bool) -> str:
    if in_content:
        return f"{label}: stated on the page"
    if in_links:
        return f"{label}: linked (on another page)"
    return f"{label}: none"


def build_prompt(
    url: str,
    url_signal: UrlSignal,
    content: ContentSignal | None,
    headers: dict[str, str] | None,
    sensitivity: str,
) -> str:
    """Build the evidence prompt for Gemini."""
    issues = ", ".join(i.title for i in url_signal.issues) or "none"
    header_text = "\n".join(f"{k}: {v}" for k, v in headers.items()) if headers else "not available"

    if content is None:
        content_text = "Page content could not be retrieved."
    else:
        forms = f"{len(content.forms)}"
        if any(f.has_password for f in content.forms):
            forms += " (password input present)"
        if any(f.has_card for f in content.forms):
            forms += " (credit card input present)"
        content_text = "\n".join([
            f"Title: {content.title or 'unknown'}",
            f"Headings: {' / '.join(content.headings) or 'none'}",
            "Body text:",
            content.body_text or "not available",
            "",
            f"External links: {content.external_link_count}",
            f"External domains: {', '.join(content.external_domains) or 'none'}",
            f"Forms: {forms}",
            f"Inline script: {content.inline_script_chars} chars",
            f"Obfuscation suspected: {'yes' if content.obfuscation_suspect else 'no'}",
            f"Hidden form elements: {content.hidden_form_fields}",
            _disclosure_line("Operator information", content.organization_info.in_content, content.organization_info.in_links),
            _disclosure_line("Contact", content.contact.in_content, content.contact.in_links),
            _disclosure_line("Privacy policy", content.privacy_policy.in_content, content.privacy_policy.in_links),
            _disclosure_line(
                "Specified Commercial Transactions Act notice",
                content.commerce_law.in_content,
                content.commerce_law.in_links,
            ),
        ])

    return f"""You are a cybersecurity expert. Analyse the website information below and decide whether it is a scam or otherwise dangerous site.
Today's date: {date.today().isoformat()}

## Rules
1. A finding's quote must be copied verbatim from the page text. Never invent wording; leave quote empty if nothing can be quoted.
2. detected_categories evidence must cite concrete expressions from the page.
3. Legitimate sites get high scores. Only deduct with concrete evidence, but deduct decisively when the evidence is clear.
4. Judge only the current content of this page, not the operator's history or reputation.
5. If the site clearly matches a known scam pattern, scam_pattern must be 20 or lower and overall_risk high or above.
{_SENSITIVITY_INSTRUCTIONS.get(sensitivity, "")}
## Target URL
{url}

## Client-side URL analysis
- Domain trust: {url_signal.domain_trust}/100
- Technical safety: {url_signal.tech_safety}/100
- Issues: {issues}

## HTTP response headers
{header_text}

## Site content
{content_text}

## Scoring
Score every dimension 0-100 (100 is safest):
- domain_trust: URL structure, TLD, brand impersonation, SSL
- content_safety: suspicious keywords, pressure and urgency
- operator_transparency: commerce-law notice, company profile, contact details
- claim_credibility: exaggerated advertising, unrealistic guarantees, unlawful claims
- scam_pattern: dissimilarity to known scam patterns (higher is safer)
- tech_safety: SSL, obfuscation, hidden forms
"""


def _score(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return max(0, min(100, int(math.floor(value + 0.5))))


def _as_text(value: Any, default: str = "") -> str:
    if value is None:
        return default
    return str(value).strip() or default


def parse_classifier_output(text: str) -> ClassifierResult:
    """Validate a raw Gemini JSON document.

    The six dimension scores are mandatory; everything else is normalised so a
    slightly off-schema answer (unknown enum, missing quote) is still usable.
    """
    text = (text or "").strip()
    # JSON mode still occasionally wraps the document in a code fence.
    if text.startswith("```json"):
        text = text[7:]
    elif text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    text = text.strip()
    if not text:
        raise ClassifierMalformedResponse("Classifier returned an empty response")

    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ClassifierMalformedResponse("Classifier response is not valid JSON") from exc
    if not isinstance(raw, dict) or not isinstance(raw.get("scores"), dict):
        raise ClassifierMalformedResponse("Classifier response has no scores object")

    scores: dict[str, int] = {}
    for dim in DIMENSIONS:
        value = _score(raw["scores"].get(dim))
        if value is None:
            raise ClassifierMalformedResponse(f"Classifier response is missing numeric score {dim!r}")
        scores[dim] = value

    risk = _as_text(raw.get("overall_risk")).lower()

    categories: list[DetectedCategory] = []
    for item in raw.get("detected_categories") or []:
        if not isinstance(item, dict) or not _as_text(item.get("category")):
            continue
        confidence = _as_text(item.get("confidence"), "medium").lower()
        categories.append(DetectedCategory(
            category=_as_text(item.get("category")),
            confidence=confidence if confidence in _ALLOWED_CONFIDENCE else "medium",
            evidence=_as_text(item.get("evidence")),
        ))

    findings: list[Finding] = []
    for item in raw.get("findings") or []:
        if not isinstance(item, dict) or not _as_text(item.get("title")):
            continue
        severity = _as_text(item.get("severity"), "info").lower()
        findings.append(Finding(
            dimension=_as_text(item.get("dimension"), "unknown"),
            severity=severity if severity in _ALLOWED_SEVERITY else "info",
            title=_as_text(item.get("title")),
            description=_as_text(item.get("description")),
            quote=_as_text(item.get("quote")) or None,
        ))

    return ClassifierResult(
        scores=DimensionScores(**scores),
        overall_risk=risk if risk in RISK_ORDER else None,
        detected_categories=categories,
        findings=findings,
        summary=_as_text(raw.get("summary")),
    )


def make_client(config: AnalysisConfig) -> genai.Client:
    if not config.api_key:
        raise ClassifierUnavailable("No Gemini API key configured")
    http_options = types.HttpOptions(
        timeout=int(config.classifier_timeout_s * 1000),
        base_url=config.classifier_base_url,
    )
    return genai.Client(api_key=config.api_key, http_options=http_options)


def classify(
    url: str,
    url_signal: UrlSignal,
    content: ContentSignal | None,
    headers: dict[str, str] | None,
    config: AnalysisConfig,
    client: Any | None = None,
) -> ClassifierResult:
    """Ask Gemini for the six-dimension verdict.

    Raises ClassifierRateLimited on HTTP 429, ClassifierUnavailable for any
    other service or transport failure, and ClassifierMalformedResponse when
    the answer does not carry all six scores.
    """
    if client is None:
        client = make_client(config)

    prompt = build_prompt(url, url_signal, content, headers, config.sensitivity)
    gen_config = types.GenerateContentConfig(
        response_mime_type="application/json",
        response_schema=RESPONSE_SCHEMA,
        temperature=0.1,
    )

    try:
        resp = client.models.generate_content(
            model=config.model,
            contents=prompt,
            config=gen_config,
        )
    except genai_errors.APIError as exc:
        if exc.code == 429:
            logger.warning("Gemini rate limit hit for %s", url)
            raise ClassifierRateLimited("Gemini API usage limit reached") from exc
        logger.warning("Gemini API error %s for %s", exc.code, url)
        raise ClassifierUnavailable(f"Gemini API error {exc.code}") from exc
    except httpx.HTTPError as exc:
        logger.warning("Gemini call failed for %s: %s", url, exc)
        raise ClassifierUnavailable(f"Gemini call failed: {type(exc).__name__}") from exc
    except Exception as exc:
        logger.exception("Unexpected Gemini SDK failure for %s", url)
        raise ClassifierUnavailable(f"Gemini call failed: {type(exc).__name__}") from exc

    return parse_classifier_output(getattr(resp, "text", None) or "")
