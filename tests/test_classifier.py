"""
External classifier adapter

Tests for:
- A complete response is validated into a ClassifierResult
- Missing or non-numeric dimension scores are a malformed response
- HTTP 429 is reported as rate limiting, other failures as unavailable
- The evidence prompt carries the URL and content signals
"""

import json
from types import SimpleNamespace

import httpx
import pytest
from google.genai import errors as genai_errors

from sitesafety.classifier import build_prompt, classify, parse_classifier_output
from sitesafety.config import AnalysisConfig
from sitesafety.errors import ClassifierMalformedResponse, ClassifierRateLimited, ClassifierUnavailable
from sitesafety.models import ContentSignal, Disclosure, UrlIssue, UrlSignal

URL_SIGNAL = UrlSignal(
    domain_trust=70,
    tech_safety=100,
    issues=(UrlIssue(title="Suspicious TLD (.xyz)", severity="medium"),),
)
CONFIG = AnalysisConfig(api_key="test-key", sensitivity="high")


def valid_payload(**overrides):
    payload = {
        "scores": {
            "domain_trust": 40,
            "content_safety": 30,
            "operator_transparency": 20,
            "claim_credibility": 35.6,
            "scam_pattern": 10,
            "tech_safety": 90,
        },
        "overall_risk": "high",
        "detected_categories": [
            {"category": "Fake shop", "confidence": "high", "evidence": "90% off all brands"},
        ],
        "findings": [
            {
                "dimension": "claim_credibility",
                "severity": "high",
                "title": "Unrealistic discount",
                "description": "Luxury goods at 90% off.",
                "quote": "90% off all brands",
            },
        ],
        "summary": "Likely a fake online shop.",
    }
    payload.update(overrides)
    return payload


class FakeClient:
    def __init__(self, text=None, error=None):
        self.calls = []
        self._text = text
        self._error = error
        self.models = self

    def generate_content(self, *, model, contents, config):
        self.calls.append({"model": model, "contents": contents, "config": config})
        if self._error is not None:
            raise self._error
        return SimpleNamespace(text=self._text)


class TestParse:
    def test_valid_response(self):
        result = parse_classifier_output(json.dumps(valid_payload()))
        assert result.scores.scam_pattern == 10
        assert result.scores.claim_credibility == 36
        assert result.overall_risk == "high"
        assert result.detected_categories[0].confidence == "high"
        assert result.findings[0].quote == "90% off all brands"
        assert result.summary == "Likely a fake online shop."

    def test_fenced_json_accepted(self):
        text = "```json\n" + json.dumps(valid_payload()) + "\n```"
        assert parse_classifier_output(text).scores.domain_trust == 40

    def test_scores_are_clamped(self):
        payload = valid_payload()
        payload["scores"]["tech_safety"] = 140
        payload["scores"]["scam_pattern"] = -5
        result = parse_classifier_output(json.dumps(payload))
        assert result.scores.tech_safety == 100
        assert result.scores.scam_pattern == 0

    @pytest.mark.parametrize("dim", ["domain_trust", "scam_pattern", "tech_safety"])
    def test_missing_dimension_is_malformed(self, dim):
        payload = valid_payload()
        del payload["scores"][dim]
        with pytest.raises(ClassifierMalformedResponse):
            parse_classifier_output(json.dumps(payload))

    @pytest.mark.parametrize("bad", ["40", None, True, [1]])
    def test_non_numeric_dimension_is_malformed(self, bad):
        payload = valid_payload()
        payload["scores"]["content_safety"] = bad
        with pytest.raises(ClassifierMalformedResponse):
            parse_classifier_output(json.dumps(payload))

    @pytest.mark.parametrize("text", ["", "not json", "[]", '{"summary": "x"}'])
    def test_unusable_documents_are_malformed(self, text):
        with pytest.raises(ClassifierMalformedResponse):
            parse_classifier_output(text)

    def test_off_schema_fields_are_normalised(self):
        payload = valid_payload(
            overall_risk="catastrophic",
            detected_categories=[{"category": "Phishing", "confidence": "very", "evidence": "login form"}, "junk"],
            findings=[{"title": "Odd", "severity": "severe"}, {"severity": "low"}],
            summary=None,
        )
        result = parse_classifier_output(json.dumps(payload))
        assert result.overall_risk is None
        assert len(result.detected_categories) == 1
        assert result.detected_categories[0].confidence == "medium"
        assert len(result.findings) == 1
        assert result.findings[0].severity == "info"
        assert result.findings[0].quote is None
        assert result.summary == ""


class TestClassify:
    def test_success(self):
        client = FakeClient(text=json.dumps(valid_payload()))
        result = classify("https://shop.xyz/", URL_SIGNAL, None, None, CONFIG, client=client)
        assert result.overall_risk == "high"
        call = client.calls[0]
        assert call["model"] == CONFIG.model
        assert call["config"].response_mime_type == "application/json"
        assert "https://shop.xyz/" in call["contents"]

    def test_rate_limit_is_distinct(self):
        error = genai_errors.ClientError(
            429, {"error": {"code": 429, "message": "Resource exhausted", "status": "RESOURCE_EXHAUSTED"}}
        )
        with pytest.raises(ClassifierRateLimited):
            classify("https://shop.xyz/", URL_SIGNAL, None, None, CONFIG, client=FakeClient(error=error))

    def test_server_error_is_unavailable(self):
        error = genai_errors.ServerError(
            503, {"error": {"code": 503, "message": "Overloaded", "status": "UNAVAILABLE"}}
        )
        with pytest.raises(ClassifierUnavailable):
            classify("https://shop.xyz/", URL_SIGNAL, None, None, CONFIG, client=FakeClient(error=error))

    def test_transport_error_is_unavailable(self):
        error = httpx.ConnectTimeout("timed out")
        with pytest.raises(ClassifierUnavailable):
            classify("https://shop.xyz/", URL_SIGNAL, None, None, CONFIG, client=FakeClient(error=error))

    def test_empty_text_is_malformed(self):
        with pytest.raises(ClassifierMalformedResponse):
            classify("https://shop.xyz/", URL_SIGNAL, None, None, CONFIG, client=FakeClient(text=None))

    def test_unexpected_sdk_error_is_unavailable(self):
        with pytest.raises(ClassifierUnavailable):
            classify(
                "https://shop.xyz/",
                URL_SIGNAL,
                None,
                None,
                CONFIG,
                client=FakeClient(error=ValueError("unexpected payload")),
            )

    def test_missing_api_key(self):
        with pytest.raises(ClassifierUnavailable):
            classify("https://shop.xyz/", URL_SIGNAL, None, None, AnalysisConfig(api_key=None))

    def test_rate_limited_is_not_unavailable(self):
        assert not issubclass(ClassifierRateLimited, ClassifierUnavailable)


class TestPrompt:
    def test_prompt_contains_evidence(self):
        content = ContentSignal(
            title="Brand Outlet",
            headings=["90% OFF"],
            body_text="All items 90% off today only",
            external_domains=["pay.example.net"],
            obfuscation_suspect=True,
            commerce_law=Disclosure(in_links=True),
        )
        prompt = build_prompt(
            "https://brand-outlet.xyz/",
            URL_SIGNAL,
            content,
            {"server": "nginx"},
            "high",
        )
        assert "https://brand-outlet.xyz/" in prompt
        assert "Domain trust: 70/100" in prompt
        assert "Suspicious TLD (.xyz)" in prompt
        assert "server: nginx" in prompt
        assert "All items 90% off today only" in prompt
        assert "Obfuscation suspected: yes" in prompt
        assert "Specified Commercial Transactions Act notice: linked (on another page)" in prompt
        assert "Sensitivity: HIGH" in prompt

    def test_prompt_without_content(self):
        prompt = build_prompt("https://example.com/", URL_SIGNAL, None, None, "standard")
        assert "Page content could not be retrieved." in prompt
        assert "Sensitivity:" not in prompt
