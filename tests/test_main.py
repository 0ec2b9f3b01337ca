"""
HTTP API

Tests for:
- /fetch maps fetch errors to status codes
- /classify distinguishes rate limiting from other classifier failures
- /analyze runs one analysis per session and contains internal errors
"""

import threading

import pytest
from fastapi.testclient import TestClient

import sitesafety.main as main
from sitesafety.analyzer import analyze as real_analyze
from sitesafety.config import Settings
from sitesafety.errors import ClassifierMalformedResponse, ClassifierRateLimited
from sitesafety.models import FetchError, FetchResult

URL_SIGNAL = {"domain_trust": 100, "tech_safety": 100, "issues": []}


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(main, "settings", Settings(gemini_api_key=None))
    monkeypatch.setattr(main, "sessions", main.SessionRegistry())
    return TestClient(main.app)


def ok_page(url, **kwargs):
    return FetchResult(
        html="<html><body><p>hello</p></body></html>",
        headers={"content-type": "text/html"},
        redirected=False,
        final_url=url,
        status=200,
        content_type="text/html",
    )


def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}


class TestFetchEndpoint:
    def test_success(self, client, monkeypatch):
        monkeypatch.setattr(main, "fetch_page", ok_page)
        resp = client.get("/fetch", params={"url": "https://example.com/"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["finalUrl"] == "https://example.com/"
        assert body["redirected"] is False
        assert "hello" in body["html"]

    @pytest.mark.parametrize("reason,status", [
        ("invalid_url", 400),
        ("unsupported_scheme", 403),
        ("ssrf_rejected", 403),
        ("timeout", 504),
        ("dns_failure", 502),
        ("network_error", 502),
        ("too_many_redirects", 502),
    ])
    def test_error_status(self, client, monkeypatch, reason, status):
        monkeypatch.setattr(main, "fetch_page", lambda url, **kw: FetchError(reason=reason, message="nope"))
        resp = client.get("/fetch", params={"url": "https://example.com/"})
        assert resp.status_code == status
        assert resp.json() == {"error": "nope", "reason": reason}

    def test_url_required(self, client):
        assert client.get("/fetch").status_code == 422


class TestClassifyEndpoint:
    def test_without_key(self, client):
        resp = client.post("/classify", json={"url": "https://example.com/", "url_signal": URL_SIGNAL})
        assert resp.status_code == 503

    def test_rate_limited(self, client, monkeypatch):
        def limited(*args, **kwargs):
            raise ClassifierRateLimited("quota")

        monkeypatch.setattr(main, "classify", limited)
        resp = client.post(
            "/classify",
            json={"url": "https://example.com/", "url_signal": URL_SIGNAL},
            headers={"X-API-Key": "k"},
        )
        assert resp.status_code == 429
        assert resp.headers["retry-after"] == "30"

    def test_malformed(self, client, monkeypatch):
        def malformed(*args, **kwargs):
            raise ClassifierMalformedResponse("no scores")

        monkeypatch.setattr(main, "classify", malformed)
        resp = client.post(
            "/classify",
            json={"url": "https://example.com/", "url_signal": URL_SIGNAL},
            headers={"X-API-Key": "k"},
        )
        assert resp.status_code == 502


class TestAnalyzeEndpoint:
    def test_analyze_without_key_is_partial(self, client, monkeypatch):
        monkeypatch.setattr(main, "analyze", lambda url, config: real_analyze(url, config, fetcher=ok_page))
        resp = client.post("/analyze", json={"url": "https://example.com/", "sensitivity": "high"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["sensitivity"] == "high"
        assert body["integrated"]["risk"] in ("safe", "low")
        assert [n["stage"] for n in body["incomplete"]] == ["classifier"]

    def test_busy_session_is_rejected(self, client):
        started = threading.Event()
        release = threading.Event()

        def hold():
            started.set()
            release.wait(5)

        def run():
            with main.sessions.session("tab-1") as session:
                session.submit(hold)

        worker = threading.Thread(target=run)
        worker.start()
        try:
            assert started.wait(5)
            resp = client.post("/analyze", json={"url": "https://example.com/"}, headers={"X-Session-Id": "tab-1"})
            assert resp.status_code == 409
        finally:
            release.set()
            worker.join(5)
        assert len(main.sessions) == 0

    def test_idle_sessions_are_not_kept(self, client, monkeypatch):
        monkeypatch.setattr(main, "analyze", lambda url, config: real_analyze(url, config, fetcher=ok_page))
        for i in range(5):
            resp = client.post("/analyze", json={"url": "https://example.com/"}, headers={"X-Session-Id": f"tab-{i}"})
            assert resp.status_code == 200
        assert len(main.sessions) == 0

    def test_internal_error_is_contained(self, client, monkeypatch):
        def broken(url, config):
            raise RuntimeError("unexpected")

        monkeypatch.setattr(main, "analyze", broken)
        resp = client.post("/analyze", json={"url": "https://example.com/"})
        assert resp.status_code == 500
        assert "unexpected" not in resp.text
        assert len(main.sessions) == 0

    def test_text_analysis_needs_key(self, client):
        resp = client.post("/analyze/text", json={"text": "hello"})
        assert resp.status_code == 400

    def test_unknown_sensitivity_rejected(self, client):
        resp = client.post("/analyze", json={"url": "https://example.com/", "sensitivity": "extreme"})
        assert resp.status_code == 422
