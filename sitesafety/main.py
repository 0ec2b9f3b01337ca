from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .analyzer import AnalysisSession, analyze, analyze_text
from .classifier import classify
from .config import Settings
from .errors import ClassifierMalformedResponse, ClassifierRateLimited, ClassifierUnavailable, ConfigurationError
from .models import (
    AnalysisReport,
    AnalyzeRequest,
    AnalyzeTextRequest,
    ClassifierResult,
    ClassifyRequest,
    FetchError,
)
from .safe_fetch import fetch_page

logger = logging.getLogger(__name__)

settings = Settings.from_env()

app = FastAPI(title="Site Safety Checker", version="0.1.0")

# Browser origins allowed to call the API; comma-separated in SITESAFETY_CORS_ORIGINS.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_FETCH_ERROR_STATUS = {
    "invalid_url": 400,
    "unsupported_scheme": 403,
    "ssrf_rejected": 403,
    "timeout": 504,
}


class SessionRegistry:
    """Per-key analysis sessions, kept only while a request is using them."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, AnalysisSession] = {}
        self._users: dict[str, int] = {}

    @contextmanager
    def session(self, key: str) -> Iterator[AnalysisSession]:
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                session = self._sessions[key] = AnalysisSession()
            self._users[key] = self._users.get(key, 0) + 1
        try:
            yield session
        finally:
            with self._lock:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._sessions[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


sessions = SessionRegistry()


def _session_key(request: Request, session_id: str | None) -> str:
    if session_id:
        return session_id
    return request.client.host if request.client else "anonymous"


@app.get("/healthz")
def healthz():
    return {"ok": True}


@app.get("/fetch")
def fetch_endpoint(url: str = Query(..., min_length=1)):
    result = fetch_page(url, timeout_s=settings.fetch_timeout_s, max_bytes=settings.fetch_max_bytes)
    if isinstance(result, FetchError):
        status = _FETCH_ERROR_STATUS.get(result.reason, 502)
        return JSONResponse(status_code=status, content={"error": result.message, "reason": result.reason})
    return result.model_dump(by_alias=True)


@app.post("/classify", response_model=ClassifierResult)
def classify_endpoint(req: ClassifyRequest, x_api_key: str | None = Header(None)):
    config = settings.analysis_config(api_key=x_api_key, sensitivity=req.sensitivity)
    if not config.api_key:
        raise HTTPException(status_code=503, detail="No Gemini API key configured.")
    try:
        return classify(req.url, req.url_signal, req.content, req.headers, config)
    except ClassifierRateLimited as e:
        raise HTTPException(status_code=429, detail=e.stage_message, headers={"Retry-After": "30"})
    except (ClassifierMalformedResponse, ClassifierUnavailable) as e:
        raise HTTPException(status_code=502, detail=f"{e.stage_message}: {e}")


def _run_in_session(request: Request, session_id: str | None, fn, *args, **kwargs) -> AnalysisReport:
    try:
        with sessions.session(_session_key(request, session_id)) as session:
            report = session.submit(fn, *args, **kwargs)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        logger.exception("Analysis failed")
        raise HTTPException(status_code=500, detail="An internal error occurred during analysis.")
    if report is None:
        raise HTTPException(status_code=409, detail="An analysis is already in progress for this session.")
    return report


@app.post("/analyze", response_model=AnalysisReport)
def analyze_endpoint(
    req: AnalyzeRequest,
    request: Request,
    x_api_key: str | None = Header(None),
    x_session_id: str | None = Header(None),
):
    config = settings.analysis_config(api_key=x_api_key, sensitivity=req.sensitivity)
    return _run_in_session(request, x_session_id, analyze, req.url, config)


@app.post("/analyze/text", response_model=AnalysisReport)
def analyze_text_endpoint(
    req: AnalyzeTextRequest,
    request: Request,
    x_api_key: str | None = Header(None),
    x_session_id: str | None = Header(None),
):
    config = settings.analysis_config(api_key=x_api_key, sensitivity=req.sensitivity)
    return _run_in_session(request, x_session_id, analyze_text, req.text, config, url=req.url)
