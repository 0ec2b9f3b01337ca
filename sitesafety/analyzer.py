from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, TypeVar

from .classifier import classify
from .config import AnalysisConfig
from .errors import ClassifierError, ConfigurationError
from .extractor import content_from_text, extract_content
from .integrator import integrate
from .models import (
    AnalysisReport,
    ClassifierResult,
    ContentSignal,
    FetchError,
    FetchResult,
    IncompleteNotice,
    UrlIssue,
    UrlSignal,
)
from .safe_fetch import fetch_page, is_sensitive_redirect
from .url_analyzer import analyze_url

logger = logging.getLogger(__name__)

T = TypeVar("T")

OBFUSCATION_PENALTY = 20
HIDDEN_FORM_PENALTY = 15

Fetcher = Callable[..., "FetchResult | FetchError"]
Classifier = Callable[..., ClassifierResult]


def apply_content_findings(
    url_signal: UrlSignal,
    fetched: FetchResult,
    content: ContentSignal | None,
) -> UrlSignal:
    """Fold page-level technical findings into a new URL signal."""
    tech = url_signal.tech_safety
    issues = list(url_signal.issues)

    if fetched.redirected:
        issues.append(UrlIssue(title="Redirect detected", severity="low", description=f"Final URL: {fetched.final_url}"))

    if content is not None:
        if content.obfuscation_suspect:
            tech -= OBFUSCATION_PENALTY
            issues.append(UrlIssue(
                title="Possible script obfuscation",
                severity="medium",
                description="Obfuscation patterns such as eval/atob/fromCharCode were found together in one script.",
            ))
        if content.hidden_form_fields > 0:
            tech -= HIDDEN_FORM_PENALTY
            issues.append(UrlIssue(
                title="Hidden form elements",
                severity="medium",
                description=f"{content.hidden_form_fields} hidden form element(s) on the page.",
            ))

    return url_signal.model_copy(update={"tech_safety": max(0, tech), "issues": tuple(issues)})


def _classify_stage(
    classifier: Classifier,
    url: str,
    url_signal: UrlSignal,
    content: ContentSignal | None,
    headers: dict[str, str] | None,
    config: AnalysisConfig,
    incomplete: list[IncompleteNotice],
) -> ClassifierResult | None:
    if not config.api_key:
        incomplete.append(IncompleteNotice(stage="classifier", message="AI analysis skipped: no API key is configured."))
        return None
    try:
        return classifier(url, url_signal, content, headers, config)
    except ClassifierError as exc:
        incomplete.append(IncompleteNotice(stage="classifier", message=f"{exc.stage_message} ({exc}). Partial result."))
        return None
    except Exception as e:
        logger.exception("Classifier stage failed for %s", url)
        incomplete.append(IncompleteNotice(
            stage="classifier",
            message=f"{ClassifierError.stage_message} ({type(e).__name__}). Partial result.",
        ))
        return None


def analyze(
    url: str,
    config: AnalysisConfig,
    *,
    fetcher: Fetcher = fetch_page,
    classifier: Classifier = classify,
) -> AnalysisReport:
    """Run the full pipeline for one URL.

    URL analysis and the page fetch run side by side; extraction and
    classification follow in order. Any stage that fails leaves a notice in
    ``incomplete`` and the report is still built from what is available.
    """
    t0 = time.perf_counter()
    url = url.strip()
    timings: dict[str, int] = {}
    incomplete: list[IncompleteNotice] = []

    def timed(name: str, fn: Callable[[], T]) -> T:
        start = time.perf_counter()
        try:
            return fn()
        finally:
            timings[name] = int((time.perf_counter() - start) * 1000)

    with ThreadPoolExecutor(max_workers=2) as pool:
        url_future = pool.submit(timed, "url", lambda: analyze_url(url))
        fetch_future = pool.submit(
            timed,
            "fetch",
            lambda: fetcher(url, timeout_s=config.fetch_timeout_s, max_bytes=config.fetch_max_bytes),
        )
        url_signal = url_future.result()
        fetched = fetch_future.result()

    content: ContentSignal | None = None
    headers: dict[str, str] | None = None
    if isinstance(fetched, FetchError):
        incomplete.append(IncompleteNotice(
            stage="fetch",
            message=f"Could not fetch the site ({fetched.reason}: {fetched.message}). Partial result from URL analysis only.",
        ))
    else:
        headers = fetched.headers
        if fetched.redirected and fetched.final_url != url and is_sensitive_redirect(fetched.final_url):
            incomplete.append(IncompleteNotice(
                stage="fetch",
                message="The page redirected to a login page, so its content could not be retrieved. "
                        "Paste the page text to analyse it instead.",
            ))
        if fetched.html:
            try:
                content = timed("extract", lambda: extract_content(fetched.html, url))
            except Exception as e:
                logger.exception("Content extraction failed for %s", url)
                incomplete.append(IncompleteNotice(stage="extract", message=f"Content extraction failed ({type(e).__name__})."))
        url_signal = apply_content_findings(url_signal, fetched, content)

    result = timed(
        "classifier",
        lambda: _classify_stage(classifier, url, url_signal, content, headers, config, incomplete),
    )
    integrated = integrate(url_signal, result, config.profile)
    timings["total"] = int((time.perf_counter() - t0) * 1000)

    logger.info("Analysed %s: risk=%s incomplete=%d", url, integrated.risk, len(incomplete))
    return AnalysisReport(
        url=url,
        sensitivity=config.profile.name,
        url_signal=url_signal,
        integrated=integrated,
        content=content,
        headers=headers,
        redirected=isinstance(fetched, FetchResult) and fetched.redirected,
        final_url=fetched.final_url if isinstance(fetched, FetchResult) else None,
        classifier=result,
        incomplete=incomplete,
        analyzed_at=datetime.now(timezone.utc).isoformat(),
        timings_ms=timings,
    )


def analyze_text(
    text: str,
    config: AnalysisConfig,
    *,
    url: str | None = None,
    classifier: Classifier = classify,
) -> AnalysisReport:
    """Analyse page text pasted by the user (for pages behind a login)."""
    if not config.api_key:
        raise ConfigurationError("Text analysis needs a Gemini API key.")

    t0 = time.perf_counter()
    incomplete: list[IncompleteNotice] = []
    if url and url.strip():
        url = url.strip()
        url_signal = analyze_url(url)
    else:
        url = "(pasted text)"
        url_signal = UrlSignal(domain_trust=50, tech_safety=50)
        incomplete.append(IncompleteNotice(stage="url", message="No URL was given, so URL structure analysis was skipped."))

    content = content_from_text(text)
    result = _classify_stage(classifier, url, url_signal, content, None, config, incomplete)
    integrated = integrate(url_signal, result, config.profile)

    return AnalysisReport(
        url=url,
        sensitivity=config.profile.name,
        url_signal=url_signal,
        integrated=integrated,
        content=content,
        classifier=result,
        incomplete=incomplete,
        analyzed_at=datetime.now(timezone.utc).isoformat(),
        timings_ms={"total": int((time.perf_counter() - t0) * 1000)},
    )


class AnalysisSession:
    """Allows one analysis at a time; extra submissions are dropped, not queued."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def submit(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T | None:
        if not self._lock.acquire(blocking=False):
            logger.info("Analysis already in progress; ignoring new submission")
            return None
        try:
            return fn(*args, **kwargs)
        finally:
            self._lock.release()
