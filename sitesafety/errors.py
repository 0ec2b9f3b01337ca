from __future__ import annotations


class SiteSafetyError(Exception):
    """Base class for errors raised by the analysis pipeline."""


class ConfigurationError(SiteSafetyError):
    """Raised when an operation needs configuration that is missing."""


class ClassifierError(SiteSafetyError):
    """The external classifier did not produce a usable result."""

    stage_message = "AI analysis failed"


class ClassifierUnavailable(ClassifierError):
    stage_message = "AI analysis is unavailable"


class ClassifierMalformedResponse(ClassifierError):
    stage_message = "AI analysis returned a malformed response"


class ClassifierRateLimited(ClassifierError):
    stage_message = "AI analysis usage limit reached; please wait a while and try again"
