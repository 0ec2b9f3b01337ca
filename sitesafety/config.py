from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from .models import SensitivityName, SensitivityProfile

logger = logging.getLogger(__name__)

# A .env next to pyproject.toml supplies GEMINI_API_KEY and SITESAFETY_* settings; real env vars win.
_HERE = Path(__file__).resolve()
_PROJECT_ROOT = _HERE.parents[1]
load_dotenv(_PROJECT_ROOT / ".env", override=False)

DEFAULT_MODEL = "gemini-2.5-flash"

SENSITIVITY_PROFILES: dict[str, SensitivityProfile] = {
    "high": SensitivityProfile(name="high", critical_dim=20, warn_dim=35, scam_pattern_threshold=35),
    "standard": SensitivityProfile(name="standard", critical_dim=15, warn_dim=30, scam_pattern_threshold=30),
    "low": SensitivityProfile(name="low", critical_dim=10, warn_dim=20, scam_pattern_threshold=20),
}


def get_profile(name: str | None) -> SensitivityProfile:
    key = (name or "").strip().lower()
    profile = SENSITIVITY_PROFILES.get(key)
    if profile is None:
        if key:
            logger.warning("Unknown sensitivity %r, using 'standard'", name)
        return SENSITIVITY_PROFILES["standard"]
    return profile


class AnalysisConfig(BaseModel):
    """Everything one analysis needs, passed explicitly per call."""

    model_config = ConfigDict(frozen=True)

    api_key: str | None = None
    model: str = DEFAULT_MODEL
    classifier_base_url: str | None = None
    classifier_timeout_s: float = Field(60.0, gt=0)
    sensitivity: SensitivityName = "standard"
    fetch_timeout_s: float = Field(10.0, gt=0)
    fetch_max_bytes: int = Field(200 * 1024, gt=0)

    @property
    def profile(self) -> SensitivityProfile:
        return get_profile(self.sensitivity)


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return default


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    gemini_api_key: str | None = None
    gemini_model: str = DEFAULT_MODEL
    classifier_base_url: str | None = None
    sensitivity: SensitivityName = "standard"
    cors_origins: list[str] = ["http://localhost:3000"]
    fetch_timeout_s: float = 10.0
    fetch_max_bytes: int = 200 * 1024

    @classmethod
    def from_env(cls) -> Settings:
        raw_origins = os.getenv("SITESAFETY_CORS_ORIGINS", "").strip()
        origins = [o.strip() for o in raw_origins.split(",") if o.strip()] or ["http://localhost:3000"]
        return cls(
            gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
            gemini_model=os.getenv("GEMINI_MODEL", DEFAULT_MODEL),
            classifier_base_url=os.getenv("SITESAFETY_CLASSIFIER_BASE_URL") or None,
            sensitivity=get_profile(os.getenv("SITESAFETY_SENSITIVITY")).name,
            cors_origins=origins,
            fetch_timeout_s=_float_env("SITESAFETY_FETCH_TIMEOUT_S", 10.0),
            fetch_max_bytes=int(_float_env("SITESAFETY_FETCH_MAX_BYTES", 200 * 1024)),
        )

    def analysis_config(
        self,
        *,
        api_key: str | None = None,
        sensitivity: str | None = None,
    ) -> AnalysisConfig:
        return AnalysisConfig(
            api_key=api_key or self.gemini_api_key,
            model=self.gemini_model,
            classifier_base_url=self.classifier_base_url,
            sensitivity=get_profile(sensitivity or self.sensitivity).name,
            fetch_timeout_s=self.fetch_timeout_s,
            fetch_max_bytes=self.fetch_max_bytes,
        )
