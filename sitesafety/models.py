from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Severity = Literal["low", "medium", "high", "critical"]
FindingSeverity = Literal["critical", "high", "medium", "low", "info"]
RiskLevel = Literal["safe", "low", "medium", "high", "critical"]
Confidence = Literal["high", "medium", "low"]
SensitivityName = Literal["high", "standard", "low"]

RISK_ORDER: tuple[RiskLevel, ...] = ("safe", "low", "medium", "high", "critical")

DIMENSIONS: tuple[str, ...] = (
    "domain_trust",
    "content_safety",
    "operator_transparency",
    "claim_credibility",
    "scam_pattern",
    "tech_safety",
)


class UrlIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    severity: Severity
    description: str = ""


class UrlSignal(BaseModel):
    model_config = ConfigDict(frozen=True)

    domain_trust: int = Field(..., ge=0, le=100)
    tech_safety: int = Field(..., ge=0, le=100)
    issues: tuple[UrlIssue, ...] = ()


class FormInfo(BaseModel):
    action: str = ""
    method: str = "get"
    input_count: int = 0
    has_password: bool = False
    has_card: bool = False


class Disclosure(BaseModel):
    """Where an operator-transparency marker was seen on the page."""

    in_content: bool = False
    in_links: bool = False

    @property
    def present(self) -> bool:
        return self.in_content or self.in_links

    @property
    def link_only(self) -> bool:
        return self.in_links and not self.in_content


class ContentSignal(BaseModel):
    title: str = ""
    meta: dict[str, str] = {}
    headings: list[str] = []
    body_text: str = ""
    external_domains: list[str] = []
    external_link_count: int = 0
    forms: list[FormInfo] = []
    inline_script_chars: int = 0
    obfuscation_suspect: bool = False
    hidden_form_fields: int = 0
    organization_info: Disclosure = Disclosure()
    contact: Disclosure = Disclosure()
    privacy_policy: Disclosure = Disclosure()
    commerce_law: Disclosure = Disclosure()


class DimensionScores(BaseModel):
    domain_trust: int = Field(..., ge=0, le=100)
    content_safety: int = Field(..., ge=0, le=100)
    operator_transparency: int = Field(..., ge=0, le=100)
    claim_credibility: int = Field(..., ge=0, le=100)
    scam_pattern: int = Field(..., ge=0, le=100)
    tech_safety: int = Field(..., ge=0, le=100)

    def values(self) -> list[int]:
        return [getattr(self, d) for d in DIMENSIONS]


class DetectedCategory(BaseModel):
    category: str
    confidence: Confidence
    evidence: str


class Finding(BaseModel):
    dimension: str
    severity: FindingSeverity
    title: str
    description: str
    quote: str | None = None


class ClassifierResult(BaseModel):
    scores: DimensionScores
    # None when the classifier's self-reported risk was missing or not a known level.
    overall_risk: RiskLevel | None = None
    detected_categories: list[DetectedCategory] = []
    findings: list[Finding] = []
    summary: str = ""


class SensitivityProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: SensitivityName
    critical_dim: int
    warn_dim: int
    scam_pattern_threshold: int


class IntegratedScore(BaseModel):
    scores: DimensionScores
    risk: RiskLevel
    baseline_risk: RiskLevel
    # Which escalation rule raised the risk above the baseline, if any.
    escalation: Literal[
        "critical_dimensions",
        "warn_dimensions",
        "single_critical_dimension",
        "classifier",
    ] | None = None


class FetchResult(BaseModel):
    html: str
    headers: dict[str, str]
    redirected: bool
    final_url: str = Field(..., serialization_alias="finalUrl")
    status: int
    content_type: str | None = None
    truncated: bool = False


FetchErrorReason = Literal[
    "invalid_url",
    "unsupported_scheme",
    "ssrf_rejected",
    "dns_failure",
    "timeout",
    "too_many_redirects",
    "network_error",
]


class FetchError(BaseModel):
    reason: FetchErrorReason
    message: str


class IncompleteNotice(BaseModel):
    stage: Literal["url", "fetch", "extract", "classifier"]
    message: str


class AnalysisReport(BaseModel):
    url: str
    sensitivity: SensitivityName
    url_signal: UrlSignal
    integrated: IntegratedScore

    content: ContentSignal | None = None
    headers: dict[str, str] | None = None
    redirected: bool = False
    final_url: str | None = None
    classifier: ClassifierResult | None = None

    incomplete: list[IncompleteNotice] = []
    analyzed_at: str
    timings_ms: dict[str, int] = {}


class AnalyzeRequest(BaseModel):
    url: str = Field(..., min_length=1)
    sensitivity: SensitivityName | None = None


class AnalyzeTextRequest(BaseModel):
    text: str = Field(..., min_length=1)
    url: str | None = None
    sensitivity: SensitivityName | None = None


class ClassifyRequest(BaseModel):
    url: str = Field(..., min_length=1)
    url_signal: UrlSignal
    content: ContentSignal | None = None
    headers: dict[str, str] | None = None
    sensitivity: SensitivityName | None = None
