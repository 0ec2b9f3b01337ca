from __future__ import annotations

import math

from .models import (
    DIMENSIONS,
    RISK_ORDER,
    ClassifierResult,
    DimensionScores,
    IntegratedScore,
    RiskLevel,
    SensitivityProfile,
    UrlSignal,
)

HEURISTIC_WEIGHT = 0.4
CLASSIFIER_WEIGHT = 0.6
# Used for the AI-only dimensions when there is no classifier verdict.
NEUTRAL_SCORE = 50


def _clamp(value: float) -> int:
    return max(0, min(100, int(value)))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _at_least(risk: RiskLevel, floor: RiskLevel) -> RiskLevel:
    return floor if RISK_ORDER.index(floor) > RISK_ORDER.index(risk) else risk


def baseline_risk(mean: float) -> RiskLevel:
    if mean >= 80:
        return "safe"
    if mean >= 60:
        return "low"
    if mean >= 40:
        return "medium"
    if mean >= 20:
        return "high"
    return "critical"


def blend_scores(url_signal: UrlSignal, result: ClassifierResult | None) -> DimensionScores:
    if result is None:
        raw = {d: NEUTRAL_SCORE for d in DIMENSIONS}
        raw["domain_trust"] = url_signal.domain_trust
        raw["tech_safety"] = url_signal.tech_safety
    else:
        raw = {d: getattr(result.scores, d) for d in DIMENSIONS}
        for dim in ("domain_trust", "tech_safety"):
            raw[dim] = _round_half_up(
                getattr(url_signal, dim) * HEURISTIC_WEIGHT + getattr(result.scores, dim) * CLASSIFIER_WEIGHT
            )
    return DimensionScores(**{d: _clamp(v) for d, v in raw.items()})


def integrate(
    url_signal: UrlSignal,
    result: ClassifierResult | None,
    profile: SensitivityProfile,
) -> IntegratedScore:
    """Blend heuristic and classifier scores and apply the escalation policy.

    Each step may only raise the risk level: the mean-based baseline, then the
    sensitivity-dependent escalation rules, then the classifier's own
    ``overall_risk``.
    """
    scores = blend_scores(url_signal, result)
    values = scores.values()
    base = baseline_risk(sum(values) / len(values))

    crit_count = sum(1 for v in values if v <= profile.critical_dim)
    warn_count = sum(1 for v in values if v <= profile.warn_dim)

    risk = base
    escalation = None
    if crit_count >= 2 or scores.scam_pattern <= profile.critical_dim:
        risk = _at_least(base, "high")
        escalation = "critical_dimensions"
    elif scores.scam_pattern <= profile.scam_pattern_threshold or warn_count >= 3:
        risk = _at_least(base, "medium")
        escalation = "warn_dimensions"
    elif crit_count == 1 and base == "safe":
        risk = "low"
        escalation = "single_critical_dimension"
    if risk == base:
        escalation = None

    if result is not None and result.overall_risk is not None:
        raised = _at_least(risk, result.overall_risk)
        if raised != risk:
            risk = raised
            escalation = "classifier"

    return IntegratedScore(scores=scores, risk=risk, baseline_risk=base, escalation=escalation)
