"""Website scam/safety risk scoring: URL heuristics, safe page fetch, content
signals, an external AI classifier and a sensitivity-tuned score integrator."""

__version__ = "0.1.0"
