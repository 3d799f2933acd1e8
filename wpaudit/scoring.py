from collections import Counter
from typing import Dict, Iterable, Mapping, Optional

from .config import Thresholds
from .models import HealthStatus, Issue, Severity

DEFAULT_THRESHOLDS = Thresholds()


def _severity(issue) -> str:
    sev = issue.severity if isinstance(issue, Issue) else issue
    return sev.value if isinstance(sev, Severity) else str(sev)


def calculate_health_score(issues: Iterable, deductions: Optional[Mapping[str, int]] = None) -> int:
    """100 minus the per-severity deductions, clamped to 0..100."""
    table = deductions if deductions is not None else DEFAULT_THRESHOLDS.severity_deduction
    score = 100
    for issue in issues:
        score -= table.get(_severity(issue), 0)
    return max(0, min(100, score))


def get_health_status(score: int, thresholds: Thresholds = DEFAULT_THRESHOLDS) -> HealthStatus:
    if score >= thresholds.healthy_score:
        return HealthStatus.HEALTHY
    if score >= thresholds.attention_score:
        return HealthStatus.ATTENTION
    return HealthStatus.CRITICAL


def severity_counts(issues: Iterable) -> Dict[str, int]:
    counts = Counter(_severity(i) for i in issues)
    return {s.value: counts.get(s.value, 0) for s in Severity}


def summarize(score: int, issues: Iterable) -> str:
    counts = severity_counts(issues)
    return f"Health: {score}/100. Found {counts['critical']} critical, {counts['warning']} warning issues."
