import logging
from typing import Any, Dict, Mapping, Optional, Union

from ..config import ThresholdPair, Thresholds
from ..models import Category, CheckResult, Host, Issue, Severity

logger = logging.getLogger(__name__)

Recommendation = Union[str, Mapping[str, str]]


class Check:
    """
    One audit module. `run` returns findings as data; it raises only when
    the whole module result would be meaningless (e.g. the host is gone).
    """

    category: Category
    name = "check"

    def __init__(self, thresholds: Optional[Thresholds] = None):
        self.thresholds = thresholds or Thresholds()

    def run(self, host: Host) -> CheckResult:
        raise NotImplementedError

    def issue(self, severity: Severity, title: str, description: str = "", recommendation: str = "",
              fix_action: Optional[str] = None, fix_params: Optional[Dict[str, Any]] = None) -> Issue:
        return Issue(
            category=self.category,
            severity=severity,
            title=title,
            description=description,
            recommendation=recommendation,
            auto_fixable=fix_action is not None,
            fix_action=fix_action,
            fix_params=fix_params or {},
        )

    def partial(self, title: str, description: str = "", recommendation: str = "") -> Issue:
        """Optional integration unavailable: reported, never raised."""
        logger.info("%s: %s (%s)", self.name, title, description)
        return self.issue(Severity.INFO, title, description, recommendation)

    def threshold_issue(self, pair: ThresholdPair, value: float, title: str, description: str = "",
                        recommendation: Recommendation = "", fix_action: Optional[str] = None,
                        fix_params: Optional[Dict[str, Any]] = None) -> Optional[Issue]:
        """Issue for `value` if it breaches `pair`, else None.

        `recommendation` may map a severity name to its own text.
        """
        severity = pair.classify(value)
        if severity is None:
            return None
        if isinstance(recommendation, Mapping):
            text = recommendation.get(severity.value) or next(iter(recommendation.values()), "")
        else:
            text = recommendation
        return self.issue(severity, title, description, text, fix_action, fix_params)
