import logging
from typing import Any, Callable, Dict, List, Optional

import requests

from ..config import Thresholds
from ..errors import ConfigurationError, ProviderError
from ..http_client import HttpClient
from ..models import Category, CheckResult, Host, Issue, Severity, TelemetryWindow
from ..telemetry import TelemetryClient
from .base import Check

logger = logging.getLogger(__name__)


class PerformanceCheck(Check):
    category = Category.PERFORMANCE
    name = "performance"

    def __init__(self, telemetry: Optional[TelemetryClient], thresholds: Optional[Thresholds] = None,
                 http_factory: Callable[[str], HttpClient] = HttpClient):
        super().__init__(thresholds)
        self.telemetry = telemetry
        self.http_factory = http_factory

    def run(self, host: Host) -> CheckResult:
        issues: List[Issue] = []
        data: Dict[str, Any] = {}

        if not host.telemetry_zone_id:
            issues.append(self.partial(
                "Cloudflare not configured",
                "No Cloudflare zone ID is set for this site.",
                "Import Cloudflare zones or add the zone ID to the host inventory.",
            ))
        elif self.telemetry is None:
            issues.append(self.partial(
                "Cloudflare analytics unavailable",
                "No telemetry client is configured.",
                "Set CLOUDFLARE_API_TOKEN.",
            ))
        else:
            try:
                window = self.telemetry.get_analytics(host.telemetry_zone_id, self.thresholds.telemetry_window_hours)
            except ConfigurationError as e:
                issues.append(self.partial("Cloudflare analytics unavailable", str(e), "Set CLOUDFLARE_API_TOKEN."))
            except ProviderError as e:
                logger.warning("Telemetry for %s failed (%s): %s", host.domain, e.cause.value, e)
                issues.append(self.issue(
                    Severity.WARNING,
                    "Could not fetch Cloudflare analytics",
                    str(e),
                    e.hint,
                ))
                data["telemetry_error"] = e.cause.value
            else:
                data["cloudflare"] = window.to_dict()
                issues.extend(self._telemetry_issues(window))

        issues.extend(self._probe(host, data))
        return CheckResult(data=data, issues=issues)

    def _telemetry_issues(self, w: TelemetryWindow) -> List[Issue]:
        t = self.thresholds
        hours = t.telemetry_window_hours
        if w.requests == 0:
            return [self.partial(
                "No edge traffic recorded",
                f"Cloudflare reported no requests in the last {hours}h.",
                "Verify that DNS for this site is proxied through Cloudflare.",
            )]

        top = w.top_countries(1)
        top_share = w.rate(top[0]["requests"]) if top else 0.0
        candidates = [
            self.threshold_issue(
                t.cache_hit_ratio, w.cache_hit_ratio,
                f"Cache hit ratio is {round(w.cache_hit_ratio * 100)}%",
                "Low cache hit ratio means most requests reach the origin.",
                {"critical": "Review page rules and caching configuration.",
                 "warning": "Review caching strategy."},
            ),
            self.threshold_issue(
                t.status_5xx, w.status_5xx,
                f"{w.status_5xx} server errors (5xx) in last {hours}h",
                "Server errors returned at the edge.",
                {"critical": "Investigate server logs and PHP errors immediately.",
                 "warning": "Review recent changes and error logs."},
            ),
            self.threshold_issue(
                t.status_4xx, w.status_4xx,
                f"{w.status_4xx} client errors (4xx) in last {hours}h",
                "Many requests hit missing or forbidden URLs.",
                "Check for broken links and bots probing for non-existent paths.",
            ),
            self.threshold_issue(
                t.threat_rate, w.rate(w.threats),
                f"{w.threats} threats blocked in last {hours}h",
                f"{w.rate(w.threats):.1%} of requests were flagged as threats.",
                "Monitor threat patterns, consider additional firewall rules.",
            ),
            self.threshold_issue(
                t.ssl_rate, w.rate(w.encrypted_requests),
                f"Only {w.rate(w.encrypted_requests):.0%} of requests use SSL",
                "Unencrypted requests are reaching the site.",
                "Enable 'Always Use HTTPS' and HSTS.",
            ),
            self.threshold_issue(
                t.bot_rate, w.rate(w.bot_requests),
                f"Bot traffic is {w.rate(w.bot_requests):.0%} of requests",
                "A large share of traffic comes from automated clients.",
                "Consider Bot Fight Mode or rate limiting rules.",
            ),
            self.threshold_issue(
                t.top_country_share, top_share,
                f"{top_share:.0%} of traffic from {top[0]['country'] if top else 'one country'}",
                "Traffic is concentrated in a single country.",
                "Check whether this matches the site's audience; unexpected spikes may be abusive.",
            ),
        ]
        return [i for i in candidates if i]

    def _probe(self, host: Host, data: Dict[str, Any]) -> List[Issue]:
        try:
            resp = self.http_factory(host.base_url).head("/")
        except requests.RequestException as e:
            data["reachable"] = False
            return [self.issue(
                Severity.CRITICAL,
                "Site unreachable",
                f"Could not connect to {host.domain}: {e}",
                "Verify site is online.",
            )]

        elapsed = round(resp.elapsed_ms)
        data["reachable"] = True
        data["response_time_ms"] = elapsed
        data["status_code"] = resp.status_code
        issues = []
        if resp.is_error:
            issues.append(self.issue(
                Severity.CRITICAL,
                f"Homepage returned HTTP {resp.status_code}",
                f"HEAD {host.base_url} answered with a server error.",
                "Check PHP error logs and recent deployments.",
            ))
        slow = self.threshold_issue(
            self.thresholds.response_time_ms, elapsed,
            f"Slow response time: {elapsed}ms",
            "Site is responding slowly.",
            {"critical": "Investigate server performance and caching.",
             "warning": "Review caching and optimization."},
        )
        if slow:
            issues.append(slow)
        return issues
