import csv
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from ..config import Settings, Thresholds
from ..crawler import CrawlSettings, CrawlSummary, ScreamingFrogCrawler, crawl_auth_config, optimal_crawl_settings
from ..errors import CrawlError
from ..models import Category, CheckResult, Host, Issue, Severity
from ..retry import CrawlRetryController
from .base import Check

logger = logging.getLogger(__name__)


def failed_crawl_data() -> Dict[str, Any]:
    return {
        "crawl_summary": {
            "total_pages": 0,
            "crawl_duration_seconds": 0,
            "avg_response_time_ms": 0,
            "error_rate_percent": 100,
            "crawl_completed_at": datetime.now(timezone.utc).isoformat(),
        },
        "backend_health": {
            "server_errors_5xx": 0,
            "client_errors_4xx": 0,
            "slow_pages_count": 0,
            "broken_links_count": 0,
            "redirect_chains_count": 0,
        },
        "performance_issues": [],
    }


class CrawlCheck(Check):
    category = Category.CRAWL
    name = "crawl"

    def __init__(self, settings: Settings, thresholds: Optional[Thresholds] = None,
                 crawler: Optional[ScreamingFrogCrawler] = None,
                 controller_factory: Callable[[], CrawlRetryController] = CrawlRetryController):
        super().__init__(thresholds)
        self.settings = settings
        self.crawler = crawler or ScreamingFrogCrawler(settings, slow_page_ms=self.thresholds.slow_page_ms)
        self.controller_factory = controller_factory

    def run(self, host: Host) -> CheckResult:
        crawl_settings = optimal_crawl_settings(host)
        auth = crawl_auth_config(host, self.settings)
        controller = self.controller_factory()
        logger.info("[Crawl] %s: %d pages, %.0fs timeout, PageSpeed: %s",
                    host.domain, crawl_settings.max_pages, crawl_settings.timeout, crawl_settings.include_page_speed)

        try:
            summary = controller.run(lambda s: self.crawler.crawl(host.base_url, s, auth), crawl_settings)
        except (CrawlError, OSError, csv.Error, ValueError) as e:
            logger.error("[Crawl] Failed to crawl %s: %s", host.domain, e)
            data = failed_crawl_data()
            data["attempts"] = len(controller.attempts)
            return CheckResult(data=data, issues=[self.issue(
                Severity.WARNING,
                "Site crawl failed",
                f"Could not complete Screaming Frog crawl: {e}",
                "Check site accessibility, authentication settings, or try again later.",
            )])

        used: CrawlSettings = controller.attempts[-1].settings if controller.attempts else crawl_settings
        data = self._data(summary)
        data["attempts"] = len(controller.attempts)
        data["settings"] = used.to_dict()
        return CheckResult(data=data, issues=self._issues(summary))

    @staticmethod
    def _data(s: CrawlSummary) -> Dict[str, Any]:
        performance_issues: List[Dict[str, Any]] = []
        performance_issues += [
            {"type": "server_error", "url": e["url"], "status_code": e["status_code"],
             "response_time_ms": e["response_time_ms"], "severity": "critical"}
            for e in s.server_errors
        ]
        performance_issues += [
            {"type": "slow_page", "url": p["url"], "response_time_ms": p["response_time_ms"],
             "severity": "critical" if p["response_time_ms"] > 5000 else "warning"}
            for p in s.slow_pages
        ]
        performance_issues += [
            {"type": "broken_link", "url": b["url"], "status_code": b["status_code"], "severity": "warning"}
            for b in s.broken_links
        ]
        return {
            "crawl_summary": {
                "total_pages": s.total_urls,
                "crawl_duration_seconds": s.crawl_time_seconds,
                "avg_response_time_ms": round(s.avg_response_time_ms),
                "error_rate_percent": s.error_rate_percent,
                "crawl_completed_at": datetime.now(timezone.utc).isoformat(),
            },
            "backend_health": {
                "server_errors_5xx": s.errors_5xx,
                "client_errors_4xx": s.errors_4xx,
                "slow_pages_count": len(s.slow_pages),
                "broken_links_count": len(s.broken_links),
                "redirect_chains_count": len(s.redirect_chains),
            },
            "performance_issues": performance_issues,
        }

    def _issues(self, s: CrawlSummary) -> List[Issue]:
        t = self.thresholds
        avg = round(s.avg_response_time_ms)
        candidates = [
            self.threshold_issue(
                t.crawl_server_errors, s.errors_5xx,
                f"{s.errors_5xx} server errors detected",
                f"Found {s.errors_5xx} pages returning 5xx server errors during crawl.",
                "Investigate server errors immediately. Check server logs and fix backend issues.",
            ),
            self.threshold_issue(
                t.crawl_error_rate_percent, s.error_rate_percent,
                f"High error rate: {s.error_rate_percent}%",
                f"{s.error_rate_percent}% of crawled pages returned errors (4xx/5xx).",
                "Review and fix broken links, missing pages, and server errors.",
            ),
            self.threshold_issue(
                t.crawl_avg_response_time_ms, avg,
                f"Slow average response time: {avg}ms",
                f"Average page response time during crawl is {avg}ms.",
                "Optimize server performance, database queries, and caching.",
            ),
            self.threshold_issue(
                t.crawl_slow_pages, len(s.slow_pages),
                f"{len(s.slow_pages)} slow pages detected",
                f"Found {len(s.slow_pages)} pages with response times over {t.slow_page_ms / 1000:g} seconds.",
                "Optimize slow pages by reducing database queries, optimizing images, and improving caching.",
            ),
            self.threshold_issue(
                t.crawl_broken_links, len(s.broken_links),
                f"{len(s.broken_links)} broken links found",
                "Crawled URLs returning 4xx: " + ", ".join(b["url"] for b in s.broken_links[:10]),
                "Review and fix broken links to improve user experience and SEO.",
            ),
            self.threshold_issue(
                t.crawl_redirect_chains, len(s.redirect_chains),
                f"{len(s.redirect_chains)} redirect chains found",
                "Redirect chains add latency to every hop.",
                "Point links directly at the final URL.",
            ),
        ]
        return [i for i in candidates if i]
