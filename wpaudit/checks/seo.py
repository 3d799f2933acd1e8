import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests
from bs4 import BeautifulSoup

from .. import catalog
from ..config import Thresholds
from ..http_client import HttpClient
from ..models import Category, CheckResult, Host, Issue, Severity
from ..remote import RemoteChannel, WordPressCli
from .base import Check

logger = logging.getLogger(__name__)

SITEMAP_PATHS = ("/sitemap_index.xml", "/sitemap.xml", "/wp-sitemap.xml")


def count_locations(xml_text: str) -> int:
    soup = BeautifulSoup(xml_text, "html.parser")
    return len(soup.find_all("loc"))


class SeoCheck(Check):
    category = Category.SEO
    name = "seo"

    def __init__(self, channel: RemoteChannel, thresholds: Optional[Thresholds] = None,
                 http_factory: Callable[[str], HttpClient] = HttpClient):
        super().__init__(thresholds)
        self.channel = channel
        self.http_factory = http_factory

    def run(self, host: Host) -> CheckResult:
        client = self.http_factory(host.base_url)
        issues: List[Issue] = []

        has_robots = self._exists(client, "/robots.txt")
        if not has_robots:
            issues.append(self.issue(
                Severity.WARNING,
                "robots.txt not found",
                "Missing robots.txt file.",
                "Create a robots.txt file for search engine guidance.",
            ))

        sitemap_url, url_count = self._find_sitemap(client)
        if not sitemap_url:
            issues.append(self.issue(
                Severity.WARNING,
                "Sitemap not found",
                "No XML sitemap detected at " + ", ".join(SITEMAP_PATHS) + ".",
                "Configure your SEO plugin to generate an XML sitemap.",
            ))

        plugins = WordPressCli(self.channel, host).plugin_list()
        active = [p.get("name", "") for p in plugins if p.get("status") in ("active", "active-network")]
        standard = catalog.find_plugin(active, catalog.SEO_PLUGIN)
        other = next((s for s in active if s in catalog.OTHER_SEO_PLUGINS), None)
        if not standard and not other:
            issues.append(self.issue(
                Severity.WARNING,
                "No SEO plugin detected",
                "No SEO plugin is active.",
                "Install and configure SEOPress (standard plugin).",
            ))
        elif not standard:
            issues.append(self.issue(
                Severity.INFO,
                f"Non-standard SEO plugin: {other}",
                "Site is using a different SEO plugin than the standard (SEOPress).",
                "Consider migrating to SEOPress for consistency across sites.",
            ))

        data: Dict[str, Any] = {
            "has_robots_txt": has_robots,
            "has_sitemap": sitemap_url is not None,
            "sitemap_url": sitemap_url,
            "sitemap_url_count": url_count,
            "seo_plugin": standard or other,
        }
        return CheckResult(data=data, issues=issues)

    @staticmethod
    def _exists(client: HttpClient, path: str) -> bool:
        try:
            return client.get(path).ok
        except requests.RequestException as e:
            logger.debug("GET %s failed: %s", path, e)
            return False

    @staticmethod
    def _find_sitemap(client: HttpClient) -> Tuple[Optional[str], int]:
        """First sitemap path that answers wins."""
        for path in SITEMAP_PATHS:
            try:
                resp = client.get(path)
            except requests.RequestException as e:
                logger.debug("GET %s failed: %s", path, e)
                continue
            if resp.ok:
                return resp.url, count_locations(resp.text)
        return None, 0
