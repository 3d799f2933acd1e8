"""
Screaming Frog SEO Spider collaborator.

The spider is an external executable: we hand it a URL, an output folder and
an optional auth profile, then read back the CSV exports it writes. The
output folder is always removed afterwards.
"""
import csv
import logging
import os
import shutil
import subprocess
import time
import uuid
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .config import Settings
from .errors import CrawlError, ErrorRule, classify, contains
from .models import Host

logger = logging.getLogger(__name__)

USER_AGENT = "wpaudit-Monitor/1.0 (Screaming Frog SEO Spider)"

PERFORMANCE_EXPORT_TABS: Tuple[str, ...] = (
    "Response Codes:All",
    "Page Titles:All",
    "Meta Description:All",
    "Images:All",
)
PERFORMANCE_BULK_EXPORTS: Tuple[str, ...] = (
    "response_codes",
    "page_titles",
    "images",
    "redirect_chains",
)


@dataclass(frozen=True)
class CrawlSettings:
    max_pages: int = 100
    timeout: float = 300.0  # seconds
    include_page_speed: bool = True
    crawl_delay: float = 1.0
    user_agent: str = USER_AGENT
    respect_robots: bool = True
    export_tabs: Tuple[str, ...] = PERFORMANCE_EXPORT_TABS
    bulk_exports: Tuple[str, ...] = PERFORMANCE_BULK_EXPORTS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_pages": self.max_pages,
            "timeout_seconds": self.timeout,
            "include_page_speed": self.include_page_speed,
            "crawl_delay_seconds": self.crawl_delay,
            "respect_robots": self.respect_robots,
        }


# Size class -> (max pages, timeout seconds, page speed)
SIZE_LIMITS: Dict[str, Tuple[int, float, bool]] = {
    "small": (50, 180.0, True),
    "medium": (100, 300.0, True),
    "large": (200, 600.0, False),
    "ecommerce": (150, 450.0, True),
}

# Page builders render dynamically and respond slower
PAGE_BUILDER_TIMEOUT_MULTIPLIER: Dict[str, float] = {
    "elementor": 1.5,
    "beaver": 1.2,
    "gutenberg": 1.0,
    "other": 1.0,
}

ENVIRONMENT_PROFILES: Dict[str, Dict[str, Any]] = {
    "production": {"respect_robots": True, "crawl_delay": 1.0},
    "staging": {"respect_robots": False, "crawl_delay": 0.5},
}

# Narrowed profile used for every retry
FALLBACK_SETTINGS = CrawlSettings(max_pages=25, timeout=120.0, include_page_speed=False)


def optimal_crawl_settings(host: Host) -> CrawlSettings:
    size = "ecommerce" if host.is_ecommerce else "medium"
    max_pages, timeout, page_speed = SIZE_LIMITS[size]
    multiplier = PAGE_BUILDER_TIMEOUT_MULTIPLIER.get(host.page_builder or "other", 1.0)
    environment = "staging" if host.environment == "staging" else "production"
    profile = ENVIRONMENT_PROFILES[environment]
    return CrawlSettings(
        max_pages=max_pages,
        timeout=round(timeout * multiplier),
        include_page_speed=page_speed,
        crawl_delay=profile["crawl_delay"],
        respect_robots=profile["respect_robots"],
    )


@dataclass
class CrawlAuth:
    """Either HTTP basic auth or a WordPress login form."""
    username: str
    password: str
    realm: Optional[str] = None
    login_url: Optional[str] = None
    username_field: str = "log"
    password_field: str = "pwd"
    submit_selector: str = "#wp-submit"
    success_indicator: str = "dashboard"

    @property
    def is_form(self) -> bool:
        return self.login_url is not None

    def to_xml(self) -> str:
        root = ET.Element("seospider")
        conf = ET.SubElement(root, "configuration")
        if self.is_form:
            form = ET.SubElement(conf, "form-authentication")
            for tag, value in (
                ("login-url", self.login_url),
                ("username-field", self.username_field),
                ("password-field", self.password_field),
                ("username", self.username),
                ("password", self.password),
                ("submit-button", self.submit_selector),
                ("success-indicator", self.success_indicator),
            ):
                ET.SubElement(form, tag).text = value
        else:
            basic = ET.SubElement(ET.SubElement(conf, "authentication"), "basic")
            ET.SubElement(basic, "username").text = self.username
            ET.SubElement(basic, "password").text = self.password
            if self.realm:
                ET.SubElement(basic, "realm").text = self.realm
        body = ET.tostring(root, encoding="unicode")
        return '<?xml version="1.0" encoding="UTF-8"?>\n' + body + "\n"


def is_staging_host(host: Host) -> bool:
    domain = host.domain.lower()
    return host.environment == "staging" or "wpenginepowered.com" in domain or "wpengine.com" in domain


def crawl_auth_config(host: Host, settings: Settings) -> Optional[CrawlAuth]:
    if is_staging_host(host) and settings.staging_username and settings.staging_password:
        return CrawlAuth(settings.staging_username, settings.staging_password, realm="WP Engine")
    if settings.wp_admin_username and settings.wp_admin_password:
        return CrawlAuth(
            settings.wp_admin_username,
            settings.wp_admin_password,
            login_url=f"{host.base_url}/wp-login.php",
        )
    return None


@dataclass
class CrawlSummary:
    total_urls: int = 0
    success_2xx: int = 0
    redirects_3xx: int = 0
    errors_4xx: int = 0
    errors_5xx: int = 0
    crawl_time_seconds: float = 0.0
    response_times_ms: List[float] = field(default_factory=list)
    server_errors: List[Dict[str, Any]] = field(default_factory=list)
    slow_pages: List[Dict[str, Any]] = field(default_factory=list)
    broken_links: List[Dict[str, Any]] = field(default_factory=list)
    redirect_chains: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def avg_response_time_ms(self) -> float:
        if not self.response_times_ms:
            return 0.0
        return sum(self.response_times_ms) / len(self.response_times_ms)

    @property
    def error_rate_percent(self) -> float:
        if self.total_urls == 0:
            return 0.0
        return round((self.errors_4xx + self.errors_5xx) / self.total_urls * 100, 2)


def _column(row: Dict[str, str], *names: str) -> str:
    for name in names:
        value = row.get(name)
        if value not in (None, ""):
            return value.strip()
    return ""


def _to_float(value: str) -> float:
    try:
        return float(value)
    except ValueError:
        return 0.0


def parse_response_codes(path: str, summary: CrawlSummary, max_pages: int, slow_page_ms: float = 3000) -> None:
    """Screaming Frog reports response times in seconds."""
    with open(path, "r", encoding="utf-8-sig", newline="") as f:
        for row in csv.DictReader(f):
            if summary.total_urls >= max_pages:
                break
            url = _column(row, "Address", "URL")
            status = int(_to_float(_column(row, "Status Code", "Status")))
            if not url or not status:
                continue
            response_ms = _to_float(_column(row, "Response Time")) * 1000.0

            summary.total_urls += 1
            summary.response_times_ms.append(response_ms)
            if 200 <= status < 300:
                summary.success_2xx += 1
            elif 300 <= status < 400:
                summary.redirects_3xx += 1
            elif 400 <= status < 500:
                summary.errors_4xx += 1
                summary.broken_links.append({"url": url, "status_code": status})
            elif status >= 500:
                summary.errors_5xx += 1
                summary.server_errors.append({"url": url, "status_code": status, "response_time_ms": response_ms})

            if response_ms > slow_page_ms:
                summary.slow_pages.append({"url": url, "response_time_ms": response_ms})


def parse_redirect_chains(path: str, summary: CrawlSummary) -> None:
    with open(path, "r", encoding="utf-8-sig", newline="") as f:
        for row in csv.DictReader(f):
            source = _column(row, "Address", "Source")
            target = _column(row, "Final Address", "Destination", "Redirect URL")
            if not source:
                continue
            summary.redirect_chains.append({
                "source_url": source,
                "target_url": target,
                "redirects": int(_to_float(_column(row, "Number of Redirects") or "1")),
            })


def find_exports(folder: str) -> Dict[str, str]:
    found: Dict[str, str] = {}
    for dirpath, _, filenames in os.walk(folder):
        for name in sorted(filenames):
            if not name.lower().endswith(".csv"):
                continue
            key = name.lower().replace(" ", "_")
            if "response_codes" in key and "response_codes" not in found:
                found["response_codes"] = os.path.join(dirpath, name)
            elif "redirect" in key and "redirect_chains" not in found:
                found["redirect_chains"] = os.path.join(dirpath, name)
    return found


# Crawler stderr -> message understood by the retry skip-list
CRAWL_FAILURE_RULES: List[ErrorRule] = [
    ErrorRule(contains("licence", "license"), "License invalid"),
    ErrorRule(contains("401", "unauthorized", "authentication"), "Authentication required"),
    ErrorRule(contains("unknownhost", "could not resolve", "connection refused", "unreachable"), "Site unreachable"),
]


class ScreamingFrogCrawler:
    def __init__(self, settings: Settings, runner=subprocess.run, slow_page_ms: float = 3000):
        self.executable = settings.crawler_path
        self.output_root = settings.crawl_output_dir
        self.runner = runner
        self.slow_page_ms = slow_page_ms

    def build_command(self, url: str, out: str, task: str, crawl: CrawlSettings, auth_path: Optional[str]) -> List[str]:
        args = [
            self.executable,
            "--headless",
            "--crawl", url,
            "--output-folder", out,
            "--task-name", task,
            "--export-tabs", ",".join(crawl.export_tabs),
            "--bulk-export", ",".join(crawl.bulk_exports),
        ]
        if auth_path:
            args += ["--auth-config", auth_path]
        return args

    def crawl(self, url: str, crawl: CrawlSettings, auth: Optional[CrawlAuth] = None) -> CrawlSummary:
        task = f"crawl-{datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%S')}-{uuid.uuid4().hex[:6]}"
        out = os.path.join(self.output_root, task)
        os.makedirs(out, exist_ok=True)
        logger.info("[Crawl] Starting %s (%d pages, %.0fs timeout)", url, crawl.max_pages, crawl.timeout)

        try:
            auth_path = None
            if auth:
                auth_path = os.path.join(out, "auth-config.xml")
                with open(auth_path, "w", encoding="utf-8") as f:
                    f.write(auth.to_xml())

            start = time.time()
            try:
                proc = self.runner(
                    self.build_command(url, out, task, crawl, auth_path),
                    capture_output=True,
                    text=True,
                    timeout=crawl.timeout,
                )
            except subprocess.TimeoutExpired:
                raise CrawlError(f"Timeout exceeded after {crawl.timeout:.0f}s crawling {url}")
            except FileNotFoundError:
                raise CrawlError(f"Crawler executable not found: {self.executable}")

            if proc.returncode != 0:
                output = (proc.stderr or proc.stdout or "").strip()
                reason = classify(output, CRAWL_FAILURE_RULES)
                detail = output.splitlines()[-1] if output else "no output"
                prefix = f"{reason}: " if reason else ""
                raise CrawlError(f"{prefix}crawler exited with code {proc.returncode} ({detail})")

            exports = find_exports(out)
            if "response_codes" not in exports:
                raise CrawlError("Crawl produced no response code export")

            summary = CrawlSummary(crawl_time_seconds=round(time.time() - start, 1))
            parse_response_codes(exports["response_codes"], summary, crawl.max_pages, self.slow_page_ms)
            if "redirect_chains" in exports:
                parse_redirect_chains(exports["redirect_chains"], summary)
            logger.info("[Crawl] %s: %d URLs, %d server errors", url, summary.total_urls, summary.errors_5xx)
            return summary
        finally:
            shutil.rmtree(out, ignore_errors=True)
