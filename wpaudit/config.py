import os
import uuid
from dataclasses import dataclass, field, fields, replace
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .errors import ConfigurationError
from .models import Host, Severity


def normalize_private_key(raw: str) -> str:
    """Environment variables often carry keys with literal '\\n' sequences."""
    key = raw.strip()
    if "\\n" in key:
        key = key.replace("\\n", "\n")
    if not key.endswith("\n"):
        key += "\n"
    return key


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///wpaudit.db"
    ssh_private_key: Optional[str] = None
    ssh_host_template: str = "{install}.ssh.wpengine.net"
    ssh_port: int = 22
    ssh_connect_timeout: float = 30.0
    telemetry_token: Optional[str] = None
    platform_api_user: Optional[str] = None
    platform_api_password: Optional[str] = None
    crawler_path: str = "screamingfrogseospider"
    crawl_output_dir: str = os.path.join("temp", "crawls")
    staging_username: Optional[str] = None
    staging_password: Optional[str] = None
    wp_admin_username: Optional[str] = None
    wp_admin_password: Optional[str] = None
    thresholds_path: Optional[str] = None
    stale_after_minutes: float = 5.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        key = env.get("WPENGINE_SSH_PRIVATE_KEY")
        return cls(
            database_url=env.get("WPAUDIT_DATABASE_URL", cls.database_url),
            ssh_private_key=normalize_private_key(key) if key else None,
            ssh_host_template=env.get("WPAUDIT_SSH_HOST_TEMPLATE", cls.ssh_host_template),
            ssh_port=int(env.get("WPAUDIT_SSH_PORT", cls.ssh_port)),
            telemetry_token=env.get("CLOUDFLARE_API_TOKEN") or None,
            platform_api_user=env.get("WPENGINE_API_USER") or None,
            platform_api_password=env.get("WPENGINE_API_PASSWORD") or None,
            crawler_path=env.get("WPAUDIT_CRAWLER_PATH", cls.crawler_path),
            crawl_output_dir=env.get("WPAUDIT_CRAWL_OUTPUT_DIR", cls.crawl_output_dir),
            staging_username=env.get("WPENGINE_STAGING_USERNAME") or None,
            staging_password=env.get("WPENGINE_STAGING_PASSWORD") or None,
            wp_admin_username=env.get("WP_ADMIN_USERNAME") or None,
            wp_admin_password=env.get("WP_ADMIN_PASSWORD") or None,
            thresholds_path=env.get("WPAUDIT_THRESHOLDS") or None,
            stale_after_minutes=float(env.get("WPAUDIT_STALE_MINUTES", cls.stale_after_minutes)),
        )

    def require_private_key(self) -> str:
        if not self.ssh_private_key:
            raise ConfigurationError("WPENGINE_SSH_PRIVATE_KEY not configured")
        return self.ssh_private_key

    def require_telemetry_token(self) -> str:
        if not self.telemetry_token:
            raise ConfigurationError("Cloudflare API token not configured")
        return self.telemetry_token

    @property
    def has_platform_credentials(self) -> bool:
        return bool(self.platform_api_user and self.platform_api_password)

    def require_platform_credentials(self) -> Tuple[str, str]:
        if not self.has_platform_credentials:
            raise ConfigurationError("WPEngine API credentials not configured")
        return self.platform_api_user, self.platform_api_password


@dataclass(frozen=True)
class ThresholdPair:
    """
    Warning/critical limits for one metric.

    `lower_is_worse` flips the comparison (e.g. cache hit ratio). `inclusive`
    decides whether hitting the limit exactly counts as a breach. `levels`
    names the severities emitted for the warning and critical breach.
    """
    warning: float
    critical: float
    lower_is_worse: bool = False
    inclusive: bool = True
    levels: Tuple[str, str] = ("warning", "critical")

    def _breaches(self, value: float, limit: float) -> bool:
        if self.lower_is_worse:
            return value <= limit if self.inclusive else value < limit
        return value >= limit if self.inclusive else value > limit

    def classify(self, value: float) -> Optional[Severity]:
        if self._breaches(value, self.critical):
            return Severity(self.levels[1])
        if self._breaches(value, self.warning):
            return Severity(self.levels[0])
        return None


@dataclass(frozen=True)
class Thresholds:
    # Plugins
    inactive_plugins: ThresholdPair = ThresholdPair(3, 8)
    outdated_plugins: ThresholdPair = ThresholdPair(5, 10)
    non_standard_plugins_info: int = 5

    # Database
    database_size_mb: ThresholdPair = ThresholdPair(500, 1000)
    autoload_size_kb: ThresholdPair = ThresholdPair(800, 1500)
    revision_count: ThresholdPair = ThresholdPair(500, 2000)
    transient_count: ThresholdPair = ThresholdPair(300, 1000)
    large_autoload_option_bytes: int = 50000

    # Performance (edge telemetry + direct probe)
    cache_hit_ratio: ThresholdPair = ThresholdPair(0.7, 0.5, lower_is_worse=True, inclusive=False)
    status_5xx: ThresholdPair = ThresholdPair(10, 50)
    status_4xx: ThresholdPair = ThresholdPair(500, 2000)
    threat_rate: ThresholdPair = ThresholdPair(0.01, 0.05, levels=("info", "warning"))
    ssl_rate: ThresholdPair = ThresholdPair(0.95, 0.8, lower_is_worse=True, inclusive=False)
    bot_rate: ThresholdPair = ThresholdPair(0.3, 0.6, inclusive=False, levels=("info", "warning"))
    top_country_share: ThresholdPair = ThresholdPair(0.9, 0.98, inclusive=False, levels=("info", "warning"))
    response_time_ms: ThresholdPair = ThresholdPair(1500, 3000, inclusive=False)
    telemetry_window_hours: int = 24

    # Crawl
    crawl_server_errors: ThresholdPair = ThresholdPair(0, 5, inclusive=False)
    crawl_error_rate_percent: ThresholdPair = ThresholdPair(5, 10, inclusive=False)
    crawl_avg_response_time_ms: ThresholdPair = ThresholdPair(2000, 4000, inclusive=False)
    crawl_slow_pages: ThresholdPair = ThresholdPair(3, 8, inclusive=False)
    crawl_broken_links: ThresholdPair = ThresholdPair(5, 15, inclusive=False, levels=("info", "warning"))
    crawl_redirect_chains: ThresholdPair = ThresholdPair(5, 20, inclusive=False, levels=("info", "warning"))
    slow_page_ms: float = 3000

    # Scoring
    severity_deduction: Mapping[str, int] = field(
        default_factory=lambda: MappingProxyType({"critical": 15, "warning": 5, "info": 1})
    )
    healthy_score: int = 90
    attention_score: int = 70

    def deduction(self, severity: Any) -> int:
        key = severity.value if isinstance(severity, Severity) else str(severity)
        return self.severity_deduction.get(key, 0)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Thresholds":
        base = cls()
        known = {f.name: f for f in fields(cls)}
        changes: Dict[str, Any] = {}
        for name, value in (data or {}).items():
            if name not in known:
                raise ConfigurationError(f"Unknown threshold '{name}'")
            current = getattr(base, name)
            if isinstance(current, ThresholdPair):
                if not isinstance(value, Mapping):
                    raise ConfigurationError(f"Threshold '{name}' expects warning/critical mapping")
                overrides = dict(value)
                if "levels" in overrides:
                    overrides["levels"] = tuple(overrides["levels"])
                try:
                    changes[name] = replace(current, **overrides)
                except TypeError:
                    allowed = ", ".join(f.name for f in fields(ThresholdPair))
                    raise ConfigurationError(f"Threshold '{name}' accepts only: {allowed}")
            elif isinstance(current, Mapping):
                if not isinstance(value, Mapping):
                    raise ConfigurationError(f"Threshold '{name}' expects a mapping")
                merged = dict(current)
                merged.update(value)
                changes[name] = MappingProxyType(merged)
            else:
                changes[name] = type(current)(value)
        return replace(base, **changes)


def load_thresholds(path: Optional[str] = None) -> Thresholds:
    if not path:
        return Thresholds()
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Could not load thresholds from {path}: {e}")
    return Thresholds.from_dict(data)


def load_hosts(path: str) -> List[Host]:
    """Reads a YAML list of host entries."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or []
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Could not load hosts from {path}: {e}")

    hosts: List[Host] = []
    for idx, item in enumerate(data):
        if "domain" not in item or "install" not in item:
            raise ConfigurationError(f"Host entry {idx} needs 'domain' and 'install'")
        hosts.append(Host(
            id=str(item.get("id") or uuid.uuid4()),
            name=item.get("name", item["domain"]),
            domain=item["domain"],
            install_name=item["install"],
            environment=item.get("environment", "production"),
            telemetry_zone_id=item.get("zone_id"),
            page_builder=item.get("page_builder"),
            is_ecommerce=bool(item.get("ecommerce", False)),
            platform_site_name=item.get("site_name"),
        ))
    return hosts
