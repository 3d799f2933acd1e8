from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Any, Optional, List


class Severity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class Category(str, Enum):
    PLUGINS = "plugins"
    DATABASE = "database"
    PERFORMANCE = "performance"
    SECURITY = "security"
    SEO = "seo"
    CRAWL = "crawl"


class AuditStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (AuditStatus.COMPLETED, AuditStatus.FAILED)


class IssueStatus(str, Enum):
    OPEN = "open"
    FIXED = "fixed"
    IGNORED = "ignored"
    IN_PROGRESS = "in_progress"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    ATTENTION = "attention"
    CRITICAL = "critical"


@dataclass
class Host:
    """One monitored WordPress installation."""
    id: str
    name: str
    domain: str
    install_name: str
    environment: str = "production"
    telemetry_zone_id: Optional[str] = None
    page_builder: Optional[str] = None  # elementor, beaver, gutenberg, other
    is_ecommerce: bool = False
    platform_site_name: Optional[str] = None

    @property
    def base_url(self) -> str:
        return f"https://{self.domain}"


@dataclass
class Progress:
    step: str = "Queued"
    percent: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"step": self.step, "percent": self.percent}


@dataclass
class Issue:
    category: Category
    severity: Severity
    title: str
    description: str = ""
    recommendation: str = ""
    auto_fixable: bool = False
    fix_action: Optional[str] = None
    fix_params: Dict[str, Any] = field(default_factory=dict)
    status: IssueStatus = IssueStatus.OPEN
    # Assigned by the store
    id: Optional[str] = None
    host_id: Optional[str] = None
    audit_id: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass
class CheckResult:
    """Output of one check module: a module-specific dataset plus findings."""
    data: Dict[str, Any] = field(default_factory=dict)
    issues: List[Issue] = field(default_factory=list)


@dataclass
class Audit:
    id: str
    host_id: str
    status: AuditStatus = AuditStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    health_score: Optional[int] = None
    summary: Optional[str] = None
    progress: Progress = field(default_factory=Progress)
    raw_data: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class TelemetryWindow:
    """Aggregated edge analytics over a time range."""
    since: datetime
    until: datetime
    requests: int = 0
    cached_requests: int = 0
    bytes_total: int = 0
    bytes_cached: int = 0
    threats: int = 0
    status_4xx: int = 0
    status_5xx: int = 0
    encrypted_requests: int = 0
    bot_requests: int = 0
    countries: Dict[str, int] = field(default_factory=dict)
    ssl_protocols: Dict[str, int] = field(default_factory=dict)
    source: str = "graphql"

    @property
    def cache_hit_ratio(self) -> float:
        if self.requests == 0:
            return 0.0
        return self.cached_requests / self.requests

    @property
    def bandwidth_saved_ratio(self) -> float:
        if self.bytes_total == 0:
            return 0.0
        return self.bytes_cached / self.bytes_total

    def rate(self, count: int) -> float:
        """Share of all requests represented by `count`."""
        if self.requests == 0:
            return 0.0
        return count / self.requests

    def top_countries(self, limit: int = 5) -> List[Dict[str, Any]]:
        ranked = sorted(self.countries.items(), key=lambda kv: kv[1], reverse=True)
        return [{"country": c, "requests": n} for c, n in ranked[:limit]]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "since": self.since.isoformat(),
            "until": self.until.isoformat(),
            "source": self.source,
            "requests": self.requests,
            "cached_requests": self.cached_requests,
            "cache_hit_ratio": round(self.cache_hit_ratio, 4),
            "bandwidth_mb": round(self.bytes_total / (1024 * 1024), 2),
            "bandwidth_saved_mb": round(self.bytes_cached / (1024 * 1024), 2),
            "bandwidth_saved_ratio": round(self.bandwidth_saved_ratio, 4),
            "threats": self.threats,
            "status_4xx": self.status_4xx,
            "status_5xx": self.status_5xx,
            "ssl_encrypted_requests": self.encrypted_requests,
            "bot_requests": self.bot_requests,
            "countries_top": self.top_countries(),
            "ssl_protocol_breakdown": dict(self.ssl_protocols),
        }


@dataclass
class AuditOutcome:
    audit_id: str
    health_score: int
    issue_count: int
    summary: str


@dataclass
class BulkResult:
    succeeded: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.succeeded + self.failed
