from .base import Check
from .crawl import CrawlCheck
from .database import DatabaseCheck
from .performance import PerformanceCheck
from .plugins import PluginCheck
from .security import SecurityCheck
from .seo import SeoCheck

__all__ = [
    "Check",
    "PluginCheck",
    "DatabaseCheck",
    "PerformanceCheck",
    "SecurityCheck",
    "SeoCheck",
    "CrawlCheck",
]
