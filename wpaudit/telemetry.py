"""
Edge analytics client (Cloudflare).

Primary protocol is the GraphQL analytics API aggregated by *day*: hourly
groups under-report cached requests, so resolution is traded for accurate
cache counters. The buckets always cover the requested hours, capped at
7 days (8 buckets once the span crosses midnight). The legacy dashboard
endpoint is only consulted when the GraphQL API is unavailable for the zone.
Every failure leaves this module as a ProviderError.
"""
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import requests

from .config import Settings
from .errors import ProviderError, ProviderErrorCause, classify_provider_error
from .models import TelemetryWindow

logger = logging.getLogger(__name__)

API_BASE = "https://api.cloudflare.com/client/v4"
GRAPHQL_URL = f"{API_BASE}/graphql"
MAX_WINDOW_DAYS = 7
REQUEST_TIMEOUT = 30.0

DAILY_QUERY = """
query ($zoneTag: String!, $since: Date!, $until: Date!, $limit: Int!) {
  viewer {
    zones(filter: { zoneTag: $zoneTag }) {
      httpRequests1dGroups(limit: $limit, filter: { date_geq: $since, date_leq: $until }) {
        sum {
          requests
          cachedRequests
          bytes
          cachedBytes
          threats
          encryptedRequests
          countryMap { clientCountryName requests }
          responseStatusMap { edgeResponseStatus requests }
          clientSSLMap { clientSSLProtocol requests }
          browserMap { uaBrowserFamily pageViews }
        }
      }
    }
  }
}
"""

# Causes for which the legacy endpoint would fail the same way
NO_FALLBACK_CAUSES = {ProviderErrorCause.AUTHENTICATION, ProviderErrorCause.NETWORK_UNREACHABLE}

BOT_FAMILY_MARKERS = ("bot", "crawler", "spider")


def status_buckets(status_counts: Iterable[tuple]) -> Dict[str, int]:
    """Sum (status, count) pairs into 4xx and 5xx classes."""
    buckets = {"4xx": 0, "5xx": 0}
    for status, count in status_counts:
        try:
            code = int(status)
        except (TypeError, ValueError):
            continue
        if 400 <= code < 500:
            buckets["4xx"] += int(count or 0)
        elif 500 <= code < 600:
            buckets["5xx"] += int(count or 0)
    return buckets


def window_dates(hours: float, until: datetime) -> Tuple[date, int]:
    """First UTC date and bucket count for daily groups covering at least ``hours`` before ``until``."""
    span = timedelta(hours=min(max(hours, 0), MAX_WINDOW_DAYS * 24))
    since_date = (until - span).date()
    return since_date, (until.date() - since_date).days + 1


class TelemetryClient:
    def __init__(self, settings: Settings, session: Optional[requests.Session] = None, timeout: float = REQUEST_TIMEOUT):
        self.settings = settings
        self.session = session or requests.Session()
        self.timeout = timeout

    # --- Transport ---

    def _headers(self) -> Dict[str, str]:
        token = self.settings.require_telemetry_token()
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    def _request(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        headers = self._headers()
        try:
            resp = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise ProviderError(f"Cloudflare request failed: {e}", ProviderErrorCause.NETWORK_UNREACHABLE)

        try:
            payload = resp.json()
        except ValueError:
            payload = {}

        if resp.status_code >= 400:
            detail = self._first_error(payload) or resp.reason or "request rejected"
            message = f"Cloudflare API error (HTTP {resp.status_code}): {detail}"
            raise ProviderError(message, classify_provider_error(message))
        return payload

    @staticmethod
    def _first_error(payload: Dict[str, Any]) -> str:
        errors = payload.get("errors") or []
        if errors and isinstance(errors[0], dict):
            code = errors[0].get("code")
            text = errors[0].get("message", "")
            return f"{text} (code {code})" if code else text
        return ""

    def _api(self, method: str, endpoint: str, **kwargs: Any) -> Any:
        payload = self._request(method, f"{API_BASE}{endpoint}", **kwargs)
        if not payload.get("success"):
            message = f"Cloudflare API error: {self._first_error(payload) or 'Unknown Cloudflare error'}"
            raise ProviderError(message, classify_provider_error(message))
        return payload.get("result")

    # --- Analytics ---

    def get_analytics(self, zone_id: str, window_hours: float = 24, now: Optional[datetime] = None) -> TelemetryWindow:
        until = now or datetime.now(timezone.utc)
        try:
            return self._graphql_window(zone_id, window_hours, until)
        except ProviderError as primary:
            if primary.cause in NO_FALLBACK_CAUSES:
                raise
            logger.warning("GraphQL analytics failed for zone %s (%s); trying legacy dashboard", zone_id, primary)
        return self._legacy_window(zone_id, window_hours, until)

    def _graphql_window(self, zone_id: str, hours: float, until: datetime) -> TelemetryWindow:
        since_date, days = window_dates(hours, until)
        variables = {
            "zoneTag": zone_id,
            "since": since_date.isoformat(),
            "until": until.date().isoformat(),
            "limit": days,
        }
        payload = self._request("POST", GRAPHQL_URL, json={"query": DAILY_QUERY, "variables": variables})
        if payload.get("errors"):
            message = f"Cloudflare GraphQL error: {payload['errors'][0].get('message', 'unknown')}"
            raise ProviderError(message, classify_provider_error(message))

        zones = ((payload.get("data") or {}).get("viewer") or {}).get("zones") or []
        if not zones:
            raise ProviderError("Zone not found or no data available", ProviderErrorCause.NOT_FOUND)

        window = TelemetryWindow(
            since=datetime.combine(since_date, datetime.min.time(), tzinfo=timezone.utc),
            until=until,
            source="graphql",
        )
        for group in zones[0].get("httpRequests1dGroups") or []:
            self._add_daily_group(window, group.get("sum") or {})
        logger.debug("Zone %s: %d requests over %d day(s)", zone_id, window.requests, days)
        return window

    @staticmethod
    def _add_daily_group(window: TelemetryWindow, s: Dict[str, Any]) -> None:
        window.requests += int(s.get("requests") or 0)
        window.cached_requests += int(s.get("cachedRequests") or 0)
        window.bytes_total += int(s.get("bytes") or 0)
        window.bytes_cached += int(s.get("cachedBytes") or 0)
        window.threats += int(s.get("threats") or 0)
        window.encrypted_requests += int(s.get("encryptedRequests") or 0)

        buckets = status_buckets(
            (item.get("edgeResponseStatus"), item.get("requests")) for item in s.get("responseStatusMap") or []
        )
        window.status_4xx += buckets["4xx"]
        window.status_5xx += buckets["5xx"]

        for item in s.get("countryMap") or []:
            country = item.get("clientCountryName") or "??"
            window.countries[country] = window.countries.get(country, 0) + int(item.get("requests") or 0)
        for item in s.get("clientSSLMap") or []:
            proto = item.get("clientSSLProtocol") or "none"
            window.ssl_protocols[proto] = window.ssl_protocols.get(proto, 0) + int(item.get("requests") or 0)
        for item in s.get("browserMap") or []:
            family = (item.get("uaBrowserFamily") or "").lower()
            if any(marker in family for marker in BOT_FAMILY_MARKERS):
                window.bot_requests += int(item.get("pageViews") or 0)

    def _legacy_window(self, zone_id: str, hours: float, until: datetime) -> TelemetryWindow:
        since = until - timedelta(hours=min(hours, MAX_WINDOW_DAYS * 24))
        params = {
            "since": since.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "until": until.strftime("%Y-%m-%dT%H:%M:%SZ"),
        }
        result = self._api("GET", f"/zones/{zone_id}/analytics/dashboard", params=params) or {}
        totals = result.get("totals") or {}
        req = totals.get("requests") or {}
        bandwidth = totals.get("bandwidth") or {}

        buckets = status_buckets((req.get("http_status") or {}).items())
        return TelemetryWindow(
            since=since,
            until=until,
            requests=int(req.get("all") or 0),
            cached_requests=int(req.get("cached") or 0),
            bytes_total=int(bandwidth.get("all") or 0),
            bytes_cached=int(bandwidth.get("cached") or 0),
            threats=int((totals.get("threats") or {}).get("all") or 0),
            status_4xx=buckets["4xx"],
            status_5xx=buckets["5xx"],
            encrypted_requests=int((req.get("ssl") or {}).get("encrypted") or 0),
            countries={k: int(v) for k, v in (req.get("country") or {}).items()},
            source="legacy",
        )

    # --- Write-only operations ---

    def purge_cache(self, zone_id: str) -> None:
        self._api("POST", f"/zones/{zone_id}/purge_cache", json={"purge_everything": True})
        logger.info("Purged all cached content for zone %s", zone_id)

    def purge_cache_urls(self, zone_id: str, urls: List[str]) -> None:
        self._api("POST", f"/zones/{zone_id}/purge_cache", json={"files": list(urls)})
        logger.info("Purged %d URL(s) for zone %s", len(urls), zone_id)

    def list_zones(self) -> List[Dict[str, Any]]:
        zones = self._api("GET", "/zones", params={"per_page": 50}) or []
        return [{"id": z.get("id"), "name": z.get("name"), "status": z.get("status")} for z in zones]
