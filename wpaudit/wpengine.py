"""
Hosting platform client (WP Engine API v1).

Used for the platform cache purge in `clear_all_cache`, backups, and for
keeping the host registry in step with the installs on the account.
Failures surface as PlatformError.
"""
import logging
import uuid
from dataclasses import replace
from typing import Any, Dict, List, Optional

import requests

from .config import Settings
from .errors import PlatformError, ProviderErrorCause, classify_provider_error
from .models import BulkResult, Host
from .store import AuditStore

logger = logging.getLogger(__name__)

API_BASE = "https://api.wpengineapi.com/v1"
REQUEST_TIMEOUT = 30.0
PAGE_SIZE = 100


class WPEngineClient:
    def __init__(self, settings: Settings, session: Optional[requests.Session] = None,
                 timeout: float = REQUEST_TIMEOUT):
        self.settings = settings
        self.session = session or requests.Session()
        self.timeout = timeout

    def _request(self, method: str, endpoint: str, **kwargs: Any) -> Any:
        auth = self.settings.require_platform_credentials()
        try:
            resp = self.session.request(method, f"{API_BASE}{endpoint}", auth=auth,
                                        headers={"Content-Type": "application/json"},
                                        timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise PlatformError(f"WPEngine request failed: {e}", ProviderErrorCause.NETWORK_UNREACHABLE)

        if resp.status_code >= 400:
            message = f"WPEngine API error ({resp.status_code}): {(resp.text or resp.reason or '').strip()}"
            raise PlatformError(message, classify_provider_error(message))
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            return {}

    # --- Installs ---

    def list_installs(self) -> List[Dict[str, Any]]:
        installs: List[Dict[str, Any]] = []
        offset = 0
        while True:
            page = self._request("GET", "/installs", params={"limit": PAGE_SIZE, "offset": offset}) or {}
            results = page.get("results") or []
            installs.extend(results)
            if not page.get("next") or len(results) < PAGE_SIZE:
                return installs
            offset += len(results)

    def get_install(self, install_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/installs/{install_id}")

    def get_status(self, install_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/installs/{install_id}/status")

    # --- Backups ---

    def list_backups(self, install_id: str) -> List[Dict[str, Any]]:
        return (self._request("GET", f"/installs/{install_id}/backups") or {}).get("results") or []

    def create_backup(self, install_id: str, description: str,
                      notification_emails: Optional[List[str]] = None) -> Dict[str, Any]:
        body = {"description": description, "notification_emails": list(notification_emails or [])}
        backup = self._request("POST", f"/installs/{install_id}/backups", json=body)
        logger.info("Requested backup for install %s", install_id)
        return backup

    # --- Cache ---

    def purge_cache(self, install_id: str) -> None:
        self._request("POST", f"/installs/{install_id}/purge_cache")
        logger.info("Purged platform cache for install %s", install_id)


def site_name(install: Dict[str, Any]) -> Optional[str]:
    """Client-facing site name; falls back to the install name."""
    return (install.get("site") or {}).get("name") or install.get("name")


def import_installs(client: WPEngineClient, store: AuditStore) -> List[Host]:
    """
    Upsert one host per install on the account, keyed by primary domain.

    Hosts that already exist keep their zone, page builder and ecommerce
    flags; only the platform fields are refreshed.
    """
    imported: List[Host] = []
    for install in client.list_installs():
        name = install.get("name")
        if not name:
            continue
        domain = install.get("primary_domain") or f"{name}.wpengine.com"
        existing = store.find_host(domain)
        platform_fields = {
            "install_name": name,
            "environment": install.get("environment") or "production",
            "platform_site_name": site_name(install),
        }
        if existing is not None:
            host = replace(existing, **platform_fields)
        else:
            host = Host(id=str(uuid.uuid4()), name=name, domain=domain, **platform_fields)
        imported.append(store.add_host(host))
        logger.info("Imported install %s (%s)", name, domain)
    return imported


def sync_site_names(client: WPEngineClient, store: AuditStore) -> BulkResult:
    """Fill in the platform site name for hosts that do not have one yet."""
    result = BulkResult()
    for host in store.list_hosts():
        if host.platform_site_name:
            continue
        try:
            install = client.get_install(host.install_name)
        except PlatformError as e:
            result.failed += 1
            logger.error("Could not fetch install %s: %s", host.install_name, e)
            continue
        store.add_host(replace(host, platform_site_name=site_name(install)))
        result.succeeded += 1
        logger.info("Updated %s with site name %s", host.install_name, site_name(install))
    return result
