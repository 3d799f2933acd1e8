import os
import sys
import unittest
from unittest.mock import MagicMock

import requests

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from wpaudit.config import Settings
from wpaudit.errors import ConfigurationError, PlatformError, ProviderErrorCause
from wpaudit.models import Host
from wpaudit.store import AuditStore
from wpaudit.wpengine import API_BASE, PAGE_SIZE, WPEngineClient, import_installs, site_name, sync_site_names


def response(status=200, payload=None, text=""):
    resp = MagicMock()
    resp.status_code = status
    resp.reason = "OK" if status < 400 else "Error"
    resp.text = text
    resp.content = b"{}" if payload is not None else b""
    resp.json.return_value = payload if payload is not None else {}
    return resp


def install(name, domain=None, environment="production", site=None):
    data = {"id": f"id-{name}", "name": name, "environment": environment, "primary_domain": domain}
    if site:
        data["site"] = {"id": f"site-{name}", "name": site}
    return data


class TestWPEngineClient(unittest.TestCase):
    def setUp(self):
        self.session = MagicMock()
        settings = Settings(platform_api_user="user", platform_api_password="secret")
        self.client = WPEngineClient(settings, session=self.session)

    def test_list_installs_uses_basic_auth(self):
        self.session.request.return_value = response(payload={"results": [install("shop")], "next": None})
        installs = self.client.list_installs()

        self.assertEqual([i["name"] for i in installs], ["shop"])
        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ("GET", f"{API_BASE}/installs"))
        self.assertEqual(kwargs["auth"], ("user", "secret"))
        self.assertEqual(kwargs["params"], {"limit": PAGE_SIZE, "offset": 0})

    def test_list_installs_follows_pages(self):
        first = [install(f"site{n}") for n in range(PAGE_SIZE)]
        self.session.request.side_effect = [
            response(payload={"results": first, "next": "https://api.wpengineapi.com/v1/installs?offset=100"}),
            response(payload={"results": [install("last")], "next": None}),
        ]
        installs = self.client.list_installs()
        self.assertEqual(len(installs), PAGE_SIZE + 1)
        self.assertEqual(self.session.request.call_args[1]["params"]["offset"], PAGE_SIZE)

    def test_purge_cache(self):
        self.session.request.return_value = response(202)
        self.client.purge_cache("shop")
        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ("POST", f"{API_BASE}/installs/shop/purge_cache"))

    def test_create_backup(self):
        self.session.request.return_value = response(payload={"id": "b1", "status": "requested"})
        backup = self.client.create_backup("shop", "Before plugin updates")
        self.assertEqual(backup["id"], "b1")
        self.assertEqual(self.session.request.call_args[1]["json"],
                         {"description": "Before plugin updates", "notification_emails": []})

    def test_list_backups_and_status(self):
        self.session.request.side_effect = [
            response(payload={"results": [{"id": "b1"}]}),
            response(payload={"status": "active", "php_version": "8.2"}),
        ]
        self.assertEqual(self.client.list_backups("shop"), [{"id": "b1"}])
        self.assertEqual(self.client.get_status("shop")["php_version"], "8.2")

    def test_authentication_error(self):
        self.session.request.return_value = response(401, text='{"message": "Bad credentials"}')
        with self.assertRaises(PlatformError) as ctx:
            self.client.get_install("shop")
        self.assertEqual(ctx.exception.cause, ProviderErrorCause.AUTHENTICATION)
        self.assertIn("WPENGINE_API_USER", ctx.exception.hint)

    def test_not_found(self):
        self.session.request.return_value = response(404, text="Not Found")
        with self.assertRaises(PlatformError) as ctx:
            self.client.purge_cache("missing")
        self.assertEqual(ctx.exception.cause, ProviderErrorCause.NOT_FOUND)

    def test_network_error(self):
        self.session.request.side_effect = requests.ConnectionError("boom")
        with self.assertRaises(PlatformError) as ctx:
            self.client.list_installs()
        self.assertEqual(ctx.exception.cause, ProviderErrorCause.NETWORK_UNREACHABLE)

    def test_missing_credentials(self):
        client = WPEngineClient(Settings(), session=self.session)
        with self.assertRaises(ConfigurationError):
            client.purge_cache("shop")
        self.session.request.assert_not_called()


class TestInstallSync(unittest.TestCase):
    def setUp(self):
        self.store = AuditStore("sqlite://")
        self.client = MagicMock()

    def test_site_name(self):
        self.assertEqual(site_name(install("shop", site="Shop Inc")), "Shop Inc")
        self.assertEqual(site_name(install("shop")), "shop")

    def test_import_creates_and_refreshes_hosts(self):
        self.store.add_host(Host(id="h1", name="Example", domain="example.com", install_name="old",
                                 telemetry_zone_id="zone-1", is_ecommerce=True))
        self.client.list_installs.return_value = [
            install("example", "example.com", site="Example Site"),
            install("shopstg", None, environment="staging"),
            {"environment": "production"},
        ]

        imported = import_installs(self.client, self.store)
        self.assertEqual(len(imported), 2)

        existing = self.store.get_host("h1")
        self.assertEqual(existing.install_name, "example")
        self.assertEqual(existing.platform_site_name, "Example Site")
        self.assertEqual(existing.telemetry_zone_id, "zone-1")
        self.assertTrue(existing.is_ecommerce)

        staging = self.store.find_host("shopstg")
        self.assertEqual(staging.domain, "shopstg.wpengine.com")
        self.assertEqual(staging.environment, "staging")

    def test_sync_site_names(self):
        self.store.add_host(Host(id="h1", name="A", domain="a.com", install_name="a"))
        self.store.add_host(Host(id="h2", name="B", domain="b.com", install_name="b"))
        self.store.add_host(Host(id="h3", name="C", domain="c.com", install_name="c", platform_site_name="Done"))

        def get_install(name):
            if name == "b":
                raise PlatformError("WPEngine API error (404): Not Found", ProviderErrorCause.NOT_FOUND)
            return install(name, site="Site A")

        self.client.get_install.side_effect = get_install
        result = sync_site_names(self.client, self.store)

        self.assertEqual((result.succeeded, result.failed), (1, 1))
        self.assertEqual(self.store.get_host("h1").platform_site_name, "Site A")
        self.assertIsNone(self.store.get_host("h2").platform_site_name)
        self.assertEqual(self.store.get_host("h3").platform_site_name, "Done")
        self.assertEqual(self.client.get_install.call_count, 2)

if __name__ == '__main__':
    unittest.main()
