import os
import shutil
import sys
import tempfile
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from wpaudit import catalog
from wpaudit.config import Settings, ThresholdPair, Thresholds, load_hosts, load_thresholds, normalize_private_key
from wpaudit.errors import ConfigurationError
from wpaudit.models import Severity


class TestSettings(unittest.TestCase):
    def test_from_env(self):
        env = {
            "WPENGINE_SSH_PRIVATE_KEY": "-----BEGIN KEY-----\\nabc\\n-----END KEY-----",
            "CLOUDFLARE_API_TOKEN": "tok",
            "WPAUDIT_DATABASE_URL": "sqlite://",
            "WPAUDIT_STALE_MINUTES": "12",
            "WPENGINE_API_USER": "api-user",
            "WPENGINE_API_PASSWORD": "api-pass",
        }
        s = Settings.from_env(env)
        self.assertEqual(s.ssh_private_key, "-----BEGIN KEY-----\nabc\n-----END KEY-----\n")
        self.assertEqual(s.telemetry_token, "tok")
        self.assertEqual(s.database_url, "sqlite://")
        self.assertEqual(s.stale_after_minutes, 12.0)
        self.assertEqual(s.ssh_port, 22)
        self.assertEqual(s.require_platform_credentials(), ("api-user", "api-pass"))

    def test_missing_credentials(self):
        s = Settings.from_env({})
        with self.assertRaises(ConfigurationError):
            s.require_private_key()
        with self.assertRaises(ConfigurationError):
            s.require_telemetry_token()
        self.assertFalse(s.has_platform_credentials)
        with self.assertRaises(ConfigurationError):
            s.require_platform_credentials()

    def test_normalize_keeps_real_newlines(self):
        self.assertEqual(normalize_private_key("a\nb\n"), "a\nb\n")


class TestThresholds(unittest.TestCase):
    def test_inclusive_pair(self):
        pair = ThresholdPair(3, 8)
        self.assertIsNone(pair.classify(2))
        self.assertEqual(pair.classify(3), Severity.WARNING)
        self.assertEqual(pair.classify(8), Severity.CRITICAL)

    def test_lower_is_worse_exclusive(self):
        pair = Thresholds().cache_hit_ratio
        self.assertIsNone(pair.classify(0.8))
        self.assertIsNone(pair.classify(0.7))
        self.assertEqual(pair.classify(0.6), Severity.WARNING)
        self.assertEqual(pair.classify(0.5), Severity.WARNING)
        self.assertEqual(pair.classify(0.4), Severity.CRITICAL)

    def test_custom_levels(self):
        pair = Thresholds().threat_rate
        self.assertEqual(pair.classify(0.02), Severity.INFO)
        self.assertEqual(pair.classify(0.06), Severity.WARNING)

    def test_overlay(self):
        t = Thresholds.from_dict({
            "revision_count": {"warning": 100},
            "severity_deduction": {"critical": 20},
            "healthy_score": 95,
        })
        self.assertEqual(t.revision_count.warning, 100)
        self.assertEqual(t.revision_count.critical, 2000)
        self.assertEqual(t.deduction("critical"), 20)
        self.assertEqual(t.deduction(Severity.WARNING), 5)
        self.assertEqual(t.healthy_score, 95)

    def test_unknown_key_rejected(self):
        with self.assertRaises(ConfigurationError):
            Thresholds.from_dict({"no_such_threshold": 1})

    def test_pair_expects_mapping(self):
        with self.assertRaises(ConfigurationError):
            Thresholds.from_dict({"revision_count": 5})

    def test_unknown_pair_field_rejected(self):
        with self.assertRaises(ConfigurationError) as ctx:
            Thresholds.from_dict({"revision_count": {"warn": 1}})
        self.assertIn("revision_count", str(ctx.exception))

    def test_deduction_table_is_read_only(self):
        t = Thresholds.from_dict({"severity_deduction": {"info": 2}})
        with self.assertRaises(TypeError):
            t.severity_deduction["critical"] = 0
        with self.assertRaises(TypeError):
            Thresholds().severity_deduction["critical"] = 0
        self.assertEqual(Thresholds().deduction("critical"), 15)
        self.assertEqual(t.deduction("info"), 2)

    def test_load_defaults_without_path(self):
        self.assertEqual(load_thresholds(None), Thresholds())


class TestLoadFiles(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmp)

    def write(self, name, text):
        path = os.path.join(self.tmp, name)
        with open(path, "w", encoding="utf-8") as f:
            f.write(text)
        return path

    def test_load_hosts(self):
        path = self.write("hosts.yaml", """
- id: h1
  name: Example
  domain: example.com
  install: example
  zone_id: zone-1
  page_builder: elementor
  ecommerce: true
  site_name: Example Co
- domain: staging.example.com
  install: examplestg
  environment: staging
""")
        hosts = load_hosts(path)
        self.assertEqual(len(hosts), 2)
        self.assertEqual(hosts[0].id, "h1")
        self.assertEqual(hosts[0].telemetry_zone_id, "zone-1")
        self.assertTrue(hosts[0].is_ecommerce)
        self.assertEqual(hosts[0].platform_site_name, "Example Co")
        self.assertIsNone(hosts[1].platform_site_name)
        self.assertEqual(hosts[1].name, "staging.example.com")
        self.assertEqual(hosts[1].environment, "staging")
        self.assertIsNone(hosts[1].telemetry_zone_id)

    def test_host_needs_install(self):
        path = self.write("hosts.yaml", "- domain: example.com\n")
        with self.assertRaises(ConfigurationError):
            load_hosts(path)

    def test_load_thresholds_file(self):
        path = self.write("t.yaml", "transient_count:\n  warning: 10\n  critical: 20\n")
        t = load_thresholds(path)
        self.assertEqual(t.transient_count.classify(15), Severity.WARNING)

    def test_missing_file(self):
        with self.assertRaises(ConfigurationError):
            load_thresholds(os.path.join(self.tmp, "missing.yaml"))


class TestCatalog(unittest.TestCase):
    def test_aliases_count_as_canonical(self):
        self.assertEqual(catalog.find_plugin(["akismet", "really-simple-ssl"], "really-simple-security"),
                         "really-simple-ssl")
        self.assertTrue(catalog.matches("seopress", "wp-seopress"))

    def test_no_substring_matching(self):
        self.assertIsNone(catalog.find_plugin(["wp-mail-smtp-addon"], "wp-mail-smtp"))

    def test_deprecated_alternatives(self):
        self.assertEqual(catalog.deprecated_alternatives_for("wp-seopress", ["wordpress-seo", "akismet"]),
                         ["wordpress-seo"])
        self.assertEqual(catalog.deprecated_alternatives_for("wp-mail-smtp", ["wordpress-seo"]), [])

if __name__ == '__main__':
    unittest.main()
