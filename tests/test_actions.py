import os
import sys
import unittest
from unittest.mock import MagicMock, call

from sqlalchemy import select

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from wpaudit.actions import ActionRunner
from wpaudit.errors import RemoteCommandError
from wpaudit.models import Category, Host, Issue, IssueStatus, Severity
from wpaudit.store import ActionLogRow, AuditStore


class TestActionRunner(unittest.TestCase):
    def setUp(self):
        self.store = AuditStore("sqlite://")
        self.host = self.store.add_host(Host(id="h1", name="Example", domain="example.com",
                                             install_name="example", telemetry_zone_id="zone-1"))
        self.channel = MagicMock()
        self.channel.execute.return_value = "Success"
        self.telemetry = MagicMock()
        self.runner = ActionRunner(self.store, self.channel, self.telemetry)

    def action_logs(self):
        with self.store.transaction() as s:
            return [(r.action, r.status, r.error_message) for r in s.execute(select(ActionLogRow)).scalars()]

    def seed_issues(self, *fix_actions):
        audit = self.store.create_audit(self.host.id)
        self.store.mark_running(audit.id)
        issues = [Issue(category=Category.DATABASE, severity=Severity.WARNING, title=f"Needs {action}",
                        auto_fixable=True, fix_action=action) for action in fix_actions]
        self.store.complete_audit(audit.id, self.host.id, 90, "ok", {}, issues)

    def test_clear_all_cache(self):
        result = self.runner.run(self.host, "clear_all_cache")
        self.channel.execute.assert_called_once_with(self.host, "cache flush", fmt="table", timeout=120.0)
        self.telemetry.purge_cache.assert_called_once_with("zone-1")
        self.assertEqual(result["cleared"], ["wordpress", "cloudflare"])
        self.assertEqual(self.action_logs(), [("clear_all_cache", "completed", None)])

    def test_clear_all_cache_purges_platform(self):
        platform = MagicMock()
        runner = ActionRunner(self.store, self.channel, self.telemetry, platform)
        result = runner.run(self.host, "clear_all_cache")
        platform.purge_cache.assert_called_once_with("example")
        self.assertEqual(result["cleared"], ["wordpress", "wpengine", "cloudflare"])

    def test_fix_resolves_matching_issues(self):
        self.seed_issues("cleanup_revisions", "cleanup_transients")
        result = self.runner.run(self.host, "cleanup_revisions")

        self.assertEqual(result["resolved_issues"], 1)
        remaining = self.store.list_issues(self.host.id)
        self.assertEqual([i.fix_action for i in remaining], ["cleanup_transients"])
        fixed = self.store.list_issues(self.host.id, status=IssueStatus.FIXED)
        self.assertTrue(any(i.fix_action == "cleanup_revisions" for i in fixed))

    def test_update_skips_protected_plugins(self):
        result = self.runner.run(self.host, "update_plugins_staging", {"plugins": ["akismet", "woocommerce"]})
        self.channel.execute.assert_called_once_with(self.host, "plugin update akismet", fmt="table", timeout=120.0)
        self.assertEqual(result["skipped"], ["woocommerce"])

    def test_update_all(self):
        self.runner.run(self.host, "update_plugins_staging")
        command = self.channel.execute.call_args[0][1]
        self.assertTrue(command.startswith("plugin update --all --exclude="))
        self.assertIn("woocommerce", command)

    def test_cleanup_database(self):
        self.runner.run(self.host, "cleanup_database")
        commands = [c[0][1] for c in self.channel.execute.call_args_list]
        self.assertEqual(commands[1:], ["transient delete --expired", "db optimize"])
        self.assertTrue(commands[0].startswith("post delete"))

    def test_remove_plugins_requires_list(self):
        with self.assertRaises(ValueError):
            self.runner.run(self.host, "remove_inactive_plugins")
        self.assertEqual(self.action_logs(), [("remove_inactive_plugins", "failed", "No plugins specified for removal")])

    def test_remove_plugins(self):
        result = self.runner.run(self.host, "remove_inactive_plugins", {"plugins": ["hello-dolly", "old"]})
        self.assertEqual(self.channel.execute.call_args_list, [
            call(self.host, "plugin delete hello-dolly", fmt="table", timeout=120.0),
            call(self.host, "plugin delete old", fmt="table", timeout=120.0),
        ])
        self.assertEqual(result["removed"], ["hello-dolly", "old"])

    def test_remote_failure_is_logged_and_raised(self):
        self.channel.execute.side_effect = RemoteCommandError("wp cache flush", 1, "Error: boom")
        with self.assertRaises(RemoteCommandError):
            self.runner.run(self.host, "cleanup_transients")
        logs = self.action_logs()
        self.assertEqual(logs[0][:2], ("cleanup_transients", "failed"))

    def test_unknown_action(self):
        with self.assertRaises(ValueError) as ctx:
            self.runner.run(self.host, "format_disk")
        self.assertIn("Valid actions", str(ctx.exception))
        self.assertEqual(self.action_logs(), [])

if __name__ == '__main__':
    unittest.main()
