import os
import sys
import unittest
from unittest.mock import MagicMock, patch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from wpaudit.checks import Check, PerformanceCheck
from wpaudit.engine import AuditOrchestrator, AuditStep, run_all
from wpaudit.errors import AuditCancelledError, AuditInProgressError, HostNotFoundError
from wpaudit.http_client import ResponseWrapper
from wpaudit.locks import HostLockRegistry
from wpaudit.models import AuditStatus, Category, CheckResult, Host, IssueStatus, Severity
from wpaudit.store import AuditStore


class StaticCheck(Check):
    """Returns canned findings."""

    category = Category.PLUGINS

    def __init__(self, severities=(), data=None):
        super().__init__()
        self.severities = list(severities)
        self.data = data or {}
        self.calls = 0

    def run(self, host):
        self.calls += 1
        issues = [self.issue(Severity(s), f"{s} finding {n}") for n, s in enumerate(self.severities)]
        return CheckResult(data=dict(self.data), issues=issues)


class FailingCheck(Check):
    category = Category.DATABASE

    def run(self, host):
        raise RuntimeError("database unreachable")


class CancellingCheck(Check):
    """Cancels the running audit from the outside, as an operator would."""

    category = Category.SECURITY

    def __init__(self, store):
        super().__init__()
        self.store = store

    def run(self, host):
        audit = self.store.latest_audit(host.id)
        self.store.cancel_audit(audit.id, "Audit was manually cancelled")
        return CheckResult()


def make_host(store, domain="example.com", **kwargs):
    return store.add_host(Host(id=domain, name=domain, domain=domain, install_name=domain.split(".")[0], **kwargs))


class TestAuditOrchestrator(unittest.TestCase):
    def setUp(self):
        self.store = AuditStore("sqlite://")
        self.host = make_host(self.store)

    def orchestrator(self, *checks):
        steps = [AuditStep(f"step{n}", f"Step {n}", (n + 1) * 100 // len(checks), c) for n, c in enumerate(checks)]
        return AuditOrchestrator(self.store, steps)

    def test_completed_audit(self):
        outcome = self.orchestrator(StaticCheck(["critical", "warning"], {"total": 3}), StaticCheck(["info"])).run(
            self.host.id)
        self.assertEqual(outcome.health_score, 100 - 15 - 5 - 1)
        self.assertEqual(outcome.issue_count, 3)

        audit = self.store.get_audit(outcome.audit_id)
        self.assertEqual(audit.status, AuditStatus.COMPLETED)
        self.assertEqual(audit.health_score, 79)
        self.assertEqual(audit.summary, "Health: 79/100. Found 1 critical, 1 warning issues.")
        self.assertEqual(audit.progress.step, "Complete")
        self.assertEqual(audit.progress.percent, 100)
        self.assertEqual(audit.raw_data["step0"], {"total": 3})
        self.assertIsNotNone(audit.completed_at)
        self.assertEqual(len(self.store.list_issues(self.host.id)), 3)

    def test_new_audit_replaces_open_issues(self):
        self.orchestrator(StaticCheck(["critical", "warning"])).run(self.host.id)
        first = self.store.list_issues(self.host.id)
        second_outcome = self.orchestrator(StaticCheck(["info"])).run(self.host.id)

        open_issues = self.store.list_issues(self.host.id)
        self.assertEqual(len(open_issues), 1)
        self.assertEqual(open_issues[0].audit_id, second_outcome.audit_id)
        fixed = self.store.list_issues(self.host.id, status=IssueStatus.FIXED)
        self.assertEqual({i.id for i in fixed}, {i.id for i in first})
        self.assertTrue(all(i.resolved_at is not None for i in fixed))

    def test_failure_leaves_issues_untouched(self):
        self.orchestrator(StaticCheck(["warning"])).run(self.host.id)
        before = self.store.list_issues(self.host.id)

        later = StaticCheck(["critical"])
        with self.assertRaises(RuntimeError):
            self.orchestrator(FailingCheck(), later).run(self.host.id)

        audit = self.store.latest_audit(self.host.id)
        self.assertEqual(audit.status, AuditStatus.FAILED)
        self.assertEqual(audit.error_message, "database unreachable")
        self.assertIsNone(audit.health_score)
        self.assertEqual(later.calls, 0)
        self.assertEqual([i.id for i in self.store.list_issues(self.host.id)], [i.id for i in before])

    def test_completion_write_failure_marks_failed(self):
        with patch.object(self.store, "complete_audit", side_effect=RuntimeError("database is locked")):
            with self.assertRaises(RuntimeError):
                self.orchestrator(StaticCheck(["warning"])).run(self.host.id)
        audit = self.store.latest_audit(self.host.id)
        self.assertEqual(audit.status, AuditStatus.FAILED)
        self.assertEqual(audit.error_message, "database is locked")
        self.assertFalse(self.store.list_issues(self.host.id))

    def test_cancel_stops_at_next_module(self):
        later = StaticCheck(["critical"])
        with self.assertRaises(AuditCancelledError):
            self.orchestrator(CancellingCheck(self.store), later).run(self.host.id)
        audit = self.store.latest_audit(self.host.id)
        self.assertEqual(audit.status, AuditStatus.FAILED)
        self.assertEqual(audit.error_message, "Audit was manually cancelled")
        self.assertEqual(later.calls, 0)
        self.assertEqual(self.store.list_issues(self.host.id), [])

    def test_cancel_after_last_module_discards_results(self):
        with self.assertRaises(AuditCancelledError):
            self.orchestrator(StaticCheck(["critical"]), CancellingCheck(self.store)).run(self.host.id)
        self.assertEqual(self.store.list_issues(self.host.id), [])

    def test_unknown_host(self):
        with self.assertRaises(HostNotFoundError):
            self.orchestrator(StaticCheck()).run("missing")

    def test_host_lock_rejects_second_audit(self):
        locks = HostLockRegistry()
        locks.acquire(self.host.id, "someone-else")
        orchestrator = AuditOrchestrator(self.store, [AuditStep("a", "A", 100, StaticCheck())], locks=locks)
        with self.assertRaises(AuditInProgressError):
            orchestrator.run(self.host.id)
        self.assertIsNone(self.store.latest_audit(self.host.id))

    def test_pending_audit_blocks_new_run(self):
        pending = self.store.create_audit(self.host.id)
        check = StaticCheck()
        with self.assertRaises(AuditInProgressError):
            self.orchestrator(check).run(self.host.id)
        self.assertEqual(check.calls, 0)
        self.assertEqual(self.store.latest_audit(self.host.id).id, pending.id)

    def test_lock_released_after_run(self):
        orchestrator = self.orchestrator(FailingCheck())
        with self.assertRaises(RuntimeError):
            orchestrator.run(self.host.id)
        self.assertFalse(orchestrator.locks.is_locked(self.host.id))

    def test_host_without_zone_completes_with_info(self):
        http = MagicMock()
        http.head.return_value = ResponseWrapper(200, {}, "", 80.0, "https://example.com/")
        check = PerformanceCheck(None, http_factory=lambda base_url: http)
        outcome = AuditOrchestrator(self.store, [AuditStep("performance", "Perf", 100, check)]).run(self.host.id)

        self.assertEqual(outcome.health_score, 99)
        issues = self.store.list_issues(self.host.id)
        self.assertEqual([i.title for i in issues], ["Cloudflare not configured"])
        self.assertEqual(issues[0].severity, Severity.INFO)
        self.assertEqual(issues[0].category, Category.PERFORMANCE)


class TestRunAll(unittest.TestCase):
    def test_one_failure_does_not_stop_the_sweep(self):
        store = AuditStore("sqlite://")
        make_host(store, "good.com")
        make_host(store, "bad.com")

        class PickyCheck(Check):
            category = Category.SEO

            def run(self, host):
                if host.domain == "bad.com":
                    raise RuntimeError("boom")
                return CheckResult()

        result = run_all(AuditOrchestrator(store, [AuditStep("seo", "SEO", 100, PickyCheck())]))
        self.assertEqual((result.succeeded, result.failed, result.total), (1, 1, 2))
        self.assertEqual(store.latest_audit("bad.com").status, AuditStatus.FAILED)
        self.assertEqual(store.latest_audit("good.com").status, AuditStatus.COMPLETED)

    def test_completion_failure_is_persisted_in_sweep(self):
        store = AuditStore("sqlite://")
        make_host(store, "locked.com")
        orchestrator = AuditOrchestrator(store, [AuditStep("a", "A", 100, StaticCheck(["info"]))])
        store.complete_audit = MagicMock(side_effect=RuntimeError("database is locked"))

        result = run_all(orchestrator)
        self.assertEqual((result.succeeded, result.failed), (0, 1))
        audit = store.latest_audit("locked.com")
        self.assertEqual(audit.status, AuditStatus.FAILED)
        self.assertEqual(audit.error_message, "database is locked")

if __name__ == '__main__':
    unittest.main()
