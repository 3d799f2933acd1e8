import os
import sys
import threading
import time
import unittest
from unittest.mock import MagicMock

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from wpaudit.config import Settings
from wpaudit.errors import CommandTimeoutError, ConfigurationError, PartialDataError, RemoteCommandError, TransportError
from wpaudit.models import Host
from wpaudit.remote import RemoteChannel, WordPressCli, parse_checksum_failures, parse_json_relaxed


class FakeChannel:
    def __init__(self, stdout=b"", stderr=b"", code=0, finishes=True):
        self.stdout = [stdout] if stdout else []
        self.stderr = [stderr] if stderr else []
        self.code = code
        self.finishes = finishes
        self.command = None

    def exec_command(self, command):
        self.command = command

    def recv_ready(self):
        return bool(self.stdout)

    def recv(self, n):
        return self.stdout.pop(0)

    def recv_stderr_ready(self):
        return bool(self.stderr)

    def recv_stderr(self, n):
        return self.stderr.pop(0)

    def exit_status_ready(self):
        return self.finishes

    def recv_exit_status(self):
        return self.code


class FakeClient:
    def __init__(self, channel=None, connect_error=None):
        self.channel = channel or FakeChannel()
        self.connect_error = connect_error
        self.connect_kwargs = None
        self.hostname = None
        self.close_calls = 0

    def set_missing_host_key_policy(self, policy):
        pass

    def connect(self, hostname, **kwargs):
        self.hostname = hostname
        self.connect_kwargs = kwargs
        if self.connect_error:
            raise self.connect_error

    def get_transport(self):
        transport = MagicMock()
        transport.open_session.return_value = self.channel
        return transport

    def close(self):
        self.close_calls += 1


class HangingClient(FakeClient):
    """connect() blocks until close() is called."""

    def __init__(self):
        super().__init__()
        self.released = threading.Event()

    def connect(self, hostname, **kwargs):
        self.released.wait(10)
        raise OSError("socket closed")

    def close(self):
        super().close()
        self.released.set()


HOST = Host(id="h1", name="Example", domain="example.com", install_name="example")


def make_channel(client, **kwargs):
    return RemoteChannel(Settings(ssh_private_key="key"), client_factory=lambda: client, pkey=object(), **kwargs)


class TestBuildCommand(unittest.TestCase):
    def test_format_flag(self):
        self.assertEqual(RemoteChannel.build_command("plugin list", "json"), "wp plugin list --format=json")
        self.assertEqual(RemoteChannel.build_command("wp plugin list", "json"), "wp plugin list --format=json")

    def test_table_and_explicit_format(self):
        self.assertEqual(RemoteChannel.build_command("core version", "table"), "wp core version")
        self.assertEqual(RemoteChannel.build_command("post list --format=count", "json"), "wp post list --format=count")


class TestRemoteChannel(unittest.TestCase):
    def test_json_output(self):
        client = FakeClient(FakeChannel(stdout=b'[{"name": "akismet", "status": "active"}]'))
        result = make_channel(client).execute(HOST, "plugin list")
        self.assertEqual(result, [{"name": "akismet", "status": "active"}])
        self.assertEqual(client.channel.command, "wp plugin list --format=json")
        self.assertEqual(client.hostname, "example.ssh.wpengine.net")
        self.assertEqual(client.connect_kwargs["username"], "example")
        self.assertFalse(client.connect_kwargs["look_for_keys"])
        self.assertEqual(client.close_calls, 1)

    def test_empty_json_output_is_empty_list(self):
        client = FakeClient(FakeChannel())
        self.assertEqual(make_channel(client).execute(HOST, "user list"), [])

    def test_text_output_trimmed(self):
        client = FakeClient(FakeChannel(stdout=b"6.4.2\n"))
        self.assertEqual(make_channel(client).execute(HOST, "core version", fmt="table"), "6.4.2")

    def test_non_zero_exit(self):
        client = FakeClient(FakeChannel(stderr=b"Error: boom\n", code=1))
        with self.assertRaises(RemoteCommandError) as ctx:
            make_channel(client).execute(HOST, "plugin list")
        self.assertEqual(ctx.exception.exit_code, 1)
        self.assertEqual(ctx.exception.first_line, "Error: boom")
        self.assertEqual(client.close_calls, 1)

    def test_connect_failure_is_transport_error(self):
        client = FakeClient(connect_error=OSError("Connection refused"))
        with self.assertRaises(TransportError):
            make_channel(client).execute(HOST, "plugin list")
        self.assertEqual(client.close_calls, 1)

    def test_missing_key_fails_before_connecting(self):
        factory = MagicMock()
        channel = RemoteChannel(Settings(), client_factory=factory)
        with self.assertRaises(ConfigurationError):
            channel.execute(HOST, "plugin list")
        factory.assert_not_called()

    def test_command_timeout(self):
        client = FakeClient(FakeChannel(finishes=False))
        channel = make_channel(client, poll_interval=0.01)
        with self.assertRaises(CommandTimeoutError) as ctx:
            channel.execute(HOST, "db optimize", fmt="table", timeout=0.2)
        self.assertFalse(ctx.exception.hard)
        self.assertEqual(client.close_calls, 1)

    def test_hard_timeout_when_transport_hangs(self):
        client = HangingClient()
        channel = make_channel(client, hard_timeout_buffer=0.3)
        start = time.monotonic()
        with self.assertRaises(CommandTimeoutError) as ctx:
            channel.execute(HOST, "plugin list", timeout=0.2)
        elapsed = time.monotonic() - start
        self.assertTrue(ctx.exception.hard)
        self.assertLess(elapsed, 3.0)
        self.assertTrue(client.released.is_set())
        self.assertEqual(client.close_calls, 1)


class TestParsing(unittest.TestCase):
    def test_json_with_php_notice(self):
        text = "PHP Notice: Undefined index in foo.php\n[{\"a\": 1}]"
        self.assertEqual(parse_json_relaxed(text), [{"a": 1}])

    def test_unparseable_json(self):
        with self.assertRaises(PartialDataError):
            parse_json_relaxed("Success: WordPress is at the latest version.")

    def test_checksum_failures(self):
        text = (
            "Warning: File doesn't verify against checksum: wp-login.php\n"
            "Warning: File doesn't exist: wp-includes/version.php\n"
            "Warning: File should not exist: wp-admin/evil.php\n"
            "Error: WordPress installation doesn't verify against checksums.\n"
        )
        failures = parse_checksum_failures(text)
        self.assertEqual(failures["modified"], ["wp-login.php"])
        self.assertEqual(failures["missing"], ["wp-includes/version.php"])
        self.assertEqual(failures["unexpected"], ["wp-admin/evil.php"])


class TestWordPressCli(unittest.TestCase):
    def setUp(self):
        self.channel = MagicMock()
        self.cli = WordPressCli(self.channel, HOST)

    def test_verify_checksums_failure(self):
        self.channel.execute.side_effect = RemoteCommandError(
            "wp core verify-checksums", 1,
            "Warning: File doesn't verify against checksum: wp-login.php\nError: WordPress installation doesn't verify against checksums.",
        )
        result = self.cli.verify_checksums()
        self.assertFalse(result["valid"])
        self.assertEqual(result["modified"], ["wp-login.php"])

    def test_verify_checksums_success(self):
        self.channel.execute.return_value = "Success: WordPress installation verifies against checksums."
        self.assertTrue(self.cli.verify_checksums()["valid"])

    def test_core_check_update_success_text(self):
        self.channel.execute.side_effect = PartialDataError("Unparseable JSON output")
        self.assertEqual(self.cli.core_check_update(), [])

    def test_update_all_excludes(self):
        self.channel.execute.return_value = "Success"
        self.cli.update_all_plugins(exclude={"woocommerce", "acf-pro"})
        self.channel.execute.assert_called_once_with(
            HOST, "plugin update --all --exclude=acf-pro,woocommerce", fmt="table", timeout=300.0)

    def test_counts(self):
        self.channel.execute.return_value = "42"
        self.assertEqual(self.cli.revision_count(), 42)
        self.channel.execute.assert_called_with(
            HOST, "post list --post_type=revision --format=count", fmt="table", timeout=120.0)

if __name__ == '__main__':
    unittest.main()
