# remote.py
# Invariants:
# - One SSH connection per command; no pooling, no multiplexing.
# - Two deadlines: the per-command deadline inside the worker, and a hard
#   deadline of timeout + HARD_TIMEOUT_BUFFER on the caller side that fires
#   even if the transport never reports an error.
# - The connection is closed on every exit path; closing twice is a no-op.
import io
import json
import logging
import re
import socket
import threading
import time
from concurrent.futures import Future, wait
from typing import Any, Callable, Dict, Iterable, List, Optional

import paramiko

from .config import Settings
from .errors import (
    CommandTimeoutError,
    ConfigurationError,
    PartialDataError,
    RemoteCommandError,
    TransportError,
)
from .models import Host

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120.0
CHECKSUM_TIMEOUT = 180.0
BULK_TIMEOUT = 300.0
HARD_TIMEOUT_BUFFER = 5.0
POLL_INTERVAL = 0.1


def load_private_key(text: str) -> paramiko.PKey:
    for key_cls in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
        try:
            return key_cls.from_private_key(io.StringIO(text))
        except (paramiko.SSHException, ValueError, TypeError):
            continue
    raise ConfigurationError("Cannot parse private key from WPENGINE_SSH_PRIVATE_KEY")


def parse_json_relaxed(text: str) -> Any:
    """
    Parse JSON that may be surrounded by PHP notices.
    Tries the whole text, then the outermost [...] and {...} spans.
    """
    s = text.lstrip("﻿").strip()
    try:
        return json.loads(s)
    except ValueError:
        pass
    for open_ch, close_ch in (("[", "]"), ("{", "}")):
        lb = s.find(open_ch)
        rb = s.rfind(close_ch)
        if lb != -1 and rb > lb:
            try:
                return json.loads(s[lb : rb + 1])
            except ValueError:
                continue
    raise PartialDataError(f"Unparseable JSON output: {s[:200]}")


class _Session:
    """Owns one SSH client; close() is idempotent and thread-safe."""

    def __init__(self, client: Any):
        self.client = client
        self._closed = False
        self._lock = threading.Lock()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            self.client.close()
        except (paramiko.SSHException, OSError) as e:
            logger.debug("Ignoring error while closing SSH client: %s", e)


class RemoteChannel:
    def __init__(
        self,
        settings: Settings,
        client_factory: Callable[[], Any] = paramiko.SSHClient,
        pkey: Any = None,
        hard_timeout_buffer: float = HARD_TIMEOUT_BUFFER,
        poll_interval: float = POLL_INTERVAL,
    ):
        self.settings = settings
        self.client_factory = client_factory
        self.hard_timeout_buffer = hard_timeout_buffer
        self.poll_interval = poll_interval
        self._pkey = pkey

    def _resolve_key(self) -> Any:
        if self._pkey is None:
            self._pkey = load_private_key(self.settings.require_private_key())
        return self._pkey

    @staticmethod
    def build_command(command: str, fmt: Optional[str]) -> str:
        command = command.strip()
        if command.startswith("wp "):
            command = command[3:]
        flag = ""
        if fmt and fmt != "table" and "--format=" not in command:
            flag = f" --format={fmt}"
        return f"wp {command}{flag}"

    def hostname_for(self, host: Host) -> str:
        return self.settings.ssh_host_template.format(install=host.install_name)

    def execute(self, host: Host, command: str, fmt: Optional[str] = "json", timeout: float = DEFAULT_TIMEOUT) -> Any:
        """
        Run one WP-CLI command on `host`.
        Returns trimmed stdout, or the decoded JSON when fmt == "json".
        """
        pkey = self._resolve_key()
        full_command = self.build_command(command, fmt)
        session = _Session(self.client_factory())
        future: Future = Future()

        def worker():
            try:
                out = self._run(session, host, full_command, pkey, timeout)
            except Exception as e:
                future.set_exception(e)
            else:
                future.set_result(out)

        hard_timeout = timeout + self.hard_timeout_buffer
        t0 = time.monotonic()
        thread = threading.Thread(target=worker, name=f"ssh-{host.install_name}", daemon=True)
        thread.start()
        try:
            done, _ = wait([future], timeout=hard_timeout)
            if not done:
                logger.error("wp %s on %s hit hard timeout (%.1fs)", command, host.install_name, hard_timeout)
                raise CommandTimeoutError(
                    f"SSH operation timed out after {hard_timeout:.0f}s (hard timeout) on {host.install_name}",
                    timeout,
                    hard=True,
                )
            output = future.result()
        finally:
            session.close()

        logger.debug("PASS: %s on %s (%.1fs)", full_command, host.install_name, time.monotonic() - t0)
        if fmt == "json":
            return parse_json_relaxed(output) if output else []
        return output

    def _run(self, session: _Session, host: Host, command: str, pkey: Any, timeout: float) -> str:
        client = session.client
        hostname = self.hostname_for(host)
        try:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            client.connect(
                hostname,
                port=self.settings.ssh_port,
                username=host.install_name,
                pkey=pkey,
                timeout=self.settings.ssh_connect_timeout,
                banner_timeout=self.settings.ssh_connect_timeout,
                auth_timeout=self.settings.ssh_connect_timeout,
                look_for_keys=False,
                allow_agent=False,
            )
        except paramiko.AuthenticationException as e:
            raise TransportError(f"SSH authentication failed for {host.install_name}: {e}")
        except (paramiko.SSHException, socket.timeout, OSError) as e:
            raise TransportError(f"SSH connection error ({hostname}): {e}")

        try:
            channel = client.get_transport().open_session()
            channel.exec_command(command)
        except (paramiko.SSHException, OSError) as e:
            raise TransportError(f"SSH session error ({hostname}): {e}")

        stdout: List[bytes] = []
        stderr: List[bytes] = []
        started = time.monotonic()
        while True:
            self._drain(channel, stdout, stderr)
            if channel.exit_status_ready():
                break
            if time.monotonic() - started > timeout:
                raise CommandTimeoutError(
                    f"WP-CLI command '{command}' timed out after {timeout:.0f}s on {host.install_name}",
                    timeout,
                )
            time.sleep(self.poll_interval)

        self._drain(channel, stdout, stderr)
        code = channel.recv_exit_status()
        out = b"".join(stdout).decode("utf-8", errors="replace")
        err = b"".join(stderr).decode("utf-8", errors="replace")
        if code != 0:
            logger.warning("%s exit=%s on %s: %s", command, code, host.install_name, err.strip()[:300])
            raise RemoteCommandError(command, code, err or out)
        return out.strip()

    @staticmethod
    def _drain(channel: Any, stdout: List[bytes], stderr: List[bytes]) -> None:
        while channel.recv_ready():
            stdout.append(channel.recv(65536))
        while channel.recv_stderr_ready():
            stderr.append(channel.recv_stderr(65536))


# verify-checksums warning lines, by failure class
CHECKSUM_PATTERNS = {
    "modified": re.compile(r"File doesn't verify against checksum:\s*(\S+)"),
    "missing": re.compile(r"File doesn't exist:\s*(\S+)"),
    "unexpected": re.compile(r"File should not exist:\s*(\S+)"),
}


def parse_checksum_failures(text: str) -> Dict[str, List[str]]:
    failures: Dict[str, List[str]] = {k: [] for k in CHECKSUM_PATTERNS}
    for line in text.splitlines():
        for kind, pattern in CHECKSUM_PATTERNS.items():
            m = pattern.search(line)
            if m:
                failures[kind].append(m.group(1))
                break
    return failures


def _to_int(text: Any) -> int:
    try:
        return int(str(text).strip())
    except ValueError:
        return 0


class WordPressCli:
    """Typed WP-CLI helpers bound to one host."""

    def __init__(self, channel: RemoteChannel, host: Host):
        self.channel = channel
        self.host = host

    def run(self, command: str, fmt: Optional[str] = "json", timeout: float = DEFAULT_TIMEOUT) -> Any:
        return self.channel.execute(self.host, command, fmt=fmt, timeout=timeout)

    # --- Read commands ---

    def plugin_list(self) -> List[Dict[str, Any]]:
        return self.run("plugin list")

    def core_version(self) -> str:
        return self.run("core version", fmt="table").strip()

    def core_check_update(self) -> List[Dict[str, Any]]:
        try:
            updates = self.run("core check-update")
        except PartialDataError:
            # "Success: WordPress is at the latest version." is not JSON
            return []
        return updates if isinstance(updates, list) else []

    def verify_checksums(self) -> Dict[str, Any]:
        try:
            self.run("core verify-checksums", fmt="table", timeout=CHECKSUM_TIMEOUT)
        except RemoteCommandError as e:
            failures = parse_checksum_failures(e.stderr)
            return {"valid": False, "error": e.first_line, **failures}
        return {"valid": True, "error": None, "modified": [], "missing": [], "unexpected": []}

    def db_tables(self) -> List[Dict[str, Any]]:
        tables = self.run("db size --tables --size_format=b")
        return tables if isinstance(tables, list) else []

    def autoload_options(self) -> List[Dict[str, Any]]:
        options = self.run("option list --autoload=on --fields=option_name,size_bytes")
        return options if isinstance(options, list) else []

    def config_get(self, name: str) -> str:
        return self.run(f"config get {name}", fmt="table").strip()

    def user_list(self, role: Optional[str] = None) -> List[Dict[str, Any]]:
        role_flag = f" --role={role}" if role else ""
        return self.run(f"user list{role_flag}")

    def post_count(self, post_type: str) -> int:
        return _to_int(self.run(f"post list --post_type={post_type} --format=count", fmt="table"))

    def revision_count(self) -> int:
        return self.post_count("revision")

    def transient_count(self) -> int:
        return _to_int(self.run("transient list --format=count", fmt="table"))

    def spam_comment_count(self) -> int:
        return _to_int(self.run("comment list --status=spam --format=count", fmt="table"))

    # --- Remediation commands ---

    def update_plugin(self, slug: str) -> str:
        return self.run(f"plugin update {slug}", fmt="table")

    def update_all_plugins(self, exclude: Iterable[str] = ()) -> str:
        skip = ",".join(sorted(exclude))
        flag = f" --exclude={skip}" if skip else ""
        return self.run(f"plugin update --all{flag}", fmt="table", timeout=BULK_TIMEOUT)

    def delete_plugin(self, slug: str) -> str:
        return self.run(f"plugin delete {slug}", fmt="table")

    def delete_revisions(self) -> str:
        return self.run(
            "post delete $(wp post list --post_type=revision --format=ids) --force",
            fmt="table",
            timeout=BULK_TIMEOUT,
        )

    def delete_expired_transients(self) -> str:
        return self.run("transient delete --expired", fmt="table")

    def optimize_db(self) -> str:
        return self.run("db optimize", fmt="table", timeout=BULK_TIMEOUT)

    def flush_cache(self) -> str:
        return self.run("cache flush", fmt="table")
