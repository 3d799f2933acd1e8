"""
Error taxonomy and rule-based classification.

Classification tables are ordered lists of (predicate, value) rules evaluated
top to bottom; the first matching predicate wins. New provider codes or stderr
patterns are added by appending a rule, not by touching control flow.
"""
from enum import Enum
from typing import Any, Callable, List, NamedTuple, Optional


class AuditError(Exception):
    """Base class for every error raised by wpaudit."""


class ConfigurationError(AuditError):
    """Missing or malformed credential/setting. Fatal, never retried."""


class TransportError(AuditError):
    """Connection-level failure: refused, unreachable, auth rejected."""


class CommandTimeoutError(AuditError, TimeoutError):
    """A remote command ran past its deadline."""

    def __init__(self, message: str, timeout: float, hard: bool = False):
        super().__init__(message)
        self.timeout = timeout
        self.hard = hard


class RemoteCommandError(AuditError):
    """Remote command finished with a non-zero exit code."""

    def __init__(self, command: str, exit_code: int, stderr: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr or ""
        super().__init__(f"WP-CLI error (code {exit_code}): {self.first_line or 'no output'}")

    @property
    def first_line(self) -> str:
        for line in self.stderr.splitlines():
            line = line.strip()
            if line:
                return line
        return ""


class ProviderErrorCause(str, Enum):
    AUTHENTICATION = "authentication"
    INSUFFICIENT_PERMISSION = "insufficient_permission"
    NOT_FOUND = "not_found"
    NETWORK_UNREACHABLE = "network_unreachable"
    UNKNOWN = "unknown"


PROVIDER_HINTS = {
    ProviderErrorCause.AUTHENTICATION: "Check that CLOUDFLARE_API_TOKEN is set and still valid.",
    ProviderErrorCause.INSUFFICIENT_PERMISSION: 'Update the API token to include "Zone Analytics:Read" permission.',
    ProviderErrorCause.NOT_FOUND: "Verify the zone ID configured for this host is correct.",
    ProviderErrorCause.NETWORK_UNREACHABLE: "The analytics provider could not be reached. Try again later.",
    ProviderErrorCause.UNKNOWN: "Review the provider error message and token configuration.",
}


class ProviderError(AuditError):
    """Telemetry provider failure normalised to a cause and remediation hint."""

    def __init__(self, message: str, cause: ProviderErrorCause = ProviderErrorCause.UNKNOWN):
        super().__init__(message)
        self.cause = cause

    @property
    def hint(self) -> str:
        return PROVIDER_HINTS[self.cause]


PLATFORM_HINTS = {
    ProviderErrorCause.AUTHENTICATION: "Check that WPENGINE_API_USER and WPENGINE_API_PASSWORD are set and still valid.",
    ProviderErrorCause.INSUFFICIENT_PERMISSION: "The API user needs access to this install.",
    ProviderErrorCause.NOT_FOUND: "Verify the install name configured for this host.",
    ProviderErrorCause.NETWORK_UNREACHABLE: "The hosting platform API could not be reached. Try again later.",
    ProviderErrorCause.UNKNOWN: "Review the platform API error message.",
}


class PlatformError(ProviderError):
    """Hosting platform (WP Engine) API failure."""

    @property
    def hint(self) -> str:
        return PLATFORM_HINTS[self.cause]


class PartialDataError(AuditError):
    """An optional integration is unavailable. Downgraded to an info issue."""


class CrawlError(AuditError):
    """The external crawl tool failed or produced unusable output."""


class HostNotFoundError(AuditError):
    pass


class AuditNotFoundError(AuditError):
    pass


class InvalidTransitionError(AuditError):
    pass


class AuditInProgressError(AuditError):
    """Another audit already holds the lock for this host."""


class AuditCancelledError(AuditError):
    """The audit was moved to a terminal state by someone else mid-run."""


class ErrorRule(NamedTuple):
    predicate: Callable[[str], bool]
    value: Any


def contains(*needles: str) -> Callable[[str], bool]:
    """Case-insensitive substring predicate."""
    lowered = [n.lower() for n in needles]

    def _match(text: str) -> bool:
        t = text.lower()
        return any(n in t for n in lowered)

    return _match


def classify(text: str, rules: List[ErrorRule], default: Any = None) -> Any:
    for rule in rules:
        if rule.predicate(text):
            return rule.value
    return default


PROVIDER_ERROR_RULES: List[ErrorRule] = [
    ErrorRule(contains("401", "authentication", "invalid api token", "invalid access token", "code 10000"),
              ProviderErrorCause.AUTHENTICATION),
    ErrorRule(contains("403", "permission", "not authorized", "unauthorized to access"),
              ProviderErrorCause.INSUFFICIENT_PERMISSION),
    ErrorRule(contains("404", "not found", "could not route", "no data available"),
              ProviderErrorCause.NOT_FOUND),
    ErrorRule(contains("connection", "timed out", "timeout", "name resolution", "unreachable", "max retries"),
              ProviderErrorCause.NETWORK_UNREACHABLE),
]

# stderr substring -> friendlier explanation of a failed WP-CLI command
REMOTE_ERROR_RULES: List[ErrorRule] = [
    ErrorRule(contains("is not a registered wp command"), "WP-CLI command is not available on this host."),
    ErrorRule(contains("error establishing a database connection"), "WordPress cannot reach its database."),
    ErrorRule(contains("this does not seem to be a wordpress installation"), "No WordPress installation found at the remote path."),
    ErrorRule(contains("allowed memory size"), "PHP ran out of memory while running WP-CLI."),
]

# Raw core error string -> short user-facing sentence
USER_MESSAGE_RULES: List[ErrorRule] = [
    ErrorRule(contains("private key", "privatekey", "ssh key"),
              "SSH key configuration error. Check the WPENGINE_SSH_PRIVATE_KEY environment variable."),
    ErrorRule(contains("host not found"), "Host not found. It may have been deleted."),
    ErrorRule(contains("timed out", "timeout", "etimedout"), "Connection timed out. The server may be busy."),
    ErrorRule(contains("refused", "econnrefused"), "Connection refused. Check if the server is running."),
    ErrorRule(contains("authentication", "permission denied"), "Authentication failed. Verify your credentials."),
]

MAX_MESSAGE_LENGTH = 150


def classify_provider_error(message: str) -> ProviderErrorCause:
    return classify(message, PROVIDER_ERROR_RULES, ProviderErrorCause.UNKNOWN)


def explain_remote_error(err: RemoteCommandError) -> str:
    hint = classify(err.stderr, REMOTE_ERROR_RULES)
    if hint:
        return f"{hint} ({err.first_line})" if err.first_line else hint
    return err.first_line or str(err)


def describe_error(error: Any, limit: int = MAX_MESSAGE_LENGTH) -> str:
    """Rewrite a raw error (or its string) into a short user-facing sentence."""
    message = str(error)
    friendly: Optional[str] = classify(message, USER_MESSAGE_RULES)
    if friendly:
        return friendly
    if len(message) > limit:
        return message[: limit - 3] + "..."
    return message
