import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence, TypeVar

from .crawler import FALLBACK_SETTINGS, CrawlSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRY_ATTEMPTS = 2
RETRY_DELAY = 30.0

SKIP_CONDITIONS: Sequence[str] = (
    "Authentication required",
    "Site unreachable",
    "Timeout exceeded",
    "License invalid",
)


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable-failure"
    TERMINAL = "terminal-failure"


@dataclass
class Attempt:
    number: int
    settings: CrawlSettings
    outcome: AttemptOutcome
    error: Optional[str] = None


class CrawlRetryController:
    """
    Runs a crawl attempt up to retries + 1 times.

    Failures whose message contains a skip condition are terminal. Every
    retry waits `delay` seconds and runs with `fallback` in place of the
    previous settings. The last error is re-raised when attempts run out.
    """

    def __init__(
        self,
        retries: int = RETRY_ATTEMPTS,
        delay: float = RETRY_DELAY,
        skip_conditions: Sequence[str] = SKIP_CONDITIONS,
        fallback: CrawlSettings = FALLBACK_SETTINGS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.retries = retries
        self.delay = delay
        self.skip_conditions = [c.lower() for c in skip_conditions]
        self.fallback = fallback
        self.sleep = sleep
        self.attempts: List[Attempt] = []

    def classify(self, error: BaseException) -> AttemptOutcome:
        message = str(error).lower()
        if any(cond in message for cond in self.skip_conditions):
            return AttemptOutcome.TERMINAL
        return AttemptOutcome.RETRYABLE

    def run(self, attempt_fn: Callable[[CrawlSettings], T], settings: CrawlSettings) -> T:
        self.attempts = []
        current = settings
        for number in range(1, self.retries + 2):
            try:
                result = attempt_fn(current)
            except Exception as e:
                outcome = self.classify(e)
                self.attempts.append(Attempt(number, current, outcome, str(e)))
                logger.warning("[Crawl] Attempt %d failed (%s): %s", number, outcome.value, e)
                if outcome is AttemptOutcome.TERMINAL or number > self.retries:
                    raise
                logger.info("[Crawl] Retrying in %.0fs with fallback settings (%d pages)",
                            self.delay, self.fallback.max_pages)
                self.sleep(self.delay)
                current = self.fallback
                continue
            self.attempts.append(Attempt(number, current, AttemptOutcome.SUCCESS))
            return result
        # range() above always returns or raises
        raise RuntimeError("unreachable")
