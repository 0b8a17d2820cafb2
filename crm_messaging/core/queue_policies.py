import random
from dataclasses import dataclass
from typing import Callable, Optional

from crm_messaging.core.config import Settings

JITTER_RATIO = 0.1


@dataclass
class RetryPolicy:
    max_retries: int
    base_delay_seconds: float
    backoff_multiplier: float
    max_delay_seconds: float
    jitter_enabled: bool = True

    def __post_init__(self):
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("delays must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")

    def is_exhausted(self, failure_count: int) -> bool:
        return failure_count >= self.max_retries

    def compute_delay(self, attempt: int, rng: Optional[Callable[[], float]] = None) -> float:
        """Delay in seconds before the retry that follows ``attempt`` (0-based).

        ``min(base * multiplier ** attempt, max)``, widened by up to +10%
        when jitter is enabled.
        """
        delay = min(
            self.base_delay_seconds * (self.backoff_multiplier ** max(0, attempt)),
            self.max_delay_seconds,
        )
        if self.jitter_enabled:
            delay += delay * JITTER_RATIO * (rng or random.random)()
        return delay


def policy_from_settings(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_retries=settings.RETRY_MAX_RETRIES,
        base_delay_seconds=settings.RETRY_BASE_DELAY_SECONDS,
        backoff_multiplier=settings.RETRY_BACKOFF_MULTIPLIER,
        max_delay_seconds=settings.RETRY_MAX_DELAY_SECONDS,
        jitter_enabled=settings.RETRY_JITTER_ENABLED,
    )


DEFAULT_POLICY = RetryPolicy(
    max_retries=3,
    base_delay_seconds=5.0,
    backoff_multiplier=2.0,
    max_delay_seconds=300.0,
    jitter_enabled=True,
)
