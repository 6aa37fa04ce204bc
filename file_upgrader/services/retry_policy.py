from dataclasses import dataclass

from file_upgrader.config import Settings


@dataclass(frozen=True)
class RetryPolicy:
    """
    Delay before a failed submission is requeued.

    A multiplier of 1.0 gives a fixed delay; anything larger backs off
    exponentially up to max_delay_seconds. The attempt limit lives on the
    FileTask itself.
    """

    base_delay_seconds: float = 5.0
    backoff_multiplier: float = 1.0
    max_delay_seconds: float = 60.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            base_delay_seconds=settings.retry_delay_seconds,
            backoff_multiplier=settings.retry_backoff_multiplier,
            max_delay_seconds=settings.retry_max_delay_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        exponent = max(attempt - 1, 0)
        delay = self.base_delay_seconds * (self.backoff_multiplier ** exponent)
        return min(delay, self.max_delay_seconds)
