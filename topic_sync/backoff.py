"""Batch-level exponential backoff."""

import logging

logger = logging.getLogger(__name__)


class BackoffStrategy:
    """Doubling delay capped at a ceiling, shared by every batch in a run.

    next_delay() is called once per rate-limited batch and returns how long to
    sleep before retrying it. reset() is called after a batch with no rate
    limited items. Retries that hit the ceiling are counted as saturated so the
    caller can give up on a batch that never gets through.

    Not thread-safe; only the coordinating task may call it.
    """

    def __init__(self, base_delay: float = 2.0, max_delay: float = 60.0, max_saturated_retries: int = 5):
        if base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_saturated_retries = max_saturated_retries
        self.current_delay = base_delay
        self.saturated_retries = 0
        self.total_retries = 0

    def next_delay(self) -> float:
        """Double the delay (capped) and return it."""
        self.total_retries += 1
        doubled = self.current_delay * 2 if self.current_delay > 0 else 0.0
        if doubled >= self.max_delay:
            if self.current_delay >= self.max_delay:
                self.saturated_retries += 1
                logger.warning(
                    f"Backoff saturated at {self.max_delay:.1f}s "
                    f"({self.saturated_retries}/{self.max_saturated_retries} retries at ceiling)"
                )
            doubled = self.max_delay
        self.current_delay = doubled
        return self.current_delay

    def reset(self) -> None:
        """Return to the base delay after a clean batch."""
        self.current_delay = self.base_delay
        self.saturated_retries = 0

    def clear_saturation(self) -> None:
        """Forget saturated retries but keep the current delay.

        Used after abandoning a batch: the next batch starts its own retry
        budget without dropping back to the base delay.
        """
        self.saturated_retries = 0

    @property
    def exhausted(self) -> bool:
        """True once the ceiling has been hit more times in a row than allowed."""
        return self.saturated_retries > self.max_saturated_retries

    def __repr__(self) -> str:
        return (
            f"BackoffStrategy(current={self.current_delay}, base={self.base_delay}, "
            f"max={self.max_delay}, saturated={self.saturated_retries})"
        )
