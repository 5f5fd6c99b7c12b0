"""Bounded exponential backoff with jitter."""
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Iterator, Tuple, Type, TypeVar

from shared.errors import RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """
    Capped exponential backoff: base_delay * 2**attempt up to max_delay, each
    delay scaled by a random factor in [1 - jitter, 1 + jitter]. After
    max_attempts failed calls the policy gives up with RetryExhaustedError.
    """
    base_delay: float = 1.0
    max_delay: float = 30.0
    max_attempts: int = 10
    jitter: float = 0.2
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def delay(self, attempt: int) -> float:
        capped = min(self.base_delay * (2 ** attempt), self.max_delay)
        if self.jitter:
            capped *= 1 + self.rng.uniform(-self.jitter, self.jitter)
        return max(capped, 0.0)

    def delays(self) -> Iterator[float]:
        """Delays to wait between attempts (one fewer than max_attempts)."""
        for attempt in range(self.max_attempts - 1):
            yield self.delay(attempt)

    def run(
        self,
        fn: Callable[[], T],
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        sleep: Callable[[float], None] = time.sleep,
        description: str = "operation",
    ) -> T:
        last_error = None
        delays = self.delays()
        for attempt in range(1, self.max_attempts + 1):
            try:
                return fn()
            except retry_on as e:
                last_error = e
                if attempt == self.max_attempts:
                    break
                wait = next(delays)
                logger.warning(
                    f"{description} failed (attempt {attempt}/{self.max_attempts}): {e}; "
                    f"retrying in {wait:.2f}s"
                )
                sleep(wait)
        raise RetryExhaustedError(
            f"{description} gave up after {self.max_attempts} attempts", last_error=last_error
        )
