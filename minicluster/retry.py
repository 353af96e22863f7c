"""Bounded, fixed-interval retry helpers."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

from minicluster.exceptions import RetriableError
from minicluster.utils import log

R = TypeVar("R")


def retry_after(
    attempts: int,
    operation: Callable[[], R],
    interval: float,
    retry_on: Tuple[Type[BaseException], ...] = (RetriableError,),
) -> R:
    """Call ``operation`` up to ``attempts`` times, sleeping ``interval`` seconds in between.

    Returns the first successful result. Exceptions that are not instances of
    ``retry_on`` propagate immediately; once the attempts are used up the last
    exception is re-raised.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except retry_on as exc:
            log("DEBUG", f"Attempt {attempt}/{attempts} failed: {exc}")
            if attempt == attempts:
                raise
        time.sleep(interval)
    raise AssertionError("unreachable")  # pragma: no cover


@dataclass(frozen=True)
class RetryPolicy:
    """A reusable (attempts, interval) pair."""

    attempts: int
    interval: float

    def run(
        self,
        operation: Callable[[], R],
        retry_on: Optional[Tuple[Type[BaseException], ...]] = None,
    ) -> R:
        if retry_on is None:
            return retry_after(self.attempts, operation, self.interval)
        return retry_after(self.attempts, operation, self.interval, retry_on=retry_on)
