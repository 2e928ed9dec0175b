from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

import structlog

log = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_DELAY_SECONDS = 5


class RetryExhausted(RuntimeError):
    """Raised when every attempt of a retried action failed."""

    def __init__(self, label: str, attempts: int, last_error: BaseException):
        self.label = label
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{label} failed after {attempts} attempts: {last_error}")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with a fixed delay between attempts.

    The policy holds no per-call state, so one instance can wrap any number
    of actions. Only exceptions listed in ``retry_on`` count as retryable
    failures; anything else propagates on the first occurrence.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    delay_seconds: float = DEFAULT_DELAY_SECONDS
    retry_on: tuple[type[Exception], ...] = (Exception,)
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)
    log_level: str = "warning"

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")

    def run(self, action: Callable[[], T], *, label: str = "action") -> T:
        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return action()
            except self.retry_on as exc:
                last_error = exc
                getattr(log, self.log_level)(
                    "Attempt failed",
                    action=label,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    error=str(exc),
                )
            if attempt < self.max_attempts:
                self.sleep(self.delay_seconds)
        assert last_error is not None
        raise RetryExhausted(label, self.max_attempts, last_error)
