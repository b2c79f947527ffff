"""Retry helpers with exponential backoff for outbound service calls."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)

RATE_LIMIT_MARKERS = ("429", "rate limit", "resource exhausted", "resource_exhausted", "quota")


def is_rate_limit_error(error: BaseException) -> bool:
    """Return True when ``error`` signals rate limiting or an exhausted quota."""

    if getattr(error, "status_code", None) == 429 or getattr(error, "code", None) == 429:
        return True
    message = str(error).lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


def _never(_error: BaseException) -> bool:
    return False


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff policy.

    ``max_retries`` counts retries after the first call, so the wrapped
    function runs at most ``max_retries + 1`` times. Errors for which
    ``is_non_retryable`` returns True are re-raised immediately.
    """

    max_retries: int = 2
    base_delay_ms: int = 1000
    is_non_retryable: Callable[[BaseException], bool] = field(default=_never)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt + 1``."""

        return (self.base_delay_ms * (2**attempt)) / 1000.0

    def call(self, fn: Callable[[], T], *, deadline: Optional[float] = None) -> T:
        """Run ``fn`` until it succeeds, retries run out, or ``deadline`` passes.

        ``deadline`` is a ``time.monotonic()`` timestamp; a retry whose
        backoff would end past it is not attempted.
        """

        last_error: Optional[BaseException] = None
        for attempt in range(self.max_retries + 1):
            try:
                return fn()
            except Exception as exc:  # noqa: BLE001 - classified below
                last_error = exc

                if self.is_non_retryable(exc):
                    logger.warning(
                        "Non-retryable error, skipping retries",
                        extra={
                            "operation": "retry_abort",
                            "attempt": attempt + 1,
                            "error": str(exc),
                            "error_type": type(exc).__name__,
                        },
                    )
                    raise

                if attempt >= self.max_retries:
                    break

                delay = self.delay_for(attempt)
                if deadline is not None and time.monotonic() + delay >= deadline:
                    logger.warning(
                        "Retry budget exhausted by deadline",
                        extra={"operation": "retry_deadline", "attempt": attempt + 1},
                    )
                    break

                logger.warning(
                    f"Attempt {attempt + 1} failed, retrying in {int(delay * 1000)}ms",
                    extra={
                        "operation": "retry_backoff",
                        "attempt": attempt + 1,
                        "max_retries": self.max_retries,
                        "delay_ms": int(delay * 1000),
                        "error": str(exc),
                    },
                )
                self.sleep(delay)

        assert last_error is not None
        raise last_error


__all__ = ["RetryPolicy", "is_rate_limit_error", "RATE_LIMIT_MARKERS"]
