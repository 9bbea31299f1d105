"""Bounded exponential back-off for retryable failures."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional, TypeVar

from common.errors import BoxError, NetworkPermanent, NetworkTransient, OperationCancelled
from common.logging_utils import extra_context

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    return min(max_delay, base_delay * (2 ** (attempt - 1)))


def call_with_retry(
    func: Callable[[], T],
    *,
    attempts: int,
    base_delay: float,
    max_delay: float,
    cancel_event: Optional[threading.Event] = None,
    describe: str = "operation",
) -> T:
    """Call ``func`` until it succeeds, retrying errors flagged ``retryable``.

    Back-off waits on ``cancel_event`` so an interrupt is honored immediately.
    A transient failure that outlives every attempt is escalated to
    ``NetworkPermanent``; other retryable errors are re-raised as they are.

    Args:
        func: Zero-argument callable doing one attempt.
        attempts: Total attempts, at least 1.
        base_delay: Delay after the first failure in seconds.
        max_delay: Upper bound for any single delay.
        cancel_event: Interrupt flag checked between attempts.
        describe: Label used in log records.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelled(f"{describe} cancelled")
        try:
            return func()
        except BoxError as exc:
            if not exc.retryable:
                raise
            if attempt >= attempts:
                if isinstance(exc, NetworkTransient):
                    raise NetworkPermanent(
                        f"{exc.message} (gave up after {attempts} attempts)",
                        package=exc.package,
                        cause=exc,
                    ) from exc
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                "%s failed (%s); retrying in %.2fs",
                describe,
                exc,
                delay,
                extra=extra_context(
                    event="retry",
                    component="retry",
                    action=describe,
                    outcome=type(exc).__name__,
                    attempt=attempt,
                )
            )
            if cancel_event is not None:
                if cancel_event.wait(delay):
                    raise OperationCancelled(f"{describe} cancelled") from exc
            elif delay > 0:
                time.sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover
