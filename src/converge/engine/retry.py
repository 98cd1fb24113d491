"""Retry policy for transient adapter failures."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
)

from converge.engine.errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff bounded by an attempt ceiling."""

    max_attempts: int = 5
    backoff_initial: float = 1.0
    backoff_max: float = 30.0
    backoff_multiplier: float = 2.0


def _log_retry(label: str) -> Callable[[RetryCallState], None]:
    def _before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        delay = state.next_action.sleep if state.next_action else 0.0
        logger.warning(
            "%s: transient failure (attempt %d): %s; retrying in %.1fs",
            label,
            state.attempt_number,
            exc,
            delay,
        )

    return _before_sleep


def retrying(
    policy: RetryPolicy,
    *,
    label: str,
    cancel: threading.Event | None = None,
    sleep: Callable[[float], None] | None = None,
) -> Retrying:
    """Build a ``tenacity.Retrying`` that retries only ``TransientError``.

    Retrying stops at the attempt ceiling or as soon as *cancel* is set; in
    both cases the last ``TransientError`` is re-raised.
    """
    stop = stop_after_attempt(policy.max_attempts)
    if cancel is not None:
        stop = stop | stop_when_event_set(cancel)
    kwargs = {}
    if sleep is not None:
        kwargs["sleep"] = sleep
    return Retrying(
        retry=retry_if_exception_type(TransientError),
        stop=stop,
        wait=wait_exponential(
            multiplier=policy.backoff_initial,
            exp_base=policy.backoff_multiplier,
            max=policy.backoff_max,
        ),
        before_sleep=_log_retry(label),
        reraise=True,
        **kwargs,
    )


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    label: str,
    cancel: threading.Event | None = None,
    sleep: Callable[[float], None] | None = None,
) -> tuple[T, int]:
    """Call *fn* under *policy*. Returns ``(result, attempts)``."""
    retryer = retrying(policy, label=label, cancel=cancel, sleep=sleep)
    result = retryer(fn)
    return result, retryer.statistics.get("attempt_number", 1)
