"""Polling engine behind every auto-waiting action and assertion.

``retry`` probes a live target immediately, then again after each poll
interval, until the success predicate holds or the deadline passes.  The
caller always gets either the first satisfying value or a
:class:`~pagewright.errors.TimeoutExceeded` carrying the last concrete reason
the target was not ready.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Type

from .clock import Deadline, Lifeline, MonotonicClock, guarded, maybe_await, pause
from .errors import ProbeFailure, TimeoutExceeded
from .models import RetryPolicy

log = logging.getLogger(__name__)

# A probe issued at the deadline still gets this long to answer.
PROBE_GRACE_SECONDS = 0.05


@dataclass(slots=True)
class RetryResult:
    value: Any
    attempts: int
    elapsed_ms: float


def _default_describe(value: Any) -> str:
    return f"condition not met (last value: {value!r})"


async def retry(
    probe: Callable[[], Any],
    predicate: Optional[Callable[[Any], Any]] = None,
    *,
    policy: Optional[RetryPolicy] = None,
    timeout_ms: Optional[float] = None,
    poll_interval_ms: Optional[float] = None,
    lifeline: Optional[Lifeline] = None,
    clock: Any = None,
    describe: Optional[Callable[[Any], str]] = None,
    operation: str = "retry",
    error_cls: Type[TimeoutExceeded] = TimeoutExceeded,
) -> RetryResult:
    """Poll ``probe`` until ``predicate(value)`` is truthy.

    ``probe`` and ``predicate`` may be plain or async callables.  Either may
    raise :class:`ProbeFailure` to report a retryable miss; any other
    exception propagates at once.  Polls for one operation never overlap and
    the loop stops on the first success.
    """

    policy = (policy or RetryPolicy()).with_overrides(timeout_ms=timeout_ms, poll_interval_ms=poll_interval_ms)
    clock = clock or MonotonicClock()
    describe = describe or _default_describe
    deadline = Deadline(clock, policy.timeout_ms)
    intervals = policy.intervals()
    attempts = 0
    last_reason: Optional[str] = None

    while True:
        attempts += 1
        try:
            value = await guarded(
                maybe_await(probe),
                lifeline,
                timeout=max(deadline.remaining(), PROBE_GRACE_SECONDS),
            )
            satisfied = True if predicate is None else await maybe_await(predicate, value)
            if satisfied:
                elapsed = deadline.elapsed_ms()
                log.debug("%s satisfied after %d attempt(s) in %.0fms", operation, attempts, elapsed)
                return RetryResult(value=value, attempts=attempts, elapsed_ms=elapsed)
            last_reason = describe(value)
        except ProbeFailure as exc:
            last_reason = exc.reason
        except asyncio.TimeoutError:
            last_reason = "probe did not answer before the deadline"

        remaining = deadline.remaining()
        if remaining <= 0:
            log.debug("%s timed out after %d attempt(s): %s", operation, attempts, last_reason)
            raise error_cls(
                operation,
                timeout_ms=policy.timeout_ms,
                last_reason=last_reason,
                attempts=attempts,
            )
        await pause(clock, min(next(intervals), remaining), lifeline)
