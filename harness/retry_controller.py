"""Whole-test re-execution on top of fixture resolution.

Every attempt resolves its fixtures into a brand new test scope, so a retry
never sees the session, document or storage of the attempt before it.
Worker and process fixtures are shared between attempts.
"""

from __future__ import annotations

import logging
import time
import traceback
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from pagewright.assertions import SoftAssertions
from pagewright.clock import maybe_await

from .errors import FixtureTeardownFailed, RetriesExhausted
from .fixtures import FixtureResolver, ScopeCache, fixture_names

log = logging.getLogger(__name__)

PASSED = "passed"
FLAKY = "flaky"
FAILED = "failed"

AttemptCallback = Callable[["AttemptRecord"], None]


@dataclass(slots=True)
class AttemptRecord:
    """Result information for a single attempt."""

    number: int
    ok: bool
    duration_ms: float
    error: Optional[BaseException] = None
    traceback: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "attempt": self.number,
            "ok": self.ok,
            "duration_ms": round(self.duration_ms, 3),
        }
        if self.error is not None:
            payload["error"] = f"{type(self.error).__name__}: {self.error}"
        return payload


@dataclass(slots=True)
class TestOutcome:
    name: str
    max_attempts: int
    attempts: List[AttemptRecord] = field(default_factory=list)

    __test__ = False

    @property
    def passed(self) -> bool:
        return bool(self.attempts) and self.attempts[-1].ok

    @property
    def status(self) -> str:
        if not self.passed:
            return FAILED
        return FLAKY if len(self.attempts) > 1 else PASSED

    @property
    def last_error(self) -> Optional[BaseException]:
        for attempt in reversed(self.attempts):
            if attempt.error is not None:
                return attempt.error
        return None

    def raise_for_failure(self) -> None:
        if self.passed:
            return
        error = self.attempts[-1].error
        raise RetriesExhausted(self.name, len(self.attempts), error) from error

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "max_attempts": self.max_attempts,
            "attempts": [attempt.as_dict() for attempt in self.attempts],
        }


async def run_with_retry(
    test_fn: Callable[..., Any],
    max_attempts: int = 1,
    *,
    resolver: FixtureResolver,
    worker: Optional[ScopeCache] = None,
    name: Optional[str] = None,
    on_attempt: Optional[AttemptCallback] = None,
) -> TestOutcome:
    """Run ``test_fn`` until it passes or ``max_attempts`` attempts have failed."""

    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    name = name or getattr(test_fn, "__qualname__", repr(test_fn))

    owns_worker = worker is None
    if worker is None:
        worker = resolver.new_worker("worker-0")
    requested = fixture_names(test_fn)
    outcome = TestOutcome(name=name, max_attempts=max_attempts)

    try:
        for number in range(1, max_attempts + 1):
            record = await _run_attempt(test_fn, requested, number, resolver=resolver, worker=worker, name=name)
            outcome.attempts.append(record)
            if on_attempt is not None:
                on_attempt(record)
            if record.ok:
                if number > 1:
                    log.info("%s passed on attempt %d/%d", name, number, max_attempts)
                break
            log.info("%s attempt %d/%d failed: %s", name, number, max_attempts, record.error)
    finally:
        if owns_worker:
            await _teardown_worker(worker, outcome)
    return outcome


async def _teardown_worker(worker: ScopeCache, outcome: TestOutcome) -> None:
    try:
        await worker.teardown()
    except FixtureTeardownFailed as exc:
        if outcome.attempts and outcome.attempts[-1].ok:
            last = outcome.attempts[-1]
            last.ok = False
            last.error = exc
            last.traceback = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


async def _run_attempt(
    test_fn: Callable[..., Any],
    requested: List[str],
    number: int,
    *,
    resolver: FixtureResolver,
    worker: ScopeCache,
    name: str,
) -> AttemptRecord:
    test_scope = resolver.new_test(f"{name}#{number}")
    soft = SoftAssertions()
    error: Optional[BaseException] = None
    started = time.perf_counter()
    try:
        kwargs = await resolver.resolve_many(requested, worker=worker, test=test_scope)
        soft.activate()
        try:
            await maybe_await(test_fn, **kwargs)
        finally:
            soft.deactivate()
        soft.raise_if_failed()
    except Exception as exc:
        error = exc
    finally:
        try:
            await test_scope.teardown()
        except FixtureTeardownFailed as exc:
            if error is None:
                error = exc
    duration_ms = (time.perf_counter() - started) * 1000.0
    formatted = None
    if error is not None:
        formatted = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    return AttemptRecord(number=number, ok=error is None, duration_ms=duration_ms, error=error, traceback=formatted)
