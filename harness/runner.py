"""Suite runner: distributes tests across worker lanes and collects outcomes."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from .config import RunConfig, ensure_run_directories
from .errors import FixtureTeardownFailed
from .fixtures import FixtureRegistry, FixtureResolver, ScopeCache
from .retry_controller import FAILED, FLAKY, PASSED, AttemptRecord, TestOutcome, run_with_retry
from .structured_logging import StructuredLogger, prepare_log_paths

log = logging.getLogger(__name__)


@dataclass(slots=True)
class TestCase:
    """One registered test function."""

    name: str
    fn: Callable[..., Any]
    max_attempts: Optional[int] = None

    __test__ = False


@dataclass(slots=True)
class SuiteSummary:
    """Structured payload returned by :class:`SuiteRunner`."""

    run_id: str
    outcomes: List[TestOutcome]
    duration_ms: float
    teardown_errors: List[str] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def success(self) -> bool:
        return self.count(FAILED) == 0 and not self.teardown_errors

    def outcome(self, name: str) -> TestOutcome:
        for outcome in self.outcomes:
            if outcome.name == name:
                return outcome
        raise KeyError(name)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "success": self.success,
            "duration_ms": round(self.duration_ms, 3),
            "passed": self.count(PASSED),
            "flaky": self.count(FLAKY),
            "failed": self.count(FAILED),
            "tests": [outcome.as_dict() for outcome in self.outcomes],
            "teardown_errors": list(self.teardown_errors),
        }


class SuiteRunner:
    """Runs registered tests with fixture injection and test-level retries."""

    def __init__(
        self,
        registry: FixtureRegistry,
        config: Optional[RunConfig] = None,
        *,
        run_id: Optional[str] = None,
        write_events: bool = True,
    ) -> None:
        self.registry = registry
        self.config = config or RunConfig()
        self.run_id = run_id or time.strftime("%Y%m%d-%H%M%S") + "-" + uuid.uuid4().hex[:6]
        self._write_events = write_events
        self._cases: List[TestCase] = []

    @property
    def cases(self) -> List[TestCase]:
        return list(self._cases)

    def add(self, fn: Callable[..., Any], *, name: Optional[str] = None, max_attempts: Optional[int] = None) -> TestCase:
        case = TestCase(name=name or fn.__name__, fn=fn, max_attempts=max_attempts)
        if any(existing.name == case.name for existing in self._cases):
            raise ValueError(f"duplicate test name {case.name!r}")
        self._cases.append(case)
        return case

    def test(
        self,
        name: Optional[str] = None,
        *,
        max_attempts: Optional[int] = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.add(fn, name=name, max_attempts=max_attempts)
            return fn

        return decorator

    def run(self) -> SuiteSummary:
        return asyncio.run(self.run_async())

    async def run_async(self, cases: Optional[Sequence[TestCase]] = None) -> SuiteSummary:
        cases = list(self._cases if cases is None else cases)
        logger = self._open_logger()
        resolver = FixtureResolver(self.registry, recorder=logger.log_fixture if logger else None)
        teardown_errors: List[str] = []
        lanes = [cases[index::self.config.workers] for index in range(self.config.workers)]
        lanes = [lane for lane in lanes if lane]
        started = time.perf_counter()
        log.info("Run %s: %d test(s) on %d worker(s)", self.run_id, len(cases), len(lanes))
        try:
            try:
                results = await asyncio.gather(
                    *(self._run_lane(f"worker-{index}", lane, resolver, logger, teardown_errors) for index, lane in enumerate(lanes))
                )
            finally:
                try:
                    await resolver.shutdown()
                except FixtureTeardownFailed as exc:
                    teardown_errors.append(str(exc))
            outcomes_by_name = {outcome.name: outcome for lane in results for outcome in lane}
            summary = SuiteSummary(
                run_id=self.run_id,
                outcomes=[outcomes_by_name[case.name] for case in cases],
                duration_ms=(time.perf_counter() - started) * 1000.0,
                teardown_errors=teardown_errors,
            )
            if logger is not None:
                logger.log_summary(summary.as_dict())
        finally:
            if logger is not None:
                logger.close()
        log.info(
            "Run %s finished: %d passed, %d flaky, %d failed",
            self.run_id,
            summary.count(PASSED),
            summary.count(FLAKY),
            summary.count(FAILED),
        )
        return summary

    async def _run_lane(
        self,
        worker_id: str,
        cases: List[TestCase],
        resolver: FixtureResolver,
        logger: Optional[StructuredLogger],
        teardown_errors: List[str],
    ) -> List[TestOutcome]:
        worker: ScopeCache = resolver.new_worker(worker_id)
        outcomes: List[TestOutcome] = []
        try:
            for case in cases:
                on_attempt = None
                if logger is not None:
                    on_attempt = self._attempt_logger(logger, case, worker_id)
                outcome = await run_with_retry(
                    case.fn,
                    case.max_attempts or self.config.max_attempts,
                    resolver=resolver,
                    worker=worker,
                    name=case.name,
                    on_attempt=on_attempt,
                )
                log.info("%s [%s] %s", case.name, worker_id, outcome.status)
                outcomes.append(outcome)
        finally:
            try:
                await worker.teardown()
            except FixtureTeardownFailed as exc:
                teardown_errors.append(str(exc))
        return outcomes

    @staticmethod
    def _attempt_logger(logger: StructuredLogger, case: TestCase, worker_id: str) -> Callable[[AttemptRecord], None]:
        def record(attempt: AttemptRecord) -> None:
            logger.log_attempt(
                test=case.name,
                worker=worker_id,
                attempt=attempt.number,
                ok=attempt.ok,
                duration_ms=attempt.duration_ms,
                error=attempt.as_dict().get("error"),
            )

        return record

    def _open_logger(self) -> Optional[StructuredLogger]:
        if not self._write_events:
            return None
        dirs = ensure_run_directories(self.run_id, self.config)
        return StructuredLogger(self.run_id, prepare_log_paths(self.run_id, dirs["base"]))
