"""Errors raised while wiring fixtures and re-running tests."""

from __future__ import annotations

from typing import Optional, Sequence

from pagewright.errors import AutomationError


class FixtureError(AutomationError):
    code = "FIXTURE_ERROR"


class DependencyCycle(FixtureError):
    code = "DEPENDENCY_CYCLE"

    def __init__(self, path: Sequence[str]):
        self.path = list(path)
        super().__init__(
            "fixture dependency cycle: " + " -> ".join(self.path),
            details={"path": self.path},
        )


class UnknownFixture(FixtureError):
    code = "UNKNOWN_FIXTURE"

    def __init__(self, name: str, *, requested_by: Optional[str] = None):
        self.name = name
        self.requested_by = requested_by
        suffix = f" (requested by {requested_by!r})" if requested_by else ""
        super().__init__(f"unknown fixture {name!r}{suffix}", details={"name": name, "requested_by": requested_by})


class ScopeMismatch(FixtureError):
    code = "SCOPE_MISMATCH"


class FixtureSetupFailed(FixtureError):
    """A setup raised; everything created in the same chain was torn down first."""

    code = "FIXTURE_SETUP_FAILED"

    def __init__(self, name: str, chain: Sequence[str], cause: BaseException):
        self.name = name
        self.chain = list(chain)
        self.cause = cause
        super().__init__(
            f"setup of fixture {name!r} failed: {cause!r}",
            details={"fixture": name, "chain": self.chain, "cause": repr(cause)},
        )


class FixtureTeardownFailed(FixtureError):
    code = "FIXTURE_TEARDOWN_FAILED"

    def __init__(self, name: str, cause: BaseException):
        self.name = name
        self.cause = cause
        super().__init__(f"teardown of fixture {name!r} failed: {cause!r}", details={"fixture": name})


class RetriesExhausted(AutomationError):
    """Every attempt failed; the message carries the last attempt's failure."""

    code = "RETRIES_EXHAUSTED"

    def __init__(self, test_name: str, attempts: int, last_error: BaseException):
        self.test_name = test_name
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{test_name} failed after {attempts} attempt(s): {last_error}",
            details={"test": test_name, "attempts": attempts, "last_error": repr(last_error)},
        )
