"""Error taxonomy shared by the orchestration core and the test harness."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


class AutomationError(Exception):
    """Base class carrying a machine readable ``code`` and ``details``."""

    code = "AUTOMATION_ERROR"

    def __init__(self, message: str, *, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        if code is not None:
            self.code = code
        self.details = details or {}

    def as_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": str(self), "details": dict(self.details)}


class TimeoutExceeded(AutomationError):
    """Deadline reached; ``last_reason`` is the last concrete probe failure."""

    code = "TIMEOUT"

    def __init__(
        self,
        operation: str,
        *,
        timeout_ms: float,
        last_reason: Optional[str] = None,
        attempts: int = 0,
    ):
        reason = last_reason or "no attempt completed"
        super().__init__(
            f"{operation}: timeout {timeout_ms:.0f}ms exceeded ({reason})",
            details={
                "operation": operation,
                "timeout_ms": timeout_ms,
                "last_reason": last_reason,
                "attempts": attempts,
            },
        )
        self.operation = operation
        self.timeout_ms = timeout_ms
        self.last_reason = last_reason
        self.attempts = attempts


class AssertionTimeout(TimeoutExceeded, AssertionError):
    """An ``expect`` condition never held before its deadline."""

    code = "ASSERTION_TIMEOUT"


class SessionDisconnected(AutomationError):
    """The node, one of its ancestors, or the browser process is gone."""

    code = "SESSION_DISCONNECTED"

    def __init__(self, reason: str, *, node_id: Optional[str] = None):
        super().__init__(reason, details={"node_id": node_id})
        self.reason = reason
        self.node_id = node_id


class AlreadyResolved(AutomationError):
    code = "ALREADY_RESOLVED"


class ProbeFailure(AutomationError):
    """Raised by probes and predicates to report a retryable miss."""

    code = "PROBE_FAILURE"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class SoftAssertionsFailed(AutomationError, AssertionError):
    """Every soft assertion failure recorded in one enclosing unit."""

    code = "SOFT_ASSERTIONS_FAILED"

    def __init__(self, failures: Sequence[BaseException]):
        self.failures: List[BaseException] = list(failures)
        lines = [f"{len(self.failures)} soft assertion(s) failed:"]
        lines.extend(f"  {index}. {failure}" for index, failure in enumerate(self.failures, start=1))
        super().__init__(
            "\n".join(lines),
            details={"failures": [str(failure) for failure in self.failures]},
        )
