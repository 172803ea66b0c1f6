"""Browser orchestration core: session hierarchy, auto-waiting and dialog interception."""

from .assertions import SoftAssertions, expect, expect_condition, expect_soft
from .dialogs import Decision, DialogHub, DialogKind, DialogResolution, DialogState, PendingDialog, PendingPopup
from .errors import (
    AlreadyResolved,
    AssertionTimeout,
    AutomationError,
    ProbeFailure,
    SessionDisconnected,
    SoftAssertionsFailed,
    TimeoutExceeded,
)
from .hierarchy import Browser, Document, IsolatedSession, NodeKind, SessionManager, SubDocument
from .interfaces import ElementState
from .models import Cookie, LaunchOptions, RetryPolicy, SessionOptions, StorageState
from .retry import RetryResult, retry

__all__ = [
    "AlreadyResolved",
    "AssertionTimeout",
    "AutomationError",
    "Browser",
    "Cookie",
    "Decision",
    "DialogHub",
    "DialogKind",
    "DialogResolution",
    "DialogState",
    "Document",
    "ElementState",
    "IsolatedSession",
    "LaunchOptions",
    "NodeKind",
    "PendingDialog",
    "PendingPopup",
    "ProbeFailure",
    "RetryPolicy",
    "RetryResult",
    "SessionDisconnected",
    "SessionManager",
    "SessionOptions",
    "SoftAssertions",
    "SoftAssertionsFailed",
    "StorageState",
    "SubDocument",
    "TimeoutExceeded",
    "expect",
    "expect_condition",
    "expect_soft",
    "retry",
]
