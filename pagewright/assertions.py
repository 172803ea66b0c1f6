"""Auto-retrying assertions, hard and soft.

``await expect(document, "#status").to_have_text("Saved")`` keeps probing
until the text matches or the expect timeout passes.  Soft assertions record
their failure in the active :class:`SoftAssertions` collector and let the
caller carry on; the collector raises every failure together at the end of
the enclosing unit.
"""

from __future__ import annotations

import logging
import re
from contextvars import ContextVar, Token
from typing import Any, Callable, List, Optional, Pattern, Union

from .actionability import DISABLED, NOT_ATTACHED, NOT_VISIBLE
from .errors import AssertionTimeout, SoftAssertionsFailed
from .hierarchy import Document, SubDocument
from .interfaces import ElementState
from .models import DEFAULT_EXPECT_TIMEOUT_MS, RetryPolicy
from .retry import retry

log = logging.getLogger(__name__)

TextMatcher = Union[str, Pattern[str]]
Check = Callable[[ElementState], Optional[str]]

_active_collector: ContextVar[Optional["SoftAssertions"]] = ContextVar("pagewright_soft_assertions", default=None)


class SoftAssertions:
    """Collects soft assertion failures for one enclosing unit (usually a test)."""

    def __init__(self) -> None:
        self.failures: List[AssertionError] = []
        self._tokens: List[Token] = []

    @property
    def failed(self) -> bool:
        return bool(self.failures)

    def record(self, failure: AssertionError) -> None:
        log.info("Soft assertion failed: %s", failure)
        self.failures.append(failure)

    def raise_if_failed(self) -> None:
        if self.failures:
            raise SoftAssertionsFailed(self.failures)

    def activate(self) -> None:
        self._tokens.append(_active_collector.set(self))

    def deactivate(self) -> None:
        _active_collector.reset(self._tokens.pop())

    def __enter__(self) -> "SoftAssertions":
        self.activate()
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> bool:
        self.deactivate()
        if exc_type is None:
            self.raise_if_failed()
        return False

    async def __aenter__(self) -> "SoftAssertions":
        return self.__enter__()

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> bool:
        return self.__exit__(exc_type, exc, tb)


def current_soft_assertions() -> Optional[SoftAssertions]:
    return _active_collector.get()


def _report(failure: AssertionError, soft: bool) -> None:
    collector = _active_collector.get() if soft else None
    if collector is None:
        if soft:
            log.warning("Soft assertion outside a SoftAssertions block, raising: %s", failure)
        raise failure
    collector.record(failure)


# ----------------------------------------------------------------------
# state checks: return None when the condition holds, else the reason
# ----------------------------------------------------------------------
def _visible(state: ElementState) -> Optional[str]:
    if not state.attached:
        return NOT_ATTACHED
    if not state.visible:
        return NOT_VISIBLE
    return None


def _hidden(state: ElementState) -> Optional[str]:
    if state.attached and state.visible:
        return "element is visible"
    return None


def _enabled(state: ElementState) -> Optional[str]:
    if not state.attached:
        return NOT_ATTACHED
    return None if state.enabled else DISABLED


def _disabled(state: ElementState) -> Optional[str]:
    if not state.attached:
        return NOT_ATTACHED
    return "element enabled" if state.enabled else None


def _text_matches(expected: TextMatcher, actual: str, *, partial: bool) -> bool:
    if isinstance(expected, re.Pattern):
        return expected.search(actual) is not None
    return expected in actual if partial else actual == expected


def _describe_matcher(expected: TextMatcher) -> str:
    if isinstance(expected, re.Pattern):
        return f"/{expected.pattern}/"
    return repr(expected)


class ElementAssertions:
    def __init__(
        self,
        target: Union[Document, SubDocument],
        selector: str,
        *,
        soft: bool = False,
        negate: bool = False,
        timeout_ms: Optional[float] = None,
    ) -> None:
        self._frame = target.main_frame if isinstance(target, Document) else target
        self._selector = selector
        self._soft = soft
        self._negate = negate
        self._timeout_ms = timeout_ms

    @property
    def not_(self) -> "ElementAssertions":
        return ElementAssertions(
            self._frame,
            self._selector,
            soft=self._soft,
            negate=not self._negate,
            timeout_ms=self._timeout_ms,
        )

    async def to_be_visible(self, *, timeout_ms: Optional[float] = None) -> None:
        await self._assert("to_be_visible", _visible, timeout_ms)

    async def to_be_hidden(self, *, timeout_ms: Optional[float] = None) -> None:
        await self._assert("to_be_hidden", _hidden, timeout_ms)

    async def to_be_enabled(self, *, timeout_ms: Optional[float] = None) -> None:
        await self._assert("to_be_enabled", _enabled, timeout_ms)

    async def to_be_disabled(self, *, timeout_ms: Optional[float] = None) -> None:
        await self._assert("to_be_disabled", _disabled, timeout_ms)

    async def to_have_text(self, expected: TextMatcher, *, timeout_ms: Optional[float] = None) -> None:
        await self._assert("to_have_text", self._text_check(expected, partial=False), timeout_ms)

    async def to_contain_text(self, expected: TextMatcher, *, timeout_ms: Optional[float] = None) -> None:
        await self._assert("to_contain_text", self._text_check(expected, partial=True), timeout_ms)

    async def to_have_count(self, expected: int, *, timeout_ms: Optional[float] = None) -> None:
        def check(state: ElementState) -> Optional[str]:
            if state.count == expected:
                return None
            return f"count was {state.count}, expected {expected}"

        await self._assert("to_have_count", check, timeout_ms)

    async def to_have_attribute(self, name: str, value: TextMatcher, *, timeout_ms: Optional[float] = None) -> None:
        def check(state: ElementState) -> Optional[str]:
            if not state.attached:
                return NOT_ATTACHED
            if name not in state.attributes:
                return f"attribute {name!r} missing"
            actual = state.attributes[name]
            if _text_matches(value, actual, partial=False):
                return None
            return f"attribute {name!r} was {actual!r}, expected {_describe_matcher(value)}"

        await self._assert("to_have_attribute", check, timeout_ms)

    def _text_check(self, expected: TextMatcher, *, partial: bool) -> Check:
        def check(state: ElementState) -> Optional[str]:
            if not state.attached:
                return NOT_ATTACHED
            actual = state.text or ""
            if _text_matches(expected, actual, partial=partial):
                return None
            return f"text was {actual!r}, expected {_describe_matcher(expected)}"

        return check

    async def _assert(self, name: str, check: Check, timeout_ms: Optional[float]) -> None:
        frame = self._frame
        document = frame.document
        policy = document.expect_policy(timeout_ms if timeout_ms is not None else self._timeout_ms)
        prefix = "not_." if self._negate else ""
        reasons: List[str] = []

        async def probe() -> ElementState:
            return await document.probe.probe(frame, self._selector)

        def predicate(state: ElementState) -> bool:
            reason = check(state)
            if self._negate:
                if reason is None:
                    reasons.append(f"{name} still holds")
                    return False
                return True
            if reason is not None:
                reasons.append(reason)
            return reason is None

        try:
            await retry(
                probe,
                predicate,
                policy=policy,
                lifeline=frame.lifeline,
                clock=document.clock,
                describe=lambda _state: reasons[-1],
                operation=f"expect({self._selector!r}).{prefix}{name}",
                error_cls=AssertionTimeout,
            )
        except AssertionTimeout as failure:
            _report(failure, self._soft)


def expect(
    target: Union[Document, SubDocument],
    selector: str,
    *,
    soft: bool = False,
    timeout_ms: Optional[float] = None,
) -> ElementAssertions:
    return ElementAssertions(target, selector, soft=soft, timeout_ms=timeout_ms)


def expect_soft(
    target: Union[Document, SubDocument],
    selector: str,
    *,
    timeout_ms: Optional[float] = None,
) -> ElementAssertions:
    return ElementAssertions(target, selector, soft=True, timeout_ms=timeout_ms)


async def expect_condition(
    condition: Callable[[], Any],
    *,
    timeout_ms: Optional[float] = None,
    poll_interval_ms: Optional[float] = None,
    message: str = "condition",
    soft: bool = False,
    target: Optional[Union[Document, SubDocument]] = None,
) -> Any:
    """Poll ``condition`` until it returns a truthy value and return that value."""

    lifeline = None
    clock = None
    policy = RetryPolicy(timeout_ms=DEFAULT_EXPECT_TIMEOUT_MS if timeout_ms is None else timeout_ms)
    if target is not None:
        frame = target.main_frame if isinstance(target, Document) else target
        lifeline = frame.lifeline
        clock = frame.document.clock
        policy = frame.document.expect_policy(timeout_ms)
    try:
        result = await retry(
            condition,
            bool,
            policy=policy,
            poll_interval_ms=poll_interval_ms,
            lifeline=lifeline,
            clock=clock,
            describe=lambda value: f"{message} returned {value!r}",
            operation=f"expect_condition({message})",
            error_cls=AssertionTimeout,
        )
    except AssertionTimeout as failure:
        _report(failure, soft)
        return None
    return result.value
