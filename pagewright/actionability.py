"""Actionability checks applied before an action touches an element."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from .interfaces import BoundingBox, ElementState
from .models import RetryPolicy
from .retry import RetryResult, retry

if TYPE_CHECKING:
    from .hierarchy import SubDocument

log = logging.getLogger(__name__)

NOT_ATTACHED = "element not attached"
NOT_VISIBLE = "element not visible"
NOT_STABLE = "element not stable"
NO_POINTER_EVENTS = "element does not receive pointer events"
DISABLED = "element disabled"
NOT_EDITABLE = "element not editable"

# Actions that additionally require an editable target.
EDITING_ACTIONS = frozenset({"fill"})


def actionability_failure(
    state: ElementState,
    previous_box: Optional[BoundingBox],
    *,
    requires_editable: bool = False,
) -> Optional[str]:
    """Return the first unmet condition, or ``None`` when the element is ready.

    Every condition is evaluated against the same poll.  Stability needs the
    probe's own flag and an identical bounding box on the previous poll.
    """

    if not state.attached:
        return NOT_ATTACHED
    if not state.visible or state.bounding_box is None:
        return NOT_VISIBLE
    if not state.stable or previous_box is None or previous_box != state.bounding_box:
        return NOT_STABLE
    if not state.receives_events:
        return NO_POINTER_EVENTS
    if not state.enabled:
        return DISABLED
    if requires_editable and not state.editable:
        return NOT_EDITABLE
    return None


class _ActionabilityTracker:
    """Carries the bounding box across consecutive polls of one operation."""

    def __init__(self, requires_editable: bool) -> None:
        self.requires_editable = requires_editable
        self.previous_box: Optional[BoundingBox] = None
        self.last_failure: Optional[str] = None

    def check(self, state: ElementState) -> bool:
        failure = actionability_failure(state, self.previous_box, requires_editable=self.requires_editable)
        self.previous_box = state.bounding_box if state.attached else None
        self.last_failure = failure
        return failure is None

    def describe(self, _state: ElementState) -> str:
        return self.last_failure or NOT_ATTACHED


async def wait_for_actionable(
    frame: "SubDocument",
    selector: str,
    *,
    action: str,
    policy: RetryPolicy,
) -> RetryResult:
    """Poll ``selector`` in ``frame`` until every actionability condition holds."""

    tracker = _ActionabilityTracker(requires_editable=action in EDITING_ACTIONS)
    document = frame.document

    async def probe() -> ElementState:
        return await document.probe.probe(frame, selector)

    result = await retry(
        probe,
        tracker.check,
        policy=policy,
        lifeline=frame.lifeline,
        clock=document.clock,
        describe=tracker.describe,
        operation=f"{action}({selector!r})",
    )
    log.debug("%s(%r) actionable after %d poll(s)", action, selector, result.attempts)
    return result
