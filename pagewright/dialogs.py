"""Interception of page dialogs and popups.

Every :class:`~pagewright.hierarchy.Document` owns one :class:`DialogHub`.
The transport reports a dialog or a popup through :meth:`DialogHub.intercept_dialog`
or :meth:`DialogHub.intercept_popup`; the call suspends until a subscriber
resolves the :class:`PendingDialog` (or acknowledges the :class:`PendingPopup`)
and then hands the decision back to the transport.

Interceptions queue in arrival order.  Only the head of the queue is shown
to subscribers; the next one is shown once the head is resolved.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Deque, Dict, List, Optional, Tuple, Union

from .clock import guarded
from .errors import AlreadyResolved

if TYPE_CHECKING:
    from .hierarchy import Document

log = logging.getLogger(__name__)

Handler = Callable[[Any], Any]

DIALOG_EVENT = "dialog"
POPUP_EVENT = "popup"
CLOSE_EVENT = "close"


class DialogKind(str, Enum):
    INFORMATIONAL = "informational"
    CONFIRMABLE = "confirmable"
    TEXTUAL = "textual"

    @classmethod
    def from_native(cls, name: str) -> "DialogKind":
        """Map a browser dialog type (``alert``, ``confirm``...) to its kind."""

        try:
            return _NATIVE_KINDS[name]
        except KeyError:
            return cls(name)


_NATIVE_KINDS: Dict[str, DialogKind] = {
    "alert": DialogKind.INFORMATIONAL,
    "confirm": DialogKind.CONFIRMABLE,
    "beforeunload": DialogKind.CONFIRMABLE,
    "prompt": DialogKind.TEXTUAL,
}


class Decision(str, Enum):
    ACCEPT = "accept"
    DISMISS = "dismiss"


class DialogState(str, Enum):
    IDLE = "idle"
    AWAITING_RESOLUTION = "awaiting_resolution"


@dataclass(frozen=True, slots=True)
class DialogResolution:
    decision: Decision
    text: Optional[str] = None
    automatic: bool = False

    @property
    def accepted(self) -> bool:
        return self.decision is Decision.ACCEPT


class Subscriptions:
    """Handler registry for one Document's events."""

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Tuple[Handler, bool]]] = {}

    def on(self, event: str, handler: Handler) -> None:
        self._handlers.setdefault(event, []).append((handler, False))

    def once(self, event: str, handler: Handler) -> None:
        self._handlers.setdefault(event, []).append((handler, True))

    def off(self, event: str, handler: Optional[Handler] = None) -> None:
        if handler is None:
            self._handlers.pop(event, None)
            return
        entries = self._handlers.get(event, [])
        self._handlers[event] = [entry for entry in entries if entry[0] is not handler]

    def has(self, event: str) -> bool:
        return bool(self._handlers.get(event))

    def take(self, event: str) -> List[Handler]:
        """Return the handlers for one delivery, consuming ``once`` entries."""

        entries = self._handlers.get(event, [])
        self._handlers[event] = [entry for entry in entries if not entry[1]]
        return [handler for handler, _ in entries]

    def emit(self, event: str, payload: Any) -> List[asyncio.Task]:
        tasks: List[asyncio.Task] = []
        for handler in self.take(event):
            task = _invoke(handler, payload, event)
            if task is not None:
                tasks.append(task)
        return tasks

    def clear(self) -> None:
        self._handlers.clear()


def _invoke(handler: Handler, payload: Any, event: str) -> Optional[asyncio.Task]:
    try:
        result = handler(payload)
    except Exception:
        log.exception("%s handler %r failed", event, handler)
        return None
    if not inspect.isawaitable(result):
        return None
    task = asyncio.ensure_future(result)
    task.add_done_callback(lambda done: _report_handler_failure(done, handler, event))
    return task


def _report_handler_failure(task: asyncio.Future, handler: Handler, event: str) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.error("%s handler %r failed: %s", event, handler, exc, exc_info=exc)


class _Interception:
    event = ""

    def __init__(self, hub: "DialogHub") -> None:
        self._hub = hub
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def resolved(self) -> bool:
        return self._future.done()

    def _complete(self, value: Any) -> None:
        self._future.set_result(value)
        self._hub._advance(self)

    def _release(self) -> None:
        if not self._future.done():
            self._future.set_exception(self._hub.document.lifeline.error())


class PendingDialog(_Interception):
    """One outstanding dialog; resolve it exactly once."""

    event = DIALOG_EVENT

    def __init__(self, hub: "DialogHub", kind: DialogKind, message: str, default_text: Optional[str] = None) -> None:
        super().__init__(hub)
        self.kind = kind
        self.message = message
        self.default_text = default_text if kind is DialogKind.TEXTUAL else None

    def __repr__(self) -> str:
        return f"<PendingDialog {self.kind.value} {self.message!r}>"

    @property
    def resolution(self) -> Optional[DialogResolution]:
        if self._future.done() and not self._future.cancelled() and self._future.exception() is None:
            return self._future.result()
        return None

    def resolve(self, decision: Union[Decision, str], text: Optional[str] = None) -> DialogResolution:
        self._hub.document.lifeline.check()
        if self._future.done():
            raise AlreadyResolved(f"dialog {self.message!r} was already resolved")
        resolution = self._build(Decision(decision), text)
        log.debug("%s resolved with %s", self, resolution.decision.value)
        self._complete(resolution)
        return resolution

    def accept(self, text: Optional[str] = None) -> DialogResolution:
        return self.resolve(Decision.ACCEPT, text)

    def dismiss(self) -> DialogResolution:
        return self.resolve(Decision.DISMISS)

    def _build(self, decision: Decision, text: Optional[str], automatic: bool = False) -> DialogResolution:
        if decision is Decision.DISMISS or self.kind is not DialogKind.TEXTUAL:
            return DialogResolution(decision=decision, automatic=automatic)
        value = text if text is not None else (self.default_text or "")
        return DialogResolution(decision=decision, text=value, automatic=automatic)

    def _auto_dismiss(self) -> None:
        if not self._future.done():
            self._complete(self._build(Decision.DISMISS, None, automatic=True))

    @property
    def value(self) -> Any:
        """Value handed back to the page: text, a boolean, or ``None``."""

        resolution = self.resolution
        if resolution is None:
            return None
        if self.kind is DialogKind.TEXTUAL:
            return resolution.text
        if self.kind is DialogKind.CONFIRMABLE:
            return resolution.accepted
        return None


class PendingPopup(_Interception):
    """A newly opened Document waiting to be acknowledged by a subscriber."""

    event = POPUP_EVENT

    def __init__(self, hub: "DialogHub", document: "Document") -> None:
        super().__init__(hub)
        self.document = document
        self._timer: Optional[asyncio.TimerHandle] = None

    def __repr__(self) -> str:
        return f"<PendingPopup {self.document.id} {self.document.url!r}>"

    def acknowledge(self) -> "Document":
        self._hub.document.lifeline.check()
        if self._future.done():
            raise AlreadyResolved(f"popup {self.document.id} was already acknowledged")
        self._settle()
        return self.document

    def _settle(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._complete(self.document)

    def _auto_acknowledge(self) -> None:
        self._timer = None
        if not self._future.done():
            log.info("%s acknowledged automatically after %.0fms", self, self._hub.popup_timeout_ms)
            self._settle()

    def _release(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        super()._release()


class DialogHub:
    """Suspend/resume state machine for one Document's dialogs and popups."""

    def __init__(
        self,
        document: "Document",
        subscriptions: Subscriptions,
        *,
        popup_timeout_ms: float,
        dismiss_unhandled: bool = False,
    ) -> None:
        self.document = document
        self.subscriptions = subscriptions
        self.popup_timeout_ms = popup_timeout_ms
        self.dismiss_unhandled = dismiss_unhandled
        self._queue: Deque[_Interception] = deque()
        self._idle: Optional[asyncio.Event] = None

    # ------------------------------------------------------------------
    # state
    # ------------------------------------------------------------------
    @property
    def state(self) -> DialogState:
        return DialogState.AWAITING_RESOLUTION if self._queue else DialogState.IDLE

    @property
    def pending(self) -> Optional[_Interception]:
        return self._queue[0] if self._queue else None

    def blocking_reason(self) -> Optional[str]:
        head = self.pending
        if isinstance(head, PendingDialog):
            return f"{head.kind.value} dialog {head.message!r} awaiting resolution"
        if isinstance(head, PendingPopup):
            return f"popup {head.document.url!r} awaiting acknowledgement"
        return None

    # ------------------------------------------------------------------
    # transport entry points
    # ------------------------------------------------------------------
    async def intercept_dialog(
        self,
        kind: Union[DialogKind, str],
        message: str,
        default_text: Optional[str] = None,
    ) -> DialogResolution:
        """Queue a dialog and wait until it is resolved."""

        self.document.lifeline.check()
        if not isinstance(kind, DialogKind):
            kind = DialogKind.from_native(kind)
        dialog = PendingDialog(self, kind, message, default_text)
        await self._enqueue_and_wait(dialog)
        return dialog._future.result()

    async def intercept_popup(self, url: str) -> "Document":
        """Adopt a popup Document opened by this one and wait for acknowledgement."""

        self.document.lifeline.check()
        popup_document = await self.document.manager.adopt_popup(self.document, url)
        pending = PendingPopup(self, popup_document)
        await self._enqueue_and_wait(pending)
        return popup_document

    async def settled(self, *, timeout: Optional[float] = None) -> None:
        """Wait until no interception is pending on this Document."""

        if not self._queue:
            return
        await guarded(self._idle_event().wait(), self.document.lifeline, timeout)

    def abandon(self, reason: str) -> None:
        """Dismiss dialogs and acknowledge popups left pending, returning to idle."""

        for item in list(self._queue):
            if item.resolved:
                continue
            log.warning("Releasing %r on %s: %s", item, self.document.id, reason)
            if isinstance(item, PendingDialog):
                item._auto_dismiss()
            elif isinstance(item, PendingPopup):
                item._settle()

    def close(self) -> None:
        for item in list(self._queue):
            item._release()
        self._queue.clear()
        if self._idle is not None:
            self._idle.set()

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------
    def _idle_event(self) -> asyncio.Event:
        if self._idle is None:
            self._idle = asyncio.Event()
            if not self._queue:
                self._idle.set()
        return self._idle

    async def _enqueue_and_wait(self, item: _Interception) -> None:
        self._queue.append(item)
        self._idle_event().clear()
        log.debug("Queued %r on %s (depth %d)", item, self.document.id, len(self._queue))
        if len(self._queue) == 1:
            self._present(item)
        await guarded(asyncio.shield(item._future), self.document.lifeline)

    def _present(self, item: _Interception) -> None:
        if isinstance(item, PendingPopup):
            loop = asyncio.get_running_loop()
            item._timer = loop.call_later(self.popup_timeout_ms / 1000, item._auto_acknowledge)
        if not self.subscriptions.has(item.event):
            if isinstance(item, PendingDialog) and self.dismiss_unhandled:
                log.info("No dialog subscriber on %s, dismissing %r", self.document.id, item)
                item._auto_dismiss()
                return
            log.debug("No %s subscriber on %s for %r", item.event, self.document.id, item)
            return
        self.subscriptions.emit(item.event, item)

    def _advance(self, item: _Interception) -> None:
        try:
            self._queue.remove(item)
        except ValueError:
            return
        if self._queue:
            head = self._queue[0]
            if not head.resolved:
                self._present(head)
            return
        if self._idle is not None:
            self._idle.set()
