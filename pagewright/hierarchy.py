"""Ownership hierarchy of a controlled browser.

``Browser -> IsolatedSession -> Document -> SubDocument``.  The
:class:`SessionManager` keeps every live node in an arena indexed by id and
is the only place nodes are created or closed.  Ownership edges run parent to
child; children only hold weak references back to their parent.  Closing a
node closes its whole subtree children-first, exactly once.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import itertools
import logging
import weakref
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional
from urllib.parse import urlsplit

from .actionability import wait_for_actionable
from .clock import Deadline, Lifeline, MonotonicClock, guarded
from .dialogs import CLOSE_EVENT, POPUP_EVENT, DialogHub, PendingPopup, Subscriptions
from .errors import SessionDisconnected, TimeoutExceeded
from .interfaces import ElementProbe, ElementState, Transport
from .models import Cookie, LaunchOptions, RetryPolicy, SessionOptions, StorageState
from .retry import PROBE_GRACE_SECONDS

log = logging.getLogger(__name__)


class NodeKind(str, Enum):
    BROWSER = "browser"
    SESSION = "session"
    DOCUMENT = "document"
    SUBDOCUMENT = "subdocument"


class Node:
    """Common behaviour of every hierarchy node."""

    kind: NodeKind

    def __init__(self, manager: "SessionManager", node_id: str, parent: Optional["Node"], events: Subscriptions) -> None:
        self.manager = manager
        self.id = node_id
        self._parent_ref = weakref.ref(parent) if parent is not None else None
        self._children: List[Node] = []
        self.lifeline = Lifeline(node_id)
        self.events = events
        self._closed = False

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<{type(self).__name__} {self.id} {state}>"

    @property
    def parent(self) -> Optional["Node"]:
        return self._parent_ref() if self._parent_ref is not None else None

    @property
    def children(self) -> List["Node"]:
        return list(self._children)

    @property
    def is_closed(self) -> bool:
        return self._closed

    def ensure_open(self) -> None:
        self.lifeline.check()

    def on(self, event: str, handler: Callable[[Any], Any]) -> None:
        self.events.on(event, handler)

    def once(self, event: str, handler: Callable[[Any], Any]) -> None:
        self.events.once(event, handler)

    def off(self, event: str, handler: Optional[Callable[[Any], Any]] = None) -> None:
        self.events.off(event, handler)

    def post_order(self) -> List["Node"]:
        ordered: List[Node] = []
        for child in self._children:
            ordered.extend(child.post_order())
        ordered.append(self)
        return ordered

    async def close(self) -> None:
        await self.manager.close(self)


class Browser(Node):
    kind = NodeKind.BROWSER

    def __init__(
        self,
        manager: "SessionManager",
        node_id: str,
        events: Subscriptions,
        *,
        transport: Transport,
        probe: ElementProbe,
        options: LaunchOptions,
    ) -> None:
        super().__init__(manager, node_id, None, events)
        self.transport = transport
        self.probe = probe
        self.options = options
        self.disconnect_reason: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return not self._closed and self.disconnect_reason is None

    @property
    def sessions(self) -> List["IsolatedSession"]:
        return [child for child in self._children if isinstance(child, IsolatedSession)]

    async def new_session(self, options: Optional[SessionOptions] = None) -> "IsolatedSession":
        return await self.manager.create_session(self, options)

    async def disconnect(self, reason: str) -> None:
        await self.manager.disconnect(self, reason)


class IsolatedSession(Node):
    """Isolation boundary with private cookies and origin storage."""

    kind = NodeKind.SESSION

    def __init__(
        self,
        manager: "SessionManager",
        node_id: str,
        browser: Browser,
        events: Subscriptions,
        options: SessionOptions,
    ) -> None:
        super().__init__(manager, node_id, browser, events)
        self.options = options
        state = options.storage_state or StorageState()
        self._cookies: List[Cookie] = [cookie.model_copy() for cookie in state.cookies]
        self._origins: Dict[str, Dict[str, str]] = copy.deepcopy(state.origins)

    @property
    def browser(self) -> Browser:
        browser = self.parent
        if browser is None:
            raise SessionDisconnected(f"{self.id} lost its browser", node_id=self.id)
        return browser  # type: ignore[return-value]

    @property
    def documents(self) -> List["Document"]:
        return [child for child in self._children if isinstance(child, Document)]

    async def new_document(self) -> "Document":
        return await self.manager.create_document(self)

    # ------------------------------------------------------------------
    # storage
    # ------------------------------------------------------------------
    def add_cookies(self, cookies: Iterable[Any]) -> None:
        self.ensure_open()
        for raw in cookies:
            cookie = raw if isinstance(raw, Cookie) else Cookie.model_validate(raw)
            self._cookies = [
                existing
                for existing in self._cookies
                if (existing.name, existing.domain, existing.path) != (cookie.name, cookie.domain, cookie.path)
            ]
            self._cookies.append(cookie)

    def cookies(self, url: Optional[str] = None) -> List[Cookie]:
        self.ensure_open()
        if url is None:
            return [cookie.model_copy() for cookie in self._cookies]
        parts = urlsplit(url)
        host = parts.hostname or ""
        path = parts.path or "/"
        return [cookie.model_copy() for cookie in self._cookies if cookie.matches(host, path)]

    def clear_cookies(self) -> None:
        self.ensure_open()
        self._cookies.clear()

    def local_storage(self, origin: str) -> Dict[str, str]:
        """Mutable key/value storage of ``origin`` inside this session only."""

        self.ensure_open()
        return self._origins.setdefault(origin, {})

    def storage_state(self) -> StorageState:
        self.ensure_open()
        return StorageState(
            cookies=[cookie.model_copy() for cookie in self._cookies],
            origins=copy.deepcopy(self._origins),
        )

    # ------------------------------------------------------------------
    # effective settings
    # ------------------------------------------------------------------
    def _setting(self, name: str) -> Any:
        value = getattr(self.options, name)
        if value is None:
            value = getattr(self.browser.options, name)
        return value


class SubDocument(Node):
    """A frame.  The root frame's parent is its Document."""

    kind = NodeKind.SUBDOCUMENT

    def __init__(
        self,
        manager: "SessionManager",
        node_id: str,
        parent: Node,
        document: "Document",
        events: Subscriptions,
        *,
        name: str = "",
        url: str = "about:blank",
    ) -> None:
        super().__init__(manager, node_id, parent, events)
        self._document_ref = weakref.ref(document)
        self.name = name
        self.url = url

    @property
    def document(self) -> "Document":
        document = self._document_ref()
        if document is None:
            raise SessionDisconnected(f"{self.id} lost its document", node_id=self.id)
        return document

    @property
    def child_frames(self) -> List["SubDocument"]:
        return [child for child in self._children if isinstance(child, SubDocument)]

    @property
    def is_main_frame(self) -> bool:
        return self.parent is self._document_ref()

    def walk(self) -> List["SubDocument"]:
        frames = [self]
        for child in self.child_frames:
            frames.extend(child.walk())
        return frames

    async def query(self, selector: str) -> ElementState:
        """Probe ``selector`` once, without waiting."""

        self.ensure_open()
        return await guarded(self.document.probe.probe(self, selector), self.lifeline)

    async def click(self, selector: str, *, timeout_ms: Optional[float] = None, **params: Any) -> Any:
        return await self.document.run_action(self, "click", selector, timeout_ms=timeout_ms, **params)

    async def dblclick(self, selector: str, *, timeout_ms: Optional[float] = None, **params: Any) -> Any:
        return await self.document.run_action(self, "dblclick", selector, timeout_ms=timeout_ms, **params)

    async def hover(self, selector: str, *, timeout_ms: Optional[float] = None, **params: Any) -> Any:
        return await self.document.run_action(self, "hover", selector, timeout_ms=timeout_ms, **params)

    async def fill(self, selector: str, value: str, *, timeout_ms: Optional[float] = None) -> Any:
        return await self.document.run_action(self, "fill", selector, timeout_ms=timeout_ms, value=value)

    async def press(self, selector: str, key: str, *, timeout_ms: Optional[float] = None) -> Any:
        return await self.document.run_action(self, "press", selector, timeout_ms=timeout_ms, key=key)

    async def check(self, selector: str, *, timeout_ms: Optional[float] = None) -> Any:
        return await self.document.run_action(self, "check", selector, timeout_ms=timeout_ms)


class Document(Node):
    """A page: one root frame, nested frames, and its dialog hub."""

    kind = NodeKind.DOCUMENT

    def __init__(
        self,
        manager: "SessionManager",
        node_id: str,
        session: IsolatedSession,
        events: Subscriptions,
        *,
        url: str = "about:blank",
        opener: Optional["Document"] = None,
    ) -> None:
        super().__init__(manager, node_id, session, events)
        self.url = url
        self._opener_ref = weakref.ref(opener) if opener is not None else None
        self._default_timeout_ms: Optional[float] = None
        self.main_frame: SubDocument = manager._new_frame(self, self, name="", url=url)
        self.dialogs = DialogHub(
            self,
            events,
            popup_timeout_ms=session._setting("popup_timeout_ms"),
            dismiss_unhandled=session._setting("dismiss_unhandled_dialogs"),
        )

    @property
    def session(self) -> IsolatedSession:
        session = self.parent
        if session is None:
            raise SessionDisconnected(f"{self.id} lost its session", node_id=self.id)
        return session  # type: ignore[return-value]

    @property
    def opener(self) -> Optional["Document"]:
        return self._opener_ref() if self._opener_ref is not None else None

    @property
    def browser(self) -> Browser:
        return self.session.browser

    @property
    def transport(self) -> Transport:
        return self.browser.transport

    @property
    def probe(self) -> ElementProbe:
        return self.browser.probe

    @property
    def clock(self) -> Any:
        return self.manager.clock

    @property
    def frames(self) -> List[SubDocument]:
        return self.main_frame.walk()

    def frame(self, name: str) -> Optional[SubDocument]:
        for candidate in self.frames:
            if candidate.name == name:
                return candidate
        return None

    # ------------------------------------------------------------------
    # timeouts
    # ------------------------------------------------------------------
    def set_default_timeout(self, timeout_ms: Optional[float]) -> None:
        self._default_timeout_ms = timeout_ms

    def action_policy(self, timeout_ms: Optional[float] = None) -> RetryPolicy:
        if timeout_ms is None:
            timeout_ms = self._default_timeout_ms
        if timeout_ms is None:
            timeout_ms = self.session._setting("default_timeout_ms")
        return self.browser.options.retry_policy(timeout_ms)

    def expect_policy(self, timeout_ms: Optional[float] = None) -> RetryPolicy:
        if timeout_ms is None:
            timeout_ms = self.session._setting("expect_timeout_ms")
        return self.browser.options.retry_policy(timeout_ms)

    # ------------------------------------------------------------------
    # frames
    # ------------------------------------------------------------------
    async def attach_frame(self, name: str, url: str = "about:blank", *, parent: Optional[SubDocument] = None) -> SubDocument:
        return await self.manager.attach_frame(self, parent or self.main_frame, name=name, url=url)

    async def detach_frame(self, frame: SubDocument) -> None:
        if frame is self.main_frame:
            raise ValueError("the main frame cannot be detached")
        await self.manager.close(frame)

    # ------------------------------------------------------------------
    # navigation & actions
    # ------------------------------------------------------------------
    async def navigate(self, url: str, *, timeout_ms: Optional[float] = None) -> None:
        """Load ``url``; child frames are dropped, identity and subscriptions kept."""

        self.ensure_open()
        if timeout_ms is None:
            timeout_ms = self.browser.options.navigation_timeout_ms
        for frame in self.main_frame.child_frames:
            await self.manager.close(frame)
        try:
            await guarded(
                self.transport.navigate(self, url, timeout_ms=timeout_ms),
                self.lifeline,
                timeout=timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            raise TimeoutExceeded(
                f"navigate({url!r})",
                timeout_ms=timeout_ms,
                last_reason="navigation did not commit",
            ) from None
        self.url = url
        self.main_frame.url = url
        log.info("%s navigated to %s", self.id, url)

    async def run_action(self, frame: SubDocument, action: str, selector: str, *, timeout_ms: Optional[float] = None, **params: Any) -> Any:
        """Wait for actionability, perform ``action`` and wait for the page to settle.

        The call does not return while a dialog or popup it triggered is still
        pending.  If the deadline passes first, the pending interceptions are
        released and :class:`TimeoutExceeded` names the one that blocked.
        """

        frame.ensure_open()
        policy = self.action_policy(timeout_ms)
        deadline = Deadline(self.clock, policy.timeout_ms)
        operation = f"{action}({selector!r})"
        await wait_for_actionable(frame, selector, action=action, policy=policy)
        try:
            result = await guarded(
                self.transport.perform(frame, action, selector, **params),
                frame.lifeline,
                timeout=max(deadline.remaining(), PROBE_GRACE_SECONDS),
            )
            await self.dialogs.settled(timeout=deadline.remaining())
        except asyncio.TimeoutError:
            reason = self.dialogs.blocking_reason() or f"{action} did not complete"
            self.dialogs.abandon(f"{operation} timed out")
            raise TimeoutExceeded(operation, timeout_ms=policy.timeout_ms, last_reason=reason) from None
        log.debug("%s %s done on %s", self.id, operation, frame.id)
        return result

    async def query(self, selector: str) -> ElementState:
        return await self.main_frame.query(selector)

    async def click(self, selector: str, *, timeout_ms: Optional[float] = None, **params: Any) -> Any:
        return await self.main_frame.click(selector, timeout_ms=timeout_ms, **params)

    async def dblclick(self, selector: str, *, timeout_ms: Optional[float] = None, **params: Any) -> Any:
        return await self.main_frame.dblclick(selector, timeout_ms=timeout_ms, **params)

    async def hover(self, selector: str, *, timeout_ms: Optional[float] = None, **params: Any) -> Any:
        return await self.main_frame.hover(selector, timeout_ms=timeout_ms, **params)

    async def fill(self, selector: str, value: str, *, timeout_ms: Optional[float] = None) -> Any:
        return await self.main_frame.fill(selector, value, timeout_ms=timeout_ms)

    async def press(self, selector: str, key: str, *, timeout_ms: Optional[float] = None) -> Any:
        return await self.main_frame.press(selector, key, timeout_ms=timeout_ms)

    async def check(self, selector: str, *, timeout_ms: Optional[float] = None) -> Any:
        return await self.main_frame.check(selector, timeout_ms=timeout_ms)

    # ------------------------------------------------------------------
    # events
    # ------------------------------------------------------------------
    async def wait_for_event(
        self,
        event: str,
        *,
        timeout_ms: Optional[float] = None,
        predicate: Optional[Callable[[Any], bool]] = None,
    ) -> Any:
        """Return the payload of the next ``event`` matching ``predicate``."""

        policy = self.action_policy(timeout_ms)
        future: asyncio.Future = asyncio.get_running_loop().create_future()

        def _handler(payload: Any) -> None:
            if future.done() or (predicate is not None and not predicate(payload)):
                return
            future.set_result(payload)
            self.events.off(event, _handler)

        self.events.on(event, _handler)
        lifeline = None if event == CLOSE_EVENT else self.lifeline
        try:
            return await guarded(asyncio.shield(future), lifeline, timeout=policy.timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise TimeoutExceeded(
                f"wait_for_event({event!r})",
                timeout_ms=policy.timeout_ms,
                last_reason=f"no {event} event arrived",
            ) from None
        finally:
            self.events.off(event, _handler)

    @contextlib.asynccontextmanager
    async def expect_popup(self, *, timeout_ms: Optional[float] = None) -> AsyncIterator["PopupWaiter"]:
        """Acknowledge the next popup opened inside the ``async with`` block."""

        waiter = PopupWaiter(self, self.action_policy(timeout_ms).timeout_ms)
        self.events.once(POPUP_EVENT, waiter._on_popup)
        try:
            yield waiter
        finally:
            if not waiter._future.done():
                self.events.off(POPUP_EVENT, waiter._on_popup)


class PopupWaiter:
    def __init__(self, document: Document, timeout_ms: float) -> None:
        self._document = document
        self._timeout_ms = timeout_ms
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()

    def _on_popup(self, pending: PendingPopup) -> None:
        if not self._future.done():
            self._future.set_result(pending.acknowledge())

    @property
    def value(self) -> Any:
        return self._wait()

    async def _wait(self) -> Document:
        try:
            return await guarded(asyncio.shield(self._future), self._document.lifeline, timeout=self._timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise TimeoutExceeded(
                "expect_popup",
                timeout_ms=self._timeout_ms,
                last_reason="no popup was opened",
            ) from None


class SessionManager:
    """Arena of live nodes; serializes every structural mutation."""

    def __init__(self, *, clock: Any = None) -> None:
        self.clock = clock or MonotonicClock()
        self.events = Subscriptions()
        self._lock = asyncio.Lock()
        self._nodes: Dict[str, Node] = {}
        self._counters: Dict[NodeKind, itertools.count] = {kind: itertools.count(1) for kind in NodeKind}

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    def get(self, node_id: str) -> Node:
        return self._nodes[node_id]

    def nodes(self, kind: Optional[NodeKind] = None) -> List[Node]:
        return [node for node in list(self._nodes.values()) if kind is None or node.kind is kind]

    def on_close(self, handler: Callable[[Node], Any]) -> None:
        self.events.on(CLOSE_EVENT, handler)

    # ------------------------------------------------------------------
    # creation
    # ------------------------------------------------------------------
    def _next_id(self, kind: NodeKind) -> str:
        return f"{kind.value}-{next(self._counters[kind])}"

    def _register(self, node: Node) -> None:
        self._nodes[node.id] = node
        parent = node.parent
        if parent is not None:
            parent._children.append(node)

    def _new_frame(self, document: Document, parent: Node, *, name: str, url: str) -> SubDocument:
        frame = SubDocument(self, self._next_id(NodeKind.SUBDOCUMENT), parent, document, Subscriptions(), name=name, url=url)
        self._register(frame)
        return frame

    async def launch(
        self,
        transport: Transport,
        probe: ElementProbe,
        options: Optional[LaunchOptions] = None,
    ) -> Browser:
        async with self._lock:
            browser = Browser(
                self,
                self._next_id(NodeKind.BROWSER),
                Subscriptions(),
                transport=transport,
                probe=probe,
                options=options or LaunchOptions(),
            )
            self._register(browser)
        log.info("Launched %s", browser.id)
        return browser

    async def create_session(self, browser: Browser, options: Optional[SessionOptions] = None) -> IsolatedSession:
        async with self._lock:
            browser.ensure_open()
            session = IsolatedSession(self, self._next_id(NodeKind.SESSION), browser, Subscriptions(), options or SessionOptions())
            self._register(session)
        try:
            await guarded(browser.transport.open_session(session, session.options), session.lifeline)
        except BaseException:
            await self.close(session)
            raise
        log.debug("Created %s in %s", session.id, browser.id)
        return session

    async def create_document(self, session: IsolatedSession) -> Document:
        document = await self._add_document(session)
        try:
            await guarded(session.browser.transport.open_document(document), document.lifeline)
        except BaseException:
            await self.close(document)
            raise
        log.debug("Created %s in %s", document.id, session.id)
        return document

    async def adopt_popup(self, opener: Document, url: str) -> Document:
        """Register a Document the page opened itself; the transport already has it."""

        document = await self._add_document(opener.session, url=url, opener=opener)
        log.info("%s opened popup %s (%s)", opener.id, document.id, url)
        return document

    async def _add_document(self, session: IsolatedSession, *, url: str = "about:blank", opener: Optional[Document] = None) -> Document:
        async with self._lock:
            session.ensure_open()
            document = Document(self, self._next_id(NodeKind.DOCUMENT), session, Subscriptions(), url=url, opener=opener)
            self._register(document)
        return document

    async def attach_frame(self, document: Document, parent: SubDocument, *, name: str, url: str) -> SubDocument:
        async with self._lock:
            parent.ensure_open()
            if parent.document is not document:
                raise ValueError(f"{parent.id} does not belong to {document.id}")
            frame = self._new_frame(document, parent, name=name, url=url)
        log.debug("Attached %s (%s) under %s", frame.id, name, parent.id)
        return frame

    # ------------------------------------------------------------------
    # closing
    # ------------------------------------------------------------------
    async def close(self, node: Node) -> None:
        """Close ``node`` and its subtree, children first.  Idempotent."""

        await self._close(node, reason=None)

    async def disconnect(self, browser: Browser, reason: str) -> None:
        """The browser process is gone: fail everything beneath it at once."""

        if browser.is_closed:
            return
        browser.disconnect_reason = reason
        log.warning("%s disconnected: %s", browser.id, reason)
        await self._close(browser, reason=f"browser disconnected: {reason}")

    async def _close(self, node: Node, *, reason: Optional[str]) -> None:
        async with self._lock:
            if node.is_closed:
                return
            victims = node.post_order()
            for victim in victims:
                victim._closed = True
                victim.lifeline.trip(reason or f"{victim.kind.value} {victim.id} closed")
            parent = node.parent
            if parent is not None and node in parent._children:
                parent._children.remove(node)

        browser = _browser_of(node)
        transport_alive = browser is not None and browser.disconnect_reason is None
        for victim in victims:
            if isinstance(victim, Document):
                victim.dialogs.close()
            if transport_alive:
                await self._release(victim)
            self._nodes.pop(victim.id, None)
            log.debug("Closed %s", victim.id)
            victim.events.emit(CLOSE_EVENT, victim)
            self.events.emit(CLOSE_EVENT, victim)
            victim.events.clear()

    async def _release(self, node: Node) -> None:
        try:
            if isinstance(node, Document):
                await node.transport.close_document(node)
            elif isinstance(node, IsolatedSession):
                await node.browser.transport.close_session(node)
            elif isinstance(node, Browser):
                await node.transport.shutdown()
        except Exception:
            log.warning("Transport failed to release %s", node.id, exc_info=True)


def _browser_of(node: Node) -> Optional[Browser]:
    current: Optional[Node] = node
    while current is not None and not isinstance(current, Browser):
        current = current.parent
    return current
