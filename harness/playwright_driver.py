"""Playwright-backed transport and element probe.

One ``BrowserContext`` per :class:`IsolatedSession`, one ``Page`` per
:class:`Document`.  Page events are forwarded into the core: dialogs and
popups to the Document's :class:`DialogHub`, frame attach/detach to the
hierarchy, and a lost browser connection to ``SessionManager.disconnect``.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional

from playwright.async_api import Browser as PlaywrightBrowser
from playwright.async_api import BrowserContext, Dialog, Frame, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from pagewright.dialogs import DialogKind
from pagewright.errors import AutomationError, ProbeFailure, SessionDisconnected
from pagewright.hierarchy import Browser, Document, IsolatedSession, SessionManager, SubDocument
from pagewright.interfaces import ElementState
from pagewright.models import SessionOptions

from .config import RunConfig

log = logging.getLogger(__name__)

ELEMENT_STATE_SCRIPT = """
(elements) => {
  if (!elements.length) return {count: 0};
  const element = elements[0];
  const rect = element.getBoundingClientRect();
  const style = window.getComputedStyle(element);
  const visible = rect.width > 0 && rect.height > 0 && style.visibility !== 'hidden' && style.display !== 'none';
  const tag = element.tagName.toLowerCase();
  const disabled = element.disabled === true || element.getAttribute('aria-disabled') === 'true';
  const formField = ['input', 'textarea', 'select'].includes(tag);
  const editable = element.isContentEditable || (formField && !element.readOnly && !disabled);
  const viewportHeight = window.innerHeight || document.documentElement.clientHeight;
  const viewportWidth = window.innerWidth || document.documentElement.clientWidth;
  const cx = rect.x + rect.width / 2;
  const cy = rect.y + rect.height / 2;
  let receives = style.pointerEvents !== 'none';
  if (visible && receives && cx >= 0 && cy >= 0 && cx < viewportWidth && cy < viewportHeight) {
    const hit = document.elementFromPoint(cx, cy);
    receives = hit !== null && (hit === element || element.contains(hit));
  }
  const attributes = {};
  for (const attr of element.attributes) attributes[attr.name] = attr.value;
  return {
    count: elements.length,
    visible,
    enabled: !disabled,
    editable,
    receives,
    rect: {x: rect.x, y: rect.y, width: rect.width, height: rect.height},
    text: element.innerText ?? element.textContent ?? '',
    attributes,
  };
}
"""

POINTER_ACTIONS = {"click", "dblclick", "hover", "check"}


class PlaywrightTransport:
    """Implements the core's Transport contract over ``playwright.async_api``."""

    def __init__(self, browser: PlaywrightBrowser, *, playwright: Optional[Playwright] = None) -> None:
        self.pw_browser = browser
        self._playwright = playwright
        self._node: Optional[Browser] = None
        self._contexts: Dict[str, BrowserContext] = {}
        self._pages: Dict[str, Page] = {}
        self._frames: Dict[str, Frame] = {}
        self._frame_nodes: Dict[Frame, SubDocument] = {}
        self._unclaimed_popups: Dict[str, Deque[Page]] = {}

    def bind(self, node: Browser) -> None:
        self._node = node
        self.pw_browser.on("disconnected", self._on_disconnected)

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------
    def page_for(self, document: Document) -> Page:
        page = self._pages.get(document.id)
        if page is None:
            page = self._claim_popup(document)
        if page is None:
            raise SessionDisconnected(f"no page for {document.id}", node_id=document.id)
        return page

    def frame_for(self, frame: SubDocument) -> Frame:
        if frame.is_main_frame:
            return self.page_for(frame.document).main_frame
        pw_frame = self._frames.get(frame.id)
        if pw_frame is None:
            raise SessionDisconnected(f"frame {frame.id} is gone", node_id=frame.id)
        return pw_frame

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    async def open_session(self, session: IsolatedSession, options: SessionOptions) -> None:
        kwargs: Dict[str, Any] = {}
        if options.user_agent:
            kwargs["user_agent"] = options.user_agent
        if options.viewport:
            kwargs["viewport"] = dict(options.viewport)
        if options.storage_state is not None:
            kwargs["storage_state"] = _playwright_storage(options)
        self._contexts[session.id] = await self.pw_browser.new_context(**kwargs)

    async def close_session(self, session: IsolatedSession) -> None:
        context = self._contexts.pop(session.id, None)
        if context is not None:
            await context.close()

    async def open_document(self, document: Document) -> None:
        context = self._contexts.get(document.session.id)
        if context is None:
            raise SessionDisconnected(f"no context for {document.session.id}", node_id=document.id)
        page = await context.new_page()
        self._adopt_page(document, page)

    async def close_document(self, document: Document) -> None:
        for orphan in self._unclaimed_popups.pop(document.id, ()):
            await _close_page(orphan)
        page = self._pages.pop(document.id, None)
        if page is None:
            return
        for pw_frame in page.frames:
            sub = self._frame_nodes.pop(pw_frame, None)
            if sub is not None:
                self._frames.pop(sub.id, None)
        if not page.is_closed():
            await page.close()

    async def navigate(self, document: Document, url: str, *, timeout_ms: float) -> None:
        # the core enforces the deadline, so Playwright's own timeout is disabled
        await self.page_for(document).goto(url, timeout=0)

    async def perform(self, frame: SubDocument, action: str, selector: str, **params: Any) -> Any:
        locator = self.frame_for(frame).locator(selector).first
        try:
            if action in POINTER_ACTIONS:
                return await getattr(locator, action)(force=True, timeout=0)
            if action == "fill":
                return await locator.fill(params["value"], force=True, timeout=0)
            if action == "press":
                return await locator.press(params["key"], timeout=0)
        except PlaywrightError as exc:
            raise AutomationError(f"{action}({selector!r}) failed: {exc}", code="ACTION_FAILED") from exc
        raise ValueError(f"unsupported action {action!r}")

    async def shutdown(self) -> None:
        try:
            await self.pw_browser.close()
        finally:
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None

    # ------------------------------------------------------------------
    # page events
    # ------------------------------------------------------------------
    def _adopt_page(self, document: Document, page: Page) -> None:
        self._pages[document.id] = page
        self._frames[document.main_frame.id] = page.main_frame
        self._frame_nodes[page.main_frame] = document.main_frame
        self._register(page, "dialog", lambda dialog: self._on_dialog(document, dialog))
        self._register(page, "popup", lambda popup: self._on_popup(document, popup))
        self._register(page, "frameattached", lambda pw_frame: self._on_frame_attached(document, pw_frame))
        self._register(page, "framedetached", lambda pw_frame: self._on_frame_detached(document, pw_frame))

    def _register(self, page: Page, event: str, handler: Callable[[Any], Any]) -> None:
        async def _wrapper(payload: Any) -> None:
            await handler(payload)

        page.on(event, _wrapper)

    def _claim_popup(self, document: Document) -> Optional[Page]:
        opener = document.opener
        if opener is None:
            return None
        waiting = self._unclaimed_popups.get(opener.id)
        if not waiting:
            return None
        page = waiting.popleft()
        if not waiting:
            del self._unclaimed_popups[opener.id]
        self._adopt_page(document, page)
        return page

    async def _on_dialog(self, document: Document, dialog: Dialog) -> None:
        kind = DialogKind.from_native(dialog.type)
        try:
            resolution = await document.dialogs.intercept_dialog(kind, dialog.message, dialog.default_value or None)
        except SessionDisconnected:
            log.debug("%s closed with %s dialog open", document.id, dialog.type)
            return
        try:
            if not resolution.accepted:
                await dialog.dismiss()
            elif kind is DialogKind.TEXTUAL:
                await dialog.accept(resolution.text or "")
            else:
                await dialog.accept()
        except PlaywrightError as exc:
            log.warning("Failed to answer %s dialog on %s: %s", dialog.type, document.id, exc)

    async def _on_popup(self, opener: Document, page: Page) -> None:
        self._unclaimed_popups.setdefault(opener.id, deque()).append(page)
        try:
            popup = await opener.dialogs.intercept_popup(page.url)
        except SessionDisconnected:
            log.debug("%s closed before its popup was adopted", opener.id)
            waiting = self._unclaimed_popups.get(opener.id)
            if waiting is not None and page in waiting:
                waiting.remove(page)
                if not waiting:
                    del self._unclaimed_popups[opener.id]
                await _close_page(page)
            return
        if popup.id not in self._pages and not popup.is_closed:
            self.page_for(popup)

    async def _on_frame_attached(self, document: Document, pw_frame: Frame) -> None:
        parent = self._frame_nodes.get(pw_frame.parent_frame) if pw_frame.parent_frame else None
        if parent is None or parent.is_closed or document.is_closed:
            return
        sub = await document.attach_frame(pw_frame.name, pw_frame.url, parent=parent)
        self._frames[sub.id] = pw_frame
        self._frame_nodes[pw_frame] = sub

    async def _on_frame_detached(self, document: Document, pw_frame: Frame) -> None:
        sub = self._frame_nodes.pop(pw_frame, None)
        if sub is None:
            return
        self._frames.pop(sub.id, None)
        if not sub.is_closed:
            await document.detach_frame(sub)

    async def _on_disconnected(self, _browser: PlaywrightBrowser) -> None:
        if self._node is not None and not self._node.is_closed:
            await self._node.disconnect("playwright browser disconnected")


class PlaywrightProbe:
    """Reads element state with a single ``evaluate_all`` round trip."""

    def __init__(self, transport: PlaywrightTransport) -> None:
        self.transport = transport

    async def probe(self, frame: SubDocument, selector: str) -> ElementState:
        try:
            data = await self.transport.frame_for(frame).locator(selector).evaluate_all(ELEMENT_STATE_SCRIPT)
        except PlaywrightError as exc:
            raise ProbeFailure(f"probe failed: {exc}") from exc
        if not data.get("count"):
            return ElementState.detached()
        rect = data.get("rect") or {}
        return ElementState(
            attached=True,
            visible=bool(data.get("visible")),
            enabled=bool(data.get("enabled", True)),
            editable=bool(data.get("editable", True)),
            receives_events=bool(data.get("receives", True)),
            bounding_box=(rect.get("x", 0.0), rect.get("y", 0.0), rect.get("width", 0.0), rect.get("height", 0.0)),
            text=data.get("text"),
            count=int(data["count"]),
            attributes=dict(data.get("attributes") or {}),
        )


async def _close_page(page: Page) -> None:
    if page.is_closed():
        return
    try:
        await page.close()
    except PlaywrightError as exc:
        log.debug("Failed to close orphaned popup page: %s", exc)


def _playwright_storage(options: SessionOptions) -> Dict[str, Any]:
    state = options.storage_state
    return {
        "cookies": [cookie.model_dump(by_alias=True, exclude_none=True) for cookie in state.cookies],
        "origins": [
            {"origin": origin, "localStorage": [{"name": key, "value": value} for key, value in items.items()]}
            for origin, items in state.origins.items()
        ],
    }


async def launch_browser(manager: SessionManager, config: RunConfig) -> Browser:
    """Start Chromium and register it with ``manager``."""

    playwright = await async_playwright().start()
    try:
        pw_browser = await playwright.chromium.launch(headless=config.headless)
    except BaseException:
        await playwright.stop()
        raise
    transport = PlaywrightTransport(pw_browser, playwright=playwright)
    browser = await manager.launch(transport, PlaywrightProbe(transport), config.launch_options())
    transport.bind(browser)
    log.info("Launched chromium as %s (headless=%s)", browser.id, config.headless)
    return browser
