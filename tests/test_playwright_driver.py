import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from playwright.async_api import Error as PlaywrightError

from harness.playwright_driver import PlaywrightProbe, PlaywrightTransport
from pagewright.dialogs import PendingDialog
from pagewright.errors import AutomationError, ProbeFailure
from pagewright.hierarchy import SessionManager
from pagewright.models import Cookie, LaunchOptions, SessionOptions, StorageState


class DummyPage:
    def __init__(self) -> None:
        self.handlers = {}
        self.main_frame = MagicMock(name="main_frame")
        self.main_frame.parent_frame = None
        self.frames = [self.main_frame]
        self.url = "about:blank"
        self.goto = AsyncMock()
        self.close = AsyncMock()
        self._closed = False

    def on(self, event, handler) -> None:
        self.handlers[event] = handler

    def is_closed(self) -> bool:
        return self._closed


def _pw_browser(pages):
    context = MagicMock(name="context")
    context.new_page = AsyncMock(side_effect=pages)
    context.close = AsyncMock()
    browser = MagicMock(name="pw_browser")
    browser.new_context = AsyncMock(return_value=context)
    browser.close = AsyncMock()
    return browser, context


async def _wired(pages=None):
    pages = pages or [DummyPage()]
    pw_browser, context = _pw_browser(pages)
    transport = PlaywrightTransport(pw_browser)
    manager = SessionManager()
    browser = await manager.launch(transport, PlaywrightProbe(transport), LaunchOptions())
    transport.bind(browser)
    return manager, browser, transport, pw_browser, context, pages


@pytest.mark.asyncio
async def test_session_and_document_map_to_context_and_page() -> None:
    manager, browser, transport, pw_browser, context, pages = await _wired()
    seed = StorageState(
        cookies=[Cookie(name="sid", value="1", domain="example.test", http_only=True)],
        origins={"https://example.test": {"k": "v"}},
    )
    session = await browser.new_session(SessionOptions(storage_state=seed, viewport={"width": 800, "height": 600}))
    document = await session.new_document()

    kwargs = pw_browser.new_context.await_args.kwargs
    assert kwargs["viewport"] == {"width": 800, "height": 600}
    assert kwargs["storage_state"]["cookies"][0]["httpOnly"] is True
    assert kwargs["storage_state"]["origins"] == [
        {"origin": "https://example.test", "localStorage": [{"name": "k", "value": "v"}]}
    ]
    assert transport.page_for(document) is pages[0]
    assert set(pages[0].handlers) == {"dialog", "popup", "frameattached", "framedetached"}

    await browser.close()
    pages[0].close.assert_awaited_once()
    context.close.assert_awaited_once()
    pw_browser.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_native_prompt_is_answered_through_the_hub() -> None:
    manager, browser, transport, *_, pages = await _wired()
    document = await (await browser.new_session()).new_document()
    document.once("dialog", lambda pending: pending.resolve("accept"))

    dialog = MagicMock()
    dialog.type = "prompt"
    dialog.message = "Name?"
    dialog.default_value = "N/A"
    dialog.accept = AsyncMock()
    dialog.dismiss = AsyncMock()

    await pages[0].handlers["dialog"](dialog)

    dialog.accept.assert_awaited_once_with("N/A")
    dialog.dismiss.assert_not_awaited()


@pytest.mark.asyncio
async def test_native_confirm_dismissed_by_subscriber() -> None:
    manager, browser, transport, *_, pages = await _wired()
    document = await (await browser.new_session()).new_document()
    seen = []

    def handle(pending: PendingDialog) -> None:
        seen.append(pending.kind.value)
        pending.dismiss()

    document.once("dialog", handle)
    dialog = MagicMock(type="confirm", message="Delete?", default_value="")
    dialog.accept = AsyncMock()
    dialog.dismiss = AsyncMock()

    await pages[0].handlers["dialog"](dialog)

    assert seen == ["confirmable"]
    dialog.dismiss.assert_awaited_once()


@pytest.mark.asyncio
async def test_popup_page_becomes_child_document() -> None:
    popup_page = DummyPage()
    popup_page.url = "https://popup.test/"
    manager, browser, transport, *_, pages = await _wired()
    document = await (await browser.new_session()).new_document()
    document.once("popup", lambda pending: pending.acknowledge())

    await pages[0].handlers["popup"](popup_page)

    popup = [doc for doc in document.session.documents if doc is not document][0]
    assert popup.opener is document
    assert popup.url == "https://popup.test/"
    assert transport.page_for(popup) is popup_page
    assert "dialog" in popup_page.handlers


@pytest.mark.asyncio
async def test_frame_events_update_hierarchy() -> None:
    manager, browser, transport, *_, pages = await _wired()
    document = await (await browser.new_session()).new_document()
    child = MagicMock(name="child_frame")
    child.parent_frame = pages[0].main_frame
    child.name = "checkout"
    child.url = "https://pay.test/"

    await pages[0].handlers["frameattached"](child)
    frame = document.frame("checkout")
    assert frame is not None and frame.url == "https://pay.test/"
    assert transport.frame_for(frame) is child

    await pages[0].handlers["framedetached"](child)
    assert frame.is_closed
    assert document.frames == [document.main_frame]


@pytest.mark.asyncio
async def test_perform_maps_actions_to_locator_calls() -> None:
    manager, browser, transport, *_, pages = await _wired()
    document = await (await browser.new_session()).new_document()
    locator = MagicMock()
    locator.click = AsyncMock(return_value=None)
    locator.fill = AsyncMock(return_value=None)
    locator.press = AsyncMock(side_effect=PlaywrightError("detached"))
    pages[0].main_frame.locator.return_value.first = locator

    await transport.perform(document.main_frame, "click", "#go")
    locator.click.assert_awaited_once_with(force=True, timeout=0)
    await transport.perform(document.main_frame, "fill", "#name", value="Ada")
    locator.fill.assert_awaited_once_with("Ada", force=True, timeout=0)

    with pytest.raises(AutomationError) as excinfo:
        await transport.perform(document.main_frame, "press", "#name", key="Enter")
    assert excinfo.value.code == "ACTION_FAILED"
    with pytest.raises(ValueError):
        await transport.perform(document.main_frame, "teleport", "#name")


@pytest.mark.asyncio
async def test_probe_translates_element_state() -> None:
    manager, browser, transport, *_, pages = await _wired()
    document = await (await browser.new_session()).new_document()
    evaluate_all = AsyncMock(
        return_value={
            "count": 2,
            "visible": True,
            "enabled": False,
            "editable": False,
            "receives": True,
            "rect": {"x": 1, "y": 2, "width": 3, "height": 4},
            "text": "Save",
            "attributes": {"id": "save"},
        }
    )
    pages[0].main_frame.locator.return_value.evaluate_all = evaluate_all
    probe = PlaywrightProbe(transport)

    state = await probe.probe(document.main_frame, "#save")
    assert state.attached and state.visible and not state.enabled
    assert state.bounding_box == (1, 2, 3, 4)
    assert state.count == 2
    assert state.attributes == {"id": "save"}

    evaluate_all.return_value = {"count": 0}
    assert not (await probe.probe(document.main_frame, "#save")).attached

    evaluate_all.side_effect = PlaywrightError("Execution context was destroyed")
    with pytest.raises(ProbeFailure):
        await probe.probe(document.main_frame, "#save")


@pytest.mark.asyncio
async def test_lost_connection_disconnects_hierarchy() -> None:
    manager, browser, transport, pw_browser, *_ = await _wired()
    document = await (await browser.new_session()).new_document()
    event, handler = pw_browser.on.call_args.args

    assert event == "disconnected"
    await handler(pw_browser)

    assert not browser.is_connected
    assert document.is_closed
    pw_browser.close.assert_not_awaited()


@pytest.mark.asyncio
async def test_popup_after_opener_closed_is_closed_not_queued() -> None:
    popup_page = DummyPage()
    manager, browser, transport, *_, pages = await _wired()
    document = await (await browser.new_session()).new_document()
    popup_handler = pages[0].handlers["popup"]
    await document.close()

    await popup_handler(popup_page)

    popup_page.close.assert_awaited_once()
    assert transport._unclaimed_popups == {}


@pytest.mark.asyncio
async def test_closing_opener_closes_unclaimed_popup_pages() -> None:
    popup_page = DummyPage()
    manager, browser, transport, *_, pages = await _wired()
    document = await (await browser.new_session()).new_document()

    pending = asyncio.ensure_future(pages[0].handlers["popup"](popup_page))
    for _ in range(3):
        await asyncio.sleep(0)
    assert document.dialogs.pending is not None

    await document.close()
    await pending

    popup_page.close.assert_awaited_once()
    assert transport._unclaimed_popups == {}
