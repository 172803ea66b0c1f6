import asyncio
import time

import pytest

from pagewright.actionability import (
    DISABLED,
    NO_POINTER_EVENTS,
    NOT_ATTACHED,
    NOT_EDITABLE,
    NOT_STABLE,
    NOT_VISIBLE,
    actionability_failure,
)
from pagewright.errors import SessionDisconnected, TimeoutExceeded
from pagewright.interfaces import ElementState

from tests.fakes import open_document, ready

BOX = (10.0, 10.0, 80.0, 20.0)


@pytest.mark.parametrize(
    "state, previous, expected",
    [
        (ElementState.detached(), BOX, NOT_ATTACHED),
        (ready(visible=False), BOX, NOT_VISIBLE),
        (ready(), None, NOT_STABLE),
        (ready(bounding_box=(12.0, 10.0, 80.0, 20.0)), BOX, NOT_STABLE),
        (ready(stable=False), BOX, NOT_STABLE),
        (ready(receives_events=False), BOX, NO_POINTER_EVENTS),
        (ready(enabled=False), BOX, DISABLED),
        (ready(), BOX, None),
    ],
)
def test_actionability_failure_reports_first_unmet_condition(state, previous, expected) -> None:
    assert actionability_failure(state, previous) == expected


def test_editable_only_required_when_asked() -> None:
    state = ready(editable=False)
    assert actionability_failure(state, BOX) is None
    assert actionability_failure(state, BOX, requires_editable=True) == NOT_EDITABLE


@pytest.mark.asyncio
async def test_click_waits_until_element_is_actionable() -> None:
    document, transport, probe = await open_document()
    probe.set("#save", lambda poll: ready() if poll >= 3 else ready(visible=False, bounding_box=None))

    await document.click("#save", timeout_ms=2000)

    assert [entry[1:3] for entry in transport.performed] == [("click", "#save")]
    # three hidden polls, then two polls to confirm the box is steady
    assert probe.poll_count("#save") == 5


@pytest.mark.asyncio
async def test_click_on_disabled_element_times_out_with_reason() -> None:
    document, transport, probe = await open_document()
    probe.set("#save", ready(enabled=False))

    with pytest.raises(TimeoutExceeded) as excinfo:
        await document.click("#save", timeout_ms=150)

    assert excinfo.value.last_reason == DISABLED
    assert excinfo.value.operation == "click('#save')"
    assert transport.performed == []


@pytest.mark.asyncio
async def test_moving_element_never_counts_as_stable() -> None:
    document, _, probe = await open_document()
    probe.set("#banner", lambda poll: ready(bounding_box=(float(poll), 0.0, 50.0, 10.0)))

    with pytest.raises(TimeoutExceeded) as excinfo:
        await document.hover("#banner", timeout_ms=150)

    assert excinfo.value.last_reason == NOT_STABLE


@pytest.mark.asyncio
async def test_missing_element_reports_not_attached() -> None:
    document, _, _ = await open_document()

    with pytest.raises(TimeoutExceeded) as excinfo:
        await document.click("#nowhere", timeout_ms=100)

    assert excinfo.value.last_reason == NOT_ATTACHED


@pytest.mark.asyncio
async def test_fill_requires_an_editable_target() -> None:
    document, transport, probe = await open_document()
    probe.set("#name", ready(editable=False))

    with pytest.raises(TimeoutExceeded) as excinfo:
        await document.fill("#name", "Ada", timeout_ms=120)
    assert excinfo.value.last_reason == NOT_EDITABLE

    probe.set("#name", ready())
    await document.fill("#name", "Ada", timeout_ms=500)
    assert transport.performed[-1][1:] == ("fill", "#name", {"value": "Ada"})


@pytest.mark.asyncio
async def test_closing_document_aborts_pending_action() -> None:
    document, _, probe = await open_document()
    probe.set("#later", ready(visible=False))

    asyncio.get_running_loop().call_later(0.05, lambda: asyncio.ensure_future(document.close()))
    started = time.monotonic()
    with pytest.raises(SessionDisconnected):
        await document.click("#later", timeout_ms=10_000)
    assert time.monotonic() - started < 1.0


@pytest.mark.asyncio
async def test_document_default_timeout_applies_to_actions() -> None:
    document, _, probe = await open_document(default_timeout_ms=30_000)
    probe.set("#slow", ready(visible=False))
    document.set_default_timeout(100)

    started = time.monotonic()
    with pytest.raises(TimeoutExceeded) as excinfo:
        await document.click("#slow")
    assert time.monotonic() - started < 1.0
    assert excinfo.value.timeout_ms == 100


@pytest.mark.asyncio
async def test_every_action_forwards_its_parameters() -> None:
    document, transport, probe = await open_document()
    for selector in ("#row", "#name", "#agree"):
        probe.set(selector, ready())

    await document.dblclick("#row")
    await document.fill("#name", "Ada")
    await document.press("#name", "Enter")
    await document.check("#agree")

    assert [entry[1:] for entry in transport.performed] == [
        ("dblclick", "#row", {}),
        ("fill", "#name", {"value": "Ada"}),
        ("press", "#name", {"key": "Enter"}),
        ("check", "#agree", {}),
    ]
