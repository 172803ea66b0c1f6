import asyncio
import json
from pathlib import Path

import pytest

from harness.builtins import install_browser_fixtures
from harness.config import RunConfig
from harness.fixtures import FixtureRegistry, Scope
from harness.runner import SuiteRunner
from pagewright.assertions import expect
from pagewright.dialogs import PendingDialog

from tests.fakes import FakeProbe, FakeTransport, ready


def _config(tmp_path: Path, **overrides) -> RunConfig:
    return RunConfig.from_mapping({"log_root": str(tmp_path / "runs"), **overrides})


def test_suite_runs_lanes_and_summarises(tmp_path: Path) -> None:
    registry = FixtureRegistry()
    lifecycle = []

    def database():
        lifecycle.append("db up")
        yield "db"
        lifecycle.append("db down")

    def worker_cache(database):
        lifecycle.append("cache up")
        yield {}
        lifecycle.append("cache down")

    registry.register("database", Scope.PROCESS, (), database)
    registry.register("worker_cache", Scope.WORKER, ("database",), worker_cache)

    runner = SuiteRunner(registry, _config(tmp_path, workers=2, max_attempts=2), run_id="suite-1")
    flaky_calls = []

    @runner.test()
    def test_passes(database):
        assert database == "db"

    @runner.test()
    async def test_flaky(worker_cache):
        flaky_calls.append(1)
        if len(flaky_calls) == 1:
            raise AssertionError("first try")

    @runner.test(max_attempts=1)
    def test_fails():
        raise RuntimeError("always")

    summary = runner.run()

    assert [outcome.name for outcome in summary.outcomes] == ["test_passes", "test_flaky", "test_fails"]
    assert summary.outcome("test_passes").status == "passed"
    assert summary.outcome("test_flaky").status == "flaky"
    assert summary.outcome("test_fails").status == "failed"
    assert len(summary.outcome("test_fails").attempts) == 1
    assert not summary.success
    payload = summary.as_dict()
    assert (payload["passed"], payload["flaky"], payload["failed"]) == (1, 1, 1)
    assert lifecycle.count("db up") == 1
    assert lifecycle[-1] == "db down"
    assert lifecycle.count("cache up") == lifecycle.count("cache down") == 1

    events_file = tmp_path / "runs" / "suite-1" / "events.jsonl"
    records = [json.loads(line) for line in events_file.read_text(encoding="utf-8").splitlines()]
    attempts = [record for record in records if record["kind"] == "attempt"]
    assert len(attempts) == 4
    assert records[-1]["kind"] == "summary"
    assert any(record["kind"] == "fixture" and record["fixture"] == "database" for record in records)


def test_duplicate_test_names_rejected(tmp_path: Path) -> None:
    runner = SuiteRunner(FixtureRegistry(), _config(tmp_path), write_events=False)
    runner.add(lambda: None, name="same")
    with pytest.raises(ValueError):
        runner.add(lambda: None, name="same")


async def _fake_launcher(manager, config):
    return await manager.launch(FakeTransport(), FakeProbe(), config.launch_options())


def test_browser_fixtures_give_each_attempt_a_fresh_session(tmp_path: Path) -> None:
    config = _config(tmp_path, max_attempts=2, expect_timeout_ms=100)
    registry = install_browser_fixtures(FixtureRegistry(), config, launcher=_fake_launcher)
    runner = SuiteRunner(registry, config, write_events=False)
    seen = []

    @runner.test()
    async def test_storage_is_clean(manager, browser, session, document):
        seen.append((manager, browser, session, document))
        assert session.cookies() == []
        session.add_cookies([{"name": "visited", "value": "1", "domain": "example.test"}])
        if len(seen) == 1:
            raise AssertionError("retry me")

    summary = runner.run()

    assert summary.outcome("test_storage_is_clean").status == "flaky"
    (manager, browser_1, session_1, document_1), (_, browser_2, session_2, document_2) = seen
    assert browser_1 is browser_2
    assert session_1 is not session_2
    assert session_1.is_closed and document_1.is_closed
    assert browser_1.is_closed
    assert manager.nodes() == []


def test_browser_fixtures_drive_dialogs_and_assertions(tmp_path: Path) -> None:
    config = _config(tmp_path, expect_timeout_ms=200, action_timeout_ms=1000)
    registry = install_browser_fixtures(FixtureRegistry(), config, launcher=_fake_launcher)
    runner = SuiteRunner(registry, config, write_events=False)
    answers = []

    @runner.test()
    async def test_prompt(document, config):
        probe = document.probe
        probe.set("#ask", ready())
        probe.set("#greeting", ready(text="Hello, N/A"))

        async def ask(frame, **_):
            return await frame.document.dialogs.intercept_dialog("prompt", "Name?", "N/A")

        document.transport.on("click", "#ask", ask)

        def answer(dialog: PendingDialog) -> None:
            answers.append(dialog.message)
            dialog.resolve("accept")

        document.once("dialog", answer)
        resolution = await document.click("#ask")
        assert resolution.text == "N/A"
        await expect(document, "#greeting").to_have_text("Hello, N/A")
        assert document.session.browser.options.expect_timeout_ms == config.expect_timeout_ms

    summary = runner.run()

    assert summary.success, summary.as_dict()
    assert answers == ["Name?"]


def test_worker_lanes_run_concurrently(tmp_path: Path) -> None:
    registry = FixtureRegistry()
    runner = SuiteRunner(registry, _config(tmp_path, workers=3), write_events=False)
    active = []
    peak = []

    def make_test(index):
        async def test_sleep():
            active.append(index)
            peak.append(len(active))
            await asyncio.sleep(0.05)
            active.remove(index)

        return test_sleep

    for index in range(3):
        runner.add(make_test(index), name=f"test_sleep_{index}")

    summary = runner.run()

    assert summary.success
    assert max(peak) == 3


def test_event_log_closed_when_a_lane_crashes(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    runner = SuiteRunner(FixtureRegistry(), _config(tmp_path), run_id="crash")
    runner.add(lambda: None, name="test_anything")
    opened = []
    open_logger = runner._open_logger

    def capture_logger():
        logger = open_logger()
        opened.append(logger)
        return logger

    async def explode(*args, **kwargs):
        raise RuntimeError("lane crashed")

    monkeypatch.setattr(runner, "_open_logger", capture_logger)
    monkeypatch.setattr("harness.runner.run_with_retry", explode)

    with pytest.raises(RuntimeError, match="lane crashed"):
        runner.run()

    assert opened[0]._events_file.closed
