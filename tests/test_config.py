import json
from pathlib import Path

import pytest

from harness.config import DEFAULTS, RunConfig, ensure_run_directories, load_config
from harness.fixtures import Scope
from harness.structured_logging import StructuredLogger, prepare_log_paths


def test_defaults_match_documented_values() -> None:
    config = RunConfig.from_mapping({})
    assert config.action_timeout_ms == 30000
    assert config.expect_timeout_ms == 5000
    assert config.poll_interval_ms == 20
    assert config.max_poll_interval_ms == 100
    assert config.max_attempts == 1
    assert config.workers == 1
    assert config.headless is True
    assert config.dismiss_unhandled_dialogs is False
    assert config.log_root == Path(DEFAULTS["log_root"])


def test_toml_file_then_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_file = tmp_path / "pagewright.toml"
    config_file.write_text(
        "[pagewright]\n"
        "action_timeout_ms = 12000\n"
        "max_attempts = 3\n"
        "headless = false\n"
        "unrelated_key = 'ignored'\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("PAGEWRIGHT_MAX_ATTEMPTS", "4")
    monkeypatch.setenv("PAGEWRIGHT_DISMISS_UNHANDLED_DIALOGS", "yes")

    config = load_config(config_file)

    assert config.action_timeout_ms == 12000
    assert config.max_attempts == 4
    assert config.headless is False
    assert config.dismiss_unhandled_dialogs is True


def test_missing_file_falls_back_to_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")
    assert config == RunConfig.from_mapping({})


@pytest.mark.parametrize("key", ["max_attempts", "workers"])
def test_counts_must_be_positive(key: str) -> None:
    with pytest.raises(ValueError):
        RunConfig.from_mapping({key: 0})


def test_config_feeds_core_models() -> None:
    config = RunConfig.from_mapping(
        {"action_timeout_ms": 1500, "expect_timeout_ms": 700, "poll_interval_ms": 10, "popup_timeout_ms": 250}
    )

    policy = config.retry_policy()
    assert policy.timeout_ms == 1500
    assert policy.poll_interval_ms == 10

    options = config.launch_options()
    assert options.default_timeout_ms == 1500
    assert options.expect_timeout_ms == 700
    assert options.popup_timeout_ms == 250
    assert options.retry_policy().timeout_ms == 1500


def test_run_directories_and_jsonl_events(tmp_path: Path) -> None:
    config = RunConfig.from_mapping({"log_root": str(tmp_path / "runs")})
    dirs = ensure_run_directories("run-1", config)
    assert dirs["base"].is_dir()

    logger = StructuredLogger("run-1", prepare_log_paths("run-1", dirs["base"]))
    first = logger.log_fixture("setup", "browser", Scope.WORKER, "worker-0")
    second = logger.log_attempt(test="test_login", worker="worker-0", attempt=1, ok=False, duration_ms=12.3456, error="boom")
    logger.close()

    assert (first, second) == (1, 2)
    lines = [json.loads(line) for line in dirs["events"].read_text(encoding="utf-8").splitlines()]
    assert lines[0]["kind"] == "fixture"
    assert lines[0]["scope"] == "worker"
    assert lines[1]["kind"] == "attempt"
    assert lines[1]["duration_ms"] == 12.346
    assert lines[1]["error"] == "boom"
    assert all(line["run_id"] == "run-1" for line in lines)
