"""Configuration loader for test runs."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

from pagewright.models import LaunchOptions, RetryPolicy

ENV_PREFIX = "PAGEWRIGHT_"

DEFAULTS: Dict[str, Any] = {
    "action_timeout_ms": 30000,
    "expect_timeout_ms": 5000,
    "navigation_timeout_ms": 30000,
    "poll_interval_ms": 20,
    "max_poll_interval_ms": 100,
    "backoff_factor": 2.0,
    "popup_timeout_ms": 5000,
    "max_attempts": 1,
    "workers": 1,
    "headless": True,
    "dismiss_unhandled_dialogs": False,
    "log_root": "runs",
}


def _as_bool(value: Any) -> bool:
    return str(value).lower() in {"true", "1", "yes"}


@dataclass(slots=True)
class RunConfig:
    action_timeout_ms: int = DEFAULTS["action_timeout_ms"]
    expect_timeout_ms: int = DEFAULTS["expect_timeout_ms"]
    navigation_timeout_ms: int = DEFAULTS["navigation_timeout_ms"]
    poll_interval_ms: float = DEFAULTS["poll_interval_ms"]
    max_poll_interval_ms: float = DEFAULTS["max_poll_interval_ms"]
    backoff_factor: float = DEFAULTS["backoff_factor"]
    popup_timeout_ms: int = DEFAULTS["popup_timeout_ms"]
    max_attempts: int = DEFAULTS["max_attempts"]
    workers: int = DEFAULTS["workers"]
    headless: bool = DEFAULTS["headless"]
    dismiss_unhandled_dialogs: bool = DEFAULTS["dismiss_unhandled_dialogs"]
    log_root: Path = field(default_factory=lambda: Path(DEFAULTS["log_root"]))

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any]) -> "RunConfig":
        data = dict(DEFAULTS)
        data.update(mapping)
        config = cls(
            action_timeout_ms=int(data["action_timeout_ms"]),
            expect_timeout_ms=int(data["expect_timeout_ms"]),
            navigation_timeout_ms=int(data["navigation_timeout_ms"]),
            poll_interval_ms=float(data["poll_interval_ms"]),
            max_poll_interval_ms=float(data["max_poll_interval_ms"]),
            backoff_factor=float(data["backoff_factor"]),
            popup_timeout_ms=int(data["popup_timeout_ms"]),
            max_attempts=int(data["max_attempts"]),
            workers=int(data["workers"]),
            headless=_as_bool(data["headless"]),
            dismiss_unhandled_dialogs=_as_bool(data["dismiss_unhandled_dialogs"]),
            log_root=Path(data["log_root"]),
        )
        if config.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if config.workers < 1:
            raise ValueError("workers must be at least 1")
        return config

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            timeout_ms=self.action_timeout_ms,
            poll_interval_ms=self.poll_interval_ms,
            max_poll_interval_ms=self.max_poll_interval_ms,
            backoff_factor=self.backoff_factor,
        )

    def launch_options(self) -> LaunchOptions:
        return LaunchOptions(
            headless=self.headless,
            default_timeout_ms=self.action_timeout_ms,
            expect_timeout_ms=self.expect_timeout_ms,
            navigation_timeout_ms=self.navigation_timeout_ms,
            popup_timeout_ms=self.popup_timeout_ms,
            poll_interval_ms=self.poll_interval_ms,
            max_poll_interval_ms=self.max_poll_interval_ms,
            backoff_factor=self.backoff_factor,
            dismiss_unhandled_dialogs=self.dismiss_unhandled_dialogs,
        )


def _load_toml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("rb") as fh:
        return tomllib.load(fh)


def load_config(config_path: Path | None = None) -> RunConfig:
    """Load configuration from environment, optional TOML file, and defaults."""

    env_map: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if key.startswith(ENV_PREFIX):
            env_map[key[len(ENV_PREFIX):].lower()] = value

    file_map: Dict[str, Any] = {}
    path = config_path or Path("pagewright.toml")
    if path.exists():
        file_map = _load_toml(path).get("pagewright", {})

    merged = {**file_map, **env_map}
    return RunConfig.from_mapping({key: value for key, value in merged.items() if key in DEFAULTS})


def ensure_run_directories(run_id: str, config: RunConfig) -> Dict[str, Path]:
    base = config.log_root / run_id
    base.mkdir(parents=True, exist_ok=True)
    return {"base": base, "events": base / "events.jsonl"}
