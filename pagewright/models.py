"""Typed option models for browsers, sessions and retry policies."""

from __future__ import annotations

from typing import Any, Dict, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_TIMEOUT_MS = 30_000
DEFAULT_EXPECT_TIMEOUT_MS = 5_000
DEFAULT_POLL_INTERVAL_MS = 20
DEFAULT_MAX_POLL_INTERVAL_MS = 100
DEFAULT_POPUP_TIMEOUT_MS = 5_000


class RetryPolicy(BaseModel):
    """Deadline and polling schedule of one retryable operation."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    timeout_ms: float = Field(default=DEFAULT_TIMEOUT_MS, ge=0)
    poll_interval_ms: float = Field(default=DEFAULT_POLL_INTERVAL_MS, gt=0)
    max_poll_interval_ms: float = Field(default=DEFAULT_MAX_POLL_INTERVAL_MS, gt=0)
    backoff_factor: float = Field(default=2.0, ge=1.0)

    def intervals(self) -> Iterator[float]:
        """Yield successive poll intervals in seconds, exponentially capped.

        The cap never drops below ``poll_interval_ms`` so an explicitly
        requested interval is honoured as a constant period.
        """

        cap = max(self.max_poll_interval_ms, self.poll_interval_ms)
        current = self.poll_interval_ms
        while True:
            yield current / 1000
            current = min(cap, current * self.backoff_factor)

    def with_overrides(
        self,
        *,
        timeout_ms: Optional[float] = None,
        poll_interval_ms: Optional[float] = None,
    ) -> "RetryPolicy":
        updates: Dict[str, Any] = {}
        if timeout_ms is not None:
            updates["timeout_ms"] = timeout_ms
        if poll_interval_ms is not None:
            updates["poll_interval_ms"] = poll_interval_ms
        if not updates:
            return self
        return RetryPolicy.model_validate({**self.model_dump(), **updates})


class Cookie(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str
    value: str
    domain: str
    path: str = "/"
    secure: bool = False
    http_only: bool = Field(default=False, alias="httpOnly")
    expires: Optional[float] = None

    @field_validator("domain")
    @classmethod
    def _normalise_domain(cls, value: str) -> str:
        value = value.strip().lower()
        if not value:
            raise ValueError("domain must not be empty")
        return value

    def matches(self, host: str, path: str = "/") -> bool:
        host = host.lower()
        domain = self.domain.lstrip(".")
        if host != domain and not host.endswith("." + domain):
            return False
        return path.startswith(self.path)


class StorageState(BaseModel):
    """Serializable snapshot of a session's cookies and origin storage."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    cookies: List[Cookie] = Field(default_factory=list)
    origins: Dict[str, Dict[str, str]] = Field(default_factory=dict)


class SessionOptions(BaseModel):
    """Options for one isolated session (a browser context)."""

    model_config = ConfigDict(extra="forbid")

    default_timeout_ms: Optional[float] = Field(default=None, ge=0)
    expect_timeout_ms: Optional[float] = Field(default=None, ge=0)
    popup_timeout_ms: Optional[float] = Field(default=None, ge=0)
    dismiss_unhandled_dialogs: Optional[bool] = None
    storage_state: Optional[StorageState] = None
    user_agent: Optional[str] = None
    viewport: Optional[Dict[str, int]] = None

    @field_validator("viewport")
    @classmethod
    def _validate_viewport(cls, value: Optional[Dict[str, int]]) -> Optional[Dict[str, int]]:
        if value is None:
            return value
        missing = {"width", "height"} - set(value)
        if missing:
            raise ValueError(f"viewport requires {sorted(missing)}")
        if value["width"] <= 0 or value["height"] <= 0:
            raise ValueError("viewport dimensions must be positive")
        return value


class LaunchOptions(BaseModel):
    """Browser-wide defaults inherited by every session."""

    model_config = ConfigDict(extra="forbid")

    headless: bool = True
    default_timeout_ms: float = Field(default=DEFAULT_TIMEOUT_MS, ge=0)
    expect_timeout_ms: float = Field(default=DEFAULT_EXPECT_TIMEOUT_MS, ge=0)
    navigation_timeout_ms: float = Field(default=DEFAULT_TIMEOUT_MS, ge=0)
    popup_timeout_ms: float = Field(default=DEFAULT_POPUP_TIMEOUT_MS, ge=0)
    poll_interval_ms: float = Field(default=DEFAULT_POLL_INTERVAL_MS, gt=0)
    max_poll_interval_ms: float = Field(default=DEFAULT_MAX_POLL_INTERVAL_MS, gt=0)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    dismiss_unhandled_dialogs: bool = False

    @model_validator(mode="after")
    def _check_poll_bounds(self) -> "LaunchOptions":
        if self.max_poll_interval_ms < self.poll_interval_ms:
            raise ValueError("max_poll_interval_ms must be >= poll_interval_ms")
        return self

    def retry_policy(self, timeout_ms: Optional[float] = None) -> RetryPolicy:
        return RetryPolicy(
            timeout_ms=self.default_timeout_ms if timeout_ms is None else timeout_ms,
            poll_interval_ms=self.poll_interval_ms,
            max_poll_interval_ms=self.max_poll_interval_ms,
            backoff_factor=self.backoff_factor,
        )
