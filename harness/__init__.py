"""Test runtime: fixtures, test-level retries and the suite runner."""

from .config import RunConfig, load_config
from .errors import (
    DependencyCycle,
    FixtureError,
    FixtureSetupFailed,
    FixtureTeardownFailed,
    RetriesExhausted,
    ScopeMismatch,
    UnknownFixture,
)
from .fixtures import FixtureDef, FixtureRegistry, FixtureResolver, Scope, ScopeCache
from .retry_controller import AttemptRecord, TestOutcome, run_with_retry
from .runner import SuiteRunner, SuiteSummary, TestCase

__all__ = [
    "AttemptRecord",
    "DependencyCycle",
    "FixtureDef",
    "FixtureError",
    "FixtureRegistry",
    "FixtureResolver",
    "FixtureSetupFailed",
    "FixtureTeardownFailed",
    "RetriesExhausted",
    "RunConfig",
    "Scope",
    "ScopeCache",
    "ScopeMismatch",
    "SuiteRunner",
    "SuiteSummary",
    "TestCase",
    "TestOutcome",
    "UnknownFixture",
    "load_config",
    "run_with_retry",
]
