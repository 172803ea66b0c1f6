"""Fixture registry and lazy, scope-aware resolution.

Fixtures are named setup/teardown pairs with one of three lifetimes:

* ``test`` – a fresh instance for every test attempt,
* ``worker`` – shared by every test that runs in one worker lane,
* ``process`` – shared by the whole run.

``FixtureResolver.resolve`` builds a fixture and its transitive
dependencies at most once per scope instance, dependencies first.  Each
:class:`ScopeCache` tears its fixtures down in exact reverse setup order.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from pagewright.clock import maybe_await

from .errors import DependencyCycle, FixtureSetupFailed, FixtureTeardownFailed, ScopeMismatch, UnknownFixture

log = logging.getLogger(__name__)


def fixture_names(fn: Callable[..., Any]) -> List[str]:
    """Fixtures a callable asks for: its named parameters without defaults."""

    return [
        name
        for name, parameter in inspect.signature(fn).parameters.items()
        if parameter.kind in (parameter.POSITIONAL_OR_KEYWORD, parameter.KEYWORD_ONLY)
        and parameter.default is parameter.empty
    ]


Finalizer = Callable[[], Awaitable[None]]
Recorder = Callable[[str, str, "Scope", str], None]


class Scope(str, Enum):
    TEST = "test"
    WORKER = "worker"
    PROCESS = "process"

    @property
    def breadth(self) -> int:
        return _BREADTH[self]


_BREADTH = {Scope.TEST: 0, Scope.WORKER: 1, Scope.PROCESS: 2}


@dataclass(slots=True)
class FixtureDef:
    name: str
    scope: Scope
    dependencies: Tuple[str, ...]
    setup: Callable[..., Any]
    teardown: Optional[Callable[[Any], Any]] = None
    description: Optional[str] = None

    @property
    def is_generator(self) -> bool:
        return inspect.isgeneratorfunction(self.setup) or inspect.isasyncgenfunction(self.setup)

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "scope": self.scope.value,
            "dependencies": list(self.dependencies),
            "description": self.description or "",
        }


class FixtureRegistry:
    """Named fixture definitions; rejects cycles and scope inversions eagerly."""

    def __init__(self) -> None:
        self._fixtures: Dict[str, FixtureDef] = {}

    def register(
        self,
        name: str,
        scope: Scope | str,
        dependencies: Sequence[str] = (),
        setup: Optional[Callable[..., Any]] = None,
        teardown: Optional[Callable[[Any], Any]] = None,
        *,
        description: Optional[str] = None,
    ) -> FixtureDef:
        if setup is None:
            raise TypeError(f"fixture {name!r} needs a setup callable")
        fixture = FixtureDef(
            name=name,
            scope=Scope(scope),
            dependencies=tuple(dependencies),
            setup=setup,
            teardown=teardown,
            description=description,
        )
        if fixture.is_generator and teardown is not None:
            raise TypeError(f"fixture {name!r} yields its value; drop the separate teardown")

        previous = self._fixtures.get(name)
        self._fixtures[name] = fixture
        try:
            cycle = self.find_cycle(name)
            if cycle is not None:
                raise DependencyCycle(cycle)
            self._check_scopes(fixture)
        except Exception:
            if previous is None:
                del self._fixtures[name]
            else:
                self._fixtures[name] = previous
            raise
        log.debug("Registered %s fixture %r depending on %s", fixture.scope.value, name, list(fixture.dependencies))
        return fixture

    def fixture(
        self,
        name: Optional[str] = None,
        *,
        scope: Scope | str = Scope.TEST,
        depends: Optional[Sequence[str]] = None,
        teardown: Optional[Callable[[Any], Any]] = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form; dependencies default to the setup's parameter names."""

        def decorator(setup: Callable[..., Any]) -> Callable[..., Any]:
            dependencies = depends
            if dependencies is None:
                dependencies = fixture_names(setup)
            self.register(
                name or setup.__name__,
                scope,
                dependencies,
                setup,
                teardown,
                description=inspect.getdoc(setup),
            )
            return setup

        return decorator

    def get(self, name: str, *, requested_by: Optional[str] = None) -> FixtureDef:
        try:
            return self._fixtures[name]
        except KeyError:
            raise UnknownFixture(name, requested_by=requested_by) from None

    def __contains__(self, name: str) -> bool:
        return name in self._fixtures

    def __iter__(self) -> Iterator[FixtureDef]:
        return iter(self._fixtures.values())

    def schema(self) -> Dict[str, Any]:
        return {name: fixture.to_metadata() for name, fixture in self._fixtures.items()}

    # ------------------------------------------------------------------
    # validation
    # ------------------------------------------------------------------
    def find_cycle(self, start: str) -> Optional[List[str]]:
        """Return the first cycle reachable from ``start`` as a closed path."""

        path: List[str] = []
        on_path: Set[str] = set()
        done: Set[str] = set()

        def visit(name: str) -> Optional[List[str]]:
            if name in on_path:
                return path[path.index(name):] + [name]
            if name in done or name not in self._fixtures:
                return None
            path.append(name)
            on_path.add(name)
            for dependency in self._fixtures[name].dependencies:
                cycle = visit(dependency)
                if cycle is not None:
                    return cycle
            path.pop()
            on_path.discard(name)
            done.add(name)
            return None

        return visit(start)

    def _check_scopes(self, fixture: FixtureDef) -> None:
        for dependency in fixture.dependencies:
            other = self._fixtures.get(dependency)
            if other is not None and other.scope.breadth < fixture.scope.breadth:
                raise ScopeMismatch(
                    f"{fixture.scope.value} fixture {fixture.name!r} cannot depend on "
                    f"{other.scope.value} fixture {other.name!r}",
                    details={"fixture": fixture.name, "dependency": other.name},
                )
        for other in self._fixtures.values():
            if fixture.name in other.dependencies and fixture.scope.breadth < other.scope.breadth:
                raise ScopeMismatch(
                    f"{other.scope.value} fixture {other.name!r} cannot depend on "
                    f"{fixture.scope.value} fixture {fixture.name!r}",
                    details={"fixture": other.name, "dependency": fixture.name},
                )

    def validate(self, name: str) -> List[str]:
        """Check the closure of ``name`` and return it in setup order."""

        cycle = self.find_cycle(name)
        if cycle is not None:
            raise DependencyCycle(cycle)
        order: List[str] = []
        seen: Set[str] = set()

        def visit(current: str, requested_by: Optional[str]) -> None:
            if current in seen:
                return
            fixture = self.get(current, requested_by=requested_by)
            self._check_scopes(fixture)
            for dependency in fixture.dependencies:
                visit(dependency, current)
            seen.add(current)
            order.append(current)

        visit(name, None)
        return order


class ScopeCache:
    """Live fixture values of one scope instance, with their finalizers."""

    def __init__(self, scope: Scope, label: str, *, recorder: Optional[Recorder] = None) -> None:
        self.scope = scope
        self.label = label
        self.values: Dict[str, Any] = {}
        self._finalizers: List[Tuple[str, Optional[Finalizer]]] = []
        self._locks: Dict[str, asyncio.Lock] = {}
        self._recorder = recorder

    def __repr__(self) -> str:
        return f"<ScopeCache {self.scope.value}:{self.label} {list(self.values)}>"

    def __contains__(self, name: str) -> bool:
        return name in self.values

    @property
    def setup_order(self) -> List[str]:
        return [name for name, _ in self._finalizers]

    def lock(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    def store(self, name: str, value: Any, finalizer: Optional[Finalizer]) -> None:
        self.values[name] = value
        self._finalizers.append((name, finalizer))

    async def finalize(self, name: str) -> None:
        for index in range(len(self._finalizers) - 1, -1, -1):
            if self._finalizers[index][0] == name:
                _, finalizer = self._finalizers.pop(index)
                self.values.pop(name, None)
                await self._run_finalizer(name, finalizer)
                return

    async def teardown(self) -> None:
        """Tear every fixture down, last set up first."""

        first_error: Optional[FixtureTeardownFailed] = None
        while self._finalizers:
            name, finalizer = self._finalizers.pop()
            self.values.pop(name, None)
            try:
                await self._run_finalizer(name, finalizer)
            except FixtureTeardownFailed as exc:
                log.error("%s", exc)
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error

    async def _run_finalizer(self, name: str, finalizer: Optional[Finalizer]) -> None:
        try:
            if finalizer is not None:
                await finalizer()
        except Exception as exc:
            raise FixtureTeardownFailed(name, exc) from exc
        finally:
            self._record("teardown", name)

    def _record(self, event: str, name: str) -> None:
        if self._recorder is not None:
            self._recorder(event, name, self.scope, self.label)


class FixtureResolver:
    """Instantiates fixtures into the process, worker and test scope caches."""

    def __init__(self, registry: FixtureRegistry, *, recorder: Optional[Recorder] = None) -> None:
        self.registry = registry
        self._recorder = recorder
        self.process = ScopeCache(Scope.PROCESS, "process", recorder=recorder)

    def new_worker(self, worker_id: str) -> ScopeCache:
        return ScopeCache(Scope.WORKER, worker_id, recorder=self._recorder)

    def new_test(self, test_id: str) -> ScopeCache:
        return ScopeCache(Scope.TEST, test_id, recorder=self._recorder)

    async def resolve(self, name: str, *, worker: Optional[ScopeCache] = None, test: Optional[ScopeCache] = None) -> Any:
        values = await self.resolve_many([name], worker=worker, test=test)
        return values[name]

    async def resolve_many(
        self,
        names: Iterable[str],
        *,
        worker: Optional[ScopeCache] = None,
        test: Optional[ScopeCache] = None,
    ) -> Dict[str, Any]:
        """Resolve ``names`` as one chain; a setup failure unwinds the whole chain."""

        names = list(names)
        for name in names:
            self.registry.validate(name)
        caches = {Scope.PROCESS: self.process, Scope.WORKER: worker, Scope.TEST: test}
        created: List[Tuple[ScopeCache, str]] = []
        try:
            return {name: await self._instantiate(name, caches, created, []) for name in names}
        except FixtureSetupFailed:
            await self._rollback(created)
            raise

    async def shutdown(self) -> None:
        await self.process.teardown()

    async def _instantiate(
        self,
        name: str,
        caches: Dict[Scope, Optional[ScopeCache]],
        created: List[Tuple[ScopeCache, str]],
        chain: List[str],
    ) -> Any:
        fixture = self.registry.get(name, requested_by=chain[-1] if chain else None)
        cache = caches[fixture.scope]
        if cache is None:
            raise ScopeMismatch(
                f"fixture {name!r} needs an active {fixture.scope.value} scope",
                details={"fixture": name},
            )
        if name in cache:
            return cache.values[name]

        chain = chain + [name]
        kwargs = {}
        for dependency in fixture.dependencies:
            kwargs[dependency] = await self._instantiate(dependency, caches, created, chain)

        async with cache.lock(name):
            if name in cache:
                return cache.values[name]
            try:
                value, finalizer = await _run_setup(fixture, kwargs)
            except Exception as exc:
                cache._record("setup_failed", name)
                log.error("Setup of %s fixture %r failed: %r", fixture.scope.value, name, exc)
                raise FixtureSetupFailed(name, chain, exc) from exc
            cache.store(name, value, finalizer)
            created.append((cache, name))
            cache._record("setup", name)
            log.debug("Set up %s fixture %r for %s", fixture.scope.value, name, cache.label)
            return value

    async def _rollback(self, created: List[Tuple[ScopeCache, str]]) -> None:
        for cache, name in reversed(created):
            try:
                await cache.finalize(name)
            except FixtureTeardownFailed as exc:
                log.error("Rollback of fixture %r failed: %s", name, exc)


async def _run_setup(fixture: FixtureDef, kwargs: Dict[str, Any]) -> Tuple[Any, Optional[Finalizer]]:
    setup = fixture.setup
    if inspect.isasyncgenfunction(setup):
        agen = setup(**kwargs)
        value = await agen.__anext__()

        async def finish_async() -> None:
            try:
                await agen.__anext__()
            except StopAsyncIteration:
                return
            raise RuntimeError(f"fixture {fixture.name!r} yielded more than once")

        return value, finish_async

    if inspect.isgeneratorfunction(setup):
        gen = setup(**kwargs)
        value = next(gen)

        async def finish() -> None:
            try:
                next(gen)
            except StopIteration:
                return
            raise RuntimeError(f"fixture {fixture.name!r} yielded more than once")

        return value, finish

    value = await maybe_await(setup, **kwargs)
    if fixture.teardown is None:
        return value, None
    teardown = fixture.teardown

    async def run_teardown() -> None:
        await maybe_await(teardown, value)

    return value, run_teardown
