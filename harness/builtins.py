"""Browser fixtures every suite gets: manager, browser, session, document."""

from __future__ import annotations

from typing import AsyncIterator, Awaitable, Callable, Optional

from pagewright.hierarchy import Browser, Document, IsolatedSession, NodeKind, SessionManager

from .config import RunConfig
from .fixtures import FixtureRegistry, Scope
from .playwright_driver import launch_browser

Launcher = Callable[[SessionManager, RunConfig], Awaitable[Browser]]


def install_browser_fixtures(
    registry: FixtureRegistry,
    config: Optional[RunConfig] = None,
    *,
    launcher: Optional[Launcher] = None,
) -> FixtureRegistry:
    """Register the browser hierarchy as fixtures.

    ``manager`` lives for the whole run, ``browser`` for one worker lane, and
    ``session``/``document`` are rebuilt for every test attempt so retries
    start from clean storage.
    """

    config = config or RunConfig()
    launch = launcher or launch_browser

    async def manager() -> AsyncIterator[SessionManager]:
        manager = SessionManager()
        yield manager
        for browser in manager.nodes(NodeKind.BROWSER):
            await manager.close(browser)

    async def browser(manager: SessionManager) -> AsyncIterator[Browser]:
        browser = await launch(manager, config)
        yield browser
        await manager.close(browser)

    async def session(browser: Browser) -> AsyncIterator[IsolatedSession]:
        session = await browser.new_session()
        yield session
        await session.close()

    async def document(session: IsolatedSession) -> AsyncIterator[Document]:
        document = await session.new_document()
        yield document
        await document.close()

    def run_config() -> RunConfig:
        return config

    registry.register("config", Scope.PROCESS, (), run_config, description="Active run configuration")
    registry.register("manager", Scope.PROCESS, (), manager, description="Hierarchy manager shared by the run")
    registry.register("browser", Scope.WORKER, ("manager",), browser, description="One browser per worker")
    registry.register("session", Scope.TEST, ("browser",), session, description="Fresh isolated session per attempt")
    registry.register("document", Scope.TEST, ("session",), document, description="Fresh page per attempt")
    return registry
