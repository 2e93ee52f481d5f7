"""Browser engine lifecycle: one shared Chromium, one context per request.

The Playwright browser is expensive to start, so a single instance is kept
alive for the life of the process. Each pipeline run gets its own
``BrowserContext`` (isolated cookies, cache and downloads) and its own
working directory, both of which are released on every exit path.

Invariants:
- At most one live engine. Creation and recreation happen under one lock.
- The engine is never torn down because a request failed; only
  ``recreate_engine`` (operator action) and ``shutdown`` close it.
- After ``shutdown`` no engine is launched again; callers get
  ``EngineUnavailableError``.
- ``release`` is idempotent and runs every cleanup step even when an
  earlier step fails.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from src.errors import EngineUnavailableError
from src.webhook.models import DownloadedArtifact

logger = logging.getLogger(__name__)

_CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
]


@dataclass
class AutomationEngine:
    """Handle on the running browser and the Playwright driver behind it."""

    browser: Any
    playwright: Any = None

    def is_connected(self) -> bool:
        try:
            return bool(self.browser.is_connected())
        except PlaywrightError:
            return False

    async def close(self) -> None:
        try:
            await self.browser.close()
        finally:
            if self.playwright is not None:
                await self.playwright.stop()


@dataclass
class ExecutionContext:
    """An isolated browsing session scoped to one working area."""

    context: Any
    page: Any
    working_area: Path
    closed: bool = False


EngineLauncher = Callable[[bool], Awaitable[AutomationEngine]]


async def launch_chromium(headless: bool) -> AutomationEngine:
    """Start Playwright and launch Chromium."""
    playwright = await async_playwright().start()
    try:
        browser = await playwright.chromium.launch(headless=headless, args=_CHROMIUM_ARGS)
    except BaseException:
        await playwright.stop()
        raise
    return AutomationEngine(browser=browser, playwright=playwright)


class BrowserEngineManager:
    """Owns the shared engine and provisions per-request resources."""

    def __init__(
        self,
        persistent_dir: str | os.PathLike[str],
        headless: bool = True,
        launcher: EngineLauncher | None = None,
    ) -> None:
        self._root = Path(persistent_dir)
        self._headless = headless
        self._launcher = launcher or launch_chromium
        self._engine: AutomationEngine | None = None
        self._lock = asyncio.Lock()
        self._closed = False
        self._active_contexts = 0
        self.launch_count = 0

    @property
    def root(self) -> Path:
        return self._root

    @property
    def engine(self) -> AutomationEngine | None:
        return self._engine

    @property
    def active_contexts(self) -> int:
        return self._active_contexts

    def ensure_root(self) -> Path:
        """Create the persistent root directory if it does not exist."""
        if self._root.is_dir():
            logger.info("Using persistent directory: %s", self._root)
        else:
            self._root.mkdir(parents=True, exist_ok=True)
            logger.info("Created persistent directory: %s", self._root)
        return self._root

    async def acquire_engine(self) -> AutomationEngine:
        """Return the shared engine, launching it on first use."""
        engine = self._engine
        if engine is not None:
            return engine
        async with self._lock:
            self._check_open()
            # Another caller may have launched while we waited for the lock.
            if self._engine is None:
                self._engine = await self._launch()
            return self._engine

    async def recreate_engine(self) -> AutomationEngine:
        """Close the current engine (if any) and launch a fresh one.

        Contexts opened from the old engine are not drained; runs holding
        them fail on their next browser call and release normally.
        """
        async with self._lock:
            self._check_open()
            old, self._engine = self._engine, None
            if old is not None:
                if self._active_contexts:
                    logger.warning(
                        "Recreating browser with %d active context(s); in-flight downloads will fail",
                        self._active_contexts,
                    )
                try:
                    await old.close()
                    logger.info("Closed previous browser instance")
                except PlaywrightError as exc:
                    logger.warning("Error closing previous browser: %s", exc)
            self._engine = await self._launch()
            return self._engine

    async def shutdown(self) -> None:
        """Close the engine on process shutdown."""
        async with self._lock:
            self._closed = True
            engine, self._engine = self._engine, None
            if engine is None:
                return
            try:
                await engine.close()
                logger.info("Browser closed")
            except PlaywrightError as exc:
                logger.error("Error closing browser during shutdown: %s", exc)

    def _check_open(self) -> None:
        if self._closed:
            raise EngineUnavailableError("Browser engine has been shut down")

    async def _launch(self) -> AutomationEngine:
        logger.info("Initializing browser (headless: %s)...", self._headless)
        try:
            engine = await self._launcher(self._headless)
        except PlaywrightError as exc:
            raise EngineUnavailableError(f"Failed to launch browser: {exc}") from exc
        self.launch_count += 1
        logger.info("Browser initialized and ready")
        return engine

    def create_working_area(self) -> Path:
        """Create a uniquely named directory for one request."""
        name = f"download-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
        working_area = self._root / name
        working_area.mkdir(parents=True, exist_ok=False)
        logger.info("Created temp directory: %s", working_area)
        return working_area

    async def open_context(
        self, engine: AutomationEngine, working_area: Path,
    ) -> ExecutionContext:
        """Open an isolated, download-enabled context with one page."""
        if not engine.is_connected():
            raise EngineUnavailableError("Browser is not connected")
        try:
            context = await engine.browser.new_context(accept_downloads=True)
        except PlaywrightError as exc:
            raise EngineUnavailableError(f"Failed to create browser context: {exc}") from exc

        self._active_contexts += 1
        execution = ExecutionContext(context=context, page=None, working_area=working_area)
        try:
            execution.page = await context.new_page()
        except PlaywrightError as exc:
            await self._close_context(execution)
            raise EngineUnavailableError(f"Failed to open page: {exc}") from exc
        return execution

    async def release(
        self,
        execution: ExecutionContext | None,
        working_area: Path | None,
        artifact: DownloadedArtifact | None = None,
    ) -> None:
        """Close the context and delete the working area.

        Safe to call more than once and with partially created resources.
        """
        try:
            if execution is not None:
                await self._close_context(execution)
        finally:
            if artifact is not None:
                _unlink(artifact.path)
            if working_area is not None:
                _remove_tree(working_area)

    async def _close_context(self, execution: ExecutionContext) -> None:
        if execution.closed:
            return
        execution.closed = True
        self._active_contexts = max(0, self._active_contexts - 1)
        try:
            if execution.page is not None:
                await execution.page.close()
        except PlaywrightError as exc:
            logger.warning("Error closing page: %s", exc)
        try:
            await execution.context.close()
            logger.info("Closed browser context")
        except PlaywrightError as exc:
            logger.warning("Error closing browser context: %s", exc)

    def status(self) -> dict[str, Any]:
        if self._engine is None:
            state = "not initialized"
        elif self._engine.is_connected():
            state = "running"
        else:
            state = "disconnected"
        return {
            "browser": state,
            "headless": self._headless,
            "activeContexts": self._active_contexts,
        }


def _unlink(path: Path) -> None:
    try:
        path.unlink()
        logger.info("Cleaned up downloaded file")
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.error("Error deleting temp file %s: %s", path, exc)


def _remove_tree(working_area: Path) -> None:
    """Delete files one by one (logging failures), then the directories."""
    if not working_area.exists():
        return
    entries = sorted(working_area.rglob("*"), key=lambda p: len(p.parts), reverse=True)
    files = [p for p in entries if not p.is_dir()]
    if files:
        logger.info("Cleaning %d remaining files...", len(files))
    for entry in entries:
        try:
            if entry.is_dir() and not entry.is_symlink():
                entry.rmdir()
            else:
                entry.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.error("Error deleting %s: %s", entry.name, exc)
    try:
        working_area.rmdir()
        logger.info("Cleaned up temp directory")
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.error("Error deleting temp directory %s: %s", working_area, exc)
