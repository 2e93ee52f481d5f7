"""Tests for the shared browser engine and per-request resources."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from playwright.async_api import Error as PlaywrightError

from src.browser.engine import AutomationEngine, BrowserEngineManager, ExecutionContext
from src.errors import EngineUnavailableError
from src.webhook.models import DownloadedArtifact


class FakePage:
    def __init__(self) -> None:
        self.closed = False

    async def close(self) -> None:
        self.closed = True


class FakeContext:
    def __init__(self, options: dict, close_error: Exception | None = None) -> None:
        self.options = options
        self.page = FakePage()
        self.close_calls = 0
        self.close_error = close_error
        self.page_error: Exception | None = None

    async def new_page(self) -> FakePage:
        if self.page_error is not None:
            raise self.page_error
        return self.page

    async def close(self) -> None:
        self.close_calls += 1
        if self.close_error is not None:
            raise self.close_error


class FakeBrowser:
    def __init__(self) -> None:
        self.connected = True
        self.contexts: list[FakeContext] = []
        self.close_calls = 0
        self.new_context_error: Exception | None = None
        self.close_error: Exception | None = None

    def is_connected(self) -> bool:
        return self.connected

    async def new_context(self, **kwargs) -> FakeContext:
        if self.new_context_error is not None:
            raise self.new_context_error
        context = FakeContext(kwargs)
        self.contexts.append(context)
        return context

    async def close(self) -> None:
        self.close_calls += 1
        self.connected = False
        if self.close_error is not None:
            raise self.close_error


def _make_manager(tmp_path: Path, browsers: list[FakeBrowser] | None = None):
    launched = browsers if browsers is not None else []
    headless_flags: list[bool] = []

    async def launcher(headless: bool) -> AutomationEngine:
        headless_flags.append(headless)
        # Yield so concurrent callers can interleave.
        await asyncio.sleep(0)
        browser = FakeBrowser()
        launched.append(browser)
        return AutomationEngine(browser=browser)

    manager = BrowserEngineManager(tmp_path / "persist", headless=True, launcher=launcher)
    manager.ensure_root()
    return manager, launched, headless_flags


class TestAcquireEngine:
    """One shared engine, launched lazily."""

    @pytest.mark.asyncio
    async def test_concurrent_acquire_launches_once(self, tmp_path: Path) -> None:
        manager, launched, _ = _make_manager(tmp_path)

        engines = await asyncio.gather(*(manager.acquire_engine() for _ in range(5)))

        assert manager.launch_count == 1
        assert len(launched) == 1
        assert all(engine is engines[0] for engine in engines)

    @pytest.mark.asyncio
    async def test_sequential_acquire_reuses_engine(self, tmp_path: Path) -> None:
        manager, _, headless_flags = _make_manager(tmp_path)

        first = await manager.acquire_engine()
        second = await manager.acquire_engine()

        assert first is second
        assert headless_flags == [True]

    @pytest.mark.asyncio
    async def test_launch_failure_raises_engine_unavailable(self, tmp_path: Path) -> None:
        async def failing_launcher(headless: bool) -> AutomationEngine:
            raise PlaywrightError("Executable doesn't exist")

        manager = BrowserEngineManager(tmp_path, launcher=failing_launcher)

        with pytest.raises(EngineUnavailableError, match="Failed to launch browser"):
            await manager.acquire_engine()
        assert manager.engine is None
        assert manager.launch_count == 0

    @pytest.mark.asyncio
    async def test_failed_launch_is_retried_on_next_acquire(self, tmp_path: Path) -> None:
        calls = 0

        async def flaky_launcher(headless: bool) -> AutomationEngine:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise PlaywrightError("first launch fails")
            return AutomationEngine(browser=FakeBrowser())

        manager = BrowserEngineManager(tmp_path, launcher=flaky_launcher)

        with pytest.raises(EngineUnavailableError):
            await manager.acquire_engine()
        engine = await manager.acquire_engine()

        assert engine.is_connected()
        assert calls == 2


class TestRecreateEngine:
    """Operator-triggered restart of the shared engine."""

    @pytest.mark.asyncio
    async def test_recreate_closes_old_and_launches_new(self, tmp_path: Path) -> None:
        manager, launched, _ = _make_manager(tmp_path)
        old = await manager.acquire_engine()

        new = await manager.recreate_engine()

        assert new is not old
        assert manager.engine is new
        assert manager.launch_count == 2
        assert launched[0].close_calls == 1

    @pytest.mark.asyncio
    async def test_recreate_without_engine_just_launches(self, tmp_path: Path) -> None:
        manager, launched, _ = _make_manager(tmp_path)

        await manager.recreate_engine()

        assert manager.launch_count == 1
        assert len(launched) == 1

    @pytest.mark.asyncio
    async def test_recreate_tolerates_close_error(self, tmp_path: Path) -> None:
        manager, launched, _ = _make_manager(tmp_path)
        await manager.acquire_engine()
        launched[0].close_error = PlaywrightError("Target closed")

        new = await manager.recreate_engine()

        assert new.browser is launched[1]

    @pytest.mark.asyncio
    async def test_in_flight_context_released_after_recreate(self, tmp_path: Path) -> None:
        manager, _, _ = _make_manager(tmp_path)
        engine = await manager.acquire_engine()
        area = manager.create_working_area()
        execution = await manager.open_context(engine, area)

        await manager.recreate_engine()
        await manager.release(execution, area)

        assert manager.active_contexts == 0
        assert not area.exists()


class TestOpenContext:
    """Isolated, download-enabled contexts."""

    @pytest.mark.asyncio
    async def test_open_context_enables_downloads(self, tmp_path: Path) -> None:
        manager, launched, _ = _make_manager(tmp_path)
        engine = await manager.acquire_engine()
        area = manager.create_working_area()

        execution = await manager.open_context(engine, area)

        assert launched[0].contexts[0].options == {"accept_downloads": True}
        assert execution.page is launched[0].contexts[0].page
        assert execution.working_area == area
        assert manager.active_contexts == 1

    @pytest.mark.asyncio
    async def test_disconnected_engine_raises(self, tmp_path: Path) -> None:
        manager, launched, _ = _make_manager(tmp_path)
        engine = await manager.acquire_engine()
        launched[0].connected = False

        with pytest.raises(EngineUnavailableError, match="not connected"):
            await manager.open_context(engine, manager.create_working_area())
        assert manager.active_contexts == 0

    @pytest.mark.asyncio
    async def test_new_context_failure_raises(self, tmp_path: Path) -> None:
        manager, launched, _ = _make_manager(tmp_path)
        engine = await manager.acquire_engine()
        launched[0].new_context_error = PlaywrightError("Browser has been closed")

        with pytest.raises(EngineUnavailableError, match="browser context"):
            await manager.open_context(engine, manager.create_working_area())
        assert manager.active_contexts == 0

    @pytest.mark.asyncio
    async def test_new_page_failure_closes_context(self, tmp_path: Path) -> None:
        manager, _, _ = _make_manager(tmp_path)
        engine = await manager.acquire_engine()
        context = FakeContext({})
        context.page_error = PlaywrightError("page crashed")

        async def new_context(**kwargs) -> FakeContext:
            return context

        engine.browser.new_context = new_context

        with pytest.raises(EngineUnavailableError, match="open page"):
            await manager.open_context(engine, manager.create_working_area())
        assert context.close_calls == 1
        assert manager.active_contexts == 0


class TestWorkingArea:
    """Per-request directories under the persistent root."""

    def test_working_areas_are_unique(self, tmp_path: Path) -> None:
        manager = BrowserEngineManager(tmp_path)

        first = manager.create_working_area()
        second = manager.create_working_area()

        assert first != second
        assert first.parent == tmp_path
        assert first.name.startswith("download-")
        assert first.is_dir() and second.is_dir()

    def test_ensure_root_creates_directory(self, tmp_path: Path) -> None:
        manager = BrowserEngineManager(tmp_path / "a" / "b")

        root = manager.ensure_root()

        assert root.is_dir()


class TestRelease:
    """Cleanup on every exit path."""

    @pytest.mark.asyncio
    async def test_release_closes_context_and_removes_area(self, tmp_path: Path) -> None:
        manager, launched, _ = _make_manager(tmp_path)
        engine = await manager.acquire_engine()
        area = manager.create_working_area()
        execution = await manager.open_context(engine, area)
        artifact_path = area / "report.pdf"
        artifact_path.write_bytes(b"%PDF")
        (area / "nested").mkdir()
        (area / "nested" / "stray.tmp").write_text("x")

        await manager.release(execution, area, DownloadedArtifact(artifact_path, "report.pdf"))

        context = launched[0].contexts[0]
        assert context.close_calls == 1
        assert context.page.closed
        assert not area.exists()
        assert manager.active_contexts == 0
        # The engine survives request cleanup.
        assert launched[0].close_calls == 0

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, tmp_path: Path) -> None:
        manager, launched, _ = _make_manager(tmp_path)
        engine = await manager.acquire_engine()
        area = manager.create_working_area()
        execution = await manager.open_context(engine, area)

        await manager.release(execution, area)
        await manager.release(execution, area)

        assert launched[0].contexts[0].close_calls == 1
        assert manager.active_contexts == 0

    @pytest.mark.asyncio
    async def test_release_with_nothing_created(self, tmp_path: Path) -> None:
        manager = BrowserEngineManager(tmp_path)

        await manager.release(None, None)

        assert manager.active_contexts == 0

    @pytest.mark.asyncio
    async def test_release_removes_area_when_context_close_fails(self, tmp_path: Path) -> None:
        manager = BrowserEngineManager(tmp_path)
        area = manager.create_working_area()
        (area / "partial.crdownload").write_bytes(b"..")
        execution = ExecutionContext(
            context=FakeContext({}, close_error=PlaywrightError("Target closed")),
            page=FakePage(),
            working_area=area,
        )

        await manager.release(execution, area)

        assert execution.closed
        assert not area.exists()

    @pytest.mark.asyncio
    async def test_release_tolerates_missing_artifact(self, tmp_path: Path) -> None:
        manager = BrowserEngineManager(tmp_path)
        area = manager.create_working_area()
        missing = DownloadedArtifact(area / "gone.pdf", "gone.pdf")

        await manager.release(None, area, missing)

        assert not area.exists()


class TestShutdownAndStatus:
    @pytest.mark.asyncio
    async def test_status_reflects_engine_state(self, tmp_path: Path) -> None:
        manager, launched, _ = _make_manager(tmp_path)
        assert manager.status()["browser"] == "not initialized"

        await manager.acquire_engine()
        assert manager.status() == {"browser": "running", "headless": True, "activeContexts": 0}

        launched[0].connected = False
        assert manager.status()["browser"] == "disconnected"

    @pytest.mark.asyncio
    async def test_shutdown_closes_engine(self, tmp_path: Path) -> None:
        manager, launched, _ = _make_manager(tmp_path)
        await manager.acquire_engine()

        await manager.shutdown()
        await manager.shutdown()

        assert launched[0].close_calls == 1
        assert manager.engine is None

    @pytest.mark.asyncio
    async def test_acquire_during_shutdown_does_not_relaunch(self, tmp_path: Path) -> None:
        manager, launched, _ = _make_manager(tmp_path)
        await manager.acquire_engine()
        close_started = asyncio.Event()
        finish_close = asyncio.Event()
        browser = launched[0]

        async def slow_close() -> None:
            close_started.set()
            await finish_close.wait()
            browser.connected = False

        browser.close = slow_close

        shutdown_task = asyncio.create_task(manager.shutdown())
        await close_started.wait()
        acquire_task = asyncio.create_task(manager.acquire_engine())
        await asyncio.sleep(0)
        finish_close.set()
        await shutdown_task

        with pytest.raises(EngineUnavailableError, match="shut down"):
            await acquire_task
        assert manager.engine is None
        assert manager.launch_count == 1
        assert len(launched) == 1

    @pytest.mark.asyncio
    async def test_no_engine_after_shutdown(self, tmp_path: Path) -> None:
        manager, launched, _ = _make_manager(tmp_path)
        await manager.acquire_engine()
        await manager.shutdown()

        with pytest.raises(EngineUnavailableError):
            await manager.acquire_engine()
        with pytest.raises(EngineUnavailableError):
            await manager.recreate_engine()
        assert manager.launch_count == 1

    @pytest.mark.asyncio
    async def test_engine_close_stops_driver_even_if_browser_close_fails(self) -> None:
        class FakeDriver:
            stopped = False

            async def stop(self) -> None:
                self.stopped = True

        browser = FakeBrowser()
        browser.close_error = PlaywrightError("already closed")
        driver = FakeDriver()
        engine = AutomationEngine(browser=browser, playwright=driver)

        with pytest.raises(PlaywrightError):
            await engine.close()
        assert driver.stopped
