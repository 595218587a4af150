from __future__ import annotations

import asyncio
import os
import tempfile
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable

_RUNTIME_ROOT = Path(tempfile.mkdtemp(prefix="pagesnap-tests-"))
os.environ.setdefault("JOBS_DB_PATH", str(_RUNTIME_ROOT / "pagesnap.db"))
os.environ.setdefault("UPLOADS_DIR", str(_RUNTIME_ROOT / "uploads"))
os.environ.setdefault("TEMP_DIR", str(_RUNTIME_ROOT / "temp"))
os.environ.setdefault("PROMETHEUS_PORT", "0")

import pytest  # noqa: E402

from pagesnap.capture import CaptureResult  # noqa: E402
from pagesnap.readiness import (  # noqa: E402
    FONTS_SCRIPT,
    FRAMEWORKS_SCRIPT,
    IMAGES_SCRIPT,
    MUTATION_SCRIPT,
    ReadinessReport,
)
from pagesnap.renderer import NavigationResult, RendererController  # noqa: E402
from pagesnap.schemas import ArtifactDescriptor, CaptureOptions  # noqa: E402
from pagesnap.settings import ReadinessSettings, Settings, get_settings  # noqa: E402

_SCRIPT_NAMES = {
    IMAGES_SCRIPT: "images",
    FONTS_SCRIPT: "fonts",
    MUTATION_SCRIPT: "dom_quiet",
    FRAMEWORKS_SCRIPT: "frameworks",
}


class FakeResponse:
    def __init__(self, status: int = 200, status_text: str = "OK") -> None:
        self.status = status
        self.status_text = status_text

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 400


class FakePage:
    """Just enough of ``playwright.async_api.Page`` for the pipeline."""

    def __init__(
        self,
        *,
        response: FakeResponse | None = None,
        goto_error: BaseException | None = None,
        goto_delay: float = 0.0,
        load_state_delay: float = 0.0,
        load_state_error: BaseException | None = None,
        frameworks: list[str] | None = None,
        script_errors: dict[str, BaseException] | None = None,
        screenshot_bytes: bytes = b"\x89PNG raw capture",
    ) -> None:
        self.response = response if response is not None else FakeResponse()
        self.goto_error = goto_error
        self.goto_delay = goto_delay
        self.load_state_delay = load_state_delay
        self.load_state_error = load_state_error
        self.frameworks = frameworks or []
        self.script_errors = script_errors or {}
        self.screenshot_bytes = screenshot_bytes
        self.url = "about:blank"
        self.default_timeout: int | None = None
        self.evaluated: list[str] = []
        self.init_scripts: list[str] = []
        self.screenshots: list[dict[str, Any]] = []
        self.closed = False
        self.no_response = False

    def set_default_timeout(self, timeout: int) -> None:
        self.default_timeout = timeout

    def set_default_navigation_timeout(self, timeout: int) -> None:
        self.default_timeout = timeout

    async def goto(self, url: str, *, wait_until: str, timeout: int) -> FakeResponse | None:
        if self.goto_delay:
            await asyncio.sleep(self.goto_delay)
        if self.goto_error is not None:
            raise self.goto_error
        self.url = url
        if self.no_response:
            return None
        return self.response

    async def wait_for_load_state(self, state: str, *, timeout: int) -> None:
        if self.load_state_delay:
            await asyncio.sleep(self.load_state_delay)
        if self.load_state_error is not None:
            raise self.load_state_error

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        name = _SCRIPT_NAMES.get(script, "unknown")
        self.evaluated.append(name)
        if name in self.script_errors:
            raise self.script_errors[name]
        if name == "images":
            return 0
        if name == "fonts":
            return True
        if name == "dom_quiet":
            return "quiet"
        if name == "frameworks":
            return list(self.frameworks)
        return None

    async def add_init_script(self, script: str) -> None:
        self.init_scripts.append(script)

    async def screenshot(self, **options: Any) -> bytes:
        self.screenshots.append(options)
        Path(options["path"]).write_bytes(self.screenshot_bytes)
        return self.screenshot_bytes

    async def close(self) -> None:
        self.closed = True


class FakeContext:
    def __init__(self, page_factory: Callable[[], FakePage], options: dict[str, Any]) -> None:
        self._page_factory = page_factory
        self.options = options
        self.pages: list[FakePage] = []
        self.closed = False
        self.page_error: BaseException | None = None

    async def new_page(self) -> FakePage:
        if self.page_error is not None:
            raise self.page_error
        page = self._page_factory()
        self.pages.append(page)
        return page

    async def close(self) -> None:
        self.closed = True


class FakeBrowser:
    version = "130.0.0.0"

    def __init__(self, page_factory: Callable[[], FakePage] | None = None) -> None:
        self.page_factory = page_factory or FakePage
        self.contexts: list[FakeContext] = []
        self.connected = True
        self.closed = False
        self.page_error: BaseException | None = None

    def is_connected(self) -> bool:
        return self.connected

    async def new_context(self, **options: Any) -> FakeContext:
        context = FakeContext(self.page_factory, options)
        context.page_error = self.page_error
        self.contexts.append(context)
        return context

    async def close(self) -> None:
        self.closed = True
        self.connected = False


class FakePlaywright:
    def __init__(self) -> None:
        self.stopped = False

    async def stop(self) -> None:
        self.stopped = True


class FakeLauncher:
    """Stands in for ``launch_chromium``; every call yields a fresh browser."""

    def __init__(self, page_factory: Callable[[], FakePage] | None = None, *, delay: float = 0.0) -> None:
        self.page_factory = page_factory
        self.delay = delay
        self.calls = 0
        self.browsers: list[FakeBrowser] = []
        self.drivers: list[FakePlaywright] = []

    async def __call__(self, browser_settings: Any) -> tuple[FakePlaywright, FakeBrowser]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        driver = FakePlaywright()
        browser = FakeBrowser(self.page_factory)
        self.drivers.append(driver)
        self.browsers.append(browser)
        return driver, browser


def fast_readiness(**overrides: Any) -> ReadinessSettings:
    values: dict[str, Any] = {
        "budget_ratio": 0.5,
        "network_idle_ms": 200,
        "image_timeout_ms": 200,
        "font_timeout_ms": 200,
        "quiet_window_ms": 10,
        "mutation_ceiling_ms": 200,
        "fallback_wait_ms": 10,
        "framework_delays": {"react": 20, "next": 40},
    }
    values.update(overrides)
    return ReadinessSettings(**values)


@pytest.fixture
def capture_settings(tmp_path: Path) -> Settings:
    base = get_settings()
    return replace(
        base,
        readiness=fast_readiness(),
        storage=replace(
            base.storage,
            uploads_dir=tmp_path / "uploads",
            temp_dir=tmp_path / "temp",
            db_path=tmp_path / "jobs.db",
        ),
    )


@pytest.fixture
def fake_launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def renderer(fake_launcher: FakeLauncher) -> RendererController:
    return RendererController(get_settings().browser, launcher=fake_launcher)


class RecordingRunner:
    """Capture runner double that writes a small file into the uploads dir."""

    def __init__(self, *, delay: float = 0.0, error: BaseException | None = None, block: bool = False) -> None:
        self.delay = delay
        self.error = error
        self.block = block
        self.calls: list[tuple[str, CaptureOptions]] = []
        self.started = asyncio.Event()

    async def __call__(self, url: str, options: CaptureOptions, *, renderer: Any, settings: Settings) -> CaptureResult:
        self.calls.append((url, options))
        self.started.set()
        if self.block:
            await asyncio.Event().wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        uploads = settings.storage.uploads_dir
        uploads.mkdir(parents=True, exist_ok=True)
        name = f"screenshot_{len(self.calls)}_{'a' * 16}.{options.format.extension}"
        path = uploads / name
        path.write_bytes(b"encoded")
        artifact = ArtifactDescriptor(
            file_name=name,
            local_path=str(path),
            local_url=f"/uploads/{name}",
            format=options.format,
            width=options.width,
            height=options.height,
            byte_size=7,
            original_byte_size=9,
            optimized=options.optimize,
        )
        return CaptureResult(
            artifact=artifact,
            navigation=NavigationResult(status=200, final_url=url, elapsed_ms=5),
            readiness=ReadinessReport(budget_ms=1000),
            capture_ms=10,
        )


