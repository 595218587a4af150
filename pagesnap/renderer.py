"""Shared Chromium lifecycle plus short-lived per-capture render contexts."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable
from uuid import uuid4

from playwright.async_api import Browser, BrowserContext, Page, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from pagesnap import metrics
from pagesnap.errors import CaptureError, NavigationError
from pagesnap.presets import PRESETS
from pagesnap.schemas import CaptureOptions, DeviceProfile, ImageFormat
from pagesnap.settings import BrowserSettings, get_settings

LOGGER = logging.getLogger(__name__)

BrowserLauncher = Callable[[BrowserSettings], Awaitable[tuple[Any, Browser]]]

_DEVICE_LIMITS = {
    DeviceProfile.MOBILE: (375, 667),
    DeviceProfile.TABLET: (768, 1024),
}
_CHANNEL_ALIASES = {
    "cft": "chrome",
    "chrome-for-testing": "chrome",
}


@dataclass(frozen=True, slots=True)
class ViewportSpec:
    """Surface size and device hints for one render context."""

    width: int
    height: int
    device_scale_factor: float = 1.0
    is_mobile: bool = False
    has_touch: bool = False

    @classmethod
    def for_options(cls, options: CaptureOptions) -> ViewportSpec:
        if options.preset:
            preset = PRESETS[options.preset]
            return cls(
                width=preset.width,
                height=preset.height,
                device_scale_factor=preset.device_scale_factor,
                is_mobile=preset.is_mobile,
                has_touch=preset.is_mobile,
            )
        limits = _DEVICE_LIMITS.get(options.device)
        if limits is None:
            return cls(
                width=options.width,
                height=options.height,
                device_scale_factor=options.device_scale_factor,
            )
        max_width, max_height = limits
        return cls(
            width=min(options.width, max_width),
            height=min(options.height, max_height),
            device_scale_factor=options.device_scale_factor,
            is_mobile=True,
            has_touch=True,
        )

    def context_options(self, *, user_agent: str) -> dict[str, Any]:
        return {
            "viewport": {"width": self.width, "height": self.height},
            "device_scale_factor": self.device_scale_factor,
            "is_mobile": self.is_mobile,
            "has_touch": self.has_touch,
            "user_agent": user_agent,
            "locale": "en-US",
            "reduced_motion": "reduce",
        }


@dataclass(slots=True)
class RenderContext:
    """One isolated browser context + page used for a single capture."""

    context: BrowserContext
    page: Page
    viewport: ViewportSpec
    id: str = field(default_factory=lambda: uuid4().hex[:12])
    closed: bool = False


@dataclass(slots=True)
class NavigationResult:
    status: int
    final_url: str
    elapsed_ms: int


async def launch_chromium(browser_settings: BrowserSettings) -> tuple[Any, Browser]:
    """Start the Playwright driver and a headless Chromium."""

    playwright = await async_playwright().start()
    channel = _normalize_channel(browser_settings.playwright_channel)
    try:
        browser = await playwright.chromium.launch(
            channel=channel,
            headless=browser_settings.headless,
            args=list(browser_settings.launch_args),
            timeout=browser_settings.launch_timeout_ms,
        )
    except BaseException:
        await playwright.stop()
        raise
    LOGGER.info("Chromium launched (channel=%s, version=%s)", channel, browser.version)
    return playwright, browser


class RendererController:
    """Owns the process-wide browser and hands out per-capture contexts.

    The browser is launched lazily on the first ``acquire`` and relaunched when
    the liveness probe fails. Launching is serialized by a lock so concurrent
    first callers share one launch.
    """

    def __init__(
        self,
        browser_settings: BrowserSettings | None = None,
        *,
        launcher: BrowserLauncher | None = None,
    ) -> None:
        self._settings = browser_settings or get_settings().browser
        self._launcher = launcher or launch_chromium
        self._playwright: Any = None
        self._browser: Browser | None = None
        self._lock = asyncio.Lock()
        self.launch_count = 0
        self.open_contexts = 0

    async def acquire(self) -> Browser:
        browser = self._browser
        if browser is not None and _is_connected(browser):
            return browser
        async with self._lock:
            if self._browser is not None:
                if _is_connected(self._browser):
                    return self._browser
                LOGGER.warning("Chromium disconnected; relaunching")
                await self._teardown()
            self._playwright, self._browser = await self._launcher(self._settings)
            self.launch_count += 1
            metrics.record_browser_launch()
            return self._browser

    async def health_check(self) -> bool:
        return self._browser is not None and _is_connected(self._browser)

    async def dispose(self) -> None:
        async with self._lock:
            await self._teardown()

    async def open_context(self, viewport: ViewportSpec) -> RenderContext:
        browser = await self.acquire()
        context = await browser.new_context(**viewport.context_options(user_agent=self._settings.user_agent))
        try:
            page = await context.new_page()
            await _mask_automation(page)
        except BaseException:
            await context.close()
            raise
        self.open_contexts += 1
        ctx = RenderContext(context=context, page=page, viewport=viewport)
        LOGGER.debug("Opened render context %s (%dx%d)", ctx.id, viewport.width, viewport.height)
        return ctx

    async def close_context(self, ctx: RenderContext) -> None:
        if ctx.closed:
            return
        ctx.closed = True
        self.open_contexts -= 1
        try:
            await ctx.page.close()
        except Exception as exc:  # pragma: no cover - browser may already be gone
            LOGGER.debug("Page close failed for context %s: %s", ctx.id, exc)
        try:
            await ctx.context.close()
        except Exception as exc:  # pragma: no cover - browser may already be gone
            LOGGER.warning("Render context %s did not close cleanly: %s", ctx.id, exc)

    @asynccontextmanager
    async def render_context(self, viewport: ViewportSpec) -> AsyncIterator[RenderContext]:
        ctx = await self.open_context(viewport)
        try:
            yield ctx
        finally:
            await self.close_context(ctx)

    async def navigate(self, ctx: RenderContext, url: str, timeout_ms: int) -> NavigationResult:
        start = time.perf_counter()
        ctx.page.set_default_timeout(timeout_ms)
        ctx.page.set_default_navigation_timeout(timeout_ms)
        try:
            response = await ctx.page.goto(url, wait_until=self._settings.wait_until, timeout=timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise NavigationError.timeout() from exc
        except PlaywrightError as exc:
            raise _classify_navigation_error(exc) from exc
        if response is None:
            raise NavigationError.network("no response")
        if not response.ok:
            raise NavigationError.http_status(response.status, response.status_text)
        return NavigationResult(
            status=response.status,
            final_url=ctx.page.url,
            elapsed_ms=int((time.perf_counter() - start) * 1000),
        )

    async def capture(
        self,
        ctx: RenderContext,
        path: Path,
        *,
        image_format: ImageFormat,
        quality: int,
        full_page: bool,
        clip_width: int,
        clip_height: int,
    ) -> Path:
        """Write the raw screenshot for ``ctx`` to ``path``."""

        options: dict[str, Any] = {
            "path": str(path),
            "type": image_format.screenshot_type,
            "full_page": full_page,
            "animations": "disabled",
            "caret": "hide",
        }
        if image_format.is_jpeg:
            options["quality"] = quality
        if not full_page:
            options["clip"] = {
                "x": 0,
                "y": 0,
                "width": min(clip_width, ctx.viewport.width),
                "height": min(clip_height, ctx.viewport.height),
            }
        try:
            await ctx.page.screenshot(**options)
        except PlaywrightTimeoutError as exc:
            raise NavigationError.timeout() from exc
        except PlaywrightError as exc:
            raise CaptureError(f"Screenshot failed: {exc}", public_message="Screenshot capture failed") from exc
        return path

    async def _teardown(self) -> None:
        browser, playwright = self._browser, self._playwright
        self._browser = None
        self._playwright = None
        if browser is not None:
            try:
                await browser.close()
            except Exception as exc:  # pragma: no cover - already disconnected
                LOGGER.debug("Browser close failed: %s", exc)
        if playwright is not None:
            try:
                await playwright.stop()
            except Exception as exc:  # pragma: no cover - driver already gone
                LOGGER.debug("Playwright stop failed: %s", exc)


async def _mask_automation(page: Page) -> None:
    await page.add_init_script(
        """
        Object.defineProperty(navigator, 'webdriver', {
            get: () => undefined,
        });
        """
    )


def _is_connected(browser: Browser) -> bool:
    try:
        return bool(browser.is_connected())
    except Exception:  # pragma: no cover - driver torn down underneath us
        return False


def _classify_navigation_error(exc: PlaywrightError) -> NavigationError:
    message = str(exc)
    if "timeout" in message.lower():
        return NavigationError.timeout()
    if "net::" in message:
        return NavigationError.network("network error")
    return NavigationError.network("navigation failed")


def _normalize_channel(channel: str) -> str:
    if not channel:
        return "chromium"
    lowered = channel.strip().lower()
    return _CHANNEL_ALIASES.get(lowered, lowered)
