"""Capture pipeline: render, wait for readiness, screenshot, encode."""

from __future__ import annotations

import asyncio
import logging
import secrets
import shutil
import time
from dataclasses import dataclass
from pathlib import Path

from pagesnap import metrics
from pagesnap.errors import CaptureError, NavigationError
from pagesnap.imaging import ImageInfo, encode_image, optimize_image, read_image_info
from pagesnap.readiness import ReadinessReport, wait_until_visually_ready
from pagesnap.renderer import NavigationResult, RenderContext, RendererController, ViewportSpec
from pagesnap.schemas import ArtifactDescriptor, CaptureOptions, ImageFormat
from pagesnap.settings import ReadinessSettings, Settings, get_settings

LOGGER = logging.getLogger(__name__)

TEMP_PREFIX = "temp_"


@dataclass(slots=True)
class ArtifactNames:
    """File names shared by the raw capture and its encoded counterpart."""

    file_name: str
    temp_name: str

    @classmethod
    def generate(cls, image_format: ImageFormat, *, now_ms: int | None = None) -> ArtifactNames:
        stamp = now_ms if now_ms is not None else int(time.time() * 1000)
        stem = f"screenshot_{stamp}_{secrets.token_hex(8)}"
        raw_extension = "jpg" if image_format.is_jpeg else "png"
        return cls(
            file_name=f"{stem}.{image_format.extension}",
            temp_name=f"{TEMP_PREFIX}{stem}.{raw_extension}",
        )


@dataclass(slots=True)
class CaptureResult:
    """Artifact plus the diagnostics gathered while producing it."""

    artifact: ArtifactDescriptor
    navigation: NavigationResult
    readiness: ReadinessReport
    capture_ms: int


async def execute_capture(
    url: str,
    options: CaptureOptions,
    *,
    renderer: RendererController,
    settings: Settings | None = None,
) -> CaptureResult:
    """Render ``url`` and write the encoded image into the uploads directory.

    ``options.timeout`` bounds navigation plus the readiness heuristic; when it
    elapses the render context is closed and a timeout ``NavigationError`` is
    raised. The raw temp capture is removed on every exit path.
    """

    cfg = settings or get_settings()
    storage = cfg.storage
    storage.temp_dir.mkdir(parents=True, exist_ok=True)
    storage.uploads_dir.mkdir(parents=True, exist_ok=True)

    names = ArtifactNames.generate(options.format)
    raw_path = storage.temp_dir / names.temp_name
    final_path = storage.uploads_dir / names.file_name
    viewport = ViewportSpec.for_options(options)
    start = time.perf_counter()

    try:
        async with renderer.render_context(viewport) as ctx:
            try:
                navigation, readiness = await asyncio.wait_for(
                    _load_page(renderer, ctx, url, options.timeout, cfg.readiness),
                    timeout=options.timeout / 1000,
                )
            except asyncio.TimeoutError as exc:
                raise NavigationError.timeout() from exc
            await renderer.capture(
                ctx,
                raw_path,
                image_format=options.format,
                quality=options.quality,
                full_page=options.full_page,
                clip_width=options.width,
                clip_height=options.height,
            )
        artifact = await _finalize(raw_path, final_path, names.file_name, options, cfg)
    finally:
        _discard(raw_path)

    elapsed = time.perf_counter() - start
    metrics.observe_capture_seconds(elapsed)
    LOGGER.info(
        "Captured %s -> %s (%dx%d, %d bytes, %.2fs)",
        url,
        artifact.file_name,
        artifact.width,
        artifact.height,
        artifact.byte_size,
        elapsed,
    )
    return CaptureResult(
        artifact=artifact,
        navigation=navigation,
        readiness=readiness,
        capture_ms=int(elapsed * 1000),
    )


async def _load_page(
    renderer: RendererController,
    ctx: RenderContext,
    url: str,
    timeout_ms: int,
    readiness_settings: ReadinessSettings,
) -> tuple[NavigationResult, ReadinessReport]:
    started = time.monotonic()
    navigation = await renderer.navigate(ctx, url, timeout_ms)
    spent_ms = int((time.monotonic() - started) * 1000)
    readiness = await wait_until_visually_ready(
        ctx.page,
        timeout_ms=timeout_ms,
        remaining_ms=timeout_ms - spent_ms,
        readiness_settings=readiness_settings,
    )
    return navigation, readiness


async def _finalize(
    raw_path: Path,
    final_path: Path,
    file_name: str,
    options: CaptureOptions,
    cfg: Settings,
) -> ArtifactDescriptor:
    try:
        original_size = raw_path.stat().st_size
        info = await _encode(raw_path, final_path, options)
    except OSError as exc:
        _discard(final_path)
        raise CaptureError(f"Failed to write screenshot {file_name}: {exc}", public_message="Failed to store screenshot") from exc
    except BaseException:
        _discard(final_path)
        raise

    return ArtifactDescriptor(
        file_name=file_name,
        local_path=str(final_path),
        local_url=f"{cfg.storage.public_uploads_path}/{file_name}",
        format=options.format,
        width=info.width,
        height=info.height,
        byte_size=info.byte_size,
        original_byte_size=original_size,
        optimized=options.optimize,
    )


async def _encode(raw_path: Path, final_path: Path, options: CaptureOptions) -> ImageInfo:
    if options.optimize:
        return await optimize_image(raw_path, final_path, image_format=options.format, quality=options.quality)
    if options.format is ImageFormat.WEBP:
        return await encode_image(raw_path, final_path, image_format=options.format, quality=options.quality)
    await asyncio.to_thread(shutil.move, str(raw_path), str(final_path))
    return await read_image_info(final_path)


def cleanup_stale_temp_files(temp_dir: Path, max_age_seconds: int, *, now: float | None = None) -> int:
    """Delete ``temp_*`` files older than ``max_age_seconds``; return how many went."""

    if not temp_dir.is_dir():
        return 0
    cutoff = (now if now is not None else time.time()) - max_age_seconds
    removed = 0
    for path in temp_dir.glob(f"{TEMP_PREFIX}*"):
        try:
            if path.is_file() and path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        except OSError as exc:
            LOGGER.warning("Failed to remove stale temp file %s: %s", path, exc)
    if removed:
        LOGGER.info("Removed %d stale temp files from %s", removed, temp_dir)
    return removed


def _discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        LOGGER.warning("Failed to remove %s: %s", path, exc)
