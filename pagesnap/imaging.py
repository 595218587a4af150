"""Screenshot encoding and optimization backed by pyvips."""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pyvips

from pagesnap.errors import TransformError
from pagesnap.schemas import ImageFormat

_PNG_ENCODE_ARGS = {
    "compression": 9,
    "interlace": False,
}
_WEBP_EFFORT = 6


@dataclass(slots=True)
class ImageInfo:
    """Size on disk plus true pixel dimensions of an encoded file."""

    byte_size: int
    width: int
    height: int


async def optimize_image(
    raw_path: Path,
    target_path: Path,
    *,
    image_format: ImageFormat,
    quality: int,
) -> ImageInfo:
    """Re-encode ``raw_path`` into ``target_path`` with size-oriented settings.

    JPEG output is progressive with optimized Huffman tables, PNG uses maximum
    deflate compression and WebP uses the slowest (smallest) effort level.
    When the raw capture is already in the requested format and the
    re-encode comes out larger, the raw bytes are kept instead.
    """

    return await asyncio.to_thread(_encode_sync, raw_path, target_path, image_format, quality, True)


async def encode_image(
    raw_path: Path,
    target_path: Path,
    *,
    image_format: ImageFormat,
    quality: int,
) -> ImageInfo:
    """Plain transcode into the requested format, without size tuning."""

    return await asyncio.to_thread(_encode_sync, raw_path, target_path, image_format, quality, False)


async def read_image_info(path: Path) -> ImageInfo:
    return await asyncio.to_thread(_info_sync, path)


def encoder_options(image_format: ImageFormat, quality: int, *, optimize: bool) -> tuple[str, dict[str, Any]]:
    """Return the pyvips buffer suffix and save options for ``image_format``."""

    if image_format.is_jpeg:
        options: dict[str, Any] = {"Q": quality}
        if optimize:
            options.update(optimize_coding=True, interlace=True)
        return ".jpg", options
    if image_format is ImageFormat.WEBP:
        options = {"Q": quality}
        if optimize:
            options["effort"] = _WEBP_EFFORT
        return ".webp", options
    if optimize:
        return ".png", dict(_PNG_ENCODE_ARGS)
    return ".png", {}


def _encode_sync(
    raw_path: Path,
    target_path: Path,
    image_format: ImageFormat,
    quality: int,
    optimize: bool,
) -> ImageInfo:
    suffix, options = encoder_options(image_format, quality, optimize=optimize)
    try:
        image = pyvips.Image.new_from_file(str(raw_path), access="sequential")
        if image_format.is_jpeg and image.hasalpha():
            image = image.flatten(background=[255, 255, 255])
        data = image.write_to_buffer(suffix, **options)
        width, height = image.width, image.height
    except pyvips.Error as exc:
        raise TransformError(f"Failed to encode {raw_path.name} as {image_format.value}: {exc}") from exc

    raw_size = raw_path.stat().st_size
    same_format = _raw_format(raw_path) == suffix
    target_path.parent.mkdir(parents=True, exist_ok=True)
    if optimize and same_format and len(data) > raw_size:
        shutil.copyfile(raw_path, target_path)
        return ImageInfo(byte_size=raw_size, width=width, height=height)
    target_path.write_bytes(data)
    return ImageInfo(byte_size=len(data), width=width, height=height)


def _info_sync(path: Path) -> ImageInfo:
    try:
        image = pyvips.Image.new_from_file(str(path))
    except pyvips.Error as exc:
        raise TransformError(f"Unreadable image {path.name}: {exc}") from exc
    return ImageInfo(byte_size=path.stat().st_size, width=image.width, height=image.height)


def _raw_format(path: Path) -> str:
    suffix = path.suffix.lower()
    if suffix == ".jpeg":
        return ".jpg"
    return suffix
