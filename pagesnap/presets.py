"""Named resolution presets offered instead of explicit dimensions."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Mapping

__all__ = ["Preset", "PRESETS", "CATEGORIES", "get_preset", "grouped_presets"]

CATEGORIES: tuple[str, ...] = ("mobile", "tablet", "desktop", "social", "web", "custom")


@dataclass(frozen=True, slots=True)
class Preset:
    """Fixed viewport for a named preset."""

    name: str
    category: str
    width: int
    height: int
    device_scale_factor: float = 1.0
    description: str = ""

    @property
    def is_mobile(self) -> bool:
        return self.category in {"mobile", "tablet"}

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


def _preset(name: str, category: str, width: int, height: int, dpr: float = 1.0, description: str = "") -> Preset:
    return Preset(
        name=name,
        category=category,
        width=width,
        height=height,
        device_scale_factor=dpr,
        description=description,
    )


PRESETS: Mapping[str, Preset] = {
    preset.name: preset
    for preset in (
        _preset("mobile-portrait", "mobile", 375, 667, 2.0, "Generic phone, portrait"),
        _preset("mobile-landscape", "mobile", 667, 375, 2.0, "Generic phone, landscape"),
        _preset("iphone-14", "mobile", 390, 844, 3.0, "iPhone 14"),
        _preset("iphone-14-pro", "mobile", 393, 852, 3.0, "iPhone 14 Pro"),
        _preset("android-standard", "mobile", 360, 800, 3.0, "Common Android viewport"),
        _preset("ipad", "tablet", 768, 1024, 2.0, "iPad, portrait"),
        _preset("ipad-pro", "tablet", 1024, 1366, 2.0, "iPad Pro 12.9, portrait"),
        _preset("tablet-landscape", "tablet", 1024, 768, 2.0, "Generic tablet, landscape"),
        _preset("desktop-hd", "desktop", 1366, 768, description="HD laptop"),
        _preset("desktop-fhd", "desktop", 1920, 1080, description="Full HD"),
        _preset("desktop-2k", "desktop", 2560, 1440, description="QHD"),
        _preset("desktop-4k", "desktop", 3840, 2160, description="4K UHD"),
        _preset("facebook-post", "social", 1200, 630, description="Facebook link preview"),
        _preset("twitter-header", "social", 1500, 500, description="Twitter/X header"),
        _preset("instagram-square", "social", 1080, 1080, description="Instagram square post"),
        _preset("instagram-story", "social", 1080, 1920, description="Instagram story"),
        _preset("youtube-thumbnail", "social", 1280, 720, description="YouTube thumbnail"),
        _preset("web-banner", "web", 1200, 300, description="Wide web banner"),
        _preset("blog-header", "web", 1200, 600, description="Blog header image"),
        _preset("thumbnail-large", "web", 800, 600),
        _preset("thumbnail-medium", "web", 400, 300),
        _preset("thumbnail-small", "web", 200, 150),
        _preset("square-large", "custom", 1000, 1000),
        _preset("square-medium", "custom", 500, 500),
        _preset("portrait", "custom", 800, 1200),
        _preset("landscape", "custom", 1200, 800),
    )
}


def get_preset(name: str) -> Preset:
    """Return the preset called ``name`` or raise ``KeyError``."""

    try:
        return PRESETS[name]
    except KeyError:
        raise KeyError(f"Unknown preset '{name}'") from None


def grouped_presets() -> dict[str, dict[str, dict[str, object]]]:
    """Presets keyed by category, then by name, for listing endpoints."""

    grouped: dict[str, dict[str, dict[str, object]]] = {category: {} for category in CATEGORIES}
    for name, preset in PRESETS.items():
        grouped[preset.category][name] = preset.to_dict()
    return grouped
