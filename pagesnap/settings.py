"""Typed configuration objects backed by python-decouple settings."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final, Mapping

from decouple import Config as DecoupleConfig, RepositoryEmpty, RepositoryEnv

__all__ = [
    "BrowserSettings",
    "ReadinessSettings",
    "StorageSettings",
    "CloudSettings",
    "SecuritySettings",
    "TelemetrySettings",
    "JobSettings",
    "Settings",
    "load_config",
    "get_settings",
]

_DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
_DEFAULT_LAUNCH_ARGS = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--disable-gpu",
)
_DEFAULT_FRAMEWORK_DELAYS = "react:500,vue:500,svelte:300,angular:1000,next:1500,nuxt:1500"


@dataclass(frozen=True, slots=True)
class BrowserSettings:
    """Chromium launch and navigation knobs."""

    playwright_channel: str
    headless: bool
    launch_args: tuple[str, ...]
    user_agent: str
    wait_until: str
    launch_timeout_ms: int


@dataclass(frozen=True, slots=True)
class ReadinessSettings:
    """Ceilings for the rendering-completion heuristic (milliseconds)."""

    budget_ratio: float
    network_idle_ms: int
    image_timeout_ms: int
    font_timeout_ms: int
    quiet_window_ms: int
    mutation_ceiling_ms: int
    fallback_wait_ms: int
    framework_delays: Mapping[str, int]


@dataclass(frozen=True, slots=True)
class StorageSettings:
    """Filesystem + SQLite layout for artifacts and job records."""

    uploads_dir: Path
    temp_dir: Path
    db_path: Path
    public_uploads_path: str
    temp_max_age_seconds: int


@dataclass(frozen=True, slots=True)
class CloudSettings:
    """S3 hand-off configuration."""

    enabled: bool
    bucket: str
    region: str
    endpoint_url: str | None
    access_key_id: str | None
    secret_access_key: str | None
    public_base_url: str | None
    acl: str | None
    cache_control: str


@dataclass(frozen=True, slots=True)
class SecuritySettings:
    """URL safety and API-key switches."""

    blocklist_path: Path
    require_api_key: bool


@dataclass(frozen=True, slots=True)
class TelemetrySettings:
    prometheus_port: int


@dataclass(frozen=True, slots=True)
class JobSettings:
    """Watchdog cadence and stuck-job detection."""

    watchdog_interval_seconds: int
    stuck_job_timeout_seconds: int
    event_retention_seconds: int = 7200


@dataclass(frozen=True, slots=True)
class Settings:
    """Top-level immutable configuration container."""

    env_path: str
    debug: bool
    log_level: str
    browser: BrowserSettings
    readiness: ReadinessSettings
    storage: StorageSettings
    cloud: CloudSettings
    security: SecuritySettings
    telemetry: TelemetrySettings
    jobs: JobSettings


def load_config(env_path: str = ".env") -> DecoupleConfig:
    """Return a python-decouple config anchored to the .env file when it exists.

    Values in the process environment always win over the file.
    """

    if Path(env_path).is_file():
        return DecoupleConfig(RepositoryEnv(env_path))
    return DecoupleConfig(RepositoryEmpty())


def _int(cfg: DecoupleConfig, key: str, *, default: int) -> int:
    return cfg(key, cast=int, default=default)


def _bool(cfg: DecoupleConfig, key: str, *, default: bool) -> bool:
    return cfg(key, cast=bool, default=default)


def _optional(cfg: DecoupleConfig, key: str) -> str | None:
    raw = cfg(key, default="")
    return raw.strip() or None


def _csv_tuple(cfg: DecoupleConfig, key: str, *, default: tuple[str, ...] = ()) -> tuple[str, ...]:
    raw = cfg(key, default="")
    if not raw:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _parse_delays(raw: str) -> dict[str, int]:
    delays: dict[str, int] = {}
    for part in raw.split(","):
        if not part.strip():
            continue
        name, sep, value = part.partition(":")
        if not sep:
            msg = f"FRAMEWORK_DELAYS entry '{part}' must look like name:ms"
            raise ValueError(msg)
        delays[name.strip().lower()] = int(value)
    return delays


@lru_cache(maxsize=1)
def get_settings(env_path: str = ".env") -> Settings:
    """Load and memoize structured settings for the current process."""

    cfg = load_config(env_path)

    browser = BrowserSettings(
        playwright_channel=cfg("PLAYWRIGHT_CHANNEL", default="chromium"),
        headless=_bool(cfg, "BROWSER_HEADLESS", default=True),
        launch_args=_csv_tuple(cfg, "BROWSER_LAUNCH_ARGS", default=_DEFAULT_LAUNCH_ARGS),
        user_agent=cfg("CAPTURE_USER_AGENT", default=_DEFAULT_USER_AGENT),
        wait_until=cfg("NAVIGATION_WAIT_UNTIL", default="networkidle"),
        launch_timeout_ms=_int(cfg, "BROWSER_LAUNCH_TIMEOUT_MS", default=30000),
    )
    if browser.wait_until not in {"load", "domcontentloaded", "networkidle", "commit"}:
        msg = f"NAVIGATION_WAIT_UNTIL '{browser.wait_until}' is not a Playwright load state"
        raise ValueError(msg)

    readiness = ReadinessSettings(
        budget_ratio=cfg("READINESS_BUDGET_RATIO", cast=float, default=0.5),
        network_idle_ms=_int(cfg, "READINESS_NETWORK_IDLE_MS", default=5000),
        image_timeout_ms=_int(cfg, "READINESS_IMAGE_TIMEOUT_MS", default=5000),
        font_timeout_ms=_int(cfg, "READINESS_FONT_TIMEOUT_MS", default=3000),
        quiet_window_ms=_int(cfg, "READINESS_QUIET_WINDOW_MS", default=500),
        mutation_ceiling_ms=_int(cfg, "READINESS_MUTATION_CEILING_MS", default=3000),
        fallback_wait_ms=_int(cfg, "READINESS_FALLBACK_WAIT_MS", default=2000),
        framework_delays=_parse_delays(cfg("FRAMEWORK_DELAYS", default=_DEFAULT_FRAMEWORK_DELAYS)),
    )
    if not 0 < readiness.budget_ratio <= 1:
        msg = "READINESS_BUDGET_RATIO must be in (0, 1]"
        raise ValueError(msg)

    storage = StorageSettings(
        uploads_dir=Path(cfg("UPLOADS_DIR", default="uploads")),
        temp_dir=Path(cfg("TEMP_DIR", default="temp")),
        db_path=Path(cfg("JOBS_DB_PATH", default="pagesnap.db")),
        public_uploads_path=cfg("PUBLIC_UPLOADS_PATH", default="/uploads").rstrip("/"),
        temp_max_age_seconds=_int(cfg, "TEMP_MAX_AGE_SECONDS", default=3600),
    )

    cloud = CloudSettings(
        enabled=_bool(cfg, "USE_CLOUD_STORAGE", default=False),
        bucket=cfg("AWS_S3_BUCKET", default="pagesnap-screenshots"),
        region=cfg("AWS_S3_REGION", default="us-east-1"),
        endpoint_url=_optional(cfg, "AWS_S3_ENDPOINT_URL"),
        access_key_id=_optional(cfg, "AWS_ACCESS_KEY_ID"),
        secret_access_key=_optional(cfg, "AWS_SECRET_ACCESS_KEY"),
        public_base_url=_optional(cfg, "AWS_S3_PUBLIC_BASE_URL"),
        acl=_optional(cfg, "AWS_S3_ACL"),
        cache_control=cfg("UPLOAD_CACHE_CONTROL", default="max-age=31536000, public"),
    )

    security = SecuritySettings(
        blocklist_path=Path(cfg("URL_BLOCKLIST_PATH", default="config/url_blocklist.json")),
        require_api_key=_bool(cfg, "REQUIRE_API_KEY", default=True),
    )

    telemetry = TelemetrySettings(
        prometheus_port=_int(cfg, "PROMETHEUS_PORT", default=0),
    )

    jobs = JobSettings(
        watchdog_interval_seconds=_int(cfg, "WATCHDOG_INTERVAL_SECONDS", default=60),
        stuck_job_timeout_seconds=_int(cfg, "STUCK_JOB_TIMEOUT_SECONDS", default=600),
        event_retention_seconds=_int(cfg, "EVENT_RETENTION_SECONDS", default=7200),
    )
    if jobs.stuck_job_timeout_seconds * 1000 < 120000:
        msg = "STUCK_JOB_TIMEOUT_SECONDS must exceed the maximum capture timeout (120s)"
        raise ValueError(msg)

    return Settings(
        env_path=env_path,
        debug=_bool(cfg, "DEBUG", default=False),
        log_level=cfg("LOG_LEVEL", default="INFO").upper(),
        browser=browser,
        readiness=readiness,
        storage=storage,
        cloud=cloud,
        security=security,
        telemetry=telemetry,
        jobs=jobs,
    )


# Statically importable settings singleton for modules that prefer constants over DI.
settings: Final[Settings] = get_settings()
