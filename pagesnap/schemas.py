"""Pydantic DTOs shared across the pipeline, the store, and the endpoints."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from pagesnap.presets import PRESETS


class ImageFormat(str, Enum):
    """Output encodings callers may request."""

    PNG = "png"
    JPG = "jpg"
    JPEG = "jpeg"
    WEBP = "webp"

    @property
    def extension(self) -> str:
        return self.value

    @property
    def screenshot_type(self) -> str:
        """Encoding Chromium can emit directly; WebP is captured as PNG."""

        if self in (ImageFormat.JPG, ImageFormat.JPEG):
            return "jpeg"
        return "png"

    @property
    def is_jpeg(self) -> bool:
        return self.screenshot_type == "jpeg"


class DeviceProfile(str, Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"


class JobStatus(str, Enum):
    """Lifecycle states for a capture job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class CaptureOptions(BaseModel):
    """Everything that shapes one capture; defaults live here and nowhere else."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    format: ImageFormat = Field(default=ImageFormat.PNG, description="Output image format")
    width: int = Field(default=1200, ge=100, le=3840, description="Viewport/clip width in CSS px")
    height: int = Field(default=800, ge=100, le=2160, description="Viewport/clip height in CSS px")
    quality: int = Field(default=90, ge=1, le=100, description="Encoder quality (lossy formats)")
    full_page: bool = Field(default=False, alias="fullPage", description="Capture the whole scroll height")
    device: DeviceProfile = Field(default=DeviceProfile.DESKTOP)
    preset: str | None = Field(default=None, description="Named resolution preset")
    timeout: int = Field(default=60000, ge=5000, le=120000, description="Navigation + readiness budget in ms")
    optimize: bool = Field(default=True, description="Run format-specific optimization")
    device_scale_factor: float = Field(default=1.0, ge=1.0, le=4.0)

    @field_validator("format", "device", mode="before")
    @classmethod
    def _lowercase(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("preset")
    @classmethod
    def _known_preset(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().lower()
        if normalized not in PRESETS:
            msg = f"Unknown preset '{value}'"
            raise ValueError(msg)
        return normalized

    @model_validator(mode="after")
    def _apply_preset(self) -> CaptureOptions:
        if self.preset:
            preset = PRESETS[self.preset]
            self.width = preset.width
            self.height = preset.height
            self.device_scale_factor = preset.device_scale_factor
        return self


class CaptureRequest(BaseModel):
    """Payload clients submit to create a job or run a direct capture."""

    url: str = Field(min_length=1, max_length=2048, description="Target URL to capture")
    options: CaptureOptions = Field(default_factory=CaptureOptions)


class ArtifactDescriptor(BaseModel):
    """Where the encoded image lives and what it looks like."""

    file_name: str
    local_path: str | None = None
    local_url: str | None = None
    remote_url: str | None = None
    remote_key: str | None = None
    remote_etag: str | None = None
    format: ImageFormat
    width: int
    height: int
    byte_size: int
    original_byte_size: int
    optimized: bool
    stored_remotely: bool = False

    @model_validator(mode="after")
    def _location_invariant(self) -> ArtifactDescriptor:
        if self.stored_remotely:
            if not self.remote_url:
                raise ValueError("remotely stored artifacts need a remote_url")
            if self.local_path:
                raise ValueError("remotely stored artifacts must not keep a local_path")
        elif not self.local_path:
            raise ValueError("artifact needs a local_path or a remote_url")
        return self

    @property
    def url(self) -> str | None:
        return self.remote_url or self.local_url


class CaptureJob(BaseModel):
    """Caller-facing view of a persisted job."""

    id: str
    owner_id: str
    source_url: str
    status: JobStatus
    options: CaptureOptions
    result: ArtifactDescriptor | None = None
    error_message: str | None = None
    created_at: datetime
    processing_started_at: datetime | None = None
    processing_completed_at: datetime | None = None
    updated_at: datetime

    @classmethod
    def from_record(cls, record: Any) -> CaptureJob:
        return cls(
            id=record.id,
            owner_id=record.owner_id,
            source_url=record.source_url,
            status=JobStatus(record.status),
            options=CaptureOptions.model_validate(record.options or {}),
            result=ArtifactDescriptor.model_validate(record.result) if record.result else None,
            error_message=record.error_message,
            created_at=record.created_at,
            processing_started_at=record.processing_started_at,
            processing_completed_at=record.processing_completed_at,
            updated_at=record.updated_at,
        )


class JobPage(BaseModel):
    """Paginated listing of an owner's jobs."""

    jobs: list[CaptureJob]
    total_count: int
    current_page: int
    total_pages: int
    has_next_page: bool
    has_previous_page: bool


class ProcessOutcome(BaseModel):
    """Result of driving one job through the pipeline."""

    success: bool
    job_id: str
    artifact: ArtifactDescriptor | None = None
    error: str | None = None


class UsageRecordView(BaseModel):
    id: int
    owner_id: str
    job_id: str | None
    type: str
    timestamp: datetime
    details: dict[str, Any] = Field(default_factory=dict)


class UsageSummary(BaseModel):
    """Aggregated usage for an owner over an optional date range."""

    total_count: int
    counts_by_type: dict[str, int]
    records: list[UsageRecordView]


class ErrorDetail(BaseModel):
    message: str
    code: str


class ErrorResponse(BaseModel):
    success: bool = False
    error: ErrorDetail
    data: Any = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
