"""Shared types for the capture and upload scheduler."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

_DEFAULT_INTERVAL_SECONDS = 60
_DEFAULT_GLOBAL_TIMEOUT = 120


@runtime_checkable
class Camera(Protocol):
    """A source of still images."""

    id: str
    type: str

    def capture(self, timeout: float) -> bytes:
        """Return a freshly captured image, raising on failure."""
        ...


@runtime_checkable
class UploadClient(Protocol):
    """Destination that images are uploaded to."""

    def upload(self, remote_path: str, data: bytes) -> None:
        """Store ``data`` at ``remote_path``, raising on failure."""
        ...

    def test_connection(self) -> None:
        """Raise if the destination cannot be reached."""
        ...


@dataclass
class CameraConfig:
    """Per-camera settings used by the scheduler."""

    id: str
    remote_path: str = ""
    enabled: bool = False
    image_processor: Any = None


@dataclass
class SchedulerConfig:
    """Scheduler timing; zero values fall back to the defaults."""

    interval_seconds: int = _DEFAULT_INTERVAL_SECONDS
    global_timeout: int = _DEFAULT_GLOBAL_TIMEOUT

    def __post_init__(self) -> None:
        if not self.interval_seconds:
            self.interval_seconds = _DEFAULT_INTERVAL_SECONDS
        if not self.global_timeout:
            self.global_timeout = _DEFAULT_GLOBAL_TIMEOUT


@dataclass
class CameraState:
    """Success, failure and backoff bookkeeping for one camera."""

    camera_id: str = ""
    last_success: datetime | None = None
    last_error: BaseException | None = None
    last_error_time: datetime | None = None
    next_attempt: datetime | None = None
    backoff_seconds: int = 0
    failure_count: int = 0
    success_count: int = 0
    is_backing_off: bool = False


@dataclass
class SchedulerStatus:
    """Snapshot of the scheduler."""

    running: bool = False
    camera_count: int = 0
    camera_states: list[CameraState] = field(default_factory=list)
    degraded_mode: bool = False
    last_cycle_time: datetime | None = None