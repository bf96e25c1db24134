"""Errors, health levels, configuration and statistics for image queues."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum


class QueueError(Exception):
    """Base class for queue errors."""

    default_message = "queue error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class QueueEmptyError(QueueError):
    """The queue holds no images."""

    default_message = "queue is empty"


class CapturePausedError(QueueError):
    """Capture is paused because the queue is under pressure."""

    default_message = "capture is paused due to queue pressure"


class QueueFullError(QueueError):
    """The queue is at maximum capacity."""

    default_message = "queue is at maximum capacity"


class InvalidImageError(QueueError):
    """The image data is not acceptable."""

    default_message = "invalid image data"


class FileTooLargeError(QueueError):
    """The file exceeds the maximum size."""

    default_message = "file exceeds maximum size"


class ImageExpiredError(QueueError):
    """The image is older than the maximum age."""

    default_message = "image exceeds maximum age"


class ImageFromFutureError(QueueError):
    """The image timestamp lies in the future."""

    default_message = "image timestamp is in the future"


class HealthLevel(IntEnum):
    """Health of a queue, ordered from best to worst."""

    HEALTHY = 0
    CATCHING_UP = 1
    DEGRADED = 2
    CRITICAL = 3

    def __str__(self) -> str:
        return _HEALTH_LABELS[self]


_HEALTH_LABELS = {
    HealthLevel.HEALTHY: "healthy",
    HealthLevel.CATCHING_UP: "catching_up",
    HealthLevel.DEGRADED: "degraded",
    HealthLevel.CRITICAL: "critical",
}


@dataclass
class QueuedImage:
    """An image waiting on disk to be uploaded."""

    filename: str
    timestamp: datetime | None
    file_path: str
    size_bytes: int
    time_source: str = ""
    time_confidence: str = ""


@dataclass
class QueueState:
    """Live state and counters of one camera's queue."""

    camera_id: str
    directory: str
    image_count: int = 0
    total_size_bytes: int = 0
    oldest_timestamp: datetime | None = None
    newest_timestamp: datetime | None = None
    health_level: HealthLevel = HealthLevel.HEALTHY
    capture_paused: bool = False
    images_queued: int = 0
    images_uploaded: int = 0
    images_thinned: int = 0
    images_expired: int = 0


@dataclass
class QueueConfig:
    """Limits and thresholds for one camera's queue."""

    max_files: int = 100
    max_size_mb: int = 50
    max_age_seconds: int = 3600
    thinning_enabled: bool = True
    protect_newest: int = 10
    protect_oldest: int = 5
    threshold_catching_up: float = 0.50
    threshold_degraded: float = 0.80
    threshold_critical: float = 0.95
    pause_capture_on_critical: bool = True
    resume_threshold: float = 0.70


@dataclass
class GlobalQueueConfig:
    """Settings shared by all queues of a manager."""

    base_path: str = "/dev/shm/aviationwx"
    max_total_size_mb: int = 100
    memory_check_seconds: int = 5
    emergency_thin_ratio: float = 0.5
    max_heap_mb: int = 400


@dataclass
class QueueStats:
    """Monitoring snapshot of one queue."""

    camera_id: str = ""
    image_count: int = 0
    total_size_mb: float = 0.0
    oldest_age: str = ""
    newest_age: str = ""
    health_level: str = ""
    capture_paused: bool = False
    capacity_percent: float = 0.0
    images_queued: int = 0
    images_uploaded: int = 0
    images_thinned: int = 0
    images_expired: int = 0


@dataclass
class GlobalQueueStats:
    """Monitoring snapshot across all queues."""

    total_images: int = 0
    total_size_mb: float = 0.0
    camera_stats: list[QueueStats] = field(default_factory=list)
    memory_usage_mb: float = 0.0
    memory_limit_mb: int = 0