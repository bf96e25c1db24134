"""Round-robin uploader for queued images, careful not to trip fail2ban."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

from .queue_types import QueueEmptyError
from .scheduler_types import CameraConfig

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MILLISECOND = timedelta(milliseconds=1)
_AUTH_MARKERS = ("auth", "401", "403", "login", "credential", "permission", "access denied")
_FAILURES_BEFORE_BACKOFF = 3
_FAILURE_BACKOFF_STEP = 5.0
_FAILURE_BACKOFF_MAX = 30.0
_IDLE_WAIT = 1.0


def build_remote_path(base_path: str, camera_id: str, timestamp: datetime) -> str:
    """Return ``<base>/<unix-millis>.jpg``, using the camera id when no base is set."""
    base = base_path or camera_id
    if base.endswith("/"):
        base = base[:-1]
    moment = timestamp if timestamp.tzinfo else timestamp.replace(tzinfo=timezone.utc)
    millis = (moment - _EPOCH) // _MILLISECOND
    return f"{base}/{millis}.jpg"


def is_auth_error(error) -> bool:
    """Whether an upload error looks like an authentication problem."""
    if error is None:
        return False
    text = str(error).lower()
    return any(marker in text for marker in _AUTH_MARKERS)


@dataclass
class UploadWorkerConfig:
    """Uploader and timing (seconds); zero values fall back to the defaults."""

    uploader: object
    min_upload_interval: float = 1.0
    auth_backoff: float = 60.0
    retry_delay: float = 5.0
    logger: logging.Logger | None = None


@dataclass
class UploadStats:
    """Upload counters and timings."""

    uploads_total: int = 0
    uploads_success: int = 0
    uploads_failed: int = 0
    uploads_retried: int = 0
    auth_failures: int = 0
    queued_images: int = 0
    last_upload_time: datetime | None = None
    last_success_time: datetime | None = None
    last_failure_time: datetime | None = None
    upload_rate_per_min: float = 0.0


@dataclass
class _FailureState:
    consecutive_failures: int = 0
    last_failure: datetime | None = None
    last_auth_failure: datetime | None = None
    backoff_until: datetime | None = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


class UploadWorker:
    """Uploads the oldest image of each camera queue in turn."""

    def __init__(self, config: UploadWorkerConfig):
        self._uploader = config.uploader
        self._min_interval = config.min_upload_interval or 1.0
        self._auth_backoff = config.auth_backoff or 60.0
        self._retry_delay = config.retry_delay or 5.0
        self._logger = config.logger if config.logger is not None else logging.getLogger(__name__)

        self._queues: dict = {}
        self._configs: dict[str, CameraConfig] = {}
        self._order: list[str] = []
        self._failures: dict[str, _FailureState] = {}
        self._index = 0

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

        self._uploads_total = 0
        self._uploads_success = 0
        self._uploads_failed = 0
        self._uploads_retried = 0
        self._auth_failures = 0
        self._last_upload_time: datetime | None = None
        self._last_success_time: datetime | None = None
        self._last_failure_time: datetime | None = None

    def add_queue(self, camera_id, queue, config) -> None:
        """Register a camera queue for round-robin uploading."""
        with self._lock:
            if camera_id not in self._queues:
                self._order.append(camera_id)
            self._queues[camera_id] = queue
            self._configs[camera_id] = config
            self._failures[camera_id] = _FailureState()

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name="upload-worker", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    def stats(self) -> UploadStats:
        with self._lock:
            queued = sum(queue.image_count() for queue in self._queues.values())
            rate = 0.0
            if self._last_success_time is not None and self._uploads_success > 0:
                elapsed = (_now() - self._last_success_time).total_seconds()
                if elapsed > 0:
                    rate = self._uploads_success / (elapsed / 60.0)
            return UploadStats(
                uploads_total=self._uploads_total,
                uploads_success=self._uploads_success,
                uploads_failed=self._uploads_failed,
                uploads_retried=self._uploads_retried,
                auth_failures=self._auth_failures,
                queued_images=queued,
                last_upload_time=self._last_upload_time,
                last_success_time=self._last_success_time,
                last_failure_time=self._last_failure_time,
                upload_rate_per_min=rate,
            )

    def process_next(self) -> bool:
        """Try to upload from the next camera in turn; return True if an image was sent."""
        self._respect_rate_limit()

        with self._lock:
            if not self._order:
                return False
            camera_id = self._order[self._index % len(self._order)]
            self._index += 1
            queue = self._queues[camera_id]
            config = self._configs[camera_id]
            fail_state = self._failures[camera_id]

        if fail_state.backoff_until is not None and _now() < fail_state.backoff_until:
            return False

        try:
            image = queue.dequeue()
        except QueueEmptyError:
            return False
        except OSError as error:
            self._logger.error("Failed to dequeue camera=%s error=%s", camera_id, error)
            return False

        remote_path = build_remote_path(config.remote_path, camera_id, image.timestamp)
        if not self.upload_with_retry(camera_id, image, remote_path):
            return False

        try:
            queue.mark_uploaded(image)
        except OSError as error:
            self._logger.error("Failed to mark uploaded camera=%s error=%s", camera_id, error)

        with self._lock:
            fail_state.consecutive_failures = 0
        return True

    def upload_with_retry(self, camera_id, image, remote_path) -> bool:
        """Upload once, retry once unless it was an auth failure; return success."""
        with self._lock:
            self._uploads_total += 1
            self._last_upload_time = _now()
            self._failures.setdefault(camera_id, _FailureState())

        try:
            data = Path(image.file_path).read_bytes()
        except OSError as error:
            self._logger.error(
                "Failed to read image file camera=%s path=%s error=%s",
                camera_id,
                image.file_path,
                error,
            )
            return False

        try:
            self._uploader.upload(remote_path, data)
        except Exception as error:
            self._logger.warning("Upload failed, will retry once camera=%s error=%s", camera_id, error)
            if is_auth_error(error):
                self._handle_auth_failure(camera_id)
                return False
        else:
            self._record_success()
            self._logger.debug(
                "Upload successful camera=%s path=%s size=%d", camera_id, remote_path, len(data)
            )
            return True

        time.sleep(self._retry_delay)
        with self._lock:
            self._uploads_retried += 1

        try:
            self._uploader.upload(remote_path, data)
        except Exception as error:
            self._record_failure(camera_id)
            self._logger.error(
                "Upload failed after retry, skipping file camera=%s path=%s error=%s",
                camera_id,
                remote_path,
                error,
            )
            return False

        self._record_success()
        self._logger.info("Upload succeeded on retry camera=%s path=%s", camera_id, remote_path)
        return True

    def _run(self) -> None:
        self._logger.info("Upload worker started")
        idle_turns = 0
        while not self._stop.is_set():
            with self._lock:
                queue_count = len(self._order)
            if not queue_count:
                self._stop.wait(_IDLE_WAIT)
                continue
            if self.process_next():
                idle_turns = 0
                continue
            idle_turns += 1
            if idle_turns >= queue_count:
                idle_turns = 0
                self._stop.wait(self._min_interval)
        self._logger.info("Upload worker stopped")

    def _respect_rate_limit(self) -> None:
        with self._lock:
            last = self._last_upload_time
        if last is None:
            return
        elapsed = (_now() - last).total_seconds()
        if elapsed < self._min_interval:
            self._stop.wait(self._min_interval - elapsed)

    def _handle_auth_failure(self, camera_id: str) -> None:
        with self._lock:
            now = _now()
            self._auth_failures += 1
            self._uploads_failed += 1
            self._last_failure_time = now
            state = self._failures[camera_id]
            state.last_auth_failure = now
            state.backoff_until = now + timedelta(seconds=self._auth_backoff)
            state.consecutive_failures += 1
            self._logger.warning(
                "Auth failure - backing off to avoid fail2ban camera=%s backoff_until=%s "
                "consecutive_failures=%d",
                camera_id,
                state.backoff_until,
                state.consecutive_failures,
            )

    def _record_success(self) -> None:
        with self._lock:
            self._uploads_success += 1
            self._last_success_time = _now()

    def _record_failure(self, camera_id: str) -> None:
        with self._lock:
            now = _now()
            self._uploads_failed += 1
            self._last_failure_time = now
            state = self._failures[camera_id]
            state.last_failure = now
            state.consecutive_failures += 1
            if state.consecutive_failures > _FAILURES_BEFORE_BACKOFF:
                seconds = min(state.consecutive_failures * _FAILURE_BACKOFF_STEP, _FAILURE_BACKOFF_MAX)
                state.backoff_until = now + timedelta(seconds=seconds)