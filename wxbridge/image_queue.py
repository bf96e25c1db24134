"""Disk-backed image queue for a single camera."""

from __future__ import annotations

import logging
import os
import re
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import NamedTuple

from .queue_types import (
    CapturePausedError,
    HealthLevel,
    ImageExpiredError,
    ImageFromFutureError,
    InvalidImageError,
    QueueConfig,
    QueuedImage,
    QueueEmptyError,
    QueueState,
    QueueStats,
)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MILLISECOND = timedelta(milliseconds=1)
_NUMERIC = re.compile(r"[+-]?[0-9]+")
_MIN_IMAGE_BYTES = 100
_FUTURE_TOLERANCE = timedelta(seconds=5)
_MB = 1024 * 1024
_THIN_TARGETS = {
    HealthLevel.CATCHING_UP: 0.8,
    HealthLevel.DEGRADED: 0.6,
    HealthLevel.CRITICAL: 0.4,
}


class _Entry(NamedTuple):
    name: str
    size: int


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _unix_millis(moment: datetime) -> int:
    return (_as_utc(moment) - _EPOCH) // _MILLISECOND


def parse_timestamp_from_filename(filename: str) -> datetime | None:
    """Return the UTC time encoded in a name like ``1735142730000.jpg``, or None."""
    base = filename[: -len(".jpg")] if filename.endswith(".jpg") else filename
    if not _NUMERIC.fullmatch(base):
        return None
    try:
        return _EPOCH + timedelta(milliseconds=int(base))
    except OverflowError:
        return None


def _format_age(delta: timedelta) -> str:
    seconds = delta.total_seconds()
    sign = "-" if seconds < 0 else ""
    total = int(abs(seconds) + 0.5)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{sign}{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{sign}{minutes}m{secs}s"
    return f"{sign}{secs}s"


def _ratio(numerator: float, denominator: float) -> float:
    if denominator:
        return numerator / denominator
    return float("inf") if numerator > 0 else 0.0


class ImageQueue:
    """A camera's queue of images stored as ``<unix-millis>.jpg`` files."""

    def __init__(self, camera_id, directory, config=None, logger=None):
        self._config: QueueConfig = config if config is not None else QueueConfig()
        self._logger = logger if logger is not None else logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._pause = threading.Event()
        self._resume = threading.Event()
        os.makedirs(directory, exist_ok=True)
        self._state = QueueState(camera_id=camera_id, directory=str(directory))
        self._scan_directory()

    def _scan_directory(self) -> None:
        with self._lock:
            files = self._list_files()
            self._state.image_count = len(files)
            self._state.total_size_bytes = sum(entry.size for entry in files)
            if files:
                self._state.oldest_timestamp = parse_timestamp_from_filename(files[0].name)
                self._state.newest_timestamp = parse_timestamp_from_filename(files[-1].name)
            self._update_health()
            self._logger.info(
                "Queue initialized from disk camera=%s images=%d size_mb=%.2f health=%s",
                self._state.camera_id,
                self._state.image_count,
                self._state.total_size_bytes / _MB,
                self._state.health_level,
            )

    def enqueue(self, image_data, observation_time, time_source="", time_confidence=""):
        """Store an image under its observation time, thinning in the background if needed."""
        with self._lock:
            if self._state.capture_paused:
                raise CapturePausedError()
            if len(image_data) < _MIN_IMAGE_BYTES:
                raise InvalidImageError()

            now = datetime.now(timezone.utc)
            observed = _as_utc(observation_time)
            if observed > now + _FUTURE_TOLERANCE:
                raise ImageFromFutureError()
            if now - observed > timedelta(seconds=self._config.max_age_seconds):
                raise ImageExpiredError()

            directory = Path(self._state.directory)
            path = directory / f"{_unix_millis(observed)}.jpg"
            while path.exists():
                observed += _MILLISECOND
                path = directory / f"{_unix_millis(observed)}.jpg"

            tmp_path = path.with_name(path.name + ".tmp")
            try:
                tmp_path.write_bytes(image_data)
                os.replace(tmp_path, path)
            except OSError:
                tmp_path.unlink(missing_ok=True)
                raise

            state = self._state
            state.image_count += 1
            state.total_size_bytes += len(image_data)
            state.images_queued += 1
            if state.newest_timestamp is None or observed > state.newest_timestamp:
                state.newest_timestamp = observed
            if state.oldest_timestamp is None or observed < state.oldest_timestamp:
                state.oldest_timestamp = observed

            self._update_health()
            if self._should_thin():
                threading.Thread(
                    target=self._thin, name=f"thin-{state.camera_id}", daemon=True
                ).start()

            self._logger.debug(
                "Image enqueued camera=%s filename=%s queue_size=%d",
                state.camera_id,
                path.name,
                state.image_count,
            )

    def dequeue(self) -> QueuedImage:
        """Return the oldest image without removing it; call mark_uploaded afterwards."""
        with self._lock:
            if self._state.image_count == 0:
                raise QueueEmptyError()
            files = self._list_files()
            if not files:
                raise QueueEmptyError()
            return self._image_for(files[0])

    def peek(self, count: int) -> list[QueuedImage]:
        """Return up to ``count`` images, oldest first, without removing them."""
        if count < 0:
            raise ValueError("count must not be negative")
        with self._lock:
            return [self._image_for(entry) for entry in self._list_files()[:count]]

    def mark_uploaded(self, image: QueuedImage) -> None:
        """Remove an uploaded image and resume capture if pressure has eased."""
        with self._lock:
            state = self._state
            try:
                os.remove(image.file_path)
            except FileNotFoundError:
                self._logger.warning(
                    "Image already removed from queue camera=%s filename=%s",
                    state.camera_id,
                    image.filename,
                )

            state.image_count = max(state.image_count - 1, 0)
            state.total_size_bytes = max(state.total_size_bytes - image.size_bytes, 0)
            state.images_uploaded += 1

            self._recalculate_bounds()
            self._update_health()
            if state.capture_paused and self._capacity() < self._config.resume_threshold:
                state.capture_paused = False
                self._resume.set()
                self._logger.info(
                    "Capture resumed camera=%s queue_size=%d",
                    state.camera_id,
                    state.image_count,
                )

    def expire_old_images(self) -> int:
        """Delete images older than the maximum age; return how many were removed."""
        with self._lock:
            cutoff = datetime.now(timezone.utc) - timedelta(seconds=self._config.max_age_seconds)
            try:
                files = self._list_files()
            except OSError:
                return 0

            expired = 0
            for entry in files:
                stamp = parse_timestamp_from_filename(entry.name)
                if stamp is not None and stamp >= cutoff:
                    break
                if self._remove_entry(entry):
                    self._state.images_expired += 1
                    expired += 1

            if expired:
                self._recalculate_bounds()
                self._update_health()
                self._logger.info(
                    "Expired old images camera=%s expired=%d max_age_seconds=%d",
                    self._state.camera_id,
                    expired,
                    self._config.max_age_seconds,
                )
            return expired

    def _thin(self) -> None:
        with self._lock:
            if not self._config.thinning_enabled:
                return
            try:
                files = self._list_files()
            except OSError:
                return
            if not files:
                return

            factor = _THIN_TARGETS.get(self._state.health_level)
            if factor is None:
                return
            target = int(self._config.max_files * factor)
            if len(files) <= target:
                return

            protect_oldest = self._config.protect_oldest
            protect_newest = self._config.protect_newest
            if protect_oldest + protect_newest >= len(files):
                protect_oldest = protect_newest = len(files) // 4
            if protect_oldest + protect_newest >= len(files):
                return

            candidates = files[protect_oldest : len(files) - protect_newest]
            if not candidates:
                return

            middle_target = max(target - protect_oldest - protect_newest, 0)
            to_remove = len(candidates) - middle_target
            if to_remove <= 0:
                return

            step = len(candidates) / to_remove
            indices = {int(i * step) for i in range(to_remove)}
            removed = 0
            for index in sorted(i for i in indices if i < len(candidates)):
                if self._remove_entry(candidates[index]):
                    self._state.images_thinned += 1
                    removed += 1

            if removed:
                self._recalculate_bounds()
                self._update_health()
                self._logger.info(
                    "Queue thinned camera=%s removed=%d remaining=%d health=%s",
                    self._state.camera_id,
                    removed,
                    self._state.image_count,
                    self._state.health_level,
                )

    def emergency_thin(self, keep_ratio: float) -> int:
        """Delete the oldest images, keeping the newest ``keep_ratio`` share (at least one)."""
        with self._lock:
            try:
                files = self._list_files()
            except OSError:
                return 0
            if not files:
                return 0

            keep = max(int(len(files) * keep_ratio), 1)
            if keep >= len(files):
                return 0

            removed = 0
            for entry in files[: len(files) - keep]:
                if self._remove_entry(entry):
                    self._state.images_thinned += 1
                    removed += 1

            if removed:
                self._recalculate_bounds()
                self._update_health()
                self._logger.warning(
                    "Emergency queue thin completed camera=%s removed=%d remaining=%d",
                    self._state.camera_id,
                    removed,
                    self._state.image_count,
                )
            return removed

    def health_level(self) -> HealthLevel:
        with self._lock:
            return self._state.health_level

    def image_count(self) -> int:
        with self._lock:
            return self._state.image_count

    def state(self) -> QueueState:
        """Return a copy of the current state."""
        with self._lock:
            return replace(self._state)

    def stats(self) -> QueueStats:
        with self._lock:
            state = self._state
            now = datetime.now(timezone.utc)
            oldest_age = _format_age(now - state.oldest_timestamp) if state.oldest_timestamp else ""
            newest_age = _format_age(now - state.newest_timestamp) if state.newest_timestamp else ""
            return QueueStats(
                camera_id=state.camera_id,
                image_count=state.image_count,
                total_size_mb=state.total_size_bytes / _MB,
                oldest_age=oldest_age,
                newest_age=newest_age,
                health_level=str(state.health_level),
                capture_paused=state.capture_paused,
                capacity_percent=self._capacity() * 100,
                images_queued=state.images_queued,
                images_uploaded=state.images_uploaded,
                images_thinned=state.images_thinned,
                images_expired=state.images_expired,
            )

    def is_capture_paused(self) -> bool:
        with self._lock:
            return self._state.capture_paused

    def pause_event(self) -> threading.Event:
        """Event set when the queue pauses capture; consumers clear it."""
        return self._pause

    def resume_event(self) -> threading.Event:
        """Event set when the queue resumes capture; consumers clear it."""
        return self._resume

    def _image_for(self, entry: _Entry) -> QueuedImage:
        return QueuedImage(
            filename=entry.name,
            timestamp=parse_timestamp_from_filename(entry.name),
            file_path=os.path.join(self._state.directory, entry.name),
            size_bytes=entry.size,
        )

    def _remove_entry(self, entry: _Entry) -> bool:
        try:
            os.remove(os.path.join(self._state.directory, entry.name))
        except OSError:
            return False
        self._state.image_count -= 1
        self._state.total_size_bytes -= entry.size
        return True

    def _list_files(self) -> list[_Entry]:
        files = []
        with os.scandir(self._state.directory) as entries:
            for entry in entries:
                if entry.is_dir():
                    continue
                name = entry.name
                if not name.endswith(".jpg") or not _NUMERIC.fullmatch(name[: -len(".jpg")]):
                    continue
                try:
                    size = entry.stat().st_size
                except OSError:
                    continue
                files.append(_Entry(name, size))
        files.sort(key=lambda item: item.name)
        return files

    def _update_health(self) -> None:
        capacity = self._capacity()
        previous = self._state.health_level
        config = self._config

        if capacity >= config.threshold_critical:
            self._state.health_level = HealthLevel.CRITICAL
            if config.pause_capture_on_critical and not self._state.capture_paused:
                self._state.capture_paused = True
                self._pause.set()
                self._logger.warning(
                    "Queue critical - pausing capture camera=%s capacity_percent=%.1f",
                    self._state.camera_id,
                    capacity * 100,
                )
        elif capacity >= config.threshold_degraded:
            self._state.health_level = HealthLevel.DEGRADED
        elif capacity >= config.threshold_catching_up:
            self._state.health_level = HealthLevel.CATCHING_UP
        else:
            self._state.health_level = HealthLevel.HEALTHY

        if self._state.health_level != previous:
            self._logger.info(
                "Queue health changed camera=%s from=%s to=%s capacity_percent=%.1f",
                self._state.camera_id,
                previous,
                self._state.health_level,
                capacity * 100,
            )

    def _capacity(self) -> float:
        count_pct = _ratio(self._state.image_count, self._config.max_files)
        size_pct = _ratio(self._state.total_size_bytes, self._config.max_size_mb * _MB)
        return max(count_pct, size_pct)

    def _should_thin(self) -> bool:
        return self._state.health_level >= HealthLevel.CATCHING_UP and self._config.thinning_enabled

    def _recalculate_bounds(self) -> None:
        try:
            files = self._list_files()
        except OSError:
            files = []
        if not files:
            self._state.oldest_timestamp = None
            self._state.newest_timestamp = None
            return
        self._state.oldest_timestamp = parse_timestamp_from_filename(files[0].name)
        self._state.newest_timestamp = parse_timestamp_from_filename(files[-1].name)