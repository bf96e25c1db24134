"""Registry of per-camera image queues with global size and memory limits."""

from __future__ import annotations

import gc
import logging
import os
import shutil
import sys
import threading
from datetime import timedelta

from .image_queue import ImageQueue
from .queue_types import GlobalQueueConfig, GlobalQueueStats, QueueConfig

_MB = 1024 * 1024
_PRESSURE_KEEP_RATIO = 0.3
_DEFAULT_CHECK_SECONDS = 5.0
_MIN_EXPIRATION_INTERVAL = 60.0


def _process_memory_bytes() -> int:
    """Best available figure for the memory this process currently uses."""
    try:
        with open("/proc/self/statm", encoding="ascii") as statm:
            resident_pages = int(statm.read().split()[1])
        return resident_pages * os.sysconf("SC_PAGE_SIZE")
    except (OSError, ValueError, IndexError, AttributeError):
        pass
    try:
        import resource
    except ImportError:
        return 0
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    return peak if sys.platform == "darwin" else peak * 1024


def _seconds(interval) -> float:
    if isinstance(interval, timedelta):
        return interval.total_seconds()
    return float(interval)


class QueueManager:
    """Owns every camera queue and enforces limits that span all of them."""

    def __init__(self, config=None, logger=None):
        self._config: GlobalQueueConfig = config if config is not None else GlobalQueueConfig()
        self._logger = logger if logger is not None else logging.getLogger(__name__)
        self._queues: dict[str, ImageQueue] = {}
        self._lock = threading.Lock()
        self._current_total_size = 0
        os.makedirs(self._config.base_path, exist_ok=True)

    @property
    def config(self) -> GlobalQueueConfig:
        return self._config

    def create_queue(self, camera_id, config=None) -> ImageQueue:
        """Create the queue for a camera; raise ValueError if it already exists."""
        with self._lock:
            if camera_id in self._queues:
                raise ValueError(f"queue already exists for camera: {camera_id}")
            directory = os.path.join(self._config.base_path, camera_id)
            queue = ImageQueue(
                camera_id,
                directory,
                config if config is not None else QueueConfig(),
                self._logger,
            )
            self._queues[camera_id] = queue
            self._logger.info("Queue created camera=%s directory=%s", camera_id, directory)
            return queue

    def get_queue(self, camera_id) -> ImageQueue | None:
        with self._lock:
            return self._queues.get(camera_id)

    def remove_queue(self, camera_id) -> None:
        """Drop a camera's queue and delete its directory; raise KeyError if unknown."""
        with self._lock:
            try:
                queue = self._queues.pop(camera_id)
            except KeyError:
                raise KeyError(f"queue not found: {camera_id}") from None
            directory = queue.state().directory
            try:
                shutil.rmtree(directory)
            except FileNotFoundError:
                pass
            except OSError as error:
                self._logger.warning(
                    "Failed to remove queue directory camera=%s directory=%s error=%s",
                    camera_id,
                    directory,
                    error,
                )

    def all_queues(self) -> list[ImageQueue]:
        with self._lock:
            return list(self._queues.values())

    def global_stats(self) -> GlobalQueueStats:
        with self._lock:
            queues = list(self._queues.values())
        camera_stats = [queue.stats() for queue in queues]
        total_bytes = sum(queue.state().total_size_bytes for queue in queues)
        return GlobalQueueStats(
            total_images=sum(stats.image_count for stats in camera_stats),
            total_size_mb=total_bytes / _MB,
            camera_stats=camera_stats,
            memory_usage_mb=_process_memory_bytes() / _MB,
            memory_limit_mb=self._config.max_heap_mb,
        )

    def run_memory_monitor(self, stop_event: threading.Event) -> None:
        """Check memory pressure periodically until ``stop_event`` is set."""
        interval = float(self._config.memory_check_seconds)
        if interval < 1:
            interval = _DEFAULT_CHECK_SECONDS
        self._logger.info(
            "Memory monitor started interval_seconds=%s max_total_size_mb=%d max_heap_mb=%d",
            self._config.memory_check_seconds,
            self._config.max_total_size_mb,
            self._config.max_heap_mb,
        )
        while not stop_event.wait(interval):
            self.check_memory_pressure()
        self._logger.info("Memory monitor stopped")

    def check_memory_pressure(self) -> int:
        """Thin queues when the global size or process memory limit is exceeded.

        Returns the number of images removed.
        """
        removed = 0
        with self._lock:
            queues = list(self._queues.values())
            total = sum(queue.state().total_size_bytes for queue in queues)
            self._current_total_size = total
            max_bytes = self._config.max_total_size_mb * _MB

            if total > max_bytes:
                self._logger.warning(
                    "Global queue size exceeded, triggering emergency thin total_mb=%.2f max_mb=%d",
                    total / _MB,
                    self._config.max_total_size_mb,
                )
                for queue in queues:
                    removed += queue.emergency_thin(self._config.emergency_thin_ratio)

            used = _process_memory_bytes()
            if used > self._config.max_heap_mb * _MB:
                self._logger.warning(
                    "System memory pressure detected heap_mb=%.2f max_heap_mb=%d",
                    used / _MB,
                    self._config.max_heap_mb,
                )
                for queue in queues:
                    removed += queue.emergency_thin(_PRESSURE_KEEP_RATIO)
                gc.collect()
        return removed

    def expire_all_old_images(self) -> int:
        """Expire old images in every queue and return how many were removed."""
        return sum(queue.expire_old_images() for queue in self.all_queues())

    def run_expiration_worker(self, stop_event: threading.Event, interval=60.0) -> None:
        """Expire old images every ``interval`` (at least a minute) until stopped."""
        seconds = max(_seconds(interval), _MIN_EXPIRATION_INTERVAL)
        self._logger.info("Expiration worker started interval=%ss", seconds)
        while not stop_event.wait(seconds):
            expired = self.expire_all_old_images()
            if expired:
                self._logger.info("Expiration worker completed expired=%d", expired)
        self._logger.info("Expiration worker stopped")

    def total_queue_size(self) -> int:
        """Total bytes held by all queues."""
        with self._lock:
            return sum(queue.state().total_size_bytes for queue in self._queues.values())

    def total_image_count(self) -> int:
        with self._lock:
            return sum(queue.image_count() for queue in self._queues.values())