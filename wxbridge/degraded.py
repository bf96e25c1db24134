"""System-wide degraded mode triggered by repeated failures."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone


@dataclass
class DegradedConfig:
    """When degraded mode starts and how it slows the scheduler."""

    enabled: bool = True
    failure_threshold: int = 3
    concurrency_limit: int = 1
    slow_interval_multiplier: float = 2.0


class DegradedMode:
    """Counts failures across cameras and switches degraded mode on and off."""

    def __init__(self, config=None):
        config = config if config is not None else DegradedConfig()
        self._enabled = config.enabled
        self._failure_threshold = config.failure_threshold
        self._concurrency_limit = config.concurrency_limit
        self._slow_interval_multiplier = config.slow_interval_multiplier
        self._failure_count = 0
        self._active = False
        self._last_failure_time: datetime | None = None
        self._lock = threading.Lock()

    def record_failure(self) -> None:
        """Count a failure; activate once the threshold is reached."""
        if not self._enabled:
            return
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = datetime.now(timezone.utc)
            if self._failure_count >= self._failure_threshold:
                self._active = True

    def record_success(self) -> None:
        """Reset the failure count and leave degraded mode."""
        if not self._enabled:
            return
        with self._lock:
            self._failure_count = 0
            self._active = False

    def is_active(self) -> bool:
        with self._lock:
            return self._active

    def concurrency_limit(self) -> int:
        """Maximum concurrent operations, or -1 when unlimited."""
        with self._lock:
            return self._concurrency_limit if self._active else -1

    def interval_multiplier(self) -> float:
        with self._lock:
            return self._slow_interval_multiplier if self._active else 1.0

    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count