"""Capture-and-upload cycle that always sends freshly captured images."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timezone

from .backoff import BackoffConfig, reset_backoff, should_attempt, update_backoff
from .degraded import DegradedConfig, DegradedMode
from .scheduler_types import CameraState, SchedulerConfig, SchedulerStatus

_logger = logging.getLogger(__name__)


def _latest_path(remote_path: str, camera_id: str) -> str:
    if not remote_path:
        return f"{camera_id}/latest.jpg"
    if not remote_path.endswith("/"):
        remote_path += "/"
    return remote_path + "latest.jpg"


class Scheduler:
    """Periodically captures every enabled camera and uploads the result.

    ``stamper``, if given, is called as ``stamper(image_data, capture_time)`` and
    returns the image to upload; if it raises, the original image is used.
    """

    def __init__(self, cameras, camera_configs, uploader, config=None, stamper=None):
        self._cameras = list(cameras)
        self._camera_configs = dict(camera_configs)
        self._uploader = uploader
        self._stamper = stamper
        self.config: SchedulerConfig = config if config is not None else SchedulerConfig()
        self._states: dict[str, CameraState] = {}
        self._degraded = DegradedMode(DegradedConfig())
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_cycle_time: datetime | None = None

    def start(self) -> None:
        """Initialise camera states and run the scheduling loop in the background."""
        now = datetime.now(timezone.utc)
        with self._lock:
            for camera in self._cameras:
                self._states[camera.id] = CameraState(camera_id=camera.id, next_attempt=now)
        self._thread = threading.Thread(target=self._run, name="scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Ask the scheduling loop to finish."""
        self._stop.set()

    def status(self) -> SchedulerStatus:
        with self._lock:
            states = [replace(state) for state in self._states.values()]
            last_cycle = self._last_cycle_time
        return SchedulerStatus(
            running=not self._stop.is_set(),
            camera_count=len(self._cameras),
            camera_states=states,
            degraded_mode=self._degraded.is_active(),
            last_cycle_time=last_cycle,
        )

    def process_cameras(self) -> None:
        """Process every camera whose next attempt is due and wait for all of them."""
        with self._lock:
            ready = [
                (camera, self._states[camera.id])
                for camera in self._cameras
                if camera.id in self._states and should_attempt(self._states[camera.id])
            ]

        if ready:
            limit = self._degraded.concurrency_limit()
            workers = limit if limit > 0 else len(ready)
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="camera") as pool:
                futures = [pool.submit(self._process_camera, cam, st) for cam, st in ready]
                for future in futures:
                    future.result()

        with self._lock:
            self._last_cycle_time = datetime.now(timezone.utc)

    def _run(self) -> None:
        base = float(self.config.interval_seconds)
        interval = base
        self.process_cameras()
        while not self._stop.wait(interval):
            self.process_cameras()
            interval = base * self._degraded.interval_multiplier()

    def _record_failure(self, state: CameraState, error: BaseException) -> None:
        with self._lock:
            state.last_error = error
            state.last_error_time = datetime.now(timezone.utc)
            update_backoff(state, BackoffConfig())
        self._degraded.record_failure()

    def _process_camera(self, camera, state: CameraState) -> None:
        camera_config = self._camera_configs.get(camera.id)
        if camera_config is None or not camera_config.enabled:
            return

        try:
            image_data = camera.capture(float(self.config.global_timeout))
        except Exception as error:
            _logger.warning("Capture failed camera=%s error=%s", camera.id, error)
            self._record_failure(state, error)
            return

        with self._lock:
            reset_backoff(state)
            state.last_success = datetime.now(timezone.utc)

        if self._stamper is not None:
            capture_time = datetime.now(timezone.utc)
            try:
                image_data = self._stamper(image_data, capture_time)
            except Exception as error:
                _logger.debug("EXIF stamping failed camera=%s error=%s", camera.id, error)

        remote_path = _latest_path(camera_config.remote_path, camera.id)
        try:
            self._uploader.upload(remote_path, image_data)
        except Exception as error:
            _logger.warning("Upload failed camera=%s error=%s", camera.id, error)
            self._record_failure(state, error)
            return

        with self._lock:
            state.last_success = datetime.now(timezone.utc)
            state.last_error = None
            state.last_error_time = None
        self._degraded.record_success()