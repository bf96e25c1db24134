# wxbridge

Building blocks for a bridge that captures still images from weather
webcams and pushes them to a remote server. The package has no
third-party dependencies.

## Modules

- **`wxbridge.queue_types`**: the queue errors (all subclasses of
  `QueueError`: `QueueEmptyError`, `CapturePausedError`, `QueueFullError`,
  `InvalidImageError`, `FileTooLargeError`, `ImageExpiredError`,
  `ImageFromFutureError`), the `HealthLevel` enum (`healthy`,
  `catching_up`, `degraded`, `critical`) and the dataclasses
  `QueuedImage`, `QueueState`, `QueueConfig`, `GlobalQueueConfig`,
  `QueueStats` and `GlobalQueueStats`.
- **`wxbridge.image_queue`**: `ImageQueue`, one camera's queue stored as
  files named by observation time in milliseconds (`1735142730000.jpg`).
  It rebuilds its state by rescanning its directory, rejects images
  smaller than 100 bytes, more than 5 seconds in the future or older than
  `max_age_seconds`, and tracks a health level from the larger of its file
  count and byte size against the configured limits. When it is no longer
  healthy it thins the middle of the queue in a background thread,
  keeping the oldest and newest images; at the critical threshold it can
  pause capture (`is_capture_paused()`, `pause_event()`) until it drops
  below `resume_threshold` (`resume_event()`). It also offers
  `expire_old_images()`, `emergency_thin(keep_ratio)`, `peek(count)`,
  `state()` and `stats()`. `parse_timestamp_from_filename()` turns a file
  name back into a UTC `datetime`.
- **`wxbridge.queue_manager`**: `QueueManager` creates, looks up and
  removes the queues of all cameras under one base directory, reports
  `global_stats()`, `total_queue_size()` and `total_image_count()`, and has
  two loops meant for background threads: `run_memory_monitor(stop_event)`
  emergency-thins every queue when the total size or the process memory
  exceeds its limit, and `run_expiration_worker(stop_event, interval)`
  expires old images at most once a minute.
- **`wxbridge.scheduler_types`**: the `Camera` and `UploadClient`
  protocols, and `CameraConfig`, `SchedulerConfig`, `CameraState` and
  `SchedulerStatus`.
- **`wxbridge.backoff`**: `BackoffConfig` and `calculate_backoff`,
  `update_backoff`, `reset_backoff`, `should_attempt`: exponential backoff
  (60 s doubling up to 3600 s, with up to 20 % jitter by default).
- **`wxbridge.degraded`**: `DegradedMode`, which turns on after
  `failure_threshold` failures in a row across cameras, limits concurrency
  and multiplies the scheduling interval until the next success.
- **`wxbridge.scheduler`**: `Scheduler` captures a fresh image from every
  enabled camera whose backoff has passed and uploads it to
  `<remote_path>/latest.jpg` (or `<camera id>/latest.jpg`). An optional
  `stamper(image_data, capture_time)` callable may rewrite the image before
  upload; if it raises, the original image is sent.
- **`wxbridge.upload_worker`**: `UploadWorker` drains registered queues
  round-robin to `<remote_path>/<unix-millis>.jpg`, keeps at least
  `min_upload_interval` seconds between uploads, retries a failed upload
  once after `retry_delay`, and on errors that look like authentication
  failures (`is_auth_error`) does not retry but backs that camera off for
  `auth_backoff` seconds.

## Installation

```
pip install .
```

## Example

```python
from datetime import datetime, timezone

from wxbridge.image_queue import ImageQueue
from wxbridge.queue_types import QueueConfig

queue = ImageQueue("runway-cam", "/tmp/wx/runway-cam", QueueConfig(), None)
queue.enqueue(jpeg_bytes, datetime.now(timezone.utc), "bridge_clock", "high")

image = queue.dequeue()          # oldest image, still on disk
# ... upload image.file_path ...
queue.mark_uploaded(image)       # removes it from the queue
```

A scheduler needs objects that satisfy the `Camera` protocol (`id`,
`type`, `capture(timeout)`) and the `UploadClient` protocol
(`upload(remote_path, data)`, `test_connection()`):

```python
from wxbridge.scheduler import Scheduler
from wxbridge.scheduler_types import CameraConfig, SchedulerConfig

configs = {"cam1": CameraConfig(id="cam1", remote_path="field/cam1", enabled=True)}
scheduler = Scheduler([camera], configs, uploader, SchedulerConfig(interval_seconds=60))
scheduler.start()
print(scheduler.status())
scheduler.stop()
```

## What the package does not do

It contains no camera drivers, no upload clients (FTP or otherwise), no
EXIF reading or writing, no configuration file handling and no
command-line program or web console. Cameras, uploaders and any image
stamping are supplied by the caller through the protocols and the
`stamper` callable described above.

## Running the tests

```
pip install .[test]
pytest
```