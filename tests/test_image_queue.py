import os
import time
from datetime import datetime, timedelta, timezone

import pytest

from wxbridge.image_queue import ImageQueue, parse_timestamp_from_filename
from wxbridge.queue_types import (
    CapturePausedError,
    HealthLevel,
    ImageExpiredError,
    ImageFromFutureError,
    InvalidImageError,
    QueueConfig,
    QueueEmptyError,
)


def create_test_jpeg():
    return (
        b"\xff\xd8"
        + b"\xff\xe0\x00\x10"
        + b"JFIF\x00"
        + bytes([0x01, 0x01, 0x00, 0x00, 0x01, 0x00, 0x01, 0x00, 0x00])
        + b"\xff\xdb\x00\x43\x00"
        + b"\x10" * 64
        + bytes([0xFF, 0xC0, 0x00, 0x0B, 0x08, 0x00, 0x01, 0x00, 0x01, 0x01, 0x01, 0x11, 0x00])
        + bytes([0xFF, 0xC4, 0x00, 0x1F, 0x00])
        + bytes([0x00, 0x01, 0x05, 0x01, 0x01, 0x01, 0x01, 0x01])
        + bytes([0x01, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00])
        + bytes([0x00, 0x01, 0x02, 0x03, 0x04, 0x05, 0x06, 0x07])
        + bytes([0x08, 0x09, 0x0A, 0x0B])
        + bytes([0xFF, 0xDA, 0x00, 0x08, 0x01, 0x01, 0x00, 0x00, 0x3F, 0x00])
        + b"\x7f"
        + b"\xff\xd9"
    )


def utc_now():
    return datetime.now(timezone.utc)


def to_millis(moment):
    return moment.replace(microsecond=moment.microsecond // 1000 * 1000)


def jpg_files(directory):
    return sorted(name for name in os.listdir(directory) if name.endswith(".jpg"))


def test_new_queue(tmp_path):
    q = ImageQueue("test-camera", str(tmp_path), QueueConfig(), None)
    state = q.state()
    assert state.camera_id == "test-camera"
    assert state.directory == str(tmp_path)
    assert state.image_count == 0


def test_enqueue(tmp_path):
    q = ImageQueue("test-camera", str(tmp_path), QueueConfig(), None)
    q.enqueue(create_test_jpeg(), utc_now(), "bridge_clock", "high")
    assert q.image_count() == 1
    assert len(os.listdir(tmp_path)) == 1


def test_dequeue_returns_oldest(tmp_path):
    q = ImageQueue("test-camera", str(tmp_path), QueueConfig(), None)
    now = utc_now()
    times = [now - timedelta(seconds=3), now - timedelta(seconds=2), now - timedelta(seconds=1)]
    for ts in times:
        q.enqueue(create_test_jpeg(), ts, "bridge_clock", "high")

    image = q.dequeue()
    assert image.timestamp == to_millis(times[0])
    assert image.size_bytes == len(create_test_jpeg())
    assert q.image_count() == 3


def test_dequeue_empty_raises(tmp_path):
    q = ImageQueue("test-camera", str(tmp_path), QueueConfig(), None)
    with pytest.raises(QueueEmptyError):
        q.dequeue()


def test_mark_uploaded(tmp_path):
    q = ImageQueue("test-camera", str(tmp_path), QueueConfig(), None)
    q.enqueue(create_test_jpeg(), utc_now(), "bridge_clock", "high")
    image = q.dequeue()
    q.mark_uploaded(image)

    assert q.image_count() == 0
    assert not os.path.exists(image.file_path)
    state = q.state()
    assert state.images_uploaded == 1
    assert state.oldest_timestamp is None


def test_mark_uploaded_when_file_already_gone(tmp_path):
    q = ImageQueue("test-camera", str(tmp_path), QueueConfig(), None)
    q.enqueue(create_test_jpeg(), utc_now(), "bridge_clock", "high")
    image = q.dequeue()
    os.remove(image.file_path)
    q.mark_uploaded(image)
    assert q.image_count() == 0
    assert q.state().total_size_bytes == 0


def test_expire_old_images(tmp_path):
    config = QueueConfig(max_age_seconds=2)
    q = ImageQueue("test-camera", str(tmp_path), config, None)
    base = utc_now() - timedelta(milliseconds=1500)
    for i in range(3):
        q.enqueue(create_test_jpeg(), base + timedelta(milliseconds=i), "bridge_clock", "high")
    assert q.image_count() == 3

    time.sleep(0.7)
    expired = q.expire_old_images()

    assert expired == 3
    assert q.image_count() == 0
    assert q.state().images_expired == 3


def test_health_level(tmp_path):
    config = QueueConfig(
        max_files=10,
        threshold_catching_up=0.5,
        threshold_degraded=0.8,
        threshold_critical=0.9,
        pause_capture_on_critical=False,
        thinning_enabled=False,
    )
    q = ImageQueue("test-camera", str(tmp_path), config, None)
    assert q.health_level() is HealthLevel.HEALTHY

    now = utc_now()
    for i in range(5):
        q.enqueue(create_test_jpeg(), now + timedelta(milliseconds=i), "bridge_clock", "high")
    assert q.health_level() is HealthLevel.CATCHING_UP

    for i in range(3):
        q.enqueue(create_test_jpeg(), now + timedelta(milliseconds=i + 5), "bridge_clock", "high")
    assert q.health_level() is HealthLevel.DEGRADED


def test_thinning_removes_middle_images(tmp_path):
    config = QueueConfig(
        max_files=20,
        protect_newest=2,
        protect_oldest=2,
        threshold_catching_up=0.5,
        pause_capture_on_critical=False,
    )
    q = ImageQueue("test-camera", str(tmp_path), config, None)
    now = utc_now()
    times = [now + timedelta(milliseconds=i) for i in range(17)]
    for ts in times:
        q.enqueue(create_test_jpeg(), ts, "bridge_clock", "high")

    deadline = time.monotonic() + 5
    while q.image_count() >= 17 and time.monotonic() < deadline:
        time.sleep(0.02)
    time.sleep(0.3)

    assert q.image_count() < 17
    assert q.image_count() == len(jpg_files(tmp_path))
    state = q.state()
    assert state.images_thinned == 17 - state.image_count
    assert state.oldest_timestamp == to_millis(times[0])
    assert state.newest_timestamp == to_millis(times[-1])


def test_emergency_thin(tmp_path):
    q = ImageQueue("test-camera", str(tmp_path), QueueConfig(), None)
    now = utc_now()
    times = [now + timedelta(milliseconds=i) for i in range(20)]
    for ts in times:
        q.enqueue(create_test_jpeg(), ts, "bridge_clock", "high")

    initial = q.image_count()
    removed = q.emergency_thin(0.3)

    assert removed > 0
    assert removed + q.image_count() == initial
    assert q.image_count() <= int(initial * 0.3) + 1
    assert q.state().newest_timestamp == to_millis(times[-1])


def test_emergency_thin_keeps_at_least_one(tmp_path):
    q = ImageQueue("test-camera", str(tmp_path), QueueConfig(), None)
    now = utc_now()
    for i in range(3):
        q.enqueue(create_test_jpeg(), now + timedelta(milliseconds=i), "bridge_clock", "high")
    assert q.emergency_thin(0.0) == 2
    assert q.image_count() == 1


def test_capture_pause(tmp_path):
    config = QueueConfig(
        max_files=10,
        threshold_critical=0.9,
        pause_capture_on_critical=True,
        thinning_enabled=False,
    )
    q = ImageQueue("test-camera", str(tmp_path), config, None)
    now = utc_now()
    for i in range(9):
        q.enqueue(create_test_jpeg(), now + timedelta(milliseconds=i), "bridge_clock", "high")

    assert q.is_capture_paused()
    assert q.pause_event().is_set()
    with pytest.raises(CapturePausedError):
        q.enqueue(create_test_jpeg(), utc_now(), "bridge_clock", "high")


def test_capture_resumes_below_threshold(tmp_path):
    config = QueueConfig(
        max_files=10,
        threshold_critical=0.9,
        resume_threshold=0.7,
        thinning_enabled=False,
    )
    q = ImageQueue("test-camera", str(tmp_path), config, None)
    now = utc_now()
    for i in range(9):
        q.enqueue(create_test_jpeg(), now + timedelta(milliseconds=i), "bridge_clock", "high")
    assert q.is_capture_paused()

    for _ in range(2):
        q.mark_uploaded(q.dequeue())
    assert q.is_capture_paused()
    assert not q.resume_event().is_set()

    q.mark_uploaded(q.dequeue())
    assert not q.is_capture_paused()
    assert q.resume_event().is_set()


def test_peek(tmp_path):
    q = ImageQueue("test-camera", str(tmp_path), QueueConfig(), None)
    now = utc_now()
    for i in range(5):
        q.enqueue(create_test_jpeg(), now + timedelta(milliseconds=i), "bridge_clock", "high")

    images = q.peek(3)
    assert len(images) == 3
    assert [img.timestamp for img in images] == sorted(img.timestamp for img in images)
    assert q.image_count() == 5


def test_peek_more_than_available(tmp_path):
    q = ImageQueue("test-camera", str(tmp_path), QueueConfig(), None)
    now = utc_now()
    for i in range(2):
        q.enqueue(create_test_jpeg(), now + timedelta(milliseconds=i), "bridge_clock", "high")
    assert len(q.peek(10)) == 2


def test_stats(tmp_path):
    q = ImageQueue("test-camera", str(tmp_path), QueueConfig(), None)
    now = utc_now()
    for i in range(3):
        q.enqueue(create_test_jpeg(), now + timedelta(milliseconds=i), "bridge_clock", "high")

    stats = q.stats()
    assert stats.camera_id == "test-camera"
    assert stats.image_count == 3
    assert stats.images_queued == 3
    assert stats.health_level == "healthy"
    assert stats.capacity_percent == pytest.approx(3.0)


def test_stats_ages(tmp_path):
    q = ImageQueue("test-camera", str(tmp_path), QueueConfig(), None)
    empty = q.stats()
    assert empty.oldest_age == ""
    assert empty.newest_age == ""

    q.enqueue(create_test_jpeg(), utc_now() - timedelta(seconds=65), "bridge_clock", "high")
    stats = q.stats()
    assert stats.oldest_age == "1m5s"
    assert stats.newest_age == "1m5s"


def test_restore_from_disk(tmp_path):
    q1 = ImageQueue("test-camera", str(tmp_path), QueueConfig(), None)
    now = utc_now()
    for i in range(5):
        q1.enqueue(create_test_jpeg(), now + timedelta(milliseconds=i), "bridge_clock", "high")

    q2 = ImageQueue("test-camera", str(tmp_path), QueueConfig(), None)
    assert q2.image_count() == 5
    assert q2.state().total_size_bytes == 5 * len(create_test_jpeg())
    assert q2.state().oldest_timestamp == to_millis(now)


def test_ignores_foreign_files(tmp_path):
    (tmp_path / "notes.txt").write_text("hello")
    (tmp_path / "abc.jpg").write_bytes(create_test_jpeg())
    (tmp_path / "123.jpg.tmp").write_bytes(create_test_jpeg())
    (tmp_path / "456.jpg").mkdir()
    q = ImageQueue("test-camera", str(tmp_path), QueueConfig(), None)
    assert q.image_count() == 0
    with pytest.raises(QueueEmptyError):
        q.dequeue()


def test_validation_errors(tmp_path):
    q = ImageQueue("test-camera", str(tmp_path), QueueConfig(max_age_seconds=3600), None)

    with pytest.raises(InvalidImageError):
        q.enqueue(bytes([0xFF, 0xD8, 0xFF, 0xD9]), utc_now(), "bridge_clock", "high")

    with pytest.raises(ImageFromFutureError):
        q.enqueue(create_test_jpeg(), utc_now() + timedelta(seconds=10), "bridge_clock", "high")

    with pytest.raises(ImageExpiredError):
        q.enqueue(create_test_jpeg(), utc_now() - timedelta(hours=2), "bridge_clock", "high")

    assert q.image_count() == 0


def test_duplicate_timestamp_shifts_by_one_millisecond(tmp_path):
    q = ImageQueue("test-camera", str(tmp_path), QueueConfig(), None)
    moment = utc_now()
    q.enqueue(create_test_jpeg(), moment, "bridge_clock", "high")
    q.enqueue(create_test_jpeg(), moment, "bridge_clock", "high")

    images = q.peek(2)
    assert len(images) == 2
    assert images[1].timestamp - images[0].timestamp == timedelta(milliseconds=1)
    assert len(jpg_files(tmp_path)) == 2


@pytest.mark.parametrize(
    "filename, expected",
    [
        ("1735142730000.jpg", 1735142730000),
        ("1735142730123.jpg", 1735142730123),
        ("0.jpg", 0),
    ],
)
def test_parse_timestamp_from_filename(filename, expected):
    result = parse_timestamp_from_filename(filename)
    assert round(result.timestamp() * 1000) == expected
    assert result.tzinfo is not None


@pytest.mark.parametrize("filename", ["abc.jpg", "12a.jpg", ".jpg"])
def test_parse_timestamp_from_invalid_filename(filename):
    assert parse_timestamp_from_filename(filename) is None