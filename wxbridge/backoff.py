"""Exponential backoff for failing cameras."""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from .scheduler_types import CameraState

_JITTER_FRACTION = 0.2


@dataclass
class BackoffConfig:
    """Backoff growth parameters."""

    initial_seconds: int = 60
    max_seconds: int = 3600
    multiplier: float = 2.0
    jitter: bool = True


def calculate_backoff(state: CameraState, config: BackoffConfig | None = None) -> int:
    """Seconds to wait after ``state.failure_count`` failures, capped and optionally jittered."""
    config = config if config is not None else BackoffConfig()
    if state.failure_count == 0:
        return 0

    try:
        backoff = config.initial_seconds * config.multiplier ** (state.failure_count - 1)
    except OverflowError:
        backoff = float("inf")
    backoff = min(backoff, float(config.max_seconds))

    if config.jitter:
        backoff += backoff * _JITTER_FRACTION * random.random()
    return int(backoff)


def update_backoff(state: CameraState, config: BackoffConfig | None = None) -> None:
    """Record a failure and schedule the next attempt."""
    state.failure_count += 1
    state.is_backing_off = True
    state.backoff_seconds = calculate_backoff(state, config)
    state.next_attempt = datetime.now(timezone.utc) + timedelta(seconds=state.backoff_seconds)


def reset_backoff(state: CameraState) -> None:
    """Record a success and clear the backoff."""
    state.failure_count = 0
    state.success_count += 1
    state.is_backing_off = False
    state.backoff_seconds = 0
    state.last_error = None
    state.last_error_time = None


def should_attempt(state: CameraState) -> bool:
    """Whether the camera's next attempt is due."""
    if state.next_attempt is None:
        return True
    return datetime.now(timezone.utc) > state.next_attempt