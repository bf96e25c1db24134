"""Disk-backed image queues, capture scheduling with backoff, and queued uploading for webcams."""

__version__ = "0.1.0"