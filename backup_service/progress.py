"""
Progress reporting for chunked uploads.

This module provides:
- ProgressObserver: no-op hooks called around every chunk of an upload
- SpeedMeter: turns pre/post chunk offsets into ProgressSample objects
- LoggingProgressObserver and RichProgressObserver: concrete renderers
"""
import logging
import time
from typing import Callable, Optional

from rich.filesize import decimal
from rich.progress import BarColumn, DownloadColumn, Progress, TaskID, TextColumn

from .models import FileRef, ProgressSample

logger = logging.getLogger(__name__)


def format_bytes(size: int) -> str:
    """Format a byte count for humans, e.g. ``12.3 MB``."""
    return decimal(size)


def format_speed(bytes_per_second: Optional[float]) -> str:
    """Format a throughput for humans, e.g. ``1.2 MB/s``, or ``unknown``."""
    if bytes_per_second is None:
        return "unknown"
    return f"{decimal(int(bytes_per_second))}/s"


class ProgressObserver:
    """Receives notifications from a chunked upload.

    Every hook defaults to a no-op, so subclasses override only what they
    need. ``on_complete`` is called exactly once per upload attempt, whether
    it succeeded, failed or was cancelled.
    """

    def on_pre_chunk(self, offset: int) -> None:
        pass

    def on_post_chunk(self, offset: int) -> None:
        pass

    def on_complete(self) -> None:
        pass


class SpeedMeter:
    """Measures throughput between a pre-chunk and a post-chunk hook."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._offset: Optional[int] = None
        self._started: Optional[float] = None

    def begin(self, offset: int) -> None:
        self._offset = offset
        self._started = self._clock()

    def end(self, offset: int) -> Optional[ProgressSample]:
        """Close the measurement started by :meth:`begin`.

        Returns:
            ProgressSample, or None when ``begin`` was not called
        """
        if self._started is None:
            return None
        sample = ProgressSample(
            offset_before=self._offset,
            offset_after=offset,
            time_before=self._started,
            time_after=self._clock()
        )
        self._offset = None
        self._started = None
        return sample


class LoggingProgressObserver(ProgressObserver):
    """Writes one log line per uploaded chunk."""

    def __init__(self, file_ref: FileRef, clock: Callable[[], float] = time.monotonic):
        self.file_ref = file_ref
        self.meter = SpeedMeter(clock)
        self.last_sample: Optional[ProgressSample] = None

    def on_pre_chunk(self, offset: int) -> None:
        self.meter.begin(offset)

    def on_post_chunk(self, offset: int) -> None:
        self.last_sample = self.meter.end(offset)
        speed = self.last_sample.bytes_per_second if self.last_sample else None
        total = self.file_ref.size_bytes
        percent = offset * 100 // total if total else 100
        logger.info(
            f"{self.file_ref.name}: {format_bytes(offset)} / {format_bytes(total)} "
            f"({percent}%) at {format_speed(speed)}"
        )

    def on_complete(self) -> None:
        logger.debug(f"{self.file_ref.name}: upload finished")


class RichProgressObserver(ProgressObserver):
    """Drives one bar of a shared rich Progress display.

    The Progress is expected to declare a ``{task.fields[speed]}`` column.
    """

    def __init__(self, progress: Progress, file_ref: FileRef,
                 clock: Callable[[], float] = time.monotonic):
        self.progress = progress
        self.file_ref = file_ref
        self.meter = SpeedMeter(clock)
        self.task_id: TaskID = progress.add_task(
            file_ref.name,
            total=file_ref.size_bytes,
            filename=file_ref.name,
            speed=format_speed(None)
        )

    def on_pre_chunk(self, offset: int) -> None:
        self.meter.begin(offset)

    def on_post_chunk(self, offset: int) -> None:
        sample = self.meter.end(offset)
        speed = sample.bytes_per_second if sample else None
        self.progress.update(self.task_id, completed=offset, speed=format_speed(speed))

    def on_complete(self) -> None:
        self.progress.stop_task(self.task_id)


def create_progress(console=None) -> Progress:
    """Build the multi-bar display used by the ``bar`` progress mode."""
    return Progress(
        TextColumn("{task.fields[filename]}"),
        BarColumn(),
        DownloadColumn(),
        TextColumn("{task.fields[speed]}"),
        console=console,
    )
