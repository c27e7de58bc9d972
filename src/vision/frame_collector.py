"""
FrameCollector - Vision Module
Samples a FrameSource over a fixed window.

`FrameCollector.collect()` schedules each capture as a task on the session's
TaskScheduler, so the engine loop keeps ticking while the window fills.
`capture_window()` is the blocking form for callers outside the engine
(check-in, calibration).
"""

import time
from typing import Callable, List, Optional

import numpy as np

from src.utils.logger import setup_logger

logger = setup_logger(__name__)

CAPTURE_TASK = "frame_capture"


def capture_window(frame_source, count: int, interval_ms: int,
                   sleep: Callable[[float], None] = time.sleep) -> List[np.ndarray]:
    """Capture `count` frames, `interval_ms` apart, blocking the caller."""
    frames = []
    for i in range(count):
        if i > 0:
            sleep(interval_ms / 1000.0)
        frames.append(frame_source.capture_frame())
    return frames


class FrameCollector:

    def __init__(self, scheduler, frame_source, clock: Callable[[], int]):
        self.scheduler = scheduler
        self.frame_source = frame_source
        self.clock = clock
        self._frames: List[np.ndarray] = []
        self._target = 0
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def collect(self, count: int, interval_ms: int,
                on_complete: Callable[[List[np.ndarray]], None],
                on_error: Optional[Callable[[Exception], None]] = None):
        """
        Start a capture window. The first frame is taken now; `on_complete`
        runs from a later tick once all `count` frames are in.
        """
        if self._active:
            raise RuntimeError("A capture window is already running")
        self._frames = []
        self._target = max(1, count)
        self._active = True

        def capture():
            if not self._active:
                return
            try:
                self._frames.append(self.frame_source.capture_frame())
            except Exception as e:
                self._active = False
                logger.error(f"Frame capture failed: {e}")
                if on_error is None:
                    raise
                on_error(e)
                return

            if len(self._frames) >= self._target:
                self._active = False
                frames, self._frames = self._frames, []
                on_complete(frames)
            else:
                self.scheduler.schedule_at(self.clock() + interval_ms, capture, CAPTURE_TASK)

        capture()

    def cancel(self):
        if self._active:
            self._active = False
            self._frames = []
            self.scheduler.cancel_named(CAPTURE_TASK)
