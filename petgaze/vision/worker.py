"""
Background detection worker.

Frame hand-off uses a double buffer: the main loop copies each submitted
frame into the back buffer under a short-held lock, the worker swaps it
to the front and processes it outside the lock. The main loop never waits
for detection; frames that arrive while the worker is busy are dropped.
"""

import threading
from typing import Callable, Generic, Optional, Tuple, TypeVar

import numpy as np

from petgaze.vision.camera import Frame
from petgaze.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class DetectionWorker(Generic[T]):
    """
    Run a per-frame function on a daemon thread.

    Counters satisfy ``dropped == submitted - consumed`` once stop() has
    returned with the thread joined.
    """

    def __init__(self, process: Callable[[Frame], T], name: str = "DetectionWorker", join_timeout: float = 1.0):
        """
        Args:
            process: Called on the worker thread with each accepted frame
            name: Thread name
            join_timeout: Seconds stop() waits for the thread
        """
        self._process = process
        self._name = name
        self._join_timeout = join_timeout

        self._lock = threading.Lock()
        self._wake = threading.Event()
        self._stop_requested = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._front: Optional[np.ndarray] = None
        self._back: Optional[np.ndarray] = None
        self._pending: Optional[Tuple[float, int]] = None  # (timestamp, frame_number) in back buffer
        self._busy = False

        self._latest: Optional[T] = None
        self._failed = False
        self._error: Optional[Exception] = None

        self._submitted = 0
        self._consumed = 0
        self._dropped = 0

    def start(self):
        """Start the worker thread (no-op if running)."""
        if self.is_running:
            return

        self._stop_requested.clear()
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()
        logger.info(f"{self._name} started")

    def submit(self, frame: Frame) -> bool:
        """
        Hand a frame to the worker without waiting.

        Returns:
            True if the frame was queued, False if it was dropped or the
            worker is not accepting frames
        """
        with self._lock:
            if self._failed or self._thread is None or self._stop_requested.is_set():
                return False

            self._submitted += 1

            if self._busy:
                self._dropped += 1
                return False

            if self._pending is not None:
                # Overwrite the frame the worker has not picked up yet
                self._dropped += 1

            image = frame.image
            if self._back is None or self._back.shape != image.shape or self._back.dtype != image.dtype:
                self._back = np.array(image, copy=True)
            else:
                np.copyto(self._back, image)
            self._pending = (frame.timestamp, frame.frame_number)

        self._wake.set()
        return True

    def _run(self):
        while not self._stop_requested.is_set():
            if not self._wake.wait(timeout=0.1):
                continue

            with self._lock:
                self._wake.clear()
                if self._pending is None:
                    continue
                timestamp, frame_number = self._pending
                self._pending = None
                self._front, self._back = self._back, self._front
                self._busy = True
                image = self._front.view()

            image.setflags(write=False)
            frame = Frame(image=image, timestamp=timestamp, frame_number=frame_number)

            try:
                result = self._process(frame)
            except Exception as e:
                logger.error(f"{self._name} failed on frame {frame_number}: {e}", exc_info=True)
                with self._lock:
                    self._failed = True
                    self._error = e
                    self._busy = False
                    self._dropped += 1
                return

            with self._lock:
                self._latest = result
                self._busy = False
                self._consumed += 1

    def stop(self):
        """
        Stop the thread and wait up to join_timeout for it.

        A frame still waiting in the buffer counts as dropped.
        """
        self._stop_requested.set()
        self._wake.set()

        if self._thread is not None:
            self._thread.join(timeout=self._join_timeout)
            if self._thread.is_alive():
                logger.warning(f"{self._name} did not stop within {self._join_timeout:.1f}s")
            self._thread = None

        with self._lock:
            if self._pending is not None:
                self._pending = None
                self._dropped += 1

        logger.info(
            f"{self._name} stopped: submitted={self._submitted}, "
            f"consumed={self._consumed}, dropped={self._dropped}"
        )

    def latest_result(self) -> Optional[T]:
        with self._lock:
            return self._latest

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._busy

    @property
    def failed(self) -> bool:
        return self._failed

    @property
    def error(self) -> Optional[Exception]:
        return self._error

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    @property
    def submitted(self) -> int:
        return self._submitted

    @property
    def consumed(self) -> int:
        return self._consumed

    @property
    def dropped(self) -> int:
        return self._dropped
