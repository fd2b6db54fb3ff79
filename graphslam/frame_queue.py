import threading
from collections import deque
from typing import Deque, List, Optional

from .frame import Frame


class FrameQueue:
    """
    Thread-safe FIFO of frames awaiting insertion into the pose graph.

    Any number of producers may enqueue concurrently; a single consumer drains
    it. The lock is only held for the deque operation itself, never while a
    frame is being processed. The queue is unbounded.
    """

    def __init__(self):
        self._frames: Deque[Frame] = deque()
        self._cond = threading.Condition(threading.Lock())
        self._woken = False

    def enqueue(self, frame: Frame):
        with self._cond:
            self._frames.append(frame)
            self._cond.notify()

    def try_dequeue(self) -> Optional[Frame]:
        """Pop the oldest frame, or None if the queue is empty."""
        with self._cond:
            if not self._frames:
                return None
            return self._frames.popleft()

    def try_dequeue_all(self) -> List[Frame]:
        """Take every pending frame in submission order."""
        with self._cond:
            frames = list(self._frames)
            self._frames.clear()
        return frames

    def has_pending(self) -> bool:
        with self._cond:
            return bool(self._frames)

    def wait_for_frames(self, timeout: Optional[float] = None) -> bool:
        """
        Block until a frame is pending, `wake` is called or `timeout` expires.

        Returns:
            True if frames are pending
        """
        with self._cond:
            if not self._frames and not self._woken:
                self._cond.wait(timeout)
            self._woken = False
            return bool(self._frames)

    def wake(self):
        """Release a consumer blocked in `wait_for_frames`."""
        with self._cond:
            self._woken = True
            self._cond.notify_all()

    def clear(self) -> int:
        """Discard pending frames, returning how many were dropped."""
        with self._cond:
            dropped = len(self._frames)
            self._frames.clear()
        return dropped

    def __len__(self) -> int:
        with self._cond:
            return len(self._frames)
