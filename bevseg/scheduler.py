"""Frame scheduling in front of the segmenter.

Inference is the one blocking call per frame. When frames arrive faster than
it completes, the policy decides what happens to the backlog:

- ``drop_and_replace``: one pending slot. A new frame replaces the pending
  one and supersedes the frame in flight, whose remaining work (clustering,
  assembly) is abandoned once its inference call returns. Output always
  tracks the freshest data.
- ``fifo``: up to ``max_pending`` frames wait in arrival order; submissions to
  a full queue are rejected. Nothing in flight is ever superseded.

A single worker thread owns the segmenter, so its scratch buffers are never
touched by two frames at once.
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Callable, Optional

from .config import SCHEDULING_POLICIES, SchedulingConfig
from .log import get_logger
from .pipeline import FrameResult, FrameStatus, InstanceSegmenter
from .pointcloud import PointCloud

logger = get_logger(__name__)


class FrameScheduler:
    def __init__(
        self,
        segmenter: InstanceSegmenter,
        policy: str = "drop_and_replace",
        max_pending: int = 1,
        on_result: Optional[Callable[[FrameResult], None]] = None,
    ):
        if policy not in SCHEDULING_POLICIES:
            raise ValueError(f"Unsupported scheduling policy: {policy!r}")
        if max_pending < 1:
            raise ValueError(f"max_pending must be >= 1, got {max_pending}")
        self.segmenter = segmenter
        self.policy = policy
        self.max_pending = 1 if policy == "drop_and_replace" else int(max_pending)
        self.on_result = on_result

        self._cond = threading.Condition()
        self._pending: deque[tuple[int, PointCloud]] = deque()
        self._generation = 0
        self._busy = False
        self._stopping = False
        self._thread: threading.Thread | None = None

        self.submitted = 0
        self.dropped = 0
        self.processed = 0
        self.superseded = 0
        self.last_result: FrameResult | None = None

    @classmethod
    def from_config(
        cls,
        segmenter: InstanceSegmenter,
        cfg: SchedulingConfig,
        on_result: Optional[Callable[[FrameResult], None]] = None,
    ) -> "FrameScheduler":
        return cls(segmenter, cfg.policy, cfg.max_pending, on_result=on_result)

    # -- lifecycle --

    def start(self) -> "FrameScheduler":
        with self._cond:
            if self._thread is not None:
                return self
            self._stopping = False
            self._thread = threading.Thread(target=self._run, name="bevseg-frames", daemon=True)
            self._thread.start()
        return self

    def stop(self, drain: bool = True, timeout: float | None = None) -> None:
        """Stop the worker; pending frames are processed first unless drain=False."""
        with self._cond:
            if not drain and self._pending:
                self.dropped += len(self._pending)
                self._pending.clear()
            self._stopping = True
            self._cond.notify_all()
            thread = self._thread
        if thread is not None:
            thread.join(timeout)
        with self._cond:
            self._thread = None

    def __enter__(self) -> "FrameScheduler":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # -- producer side --

    def submit(self, cloud: PointCloud) -> bool:
        """Queue a frame. Returns False if the frame itself was rejected."""
        with self._cond:
            if self._stopping:
                raise RuntimeError("Scheduler is stopping; no new frames accepted")
            self.submitted += 1
            if self.policy == "drop_and_replace":
                if self._pending:
                    self.dropped += len(self._pending)
                    logger.debug("Dropped %d pending frame(s) for %s @%d",
                                 len(self._pending), cloud.frame_id, cloud.stamp_ns)
                    self._pending.clear()
                # Supersedes whatever frame is in flight.
                self._generation += 1
            elif len(self._pending) >= self.max_pending:
                self.dropped += 1
                logger.debug("Queue full (%d); rejected %s @%d",
                             self.max_pending, cloud.frame_id, cloud.stamp_ns)
                return False
            self._pending.append((self._generation, cloud))
            self._cond.notify_all()
            return True

    def flush(self, timeout: float | None = None) -> bool:
        """Block until nothing is pending or in flight. False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._pending and not self._busy, timeout)

    @property
    def pending(self) -> int:
        with self._cond:
            return len(self._pending)

    # -- worker side --

    def _is_superseded(self, generation: int) -> bool:
        return self._generation != generation

    def _run(self) -> None:
        while True:
            with self._cond:
                self._cond.wait_for(lambda: self._pending or self._stopping)
                if not self._pending:
                    return
                generation, cloud = self._pending.popleft()
                self._busy = True

            result = None
            try:
                result = self.segmenter.process(
                    cloud, is_cancelled=lambda: self._is_superseded(generation))
                if self.on_result is not None:
                    self.on_result(result)
            except Exception:
                logger.exception("Frame %s @%d failed unexpectedly", cloud.frame_id, cloud.stamp_ns)

            with self._cond:
                self._busy = False
                if result is not None:
                    self.processed += 1
                    self.last_result = result
                    if result.status is FrameStatus.SUPERSEDED:
                        self.superseded += 1
                self._cond.notify_all()
