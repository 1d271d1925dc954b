"""
Request scheduler: bounded admission + worker pool + per-request deadline.

Async endpoints call InferenceScheduler.submit(); the synchronous pipeline
runs on a shared ThreadPoolExecutor so the event loop never blocks.

Features:
- Admission limit (running + waiting) with immediate CapacityError beyond it
- Per-request deadline covering queue wait and execution
- Timed-out work that already started runs to completion; its result is
  discarded and its admission slot is held until then
- Statistics tracking for monitoring

Usage:
    scheduler = InferenceScheduler(detector, workers=4, max_queue_depth=64, timeout_s=5.0)
    result = await scheduler.submit(image_bytes)
    scheduler.shutdown()
"""

import asyncio
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from facebox.core.exceptions import CapacityError, PipelineTimeoutError
from facebox.services.detector import DetectionResult, FaceDetector


logger = logging.getLogger(__name__)


# =============================================================================
# Scheduler Statistics
# =============================================================================
@dataclass
class SchedulerStats:
    """Statistics for InferenceScheduler."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    timed_out_requests: int = 0
    total_latency_ms: float = 0.0
    admitted: int = 0
    active: int = 0
    peak_admitted: int = 0

    @property
    def avg_latency_ms(self) -> float:
        """Average pipeline latency of successful requests."""
        if self.successful_requests == 0:
            return 0.0
        return self.total_latency_ms / self.successful_requests

    @property
    def queued(self) -> int:
        """Admitted requests still waiting for a worker."""
        return max(0, self.admitted - self.active)


class InferenceScheduler:
    """Runs FaceDetector.detect on a worker pool with backpressure and deadlines."""

    def __init__(
        self,
        detector: FaceDetector,
        workers: int = 4,
        max_queue_depth: int = 64,
        timeout_s: float = 5.0,
    ):
        """
        Initialize the scheduler.

        Args:
            detector: Shared detection pipeline
            workers: Pipelines executed concurrently
            max_queue_depth: Maximum admitted requests (running + waiting)
            timeout_s: Per-request deadline in seconds
        """
        self.detector = detector
        self.workers = workers
        self.max_queue_depth = max_queue_depth
        self.timeout_s = timeout_s

        self._executor = ThreadPoolExecutor(
            max_workers=workers,
            thread_name_prefix='detect-worker-',
        )
        self._lock = threading.Lock()
        self._stats = SchedulerStats()
        self._closed = False

    # =========================================================================
    # Admission
    # =========================================================================
    def _admit(self) -> None:
        with self._lock:
            self._stats.total_requests += 1
            if self._closed or self._stats.admitted >= self.max_queue_depth:
                self._stats.rejected_requests += 1
                raise CapacityError(
                    'Request queue is full, retry later',
                    admitted=self._stats.admitted,
                    max_queue_depth=self.max_queue_depth,
                )
            self._stats.admitted += 1
            self._stats.peak_admitted = max(self._stats.peak_admitted, self._stats.admitted)

    def _release(self, _future: Future) -> None:
        with self._lock:
            self._stats.admitted -= 1

    # =========================================================================
    # Execution
    # =========================================================================
    def _run(
        self,
        image_bytes: bytes,
        declared_format: str | None,
        confidence: float | None,
        iou: float | None,
    ) -> DetectionResult:
        with self._lock:
            self._stats.active += 1
        start = time.perf_counter()
        try:
            result = self.detector.detect(image_bytes, declared_format, confidence, iou)
        except Exception:
            with self._lock:
                self._stats.failed_requests += 1
            raise
        else:
            with self._lock:
                self._stats.successful_requests += 1
                self._stats.total_latency_ms += (time.perf_counter() - start) * 1000
            return result
        finally:
            with self._lock:
                self._stats.active -= 1

    async def submit(
        self,
        image_bytes: bytes,
        declared_format: str | None = None,
        confidence: float | None = None,
        iou: float | None = None,
    ) -> DetectionResult:
        """
        Run the detection pipeline for one image under admission control.

        Raises:
            CapacityError: Queue depth exceeded (retryable)
            PipelineTimeoutError: Deadline exceeded (retryable)
            FaceboxError: Any pipeline failure (decode, preprocess, inference)
        """
        self._admit()
        try:
            cfuture = self._executor.submit(
                self._run, image_bytes, declared_format, confidence, iou
            )
        except RuntimeError as e:
            # Executor already shut down
            self._release(None)
            raise CapacityError('Scheduler is shutting down') from e
        cfuture.add_done_callback(self._release)

        try:
            return await asyncio.wait_for(asyncio.wrap_future(cfuture), self.timeout_s)
        except asyncio.TimeoutError as e:
            with self._lock:
                self._stats.timed_out_requests += 1
            logger.warning(
                f'Detection exceeded {self.timeout_s * 1000:.0f}ms deadline '
                f'(started={cfuture.running() or cfuture.done()})'
            )
            raise PipelineTimeoutError(
                f'Detection exceeded the {self.timeout_s * 1000:.0f}ms deadline',
                timeout_ms=self.timeout_s * 1000,
            ) from e

    # =========================================================================
    # Monitoring / lifecycle
    # =========================================================================
    def get_stats(self) -> dict[str, Any]:
        """Get scheduler statistics."""
        with self._lock:
            s = self._stats
            return {
                'total_requests': s.total_requests,
                'successful_requests': s.successful_requests,
                'failed_requests': s.failed_requests,
                'rejected_requests': s.rejected_requests,
                'timed_out_requests': s.timed_out_requests,
                'avg_latency_ms': round(s.avg_latency_ms, 2),
                'admitted': s.admitted,
                'active': s.active,
                'queued': s.queued,
                'peak_admitted': s.peak_admitted,
                'workers': self.workers,
                'max_queue_depth': self.max_queue_depth,
                'timeout_ms': round(self.timeout_s * 1000),
            }

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work and shut down the worker pool."""
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=True)
        logger.info(f'InferenceScheduler shut down (final stats: {self.get_stats()})')
