"""
Asynchronous detection jobs.

Clients upload an image to POST /queue and receive a job id immediately;
background workers drain the queue through the InferenceScheduler and write
each result to <results_dir>/<id>.json. GET /result/{id} reports the status
or returns the stored detections.

Job records live in memory (bounded); finished results persist on disk and
remain retrievable after their record has been evicted or the process has
restarted.
"""

import asyncio
import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import orjson

from facebox.core.exceptions import CapacityError, FaceboxError
from facebox.services.postprocess import detections_to_list
from facebox.services.scheduler import InferenceScheduler


logger = logging.getLogger(__name__)

# Back-off while the request scheduler is saturated
CAPACITY_RETRY_S = 0.05


class JobStatus(str, Enum):
    PENDING = 'pending'
    PROCESSING = 'processing'
    DONE = 'done'
    FAILED = 'failed'


@dataclass
class Job:
    """One queued detection request."""

    id: str
    image_format: str | None
    data: bytes | None
    status: JobStatus = JobStatus.PENDING
    added_time: float = field(default_factory=time.time)
    finished_time: float | None = None
    error: str | None = None
    client_error: bool = False
    detections: list[dict[str, Any]] | None = None

    def summary(self) -> dict[str, Any]:
        return {
            'id': self.id,
            'status': self.status.value,
            'err': self.error,
        }


def parse_job_id(job_id: str) -> str | None:
    """Canonical job id, or None if job_id is not a UUID."""
    try:
        return str(uuid.UUID(job_id))
    except ValueError:
        return None


class JobQueue:
    """
    Bounded in-memory job queue drained by asyncio worker tasks.

    Usage:
        jobs = JobQueue(scheduler, Path('results'), max_size=10000)
        await jobs.start()
        job_id = jobs.submit(image_bytes, 'jpeg')
        job = jobs.get(job_id)
        await jobs.stop()
    """

    def __init__(
        self,
        scheduler: InferenceScheduler,
        results_dir: Path,
        max_size: int = 10000,
        workers: int = 1,
    ):
        self.scheduler = scheduler
        self.results_dir = Path(results_dir)
        self.max_size = max_size
        self.workers = workers

        self._queue: asyncio.Queue[str] | None = None
        self._jobs: OrderedDict[str, Job] = OrderedDict()
        self._tasks: list[asyncio.Task] = []

    # =========================================================================
    # Lifecycle
    # =========================================================================
    async def start(self) -> None:
        """Create the results directory and start worker tasks."""
        self.results_dir.mkdir(parents=True, exist_ok=True)
        self._queue = asyncio.Queue(maxsize=self.max_size)
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f'job-worker-{i}')
            for i in range(self.workers)
        ]
        logger.info(
            f'JobQueue started: {self.workers} worker(s), max_size={self.max_size}, '
            f'results_dir={self.results_dir}'
        )

    async def stop(self) -> None:
        """Cancel worker tasks. Pending jobs are dropped."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info(f'JobQueue stopped ({self.pending()} job(s) still pending)')

    # =========================================================================
    # Submission / lookup
    # =========================================================================
    def is_full(self) -> bool:
        return self._queue is None or self._queue.full()

    def pending(self) -> int:
        return 0 if self._queue is None else self._queue.qsize()

    def submit(self, data: bytes, image_format: str | None) -> str:
        """
        Queue an image for detection.

        Returns:
            Job id (UUID string)

        Raises:
            CapacityError: Queue is full or not running
        """
        if self.is_full():
            raise CapacityError('Job queue is full', max_size=self.max_size)

        job = Job(id=str(uuid.uuid4()), image_format=image_format, data=data)
        self._jobs[job.id] = job
        self._queue.put_nowait(job.id)
        self._evict()
        return job.id

    def get(self, job_id: str) -> Job | None:
        """
        Look up a job by id, falling back to its result file on disk.

        Returns:
            Job, or None if the id is unknown
        """
        job = self._jobs.get(job_id)
        if job is not None:
            return job

        path = self.result_path(job_id)
        if not path.is_file():
            return None
        return Job(
            id=job_id,
            image_format=None,
            data=None,
            status=JobStatus.DONE,
            finished_time=path.stat().st_mtime,
            detections=orjson.loads(path.read_bytes()),
        )

    def result_path(self, job_id: str) -> Path:
        return self.results_dir / f'{job_id}.json'

    def _evict(self) -> None:
        # Drop the oldest finished records once the table outgrows the queue bound
        if len(self._jobs) <= self.max_size:
            return
        for job_id in list(self._jobs):
            if len(self._jobs) <= self.max_size:
                break
            if self._jobs[job_id].status in (JobStatus.DONE, JobStatus.FAILED):
                del self._jobs[job_id]

    # =========================================================================
    # Workers
    # =========================================================================
    async def _worker(self, index: int) -> None:
        while True:
            job_id = await self._queue.get()
            try:
                job = self._jobs.get(job_id)
                if job is not None:
                    await self._process(job)
            finally:
                self._queue.task_done()

    async def _process(self, job: Job) -> None:
        job.status = JobStatus.PROCESSING
        try:
            while True:
                try:
                    result = await self.scheduler.submit(job.data, job.image_format)
                    break
                except CapacityError:
                    await asyncio.sleep(CAPACITY_RETRY_S)

            detections = detections_to_list(result.detections)
            await asyncio.to_thread(self._write_result, job.id, detections)

        except FaceboxError as e:
            job.status = JobStatus.FAILED
            job.error = e.detail
            job.client_error = e.client_error
            logger.warning(f'Job {job.id} failed: {type(e).__name__}: {e.message}')
        except OSError as e:
            job.status = JobStatus.FAILED
            job.error = 'Could not store result'
            logger.error(f'Job {job.id}: unable to write result: {e}')
        except Exception as e:
            job.status = JobStatus.FAILED
            job.error = 'Internal server error'
            logger.error(f'Job {job.id}: unexpected failure: {e}', exc_info=True)
        else:
            job.status = JobStatus.DONE
            job.detections = detections
        finally:
            job.data = None
            job.finished_time = time.time()

    def _write_result(self, job_id: str, detections: list[dict[str, Any]]) -> None:
        path = self.result_path(job_id)
        tmp = path.with_suffix('.json.tmp')
        tmp.write_bytes(orjson.dumps(detections))
        tmp.replace(path)
