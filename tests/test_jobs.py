"""
Tests for the queued detection jobs and their stored results.
"""

import asyncio
import uuid

import orjson
import pytest

from facebox.core.exceptions import CapacityError
from facebox.services.detector import FaceDetector
from facebox.services.jobs import JobQueue, JobStatus, parse_job_id
from facebox.services.scheduler import InferenceScheduler


@pytest.fixture
def scheduler(settings, fake_engine):
    detector = FaceDetector.from_settings(settings, fake_engine)
    scheduler = InferenceScheduler(detector, workers=2, max_queue_depth=4, timeout_s=5.0)
    yield scheduler
    scheduler.shutdown()


async def wait_until_finished(jobs: JobQueue, job_id: str, timeout: float = 5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        job = jobs.get(job_id)
        if job.status in (JobStatus.DONE, JobStatus.FAILED):
            return job
        assert loop.time() < deadline, f'job {job_id} still {job.status}'
        await asyncio.sleep(0.01)


def test_parse_job_id():
    job_id = str(uuid.uuid4())
    assert parse_job_id(job_id) == job_id
    assert parse_job_id(job_id.upper()) == job_id
    assert parse_job_id('../../etc/passwd') is None
    assert parse_job_id('') is None


async def test_job_result_written_to_disk(scheduler, tmp_path, face_png):
    jobs = JobQueue(scheduler, tmp_path / 'results', max_size=4)
    await jobs.start()
    try:
        job_id = jobs.submit(face_png, 'png')
        assert jobs.get(job_id).status in (JobStatus.PENDING, JobStatus.PROCESSING)

        job = await wait_until_finished(jobs, job_id)
        assert job.status == JobStatus.DONE
        assert job.error is None
        assert job.data is None
        assert len(job.detections) == 1

        stored = orjson.loads(jobs.result_path(job_id).read_bytes())
        assert stored == job.detections
        assert not list((tmp_path / 'results').glob('*.tmp'))
    finally:
        await jobs.stop()


async def test_results_survive_restart(scheduler, tmp_path, face_png):
    jobs = JobQueue(scheduler, tmp_path / 'results', max_size=4)
    await jobs.start()
    try:
        job_id = jobs.submit(face_png, 'png')
        expected = (await wait_until_finished(jobs, job_id)).detections
    finally:
        await jobs.stop()

    fresh = JobQueue(scheduler, tmp_path / 'results', max_size=4)
    job = fresh.get(job_id)
    assert job.status == JobStatus.DONE
    assert job.detections == expected


async def test_failed_job(scheduler, tmp_path):
    jobs = JobQueue(scheduler, tmp_path / 'results', max_size=4)
    await jobs.start()
    try:
        job_id = jobs.submit(b'\x89PNG\r\n\x1a\n broken', 'png')
        job = await wait_until_finished(jobs, job_id)

        assert job.status == JobStatus.FAILED
        assert job.client_error
        assert job.error
        assert job.summary() == {'id': job_id, 'status': 'failed', 'err': job.error}
        assert not jobs.result_path(job_id).exists()
    finally:
        await jobs.stop()


async def test_queue_full(scheduler, tmp_path, face_png):
    # no consumers: submissions stay queued
    jobs = JobQueue(scheduler, tmp_path / 'results', max_size=2, workers=0)
    await jobs.start()
    try:
        jobs.submit(face_png, 'png')
        jobs.submit(face_png, 'png')
        assert jobs.is_full()
        assert jobs.pending() == 2
        with pytest.raises(CapacityError):
            jobs.submit(face_png, 'png')
    finally:
        await jobs.stop()


def test_not_started_rejects(scheduler, tmp_path, face_png):
    jobs = JobQueue(scheduler, tmp_path / 'results')
    with pytest.raises(CapacityError):
        jobs.submit(face_png, 'png')


def test_unknown_job(scheduler, tmp_path):
    jobs = JobQueue(scheduler, tmp_path / 'results')
    assert jobs.get(str(uuid.uuid4())) is None


async def test_many_jobs_processed_in_order(scheduler, tmp_path, face_png, blank_png):
    jobs = JobQueue(scheduler, tmp_path / 'results', max_size=10)
    await jobs.start()
    try:
        ids = [jobs.submit(img, 'png') for img in (face_png, blank_png, face_png)]
        finished = [await wait_until_finished(jobs, job_id) for job_id in ids]
        assert [len(j.detections) for j in finished] == [1, 0, 1]
        assert finished[0].finished_time <= finished[1].finished_time <= finished[2].finished_time
    finally:
        await jobs.stop()
