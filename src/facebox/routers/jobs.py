"""
Asynchronous Job Router.

Endpoints:
- POST /queue - Queue a JPEG/PNG upload, returns {id, err}
- GET /result/{job_id} - Detections when done, status while pending
"""

import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import ORJSONResponse

from facebox.core.dependencies import AppStateDep, JobQueueDep
from facebox.schemas.detection import FaceDetection, JobStatusResponse, QueueResponse
from facebox.services.jobs import JobStatus, parse_job_id
from facebox.utils.uploads import read_image_payload


logger = logging.getLogger(__name__)

router = APIRouter(
    tags=['Detection Jobs'],
    default_response_class=ORJSONResponse,
)

QUEUE_FORMATS = ('jpeg', 'png')


def _queue_error(status_code: int, err: str) -> ORJSONResponse:
    return ORJSONResponse(status_code=status_code, content={'id': None, 'err': err})


@router.post(
    '/queue',
    status_code=201,
    response_model=QueueResponse,
    responses={400: {'model': QueueResponse}, 503: {'model': QueueResponse}},
)
async def add_to_queue(request: Request, state: AppStateDep, jobs: JobQueueDep):
    """
    Queue an image for background detection.

    The upload must be multipart/form-data with a JPEG or PNG file. The result
    is later available from GET /result/{id}.
    """
    if not request.headers.get('content-type', '').startswith('multipart/form-data'):
        return _queue_error(400, 'multipart/form-data upload required')

    try:
        payload = await read_image_payload(request, state.settings.max_file_size_bytes)
    except HTTPException as e:
        return _queue_error(e.status_code, str(e.detail))

    if not payload.content_type:
        return _queue_error(400, 'content_type not specified')
    if payload.declared_format not in QUEUE_FORMATS:
        return _queue_error(400, 'content_type not supported')
    if jobs.is_full():
        return _queue_error(503, 'queue is full')

    job_id = jobs.submit(payload.data, payload.declared_format)
    logger.info(f'Queued job {job_id} ({payload.filename or "upload"}, {len(payload.data)} bytes)')
    return {'id': job_id, 'err': None}


@router.get(
    '/result/{job_id}',
    response_model=list[FaceDetection],
    responses={
        202: {'model': JobStatusResponse},
        404: {'model': JobStatusResponse},
        422: {'model': JobStatusResponse},
        500: {'model': JobStatusResponse},
    },
)
def get_result(job_id: str, jobs: JobQueueDep):
    """
    Fetch the result of a queued job.

    Returns:
        200 with the detections when done, 202 while pending/processing,
        404 for unknown ids, 422/500 when the job failed.
    """
    canonical = parse_job_id(job_id)
    job = jobs.get(canonical) if canonical else None
    if job is None:
        return ORJSONResponse(
            status_code=404,
            content={'id': job_id, 'status': 'unknown', 'err': 'job not found'},
        )

    if job.status == JobStatus.DONE:
        return job.detections

    if job.status == JobStatus.FAILED:
        return ORJSONResponse(
            status_code=422 if job.client_error else 500,
            content=job.summary(),
        )

    return ORJSONResponse(status_code=202, content=job.summary())
