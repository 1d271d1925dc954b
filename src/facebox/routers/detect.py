"""
Face Detection Router.

Endpoints:
- POST /detect - Face boxes for one image (JSON array)
- POST /detect/details - Face boxes plus image/model metadata and timings

Both accept a multipart upload (field 'image') or a raw binary image body.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Query, Request
from fastapi.responses import ORJSONResponse

from facebox.core.dependencies import AppStateDep, SchedulerDep
from facebox.schemas.detection import DetectionDetails, ErrorResponse, FaceDetection
from facebox.services.postprocess import detections_to_list
from facebox.utils.uploads import read_image_payload


logger = logging.getLogger(__name__)

router = APIRouter(
    prefix='/detect',
    tags=['Face Detection'],
    default_response_class=ORJSONResponse,
)

IMAGE_BODY = {
    'requestBody': {
        'required': True,
        'content': {
            'multipart/form-data': {
                'schema': {
                    'type': 'object',
                    'properties': {'image': {'type': 'string', 'format': 'binary'}},
                    'required': ['image'],
                }
            },
            'image/jpeg': {'schema': {'type': 'string', 'format': 'binary'}},
            'image/png': {'schema': {'type': 'string', 'format': 'binary'}},
            'application/octet-stream': {'schema': {'type': 'string', 'format': 'binary'}},
        },
    }
}

ERROR_RESPONSES = {
    code: {'model': ErrorResponse} for code in (400, 413, 500, 503, 504)
}

ConfidenceQuery = Annotated[
    float | None,
    Query(gt=0.0, lt=1.0, description='Override of CONFIDENCE_THRESHOLD'),
]
IouQuery = Annotated[
    float | None,
    Query(gt=0.0, le=1.0, description='Override of IOU_THRESHOLD'),
]


@router.post(
    '',
    response_model=list[FaceDetection],
    responses=ERROR_RESPONSES,
    openapi_extra=IMAGE_BODY,
)
async def detect_faces(
    request: Request,
    state: AppStateDep,
    scheduler: SchedulerDep,
    confidence: ConfidenceQuery = None,
    iou: IouQuery = None,
):
    """
    Detect faces in one image.

    Pipeline:
    1. Decode (JPEG/PNG/BMP/WEBP)
    2. Resize + normalize to the model input
    3. ONNX Runtime inference
    4. Anchor decode, confidence filter, NMS

    Returns:
        JSON array of {x_min, y_min, x_max, y_max, confidence} in original
        image pixels, highest confidence first.
    """
    payload = await read_image_payload(request, state.settings.max_file_size_bytes)
    result = await scheduler.submit(payload.data, payload.declared_format, confidence, iou)
    return detections_to_list(result.detections)


@router.post(
    '/details',
    response_model=DetectionDetails,
    responses=ERROR_RESPONSES,
    openapi_extra=IMAGE_BODY,
)
async def detect_faces_details(
    request: Request,
    state: AppStateDep,
    scheduler: SchedulerDep,
    confidence: ConfidenceQuery = None,
    iou: IouQuery = None,
):
    """
    Detect faces and include image/model metadata and per-stage timings.
    """
    settings = state.settings
    payload = await read_image_payload(request, settings.max_file_size_bytes)
    result = await scheduler.submit(payload.data, payload.declared_format, confidence, iou)

    response = result.to_dict()
    response['model'] = {
        'path': str(settings.model_path),
        'input_width': settings.input_width,
        'input_height': settings.input_height,
    }
    return response
