from facebox.schemas.detection import (
    DetectionDetails,
    ErrorResponse,
    FaceDetection,
    ImageMetadata,
    JobStatusResponse,
    ModelMetadata,
    QueueResponse,
)


__all__ = [
    'DetectionDetails',
    'ErrorResponse',
    'FaceDetection',
    'ImageMetadata',
    'JobStatusResponse',
    'ModelMetadata',
    'QueueResponse',
]
