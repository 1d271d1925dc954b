"""Response models for detection endpoints."""

from pydantic import BaseModel, Field


class FaceDetection(BaseModel):
    """Face bounding box in original image pixels."""

    x_min: float = Field(..., ge=0.0, description='Left edge')
    y_min: float = Field(..., ge=0.0, description='Top edge')
    x_max: float = Field(..., ge=0.0, description='Right edge')
    y_max: float = Field(..., ge=0.0, description='Bottom edge')
    confidence: float = Field(..., ge=0.0, le=1.0, description='Face probability')


class ImageMetadata(BaseModel):
    """Original image dimensions."""

    width: int = Field(..., description='Image width in pixels')
    height: int = Field(..., description='Image height in pixels')


class ModelMetadata(BaseModel):
    """Model input contract used for the request."""

    path: str | None = Field(default=None, description='Model artifact path')
    input_width: int = Field(..., description='Model input width')
    input_height: int = Field(..., description='Model input height')


class DetectionDetails(BaseModel):
    """Detailed detection response."""

    detections: list[FaceDetection] = Field(default_factory=list)
    num_detections: int = Field(..., description='Number of faces detected')
    image: ImageMetadata
    model: ModelMetadata
    timings_ms: dict[str, float] = Field(default_factory=dict, description='Per-stage timings')
    total_time_ms: float | None = Field(default=None, description='Processing time in ms')
    request_id: str | None = Field(default=None, description='Correlation ID')


class QueueResponse(BaseModel):
    """Response for job submission (id on success, err on failure)."""

    id: str | None = None
    err: str | None = None


class JobStatusResponse(BaseModel):
    """Status of a job that has no result yet (or failed)."""

    id: str
    status: str
    err: str | None = None


class ErrorResponse(BaseModel):
    """Structured error body."""

    detail: str
    error_type: str
    retryable: bool = False
    client_error: bool = False
    request_id: str | None = None
