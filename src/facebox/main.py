"""
Face Detection API Service.

A FastAPI service returning face bounding boxes for uploaded images:
- ONNX Runtime inference of the Ultra-Light face detector
- CPU preprocessing and anchor decoding / NMS in numpy
- Bounded request admission with per-request deadlines
- Queued jobs with results persisted as JSON

Run with `facebox` (see facebox.__main__) or
`uvicorn --factory facebox.main:create_app`.
"""

import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar

import orjson
from fastapi import FastAPI, Request
from fastapi.responses import ORJSONResponse, Response

from facebox.clients.onnx_engine import InferenceEngine, OnnxInferenceEngine
from facebox.config import Settings, get_settings
from facebox.core.dependencies import AppState
from facebox.core.exceptions import CapacityError, FaceboxError, PipelineTimeoutError
from facebox.core.logging import (
    bind_request_id,
    clear_request_context,
    configure_logging,
    get_logger,
)
from facebox.routers import detect_router, health_router, jobs_router
from facebox.services.detector import FaceDetector
from facebox.services.jobs import JobQueue
from facebox.services.scheduler import InferenceScheduler


# =============================================================================
# Request Context (for correlation IDs)
# =============================================================================

request_id_ctx: ContextVar[str] = ContextVar('request_id', default='-')


def get_request_id() -> str:
    """Get the current request ID from context."""
    return request_id_ctx.get()


logger = get_logger(__name__)

# Seconds suggested to clients in Retry-After for retryable failures
RETRY_AFTER_S = 1


def internal_error_response(request: Request, exc: Exception) -> ORJSONResponse:
    """Log an unexpected exception and build the structured 500 body."""
    req_id = get_request_id()
    logger.error(
        'unhandled_exception',
        method=request.method,
        path=request.url.path,
        error_type=type(exc).__name__,
        error=str(exc),
        exc_info=exc,
    )
    return ORJSONResponse(
        status_code=500,
        content={
            'detail': 'Internal server error',
            'error_type': type(exc).__name__,
            'retryable': False,
            'client_error': False,
            'request_id': req_id,
        },
        headers={'X-Request-ID': req_id},
    )


def build_app_state(settings: Settings, engine: InferenceEngine | None = None) -> AppState:
    """
    Create the shared resources: inference session, anchors, pipeline, scheduler.

    Raises:
        ModelLoadError: Model artifact missing or unloadable
    """
    loaded = engine is None
    if loaded:
        engine = OnnxInferenceEngine.load(
            settings.model_path,
            threads=settings.inference_threads,
            input_shape=settings.input_shape,
        )
        engine.warmup(settings.warmup_runs)

    detector = FaceDetector.from_settings(settings, engine)
    if loaded:
        detector.check_output_format()
    scheduler = InferenceScheduler(
        detector,
        workers=settings.worker_threads,
        max_queue_depth=settings.max_request_queue_depth,
        timeout_s=settings.request_timeout_s,
    )
    jobs = JobQueue(
        scheduler,
        results_dir=settings.results_dir,
        max_size=settings.job_queue_size,
        workers=settings.job_workers,
    )
    return AppState(
        settings=settings,
        engine=engine,
        detector=detector,
        scheduler=scheduler,
        jobs=jobs,
    )


def create_app(settings: Settings | None = None, engine: InferenceEngine | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Settings to use (default: environment via get_settings())
        engine: Pre-loaded inference engine; loaded from MODEL_PATH when omitted
    """
    if settings is None:
        # uvicorn --factory path; the CLI configures logging itself
        settings = get_settings()
        configure_logging(json_logs=settings.json_logs, log_level=settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifecycle manager.

        Startup:
        - Load the ONNX session (fails startup if the model cannot be loaded)
        - Generate anchors, build the pipeline and the request scheduler
        - Start job queue workers

        Shutdown:
        - Stop job workers
        - Drain and shut down the scheduler's worker pool
        - Release the inference session
        """
        logger.info('startup_begin', model_path=str(settings.model_path))

        state = build_app_state(settings, engine)
        await state.jobs.start()
        app.state.resources = state

        logger.info(
            'service_ready',
            anchors=len(state.detector.anchors),
            inference_threads=settings.inference_threads,
            worker_threads=settings.worker_threads,
            max_request_queue_depth=settings.max_request_queue_depth,
            request_timeout_ms=settings.request_timeout_ms,
        )

        yield

        logger.info('shutdown_begin')
        try:
            await state.jobs.stop()
        except Exception as e:
            logger.warning('job_queue_stop_error', error=str(e))

        state.scheduler.shutdown(wait=True)

        close = getattr(state.engine, 'close', None)
        if close is not None:
            close()
        app.state.resources = None
        logger.info('shutdown_complete')

    application = FastAPI(
        title='facebox',
        description=(
            'Face bounding-box detection. Upload an image, receive face rectangles '
            'with confidence scores in original image pixels.'
        ),
        version='1.0.0',
        lifespan=lifespan,
        default_response_class=ORJSONResponse,
    )

    # Performance Middleware (defined first, runs second in LIFO order)
    @application.middleware('http')
    async def performance_middleware(request: Request, call_next):
        """
        Reject oversized uploads, time the request, and inject timing into
        JSON object responses of detection endpoints.
        """
        start_time = time.time()
        req_id = get_request_id()

        if request.method == 'POST':
            content_length = request.headers.get('content-length')
            if content_length and content_length.isdigit() and (
                int(content_length) > settings.max_file_size_bytes
            ):
                return ORJSONResponse(
                    status_code=413,
                    content={
                        'detail': f'File too large. Maximum: {settings.max_file_size_mb}MB',
                        'request_id': req_id,
                    },
                )

        # Handled here while the request ID is still bound
        try:
            response = await call_next(request)
        except Exception as exc:
            response = internal_error_response(request, exc)

        duration_ms = (time.time() - start_time) * 1000
        response.headers['X-Process-Time'] = f'{duration_ms:.2f}ms'

        if duration_ms > settings.slow_request_threshold_ms:
            logger.warning(
                'slow_request',
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )

        content_type = response.headers.get('content-type', '')
        if 'application/json' in content_type and request.url.path.startswith('/detect/details'):
            body = b''.join([chunk async for chunk in response.body_iterator])
            try:
                data = orjson.loads(body)
            except orjson.JSONDecodeError:
                data = None
            if isinstance(data, dict):
                data['total_time_ms'] = round(duration_ms, 2)
                data['request_id'] = req_id
                body = orjson.dumps(data)

            headers = {
                k: v for k, v in response.headers.items() if k.lower() != 'content-length'
            }
            return Response(
                content=body,
                status_code=response.status_code,
                headers=headers,
                media_type='application/json',
            )

        return response

    # Pipeline errors -> structured response
    @application.exception_handler(FaceboxError)
    async def facebox_exception_handler(request: Request, exc: FaceboxError):
        req_id = get_request_id()
        log_fields = {
            'method': request.method,
            'path': request.url.path,
            'error_type': type(exc).__name__,
            'error': exc.message,
            **exc.context,
        }
        if exc.client_error:
            logger.warning('client_error', **log_fields)
        elif isinstance(exc, (CapacityError, PipelineTimeoutError)):
            logger.warning('request_rejected', **log_fields)
        else:
            logger.error('server_error', exc_info=exc, **log_fields)

        headers = {'X-Request-ID': req_id}
        if exc.retryable:
            headers['Retry-After'] = str(RETRY_AFTER_S)

        return ORJSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(request_id=req_id),
            headers=headers,
        )

    # Global Exception Handler - last resort outside the http middleware stack
    @application.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle uncaught exceptions with request context for debugging."""
        return internal_error_response(request, exc)

    # Request ID Middleware (defined last, runs first in LIFO order)
    @application.middleware('http')
    async def request_id_middleware(request: Request, call_next):
        """
        Add correlation ID (X-Request-ID) to all requests.

        If client provides X-Request-ID header, use it. Otherwise generate a new one.
        """
        req_id = request.headers.get('X-Request-ID') or str(uuid.uuid4())[:8]
        token = request_id_ctx.set(req_id)
        bind_request_id(req_id)
        try:
            response = await call_next(request)
        finally:
            request_id_ctx.reset(token)
            clear_request_context()

        response.headers['X-Request-ID'] = req_id
        return response

    application.include_router(health_router)  # /, /health, /ready
    application.include_router(detect_router)  # /detect
    application.include_router(jobs_router)  # /queue, /result/{id}

    return application
