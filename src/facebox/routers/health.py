"""
Health and Monitoring Router

Provides service info, liveness with runtime statistics, and readiness.
"""

import logging
import os

import psutil
from fastapi import APIRouter
from fastapi.responses import ORJSONResponse

from facebox.core.dependencies import AppStateDep


logger = logging.getLogger(__name__)

router = APIRouter(
    tags=['Health & Monitoring'],
)


@router.get('/')
def root(state: AppStateDep):
    """
    Service information endpoint.

    Returns available endpoints and the model input contract.
    """
    settings = state.settings
    return {
        'service': 'facebox',
        'status': 'running',
        'endpoints': {
            'detect': '/detect',
            'detect_details': '/detect/details',
            'queue': '/queue',
            'result': '/result/{id}',
            'health': '/health',
            'ready': '/ready',
        },
        'model': {
            'path': str(settings.model_path),
            'input_width': settings.input_width,
            'input_height': settings.input_height,
            'resize_mode': settings.resize_mode,
            'anchors': len(state.detector.anchors),
        },
        'thresholds': {
            'confidence': settings.confidence_threshold,
            'iou': settings.iou_threshold,
        },
    }


@router.get('/health')
def health(state: AppStateDep):
    """
    Liveness check with runtime statistics.

    Returns:
    - Service status (degraded when the inference session is not ready)
    - Inference engine statistics
    - Scheduler queue statistics
    - Process memory / CPU usage
    """
    process = psutil.Process(os.getpid())
    memory_info = process.memory_info()

    engine_stats = (
        state.engine.get_stats()
        if hasattr(state.engine, 'get_stats')
        else {'ready': state.engine.ready}
    )

    return {
        'status': 'healthy' if state.engine.ready else 'degraded',
        'services': {
            'inference': engine_stats,
            'scheduler': state.scheduler.get_stats(),
            'jobs': {
                'pending': state.jobs.pending(),
                'max_size': state.jobs.max_size,
            },
        },
        'resources': {
            'memory_mb': round(memory_info.rss / 1024 / 1024, 2),
            'cpu_percent': process.cpu_percent(),
        },
    }


@router.get('/ready')
def ready(state: AppStateDep):
    """
    Readiness probe: 200 when the inference session is loaded and usable.
    """
    is_ready = state.engine.ready
    if not is_ready:
        logger.warning('Readiness check failed: inference session not ready')
    return ORJSONResponse(
        status_code=200 if is_ready else 503,
        content={'ready': is_ready},
    )
