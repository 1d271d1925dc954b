"""
FastAPI routers for the face detection API.

Routers:
- health: Service info, liveness and readiness
- detect: Synchronous face detection
- jobs: Queued detection with stored results
"""

from facebox.routers.detect import router as detect_router
from facebox.routers.health import router as health_router
from facebox.routers.jobs import router as jobs_router


__all__ = [
    'detect_router',
    'health_router',
    'jobs_router',
]
