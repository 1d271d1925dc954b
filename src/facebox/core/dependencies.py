"""
FastAPI dependencies for shared, read-only application resources.

AppState is built once in the lifespan and attached to app.state; routers
receive its members through the Annotated dependency aliases below.
"""

from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Request

from facebox.clients.onnx_engine import InferenceEngine
from facebox.config import Settings
from facebox.services.detector import FaceDetector
from facebox.services.jobs import JobQueue
from facebox.services.scheduler import InferenceScheduler


@dataclass
class AppState:
    """Process-wide resources, created at startup and released at shutdown."""

    settings: Settings
    engine: InferenceEngine
    detector: FaceDetector
    scheduler: InferenceScheduler
    jobs: JobQueue


def get_app_state(request: Request) -> AppState:
    state = getattr(request.app.state, 'resources', None)
    if state is None:
        raise RuntimeError('Application resources not initialized. Call during lifespan.')
    return state


def get_scheduler(state: Annotated[AppState, Depends(get_app_state)]) -> InferenceScheduler:
    return state.scheduler


def get_job_queue(state: Annotated[AppState, Depends(get_app_state)]) -> JobQueue:
    return state.jobs


AppStateDep = Annotated[AppState, Depends(get_app_state)]
SchedulerDep = Annotated[InferenceScheduler, Depends(get_scheduler)]
JobQueueDep = Annotated[JobQueue, Depends(get_job_queue)]
