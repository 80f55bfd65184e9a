from typing import Annotated

from fastapi import Depends, Request

from app.jobs import JobStore
from app.services.orchestrator import CallOrchestrator
from app.services.retry_sweep import RetrySweepService
from app.services.tasks import TaskService


def get_orchestrator(request: Request) -> CallOrchestrator:
    return request.app.state.orchestrator


def get_task_service(request: Request) -> TaskService:
    return request.app.state.task_service


def get_retry_sweep_service(request: Request) -> RetrySweepService:
    return request.app.state.retry_sweep_service


def get_job_store(request: Request) -> JobStore:
    return request.app.state.job_store


OrchestratorDep = Annotated[CallOrchestrator, Depends(get_orchestrator)]
TaskServiceDep = Annotated[TaskService, Depends(get_task_service)]
RetrySweepDep = Annotated[RetrySweepService, Depends(get_retry_sweep_service)]
JobStoreDep = Annotated[JobStore, Depends(get_job_store)]
