import asyncio
import logging

from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse

from app.dependencies import JobStoreDep, RetrySweepDep, TaskServiceDep
from app.jobs import JobStore
from app.schemas.responses import (
    CreateTaskRequest,
    JobStatusResponse,
    JobSubmittedResponse,
    NoteRequest,
    RetrySweepResponse,
)
from app.schemas.tasks import Task
from app.services.retry_sweep import RetrySweepService

logger = logging.getLogger(__name__)

router = APIRouter()

RETRY_SWEEP_JOB = "retry_sweep"


@router.post("/tasks", response_model=Task, status_code=201)
async def create_task(body: CreateTaskRequest, service: TaskServiceDep) -> Task:
    return await service.create_task(body)


@router.get("/tasks/{task_id}", response_model=Task)
async def get_task(task_id: int, service: TaskServiceDep) -> Task:
    task = await service.get_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    return task


@router.post("/tasks/{task_id}/note", response_model=Task)
async def add_note(task_id: int, body: NoteRequest, service: TaskServiceDep) -> Task:
    task = await service.add_note(task_id, body.content)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    return task


async def _run_retry_sweep(
    job_id: str,
    service: RetrySweepService,
    store: JobStore,
) -> None:
    store.mark_running(job_id)
    try:
        result = await service.run()
        store.mark_completed(job_id, result)
    except Exception as exc:
        logger.exception("Retry sweep job %s failed", job_id)
        store.mark_failed(job_id, str(exc))


@router.post("/tasks/retries/run", response_model=JobSubmittedResponse, status_code=202)
async def run_retries(
    service: RetrySweepDep,
    store: JobStoreDep,
) -> JobSubmittedResponse:
    existing = store.has_active_job(RETRY_SWEEP_JOB, None)
    if existing:
        return JSONResponse(content={
            "job_id": existing.job_id,
            "status": "already_running",
            "message": "A retry sweep is already running",
        })

    job = store.create_job(RETRY_SWEEP_JOB)
    asyncio.create_task(_run_retry_sweep(job.job_id, service, store))
    return JobSubmittedResponse(
        job_id=job.job_id,
        status=job.status,
        message="Retry sweep job submitted",
    )


@router.post("/tasks/retries/run/sync", response_model=RetrySweepResponse)
async def run_retries_sync(service: RetrySweepDep) -> RetrySweepResponse:
    return await service.run()


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job(job_id: str, store: JobStoreDep) -> JobStatusResponse:
    job = store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return JobStatusResponse(**job.model_dump())
