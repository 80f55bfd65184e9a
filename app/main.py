import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
from fastapi import FastAPI
from pydantic import TypeAdapter

from app.config import Settings
from app.exceptions.custom import (
    CallNotEndedError,
    InvalidPhoneNumberError,
    RateLimitError,
    VapiError,
)
from app.exceptions.handlers import (
    call_not_ended_handler,
    invalid_phone_handler,
    rate_limit_error_handler,
    vapi_error_handler,
)
from app.jobs import JobStore
from app.locks import KeyedLocks
from app.repositories import (
    InMemoryAgentRepository,
    InMemoryCallRepository,
    InMemoryTaskRepository,
)
from app.routers.calls import router as calls_router
from app.routers.tasks import router as tasks_router
from app.schemas.agents import Agent
from app.services.call_tracker import CallStateTracker
from app.services.orchestrator import CallOrchestrator
from app.services.reconciliation import ArtifactReconciler, RetryPolicy
from app.services.retry_engine import TaskRetryEngine
from app.services.retry_sweep import RetrySweepService
from app.services.tasks import TaskService
from app.services.vapi import VapiService

logger = logging.getLogger(__name__)

_AGENT_LIST = TypeAdapter(list[Agent])


def load_agents(path: str) -> list[Agent]:
    if not path:
        return []
    agents = _AGENT_LIST.validate_json(Path(path).read_bytes())
    logger.info("Loaded %d agents from %s", len(agents), path)
    return agents


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings()

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)

    async with httpx.AsyncClient(timeout=30.0) as client:
        tasks_repo = InMemoryTaskRepository()
        calls_repo = InMemoryCallRepository()
        agents_repo = InMemoryAgentRepository(load_agents(settings.agents_file))

        # VAPI is optional: without credentials webhooks and local reads keep working
        vapi: VapiService | None = None
        if settings.calling_configured:
            vapi = VapiService(
                client,
                settings.vapi_api_key,
                settings.vapi_phone_number_id,
                base_url=settings.vapi_base_url,
                webhook_base_url=settings.webhook_base_url,
                start_timeout=settings.start_call_timeout_seconds,
            )
        else:
            logger.warning("VAPI credentials missing, outbound calling disabled")

        job_store = JobStore()
        tracker = CallStateTracker(calls_repo)
        reconciler = ArtifactReconciler(
            vapi,
            tracker,
            RetryPolicy(
                max_attempts=settings.reconcile_max_attempts,
                delay_seconds=settings.reconcile_delay_seconds,
            ),
        )
        task_locks = KeyedLocks()
        engine = TaskRetryEngine(
            tasks_repo,
            agents_repo,
            last_resort_staff_id=settings.last_resort_staff_id,
            locks=task_locks,
        )
        task_service = TaskService(
            tasks_repo,
            agents_repo,
            default_phone_region=settings.default_phone_region,
            locks=task_locks,
        )
        orchestrator = CallOrchestrator(
            vapi,
            tracker,
            reconciler,
            engine,
            task_service,
            agents_repo,
            job_store,
            default_phone_region=settings.default_phone_region,
            fatal_ended_reasons=settings.fatal_ended_reasons,
        )

        app.state.settings = settings
        app.state.job_store = job_store
        app.state.task_repository = tasks_repo
        app.state.call_repository = calls_repo
        app.state.agent_repository = agents_repo
        app.state.task_service = task_service
        app.state.orchestrator = orchestrator
        app.state.retry_sweep_service = RetrySweepService(tasks_repo, agents_repo, orchestrator)

        yield

        await orchestrator.drain()


app = FastAPI(title="Patient Outreach Calls", lifespan=lifespan)

app.add_exception_handler(VapiError, vapi_error_handler)
app.add_exception_handler(RateLimitError, rate_limit_error_handler)
app.add_exception_handler(InvalidPhoneNumberError, invalid_phone_handler)
app.add_exception_handler(CallNotEndedError, call_not_ended_handler)

app.include_router(calls_router)
app.include_router(tasks_router)
