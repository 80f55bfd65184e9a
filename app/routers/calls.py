import logging

from fastapi import APIRouter, HTTPException, Request

from app.dependencies import OrchestratorDep
from app.schemas.calls import CallRecord, CallStatusView, EndCallResult, PatientContext
from app.schemas.responses import OutboundCallRequest, OutboundCallResponse, WebhookAck
from app.schemas.tasks import TaskActionResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/calls", tags=["calls"])


@router.post("/outbound", response_model=OutboundCallResponse, status_code=201)
async def start_outbound_call(
    body: OutboundCallRequest,
    orchestrator: OrchestratorDep,
) -> OutboundCallResponse:
    result = await orchestrator.start_outbound_call(
        body.task_id,
        body.agent_id,
        PatientContext(
            name=body.patient_name,
            phone_number=body.customer_number,
            variables=body.variables,
        ),
    )
    if not result.ok or result.call is None:
        raise HTTPException(status_code=400, detail=result.error)
    return OutboundCallResponse(call_id=result.call.id, call=result.call)


@router.post("/webhook", response_model=WebhookAck)
async def vapi_webhook(request: Request, orchestrator: OrchestratorDep) -> WebhookAck:
    try:
        body = await request.json()
    except ValueError:
        logger.warning("Webhook body is not valid JSON")
        return WebhookAck(received=1, accepted=0, ignored=1)

    payloads = body if isinstance(body, list) else [body]
    return await orchestrator.handle_webhook_payloads(payloads)


@router.get("/task/{task_id}", response_model=list[CallRecord])
async def list_task_calls(task_id: int, orchestrator: OrchestratorDep) -> list[CallRecord]:
    return await orchestrator.list_calls_for_task(task_id)


@router.get("/{call_id}", response_model=CallRecord)
async def get_call(call_id: str, orchestrator: OrchestratorDep) -> CallRecord:
    call = await orchestrator.get_call(call_id)
    if call is None:
        raise HTTPException(status_code=404, detail=f"Call {call_id} not found")
    return call


@router.get("/{call_id}/status", response_model=CallStatusView)
async def get_call_status(call_id: str, orchestrator: OrchestratorDep) -> CallStatusView:
    view = await orchestrator.get_call_status(call_id)
    if view is None:
        raise HTTPException(status_code=404, detail=f"Call {call_id} not found")
    return view


@router.post("/{call_id}/end", response_model=EndCallResult)
async def end_call(call_id: str, orchestrator: OrchestratorDep) -> EndCallResult:
    result = await orchestrator.end_call(call_id)
    if result is None:
        raise HTTPException(status_code=404, detail=f"Call {call_id} not found")
    return result


@router.post("/{call_id}/process", response_model=TaskActionResult)
async def process_call(call_id: str, orchestrator: OrchestratorDep) -> TaskActionResult:
    result = await orchestrator.process_call_completion(call_id)
    if result is None:
        raise HTTPException(status_code=404, detail=f"No task found for call {call_id}")
    return result
