"""
HTTP API for routing calls, chatting and running workflows.

The routes are thin: they validate the request body, call the orchestrator
stored on ``app.state`` and serialize the result. Errors raised by the
orchestrator are mapped onto status codes by the handlers registered in
``callflow.main``.
"""

import base64
import binascii
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from callflow.config.constants import DEFAULT_AUDIO_MIME_TYPE, LOGGER_NAME, WILDCARD
from callflow.core.orchestrator import CallflowOrchestrator
from callflow.models.call import IncomingCall
from callflow.models.conversation import Channel
from callflow.models.workflow import WorkflowExecutionRequest

logger = logging.getLogger(LOGGER_NAME)

router = APIRouter()


def _orchestrator(request: Request) -> CallflowOrchestrator:
    return request.app.state.orchestrator


def _dump(items) -> List[Dict[str, Any]]:
    return [item.model_dump(mode="json") for item in items]


class RouteCallRequest(BaseModel):
    from_number: str
    to_number: str
    business_id: str
    caller_name: Optional[str] = None


class AudioRequest(BaseModel):
    audio: str = Field(..., description="Base64-encoded caller utterance")
    mime_type: str = DEFAULT_AUDIO_MIME_TYPE


class EndCallRequest(BaseModel):
    reason: str = "caller_hangup"


class StartConversationRequest(BaseModel):
    business_id: str
    channel: Channel = Channel.CHAT
    customer_id: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_name: Optional[str] = None


class MessageRequest(BaseModel):
    text: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class EventRequest(BaseModel):
    business_id: str
    context: Dict[str, Any] = Field(default_factory=dict)


# Calls


@router.post("/calls", tags=["calls"])
async def route_call(body: RouteCallRequest, request: Request):
    """Route an incoming call and open its session when an agent takes it."""
    incoming = IncomingCall(**body.model_dump())
    outcome = await _orchestrator(request).route_call(incoming)
    return outcome.model_dump(mode="json")


@router.get("/calls/active", tags=["calls"])
async def active_calls(request: Request):
    return _dump(_orchestrator(request).get_active_calls())


@router.get("/calls/history", tags=["calls"])
async def call_history(request: Request, limit: Optional[int] = None):
    return _dump(_orchestrator(request).get_call_history(limit))


@router.get("/calls/{call_id}", tags=["calls"])
async def get_call(call_id: str, request: Request):
    return _orchestrator(request).get_call(call_id).model_dump(mode="json")


@router.post("/calls/{call_id}/answer", tags=["calls"])
async def answer_call(call_id: str, request: Request):
    greeting = await _orchestrator(request).answer_call(call_id)
    return {
        "call": greeting.call.model_dump(mode="json"),
        "welcome_message": greeting.welcome_message,
    }


@router.post("/calls/{call_id}/audio", tags=["calls"])
async def process_audio(call_id: str, body: AudioRequest, request: Request):
    """Process one caller utterance sent as base64 audio.

    Returns:
        dict: The transcript, the agent reply and the transfer decision.
    """
    try:
        audio = base64.b64decode(body.audio, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="Invalid base64 encoded audio data")

    turn = await _orchestrator(request).process_audio_input(call_id, audio, body.mime_type)
    return {
        "transcript": turn.transcript,
        "reply": turn.reply.model_dump(mode="json"),
        "should_transfer": turn.should_transfer,
        "transfer_reason": turn.transfer_reason,
        "should_end": turn.should_end,
    }


@router.post("/calls/{call_id}/end", tags=["calls"])
async def end_call(call_id: str, request: Request, body: Optional[EndCallRequest] = None):
    reason = body.reason if body else "caller_hangup"
    summary = await _orchestrator(request).end_call(call_id, reason)
    return summary.model_dump(mode="json")


# Routing table


@router.get("/routes", tags=["routing"])
async def list_routes(request: Request, business_id: Optional[str] = None):
    return _dump(_orchestrator(request).get_routes(business_id))


@router.post("/routes", status_code=201, tags=["routing"])
async def register_route(body: Dict[str, Any], request: Request):
    route = _orchestrator(request).register_route(body)
    return route.model_dump(mode="json")


@router.get("/routing-rules", tags=["routing"])
async def list_routing_rules(request: Request):
    return _dump(_orchestrator(request).get_routing_rules())


@router.post("/routing-rules", status_code=201, tags=["routing"])
async def add_routing_rule(body: Dict[str, Any], request: Request):
    rule = _orchestrator(request).add_routing_rule(body)
    return rule.model_dump(mode="json")


@router.get("/routing/stats", tags=["routing"])
async def routing_stats(request: Request):
    return _orchestrator(request).get_routing_stats().model_dump(mode="json")


# Conversations


@router.post("/conversations", status_code=201, tags=["conversations"])
async def start_conversation(body: StartConversationRequest, request: Request):
    conversation = await _orchestrator(request).start_conversation(**body.model_dump())
    return conversation.model_dump(mode="json")


@router.post("/conversations/{conversation_id}/messages", tags=["conversations"])
async def send_message(conversation_id: str, body: MessageRequest, request: Request):
    """Process one customer message and return the agent's reply."""
    response = await _orchestrator(request).process_message(conversation_id, body.text, body.metadata)
    return response.model_dump(mode="json")


@router.get("/conversations/{conversation_id}", tags=["conversations"])
async def get_conversation(conversation_id: str, request: Request):
    return _orchestrator(request).get_conversation(conversation_id).model_dump(mode="json")


@router.get("/conversations/{conversation_id}/messages", tags=["conversations"])
async def message_history(conversation_id: str, request: Request):
    return _dump(_orchestrator(request).get_message_history(conversation_id))


@router.post("/conversations/{conversation_id}/end", tags=["conversations"])
async def end_conversation(conversation_id: str, request: Request):
    conversation = await _orchestrator(request).end_conversation(conversation_id)
    return conversation.model_dump(mode="json")


# Workflows


@router.get("/workflows", tags=["workflows"])
async def list_workflows(request: Request, business_id: str = WILDCARD):
    return _dump(_orchestrator(request).get_workflows(business_id))


@router.post("/workflows", status_code=201, tags=["workflows"])
async def register_workflow(body: Dict[str, Any], request: Request):
    definition = _orchestrator(request).register_workflow(body)
    return definition.model_dump(mode="json")


@router.post("/workflows/{workflow_id}/execute", status_code=202, tags=["workflows"])
async def execute_workflow(workflow_id: str, body: EventRequest, request: Request):
    """Queue a manual execution of a workflow."""
    execution_id = await _orchestrator(request).execute_workflow(
        WorkflowExecutionRequest(
            workflow_id=workflow_id, business_id=body.business_id, context=body.context
        )
    )
    return {"execution_id": execution_id}


@router.post("/events/{event}", status_code=202, tags=["workflows"])
async def dispatch_event(event: str, body: EventRequest, request: Request):
    """Start every workflow listening for a business event."""
    execution_ids = await _orchestrator(request).dispatch_event(event, body.business_id, body.context)
    return {"execution_ids": execution_ids}


@router.get("/executions/{execution_id}", tags=["workflows"])
async def execution_status(execution_id: str, request: Request):
    return _orchestrator(request).get_execution_status(execution_id).model_dump(mode="json")


@router.post("/executions/{execution_id}/cancel", tags=["workflows"])
async def cancel_execution(execution_id: str, request: Request):
    cancelled = await _orchestrator(request).cancel_execution(execution_id)
    return {"execution_id": execution_id, "cancelled": cancelled}
