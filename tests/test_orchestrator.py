"""
End-to-end tests of the orchestrator wiring: routing, calls, conversations
and the workflows their events trigger.
"""

import pytest

from callflow.core.orchestrator import CallflowOrchestrator
from callflow.errors import CallNotFoundError
from callflow.models.call import CallStatus, IncomingCall
from callflow.models.conversation import Channel
from callflow.models.workflow import ExecutionStatus, WorkflowExecutionRequest


@pytest.mark.asyncio
async def test_call_end_to_end(orchestrator, routed_call):
    greeting = await orchestrator.answer_call(routed_call)
    turn = await orchestrator.process_audio_input(routed_call, b"Can I book a visit tomorrow at 10am")
    summary = await orchestrator.end_call(routed_call)

    assert greeting.call.status == CallStatus.CONNECTED
    assert turn.reply.appointment_details == {"date": "tomorrow", "time": "10am"}
    assert summary.user_turns == 1
    assert orchestrator.get_active_calls() == []
    assert orchestrator.get_call_history()[0].id == routed_call


@pytest.mark.asyncio
async def test_booking_queues_confirmation_workflow(orchestrator, messaging, records, routed_call, business_id):
    await orchestrator.answer_call(routed_call)
    await orchestrator.process_audio_input(routed_call, b"Can I book a visit tomorrow at 10am")
    await orchestrator.workflow_engine.drain(timeout=2)

    executions = orchestrator.workflow_engine.get_executions(business_id)
    assert [e.workflow_id for e in executions] == ["appointment_confirmation"]
    assert executions[0].status == ExecutionStatus.COMPLETED
    confirmation = messaging.outbox[-1]
    assert confirmation["to"] == "+15551234567"
    assert "tomorrow at 10am" in confirmation["body"]
    calendar = executions[0].action_results[0].result["event_id"]
    assert records.get(business_id, "event", calendar)["date"] == "tomorrow"


@pytest.mark.asyncio
async def test_chat_conversation(orchestrator, business_id):
    conversation = await orchestrator.start_conversation(business_id, customer_name="Pat")

    response = await orchestrator.process_message(conversation.id, "What services do you provide?")
    ended = await orchestrator.end_conversation(conversation.id)

    assert conversation.channel == Channel.CHAT
    assert "leak repair" in response.text
    assert ended.end_reason == "natural_end"
    assert len(orchestrator.get_message_history(conversation.id)) == 4


@pytest.mark.asyncio
async def test_manual_workflow_execution(orchestrator, business_id):
    orchestrator.register_workflow(
        {
            "id": "wf_health",
            "business_id": business_id,
            "name": "Health check",
            "trigger": {"id": "manual", "type": "manual"},
            "actions": [{"id": "analyze", "type": "ai_analyze"}],
        }
    )

    execution_id = await orchestrator.execute_workflow(
        WorkflowExecutionRequest(workflow_id="wf_health", business_id=business_id)
    )
    await orchestrator.workflow_engine.drain(timeout=2)

    execution = orchestrator.get_execution_status(execution_id)
    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.action_results[0].result["insights"]
    assert await orchestrator.cancel_execution(execution_id) is False


@pytest.mark.asyncio
async def test_unknown_call(orchestrator):
    with pytest.raises(CallNotFoundError):
        await orchestrator.answer_call("call_missing")


@pytest.mark.asyncio
async def test_health(orchestrator, routed_call):
    await orchestrator.answer_call(routed_call)

    health = orchestrator.health()

    assert health["routes"] == 1
    assert health["active_calls"] == 1
    assert health["agents_healthy"] is True
    assert health["active_conversations"] == 1
    assert health["scheduler_running"] is False


@pytest.mark.asyncio
async def test_scheduler_lifecycle(provider):
    orchestrator = CallflowOrchestrator(provider)

    orchestrator.start()
    try:
        assert orchestrator.health()["scheduler_running"] is True
    finally:
        orchestrator.stop()
    assert orchestrator.health()["scheduler_running"] is False


@pytest.mark.asyncio
async def test_calls_are_tracked_per_route(orchestrator, business_id):
    orchestrator.register_route({"agent_config": {"business_id": business_id}, "pattern": "0100", "priority": 1})
    orchestrator.register_route({"agent_config": {"business_id": business_id}, "pattern": "0200"})

    first = await orchestrator.route_call(
        IncomingCall(from_number="+15551234567", to_number="+15550100", business_id=business_id)
    )
    second = await orchestrator.route_call(
        IncomingCall(from_number="+15551234567", to_number="+15550200", business_id=business_id)
    )

    assert first.route_id != second.route_id
    assert {c.id for c in orchestrator.get_active_calls()} == {first.call.id, second.call.id}
    assert orchestrator.get_routing_stats().route_distribution == {first.route_id: 1, second.route_id: 1}
