"""
Coordinating service for the whole call flow.

``CallflowOrchestrator`` builds the components, shares the state that spans
them (context cache, routing table, conversations, workflow queue) and
exposes the operations the HTTP and WebSocket layers call. It also remembers
which phone agent owns each call so call operations can be addressed by call
id alone.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from callflow.config.constants import DEFAULT_AUDIO_MIME_TYPE, LOGGER_NAME, WILDCARD
from callflow.core.call_router import CallRouter
from callflow.core.context_cache import ContextCache
from callflow.core.conversation_handler import ConversationHandler
from callflow.core.intent_extractor import IntentClassifier
from callflow.core.phone_agent import PhoneAgent
from callflow.core.workflow_actions import ActionExecutor
from callflow.core.workflow_engine import WorkflowEngine
from callflow.errors import CallNotFoundError
from callflow.models.call import (
    AudioTurnResult,
    CallGreeting,
    CallSummary,
    IncomingCall,
    PhoneAgentConfig,
    PhoneCall,
    Route,
    RoutingOutcome,
    RoutingRule,
    RoutingStats,
)
from callflow.models.conversation import Channel, Conversation, ConversationResponse, Message
from callflow.models.workflow import WorkflowDefinition, WorkflowExecution, WorkflowExecutionRequest
from callflow.services.business_data import (
    BusinessDataProvider,
    InMemoryRecordStore,
    RecordStore,
)
from callflow.services.messaging import LoggingMessagingProvider, OutboundMessagingProvider
from callflow.services.speech import PassthroughSpeechCodec, SpeechCodec

logger = logging.getLogger(LOGGER_NAME)


class CallflowOrchestrator:
    """Owns every shared component of the call flow.

    Args:
        data_provider: Business data source
        speech_codec: Transcription/synthesis backend, passthrough by default
        messaging: Outbound email/SMS/webhook provider, logging by default
        records: Record store for workflow writes, in-memory by default
        extractor: Optional replacement intent classifier
        context_cache: Optional pre-built cache, otherwise built from ``data_provider``
        max_concurrent_executions: Workflow concurrency cap; engine default when omitted
    """

    def __init__(
        self,
        data_provider: BusinessDataProvider,
        speech_codec: Optional[SpeechCodec] = None,
        messaging: Optional[OutboundMessagingProvider] = None,
        records: Optional[RecordStore] = None,
        extractor: Optional[IntentClassifier] = None,
        context_cache: Optional[ContextCache] = None,
        max_concurrent_executions: Optional[int] = None,
    ):
        self.data_provider = data_provider
        self.speech_codec = speech_codec or PassthroughSpeechCodec()
        self.messaging = messaging or LoggingMessagingProvider()
        self.records = records or InMemoryRecordStore()
        self.context_cache = context_cache or ContextCache(data_provider)

        engine_options = {}
        if max_concurrent_executions is not None:
            engine_options["max_concurrent_executions"] = max_concurrent_executions
        self.workflow_engine = WorkflowEngine(
            self.context_cache,
            ActionExecutor(self.messaging, self.records),
            data_provider=data_provider,
            **engine_options,
        )
        self.conversation_handler = ConversationHandler(
            self.context_cache, extractor=extractor, event_publisher=self.workflow_engine
        )
        self.router = CallRouter(self._build_agent)
        self._call_agents: Dict[str, PhoneAgent] = {}

    def _build_agent(self, config: PhoneAgentConfig) -> PhoneAgent:
        return PhoneAgent(
            config,
            self.conversation_handler,
            self.speech_codec,
            event_publisher=self.workflow_engine,
        )

    def start(self) -> None:
        self.workflow_engine.start()

    def stop(self) -> None:
        self.workflow_engine.stop()

    # Routing

    def register_route(self, route: Union[Route, Dict[str, Any]]) -> Route:
        if isinstance(route, dict):
            route = Route(**route)
        return self.router.register_route(route)

    def add_routing_rule(self, rule: Union[RoutingRule, Dict[str, Any]]) -> RoutingRule:
        if isinstance(rule, dict):
            rule = RoutingRule(**rule)
        return self.router.add_routing_rule(rule)

    def get_routes(self, business_id: Optional[str] = None) -> List[Route]:
        return self.router.get_routes(business_id)

    def get_routing_rules(self) -> List[RoutingRule]:
        return list(self.router.rules)

    def get_routing_stats(self) -> RoutingStats:
        return self.router.get_routing_stats()

    async def route_call(self, incoming: IncomingCall) -> RoutingOutcome:
        outcome = await self.router.route_call(incoming)
        if outcome.call is not None:
            self._call_agents[outcome.call.id] = self.router.get_route(outcome.route_id).agent
        return outcome

    # Calls

    def _agent_for(self, call_id: str) -> PhoneAgent:
        try:
            return self._call_agents[call_id]
        except KeyError:
            raise CallNotFoundError(call_id) from None

    def get_call(self, call_id: str) -> PhoneCall:
        return self._agent_for(call_id).get_call(call_id)

    async def answer_call(self, call_id: str) -> CallGreeting:
        return await self._agent_for(call_id).answer_call(call_id)

    async def process_audio_input(
        self, call_id: str, audio: bytes, mime_type: str = DEFAULT_AUDIO_MIME_TYPE
    ) -> AudioTurnResult:
        return await self._agent_for(call_id).process_audio_input(call_id, audio, mime_type)

    async def hold_call(self, call_id: str) -> PhoneCall:
        return await self._agent_for(call_id).hold_call(call_id)

    async def resume_call(self, call_id: str) -> PhoneCall:
        return await self._agent_for(call_id).resume_call(call_id)

    async def end_call(self, call_id: str, reason: str = "caller_hangup") -> CallSummary:
        return await self._agent_for(call_id).end_call(call_id, reason)

    def _agents(self) -> List[PhoneAgent]:
        seen = {}
        for route in self.router.routes.values():
            seen[id(route.agent)] = route.agent
        for agent in self._call_agents.values():
            seen[id(agent)] = agent
        return list(seen.values())

    def get_active_calls(self) -> List[PhoneCall]:
        return [call for agent in self._agents() for call in agent.get_active_calls()]

    def get_call_history(self, limit: Optional[int] = None) -> List[PhoneCall]:
        history = [call for agent in self._agents() for call in agent.call_history]
        history.sort(key=lambda call: call.started_at, reverse=True)
        return history[:limit] if limit is not None else history

    # Conversations

    async def start_conversation(
        self,
        business_id: str,
        channel: Channel = Channel.CHAT,
        customer_id: Optional[str] = None,
        customer_phone: Optional[str] = None,
        customer_name: Optional[str] = None,
    ) -> Conversation:
        return await self.conversation_handler.start_conversation(
            business_id,
            channel=channel,
            customer_id=customer_id,
            customer_phone=customer_phone,
            customer_name=customer_name,
        )

    async def end_conversation(self, conversation_id: str) -> Conversation:
        return await self.conversation_handler.end_conversation(conversation_id)

    async def process_message(
        self, conversation_id: str, text: str, metadata: Optional[Dict[str, Any]] = None
    ) -> ConversationResponse:
        return await self.conversation_handler.process_message(conversation_id, text, metadata)

    def get_conversation(self, conversation_id: str) -> Conversation:
        return self.conversation_handler.get_conversation(conversation_id)

    def get_message_history(self, conversation_id: str) -> List[Message]:
        return self.conversation_handler.get_message_history(conversation_id)

    # Workflows

    def register_workflow(self, definition: Union[WorkflowDefinition, Dict[str, Any]]) -> WorkflowDefinition:
        return self.workflow_engine.register_workflow(definition)

    def get_workflows(self, business_id: str = WILDCARD) -> List[WorkflowDefinition]:
        return self.workflow_engine.get_workflows(business_id)

    async def execute_workflow(self, request: WorkflowExecutionRequest) -> str:
        return await self.workflow_engine.execute_workflow(request)

    def get_execution_status(self, execution_id: str) -> WorkflowExecution:
        return self.workflow_engine.get_execution_status(execution_id)

    async def cancel_execution(self, execution_id: str) -> bool:
        return await self.workflow_engine.cancel_execution(execution_id)

    async def dispatch_event(
        self, event: str, business_id: str, context: Optional[Dict[str, Any]] = None
    ) -> List[str]:
        return await self.workflow_engine.dispatch_event(event, business_id, context)

    def health(self) -> Dict[str, Any]:
        agents = self._agents()
        return {
            "routes": len(self.router.routes),
            "active_calls": sum(len(agent.get_active_calls()) for agent in agents),
            "agents_healthy": all(agent.is_healthy() for agent in agents),
            "active_conversations": len(self.conversation_handler.get_active_conversations()),
            "queued_executions": len(self.workflow_engine.queue),
            "running_executions": len(self.workflow_engine.active),
            "scheduler_running": self.workflow_engine.running,
        }
