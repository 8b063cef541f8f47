"""
Conversation state models.

A Conversation is the per-session state machine record: an append-only message
history plus the running intent, entities, sentiment and urgency. Status
changes go through ``transition_to`` so that the allowed transitions live in
one table.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from callflow.config.constants import DEFAULT_LANGUAGE
from callflow.errors import ConversationClosedError, InvalidStateTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Channel(str, Enum):
    PHONE = "phone"
    CHAT = "chat"
    VIDEO = "video"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    ON_HOLD = "on_hold"
    TRANSFERRED = "transferred"
    COMPLETED = "completed"


class MessageType(str, Enum):
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


class Intent(str, Enum):
    GREETING = "greeting"
    APPOINTMENT_BOOKING = "appointment_booking"
    SERVICE_INQUIRY = "service_inquiry"
    PRICING_REQUEST = "pricing_request"
    AVAILABILITY_CHECK = "availability_check"
    EXISTING_APPOINTMENT = "existing_appointment"
    COMPLAINT = "complaint"
    COMPLIMENT = "compliment"
    EMERGENCY = "emergency"
    TECHNICAL_SUPPORT = "technical_support"
    PAYMENT_INQUIRY = "payment_inquiry"
    CANCELLATION = "cancellation"
    RESCHEDULE = "reschedule"
    INFORMATION_REQUEST = "information_request"
    CALLBACK_REQUEST = "callback_request"
    ESCALATION_REQUEST = "escalation_request"
    CLARIFICATION_REQUEST = "clarification_request"
    TRANSFER = "transfer"
    GOODBYE = "goodbye"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


URGENCY_ORDER = [Urgency.LOW, Urgency.MEDIUM, Urgency.HIGH, Urgency.URGENT]

ALLOWED_TRANSITIONS = {
    ConversationStatus.ACTIVE: {
        ConversationStatus.ON_HOLD,
        ConversationStatus.TRANSFERRED,
        ConversationStatus.COMPLETED,
    },
    ConversationStatus.ON_HOLD: {
        ConversationStatus.ACTIVE,
        ConversationStatus.TRANSFERRED,
        ConversationStatus.COMPLETED,
    },
    ConversationStatus.TRANSFERRED: {ConversationStatus.COMPLETED},
    ConversationStatus.COMPLETED: set(),
}


class Message(BaseModel):
    id: str = Field(default_factory=lambda: f"msg_{uuid.uuid4().hex[:12]}")
    type: MessageType
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class MessageAnalysis(BaseModel):
    """Result of running the extractor over one utterance."""

    intent: Intent
    confidence: float = Field(..., ge=0.0, le=1.0)
    entities: Dict[str, str] = Field(default_factory=dict)
    sentiment: Sentiment = Sentiment.NEUTRAL


class ConversationAction(BaseModel):
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    execute_immediately: bool = False


class ConversationResponse(BaseModel):
    """Reply produced for one inbound message."""

    text: str
    intent: Intent
    confidence: float
    actions: List[ConversationAction] = Field(default_factory=list)
    suggested_responses: List[str] = Field(default_factory=list)
    escalation_required: bool = False
    transfer_reason: Optional[str] = None
    appointment_details: Optional[Dict[str, Any]] = None


class CustomerInfo(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class Conversation(BaseModel):
    id: str = Field(default_factory=lambda: f"conv_{uuid.uuid4().hex[:12]}")
    business_id: str
    customer_id: Optional[str] = None
    channel: Channel = Channel.PHONE
    language: str = DEFAULT_LANGUAGE
    status: ConversationStatus = ConversationStatus.ACTIVE
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    end_reason: Optional[str] = None
    transfer_reason: Optional[str] = None
    intent: Optional[Intent] = None
    entities: Dict[str, str] = Field(default_factory=dict)
    sentiment: Sentiment = Sentiment.NEUTRAL
    urgency: Urgency = Urgency.LOW
    customer_info: CustomerInfo = Field(default_factory=CustomerInfo)
    intents_seen: List[Intent] = Field(default_factory=list)
    messages: List[Message] = Field(default_factory=list)

    @property
    def is_closed(self) -> bool:
        return self.status == ConversationStatus.COMPLETED

    def add_message(
        self,
        message_type: MessageType,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        terminal: bool = False,
    ) -> Message:
        """Append a message to the history.

        Only a terminal system entry may follow completion.
        """
        if self.is_closed and not (terminal and message_type == MessageType.SYSTEM):
            raise ConversationClosedError(f"Conversation '{self.id}' is completed")
        message = Message(type=message_type, content=content, metadata=metadata or {})
        self.messages.append(message)
        return message

    def transition_to(self, status: ConversationStatus) -> None:
        if status == self.status:
            return
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidStateTransitionError("conversation", self.status.value, status.value)
        self.status = status
        if status == ConversationStatus.COMPLETED:
            self.ended_at = utcnow()

    def raise_urgency(self, urgency: Urgency) -> None:
        if URGENCY_ORDER.index(urgency) > URGENCY_ORDER.index(self.urgency):
            self.urgency = urgency

    def user_turns(self) -> int:
        return sum(1 for message in self.messages if message.type == MessageType.USER)
