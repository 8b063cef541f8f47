"""
Call, phone agent and routing models.
"""

import re
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from callflow.config.constants import (
    DEFAULT_EMERGENCY_KEYWORDS,
    DEFAULT_ESCALATION_KEYWORDS,
    DEFAULT_HUMAN_REQUEST_PHRASES,
    DEFAULT_LANGUAGE,
    DEFAULT_MAX_FAILED_ATTEMPTS,
    DEFAULT_VOICE_ID,
    DEFAULT_VOICE_MODEL,
    MAX_CALL_DURATION_SECONDS,
    WILDCARD,
)
from callflow.errors import InvalidStateTransitionError
from callflow.models.conversation import ConversationResponse, utcnow

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


# Speech codec payloads
class WordTiming(BaseModel):
    word: str
    start: float
    end: float
    confidence: float = 1.0


class TranscriptionResult(BaseModel):
    text: str
    confidence: float = Field(1.0, ge=0.0, le=1.0)
    words: List[WordTiming] = Field(default_factory=list)


class VoiceOptions(BaseModel):
    voice_id: str = DEFAULT_VOICE_ID
    model_id: str = DEFAULT_VOICE_MODEL
    stability: float = Field(0.5, ge=0.0, le=1.0)
    similarity_boost: float = Field(0.75, ge=0.0, le=1.0)
    output_format: str = "mp3_44100_128"


class AudioProcessingResult(BaseModel):
    audio: bytes
    mime_type: str = "audio/mpeg"
    duration: float = 0.0
    size: int = 0


# Calls
class CallStatus(str, Enum):
    INCOMING = "incoming"
    CONNECTED = "connected"
    ON_HOLD = "on_hold"
    TRANSFERRED = "transferred"
    COMPLETED = "completed"
    FAILED = "failed"


class CallDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


CALL_TRANSITIONS = {
    CallStatus.INCOMING: {CallStatus.CONNECTED, CallStatus.FAILED},
    CallStatus.CONNECTED: {
        CallStatus.ON_HOLD,
        CallStatus.TRANSFERRED,
        CallStatus.COMPLETED,
        CallStatus.FAILED,
    },
    CallStatus.ON_HOLD: {
        CallStatus.CONNECTED,
        CallStatus.TRANSFERRED,
        CallStatus.COMPLETED,
        CallStatus.FAILED,
    },
    CallStatus.TRANSFERRED: set(),
    CallStatus.COMPLETED: set(),
    CallStatus.FAILED: set(),
}


class IncomingCall(BaseModel):
    call_id: str = Field(default_factory=lambda: f"call_{uuid.uuid4().hex[:12]}")
    from_number: str
    to_number: str
    business_id: str
    caller_name: Optional[str] = None
    direction: CallDirection = CallDirection.INBOUND
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PhoneCall(BaseModel):
    id: str
    business_id: str
    from_number: str
    to_number: str
    caller_name: Optional[str] = None
    direction: CallDirection = CallDirection.INBOUND
    status: CallStatus = CallStatus.INCOMING
    conversation_id: Optional[str] = None
    route_id: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    answered_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration: Optional[float] = None
    transfer_reason: Optional[str] = None
    end_reason: Optional[str] = None
    summary: Optional[str] = None
    failed_attempts: int = 0
    appointment_booked: bool = False
    lead_captured: bool = False

    def transition_to(self, status: CallStatus) -> None:
        if status == self.status:
            return
        if status not in CALL_TRANSITIONS[self.status]:
            raise InvalidStateTransitionError("call", self.status.value, status.value)
        self.status = status

    @property
    def is_finished(self) -> bool:
        return self.ended_at is not None


class CallMetrics(BaseModel):
    total_calls: int = 0
    answered_calls: int = 0
    missed_calls: int = 0
    transferred_calls: int = 0
    average_call_duration: float = 0.0
    average_response_time: float = 0.0
    appointments_booked: int = 0
    leads_captured: int = 0
    escalation_rate: float = 0.0


class MetricsAnalysis(BaseModel):
    answer_rate: float
    conversion_rate: float
    escalation_rate: float
    average_call_duration: str
    performance: str


class TransferConditions(BaseModel):
    escalation_keywords: List[str] = Field(default_factory=lambda: list(DEFAULT_ESCALATION_KEYWORDS))
    human_request_phrases: List[str] = Field(
        default_factory=lambda: list(DEFAULT_HUMAN_REQUEST_PHRASES)
    )
    max_failed_attempts: int = Field(DEFAULT_MAX_FAILED_ATTEMPTS, ge=1)


class PhoneAgentConfig(BaseModel):
    business_id: str
    agent_name: str = "Assistant"
    welcome_message: str = "Thank you for calling. How can I help you today?"
    voice: VoiceOptions = Field(default_factory=VoiceOptions)
    language: str = DEFAULT_LANGUAGE
    max_call_duration: int = MAX_CALL_DURATION_SECONDS
    emergency_keywords: List[str] = Field(default_factory=lambda: list(DEFAULT_EMERGENCY_KEYWORDS))
    transfer_conditions: TransferConditions = Field(default_factory=TransferConditions)
    transfer_number: Optional[str] = None


class AudioTurnResult(BaseModel):
    """Outcome of one caller audio turn."""

    transcript: str
    reply: ConversationResponse
    audio_reply: Optional[AudioProcessingResult] = None
    should_transfer: bool = False
    transfer_reason: Optional[str] = None
    should_end: bool = False


class CallGreeting(BaseModel):
    call: PhoneCall
    welcome_message: str
    audio: Optional[AudioProcessingResult] = None


class CallSummary(BaseModel):
    call_id: str
    duration: float
    user_turns: int
    topics: List[str]
    transfer_reason: Optional[str] = None
    text: str


# Routing
class RoutingActionType(str, Enum):
    ROUTE_TO_AGENT = "route_to_agent"
    ROUTE_TO_HUMAN = "route_to_human"
    PLAY_MESSAGE = "play_message"
    TAKE_VOICEMAIL = "take_voicemail"
    FALLBACK_ROUTE = "fallback_route"


class TimeWindow(BaseModel):
    start: str
    end: str

    @field_validator("start", "end")
    def validate_time(cls, v):
        """Validate HH:MM 24-hour times."""
        if not TIME_PATTERN.match(v):
            raise ValueError(f"Time must be HH:MM in 24-hour format, got '{v}'")
        return v


class RuleConditions(BaseModel):
    time_of_day: Optional[TimeWindow] = None
    day_of_week: Optional[List[int]] = Field(
        None, description="Allowed days, 0=Sunday .. 6=Saturday"
    )
    caller_number_pattern: Optional[str] = None
    business_id: Optional[str] = None
    timezone: Optional[str] = None

    @field_validator("day_of_week")
    def validate_days(cls, v):
        """Validate that every day index is in 0..6."""
        if v is not None and any(day < 0 or day > 6 for day in v):
            raise ValueError("Day of week values must be between 0 (Sunday) and 6 (Saturday)")
        return v

    @field_validator("caller_number_pattern")
    def validate_pattern(cls, v):
        """Validate that the caller pattern compiles."""
        if v is not None:
            try:
                re.compile(v)
            except re.error as e:
                raise ValueError(f"Invalid caller number pattern: {e}")
        return v


class RuleAction(BaseModel):
    type: RoutingActionType
    agent_id: Optional[str] = None
    human_extension: Optional[str] = None
    message_text: Optional[str] = None
    voicemail_greeting: Optional[str] = None


class RoutingRule(BaseModel):
    id: str = Field(default_factory=lambda: f"rule_{uuid.uuid4().hex[:12]}")
    name: str
    priority: int = 0
    conditions: RuleConditions = Field(default_factory=RuleConditions)
    action: RuleAction
    is_active: bool = True


class Route(BaseModel):
    """Binding of a number or caller-name pattern to a phone agent."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(default_factory=lambda: f"route_{uuid.uuid4().hex[:12]}")
    business_id: str = WILDCARD
    pattern: str = WILDCARD
    is_regex: bool = False
    priority: int = 0
    agent_config: PhoneAgentConfig
    is_active: bool = True
    is_default: bool = False
    call_count: int = 0
    last_used: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    agent: Optional[Any] = Field(None, exclude=True)

    @field_validator("pattern")
    def validate_route_pattern(cls, v):
        """Validate that the pattern is not empty."""
        if not v.strip():
            raise ValueError("Route pattern cannot be empty")
        return v


class RoutingOutcome(BaseModel):
    action: RoutingActionType
    route_id: Optional[str] = None
    rule_id: Optional[str] = None
    call: Optional[PhoneCall] = None
    human_extension: Optional[str] = None
    message_text: Optional[str] = None
    voicemail_greeting: Optional[str] = None


class RoutingStats(BaseModel):
    total_routes: int
    active_routes: int
    total_rules: int
    active_rules: int
    calls_last_24h: int
    route_distribution: Dict[str, int]
