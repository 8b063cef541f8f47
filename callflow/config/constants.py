"""
Constants and configuration values used throughout the application.

This module defines constants that are used across different parts of the application,
providing a centralized location for configuration values. Deployment knobs are read
from environment variables so that a `.env` file can override them.
"""

import os

# Logger name used throughout the application
LOGGER_NAME = "callflow"

# Wildcard accepted for business ids and route patterns
WILDCARD = "*"

# Business context cache
CONTEXT_CACHE_TTL_SECONDS = float(os.getenv("CONTEXT_CACHE_TTL_SECONDS", "300"))
RECENT_ACTIVITY_WINDOW_DAYS = 30
RECENT_ACTIVITY_LIMIT = 10
AT_RISK_AFTER_DAYS = 90
VIP_CUSTOMER_VALUE = 10000
REGULAR_CUSTOMER_VALUE = 1000

# Default business profile values used when the data provider leaves them out
DEFAULT_BUSINESS_NAME = "Professional Services"
DEFAULT_SERVICES = ("consultation", "maintenance", "installation")
DEFAULT_BUSINESS_HOURS = ("09:00", "17:00")
DEFAULT_TIME_SLOTS = ("9:00 AM", "10:00 AM", "11:00 AM", "2:00 PM", "3:00 PM", "4:00 PM")
DEFAULT_BUSINESS_ID = os.getenv("DEFAULT_BUSINESS_ID", "demo-business")

# Phone agent defaults
DEFAULT_VOICE_ID = "EXAVITQu4vr4xnSDxMaL"
DEFAULT_VOICE_MODEL = "eleven_monolingual_v1"
DEFAULT_LANGUAGE = "en-US"
DEFAULT_AUDIO_MIME_TYPE = "audio/wav"
MAX_CALL_DURATION_SECONDS = 30 * 60
TRANSCRIBE_MAX_ATTEMPTS = int(os.getenv("TRANSCRIBE_MAX_ATTEMPTS", "2"))
DEFAULT_EMERGENCY_KEYWORDS = (
    "emergency",
    "urgent",
    "broken",
    "broke",
    "leak",
    "flood",
    "fire",
    "danger",
)
DEFAULT_ESCALATION_KEYWORDS = ("manager", "supervisor", "human", "person", "representative")
DEFAULT_HUMAN_REQUEST_PHRASES = (
    "speak to someone",
    "talk to a person",
    "human agent",
    "real person",
)
DEFAULT_MAX_FAILED_ATTEMPTS = 3

# Conversations
CLOSED_CONVERSATION_LIMIT = int(os.getenv("CLOSED_CONVERSATION_LIMIT", "1000"))

# Workflow engine
MAX_CONCURRENT_EXECUTIONS = int(os.getenv("MAX_CONCURRENT_EXECUTIONS", "10"))
WORKFLOW_TICK_SECONDS = float(os.getenv("WORKFLOW_TICK_SECONDS", "1.0"))
WORKFLOW_QUEUE_JOB_ID = "workflow_queue_processor"
FINISHED_EXECUTION_LIMIT = int(os.getenv("FINISHED_EXECUTION_LIMIT", "1000"))

# Outbound messaging relay (HTTP provider)
MESSAGING_RELAY_URL = os.getenv("MESSAGING_RELAY_URL", "")
MESSAGING_API_KEY = os.getenv("MESSAGING_API_KEY", "")
MESSAGING_TIMEOUT_SECONDS = float(os.getenv("MESSAGING_TIMEOUT_SECONDS", "30"))

# Call stream message type constants
MESSAGE_TYPE_CALL_ANSWER = "call.answer"
MESSAGE_TYPE_CALL_ANSWERED = "call.answered"
MESSAGE_TYPE_AUDIO_INPUT = "audio.input"
MESSAGE_TYPE_AUDIO_REPLY = "audio.reply"
MESSAGE_TYPE_CALL_HOLD = "call.hold"
MESSAGE_TYPE_CALL_RESUME = "call.resume"
MESSAGE_TYPE_CALL_STATUS = "call.status"
MESSAGE_TYPE_CALL_END = "call.end"
MESSAGE_TYPE_CALL_ENDED = "call.ended"
MESSAGE_TYPE_CALL_ERROR = "call.error"
