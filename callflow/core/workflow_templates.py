"""
Workflow templates registered for every business.
"""

from typing import List

from callflow.config.constants import WILDCARD
from callflow.models.workflow import WorkflowDefinition

THREE_DAYS_SECONDS = 3 * 24 * 60 * 60


def default_workflow_templates() -> List[WorkflowDefinition]:
    templates = [
        {
            "id": "customer_followup",
            "name": "Customer follow-up",
            "description": "Thank the customer after a completed job and ask for a review.",
            "trigger": {
                "id": "job_completed",
                "type": "event_based",
                "event": "job_completed",
                "conditions": [
                    {"field": "status", "operator": "equals", "value": "completed", "data_source": "event"}
                ],
            },
            "actions": [
                {"id": "thank_you", "type": "send_email", "parameters": {"template": "thank_you_template"}},
                {"id": "wait", "type": "delay", "parameters": {"delay_seconds": THREE_DAYS_SECONDS}},
                {"id": "review_request", "type": "send_email", "parameters": {"template": "review_request_template"}},
            ],
            "tags": ["customer", "followup"],
        },
        {
            "id": "invoice_reminder",
            "name": "Invoice reminder",
            "description": "Remind customers about overdue invoices every morning.",
            "trigger": {
                "id": "daily_overdue_check",
                "type": "time_based",
                "schedule": {"frequency": "daily", "time": "09:00", "timezone": "UTC"},
                "conditions": [
                    {"field": "status", "operator": "equals", "value": "overdue", "data_source": "invoice"}
                ],
            },
            "actions": [
                {"id": "reminder", "type": "send_email", "parameters": {"template": "payment_reminder_template"}},
                {
                    "id": "flag_customer",
                    "type": "update_customer",
                    "parameters": {"updates": {"status": "payment_pending"}},
                },
            ],
            "tags": ["billing"],
        },
        {
            "id": "emergency_escalation",
            "name": "Emergency escalation",
            "description": "Page the on-call contact and log a callback when a caller reports an emergency.",
            "trigger": {"id": "emergency", "type": "event_based", "event": "emergency_escalated"},
            "actions": [
                {
                    "id": "page_on_call",
                    "type": "send_sms",
                    "parameters": {
                        "to": "{business_emergency_contact}",
                        "body": "Emergency call from {customer_phone}. Please call back immediately.",
                    },
                    "retry_policy": {"max_retries": 3, "retry_delay": 5, "backoff_multiplier": 2},
                },
                {
                    "id": "log_callback",
                    "type": "create_event",
                    "parameters": {"title": "Emergency callback for {customer_phone}", "priority": "urgent"},
                },
            ],
            "tags": ["emergency"],
        },
        {
            "id": "appointment_confirmation",
            "name": "Appointment confirmation",
            "description": "Put a requested appointment on the calendar and text the caller.",
            "trigger": {
                "id": "appointment_requested",
                "type": "event_based",
                "event": "appointment_requested",
                "conditions": [{"field": "customer_phone", "operator": "exists", "data_source": "context"}],
            },
            "actions": [
                {
                    "id": "calendar",
                    "type": "create_event",
                    "parameters": {
                        "title": "Appointment with {customer_phone}",
                        "date": "{date}",
                        "time": "{time}",
                        "service": "{service}",
                    },
                },
                {
                    "id": "confirm",
                    "type": "send_sms",
                    "parameters": {
                        "body": "Thanks for booking with {business_name}. We have you down for {date} at {time}.",
                    },
                    "retry_policy": {"max_retries": 2, "retry_delay": 2, "backoff_multiplier": 2},
                },
            ],
            "tags": ["appointments"],
        },
        {
            "id": "lead_capture",
            "name": "Lead capture",
            "description": "Store caller contact details as a lead.",
            "trigger": {"id": "lead", "type": "event_based", "event": "lead_captured"},
            "actions": [
                {
                    "id": "store_lead",
                    "type": "update_customer",
                    "parameters": {
                        "customer_id": "{customer_phone}",
                        "updates": {
                            "name": "{customer_name}",
                            "phone": "{customer_phone}",
                            "email": "{customer_email}",
                            "status": "lead",
                        },
                    },
                }
            ],
            "tags": ["sales"],
        },
    ]
    return [WorkflowDefinition(business_id=WILDCARD, **template) for template in templates]
