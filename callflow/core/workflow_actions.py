"""
Executors for workflow action types.

Every action receives its parameters with ``{placeholder}`` references
rendered from the execution context and the business profile. An action
either returns a result dict or raises; the engine turns the exception into a
retry or a failed execution.
"""

import logging
import re
from typing import Any, Awaitable, Callable, Dict, List

from callflow.config.constants import LOGGER_NAME
from callflow.errors import InvalidInputError
from callflow.models.business import BusinessContext, BusinessInsight
from callflow.models.workflow import ActionType, WorkflowAction, WorkflowExecution
from callflow.services.business_data import RecordStore
from callflow.services.messaging import OutboundMessagingProvider

logger = logging.getLogger(LOGGER_NAME)

PLACEHOLDER = re.compile(r"\{(\w+)\}")

EMAIL_TEMPLATES = {
    "thank_you_template": (
        "Thank you from {business_name}",
        "Hi {customer_name}, thank you for choosing {business_name}. We hope everything went well.",
    ),
    "review_request_template": (
        "How did we do?",
        "Hi {customer_name}, we'd love to hear about your experience with {business_name}. "
        "Please take a moment to leave us a review.",
    ),
    "payment_reminder_template": (
        "Payment reminder from {business_name}",
        "Hi {customer_name}, this is a reminder that invoice {invoice_id} is overdue. "
        "Please contact {business_name} if you have any questions.",
    ),
}

ActionFunc = Callable[[Dict[str, Any], WorkflowExecution, BusinessContext], Awaitable[Dict[str, Any]]]


def render(value: Any, variables: Dict[str, Any]) -> Any:
    """Substitute known ``{name}`` placeholders; unknown ones are left as written."""
    if isinstance(value, str):
        def substitute(match):
            replacement = variables.get(match.group(1))
            return match.group(0) if replacement is None else str(replacement)

        return PLACEHOLDER.sub(substitute, value)
    if isinstance(value, dict):
        return {key: render(item, variables) for key, item in value.items()}
    if isinstance(value, list):
        return [render(item, variables) for item in value]
    return value


def template_variables(execution: WorkflowExecution, context: BusinessContext) -> Dict[str, Any]:
    profile = context.business_profile
    return {
        "business_id": context.business_id,
        "business_name": profile.name,
        "business_phone": profile.phone,
        "business_email": profile.email,
        "business_emergency_contact": profile.emergency_contact or profile.phone,
        **{key: value for key, value in execution.context.items() if value is not None},
        "execution_id": execution.id,
        "workflow_id": execution.workflow_id,
    }


def derive_insights(context: BusinessContext) -> List[BusinessInsight]:
    """Rule-of-thumb insights about a business snapshot."""
    insights = []
    financial = context.financial_snapshot
    operations = context.operational_metrics

    if financial.monthly_revenue > 0 and financial.profit_margin < 20:
        insights.append(
            BusinessInsight(
                kind="financial",
                priority="high",
                title="Low profit margin",
                description=f"Profit margin is {financial.profit_margin:.1f}%, below the 20% target.",
                recommendation="Review pricing and reduce recurring expenses.",
            )
        )
    if financial.overdue_invoices:
        insights.append(
            BusinessInsight(
                kind="financial",
                priority="medium",
                title="Overdue invoices",
                description=f"{financial.overdue_invoices} invoice(s) are overdue.",
                recommendation="Send payment reminders and follow up by phone.",
            )
        )
    if operations.total_jobs and operations.booking_rate < 60:
        insights.append(
            BusinessInsight(
                kind="operational",
                priority="medium",
                title="Low booking rate",
                description=f"Only {operations.booking_rate:.1f}% of jobs were completed.",
                recommendation="Follow up quickly on quotes and confirm appointments a day ahead.",
            )
        )
    if context.customer_data.at_risk_customers:
        insights.append(
            BusinessInsight(
                kind="customer",
                priority="high",
                title="Customers at risk",
                description=f"{context.customer_data.at_risk_customers} customer(s) have not been in touch for over 90 days.",
                recommendation="Reach out with a check-in or a seasonal offer.",
            )
        )
    industry = context.industry_context
    for pattern in industry.seasonal_patterns:
        if pattern.season == industry.current_season and pattern.demand == "high":
            insights.append(
                BusinessInsight(
                    kind="opportunity",
                    priority="low",
                    title=f"High {pattern.season} demand",
                    description=f"Demand peaks now for {', '.join(pattern.services)}.",
                    recommendation="Promote these services and extend availability.",
                )
            )
    return insights


class ActionExecutor:
    """Runs single workflow actions against the outbound providers."""

    def __init__(self, messaging: OutboundMessagingProvider, records: RecordStore):
        self.messaging = messaging
        self.records = records
        self.handlers: Dict[ActionType, ActionFunc] = {
            ActionType.SEND_EMAIL: self._send_email,
            ActionType.SEND_SMS: self._send_sms,
            ActionType.WEBHOOK: self._webhook,
            ActionType.CREATE_EVENT: self._create_event,
            ActionType.UPDATE_CUSTOMER: self._update_customer,
            ActionType.CREATE_INVOICE: self._create_invoice,
            ActionType.AI_ANALYZE: self._ai_analyze,
            ActionType.DELAY: self._delay,
        }

    async def execute(
        self, action: WorkflowAction, execution: WorkflowExecution, context: BusinessContext
    ) -> Dict[str, Any]:
        handler = self.handlers.get(action.type)
        if handler is None:
            raise InvalidInputError(f"Unsupported action type: {action.type}")
        params = render(dict(action.parameters), template_variables(execution, context))
        logger.info(f"Executing action {action.id} ({action.type.value}) for execution {execution.id}")
        return await handler(params, execution, context)

    @staticmethod
    def _recipient(params: Dict[str, Any], execution: WorkflowExecution, key: str) -> str:
        recipient = params.get("to") or execution.context.get(key)
        if not recipient or PLACEHOLDER.fullmatch(str(recipient)):
            raise InvalidInputError(f"No recipient available ({key})")
        return str(recipient)

    async def _send_email(self, params, execution, context) -> Dict[str, Any]:
        to = self._recipient(params, execution, "customer_email")
        template = params.get("template")
        if template:
            if template not in EMAIL_TEMPLATES:
                raise InvalidInputError(f"Unknown email template: {template}")
            variables = {"customer_name": "there", **template_variables(execution, context)}
            subject, body = render(list(EMAIL_TEMPLATES[template]), variables)
        else:
            subject, body = params.get("subject", ""), params.get("body", "")
        return await self.messaging.send_email(to, subject, body)

    async def _send_sms(self, params, execution, context) -> Dict[str, Any]:
        to = self._recipient(params, execution, "customer_phone")
        return await self.messaging.send_sms(to, params.get("body", ""))

    async def _webhook(self, params, execution, context) -> Dict[str, Any]:
        url = params.get("url")
        if not url:
            raise InvalidInputError("Webhook action requires a url")
        payload = params.get("payload") or {
            "execution_id": execution.id,
            "workflow_id": execution.workflow_id,
            "business_id": execution.business_id,
            "context": execution.context,
        }
        return await self.messaging.call_webhook(url, payload)

    async def _create_event(self, params, execution, context) -> Dict[str, Any]:
        record_id = await self.records.create_record(execution.business_id, "event", params)
        return {"event_id": record_id}

    async def _update_customer(self, params, execution, context) -> Dict[str, Any]:
        customer_id = params.get("customer_id") or execution.context.get("customer_id")
        if not customer_id or PLACEHOLDER.fullmatch(str(customer_id)):
            raise InvalidInputError("update_customer requires a customer_id")
        # Fields whose placeholder had no value are left untouched
        updates = {
            key: value
            for key, value in params.get("updates", {}).items()
            if not (isinstance(value, str) and PLACEHOLDER.fullmatch(value))
        }
        updated = await self.records.update_record(
            execution.business_id, "customer", str(customer_id), updates
        )
        return {"customer": updated}

    async def _create_invoice(self, params, execution, context) -> Dict[str, Any]:
        data = {"status": "draft", **params}
        record_id = await self.records.create_record(execution.business_id, "invoice", data)
        return {"invoice_id": record_id}

    async def _ai_analyze(self, params, execution, context) -> Dict[str, Any]:
        insights = derive_insights(context)
        return {
            "analysis_type": params.get("analysis_type", "business_health"),
            "insights": [insight.model_dump() for insight in insights],
        }

    async def _delay(self, params, execution, context) -> Dict[str, Any]:
        # The engine defers the next action; nothing blocks here
        seconds = float(params.get("delay_seconds", 0))
        if seconds < 0:
            raise InvalidInputError("delay_seconds cannot be negative")
        return {"delay_seconds": seconds}
