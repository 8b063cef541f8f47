"""
Outbound messaging providers used by workflow actions.

Delivery failures raise ``MessagingError`` so that the workflow engine can
apply the action's retry policy.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

import httpx

from callflow.config.constants import (
    LOGGER_NAME,
    MESSAGING_API_KEY,
    MESSAGING_RELAY_URL,
    MESSAGING_TIMEOUT_SECONDS,
)
from callflow.errors import MessagingError

logger = logging.getLogger(LOGGER_NAME)


class OutboundMessagingProvider(Protocol):
    async def send_email(self, to: str, subject: str, body: str) -> Dict[str, Any]: ...

    async def send_sms(self, to: str, body: str) -> Dict[str, Any]: ...

    async def call_webhook(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]: ...


class LoggingMessagingProvider:
    """Development provider that logs every message and keeps it in ``outbox``."""

    def __init__(self):
        self.outbox: List[Dict[str, Any]] = []

    def _record(self, channel: str, **fields) -> Dict[str, Any]:
        entry = {
            "channel": channel,
            "id": f"{channel}_{len(self.outbox) + 1}",
            "sent_at": datetime.now(timezone.utc).isoformat(),
            **fields,
        }
        self.outbox.append(entry)
        return {"message_id": entry["id"], "status": "sent"}

    async def send_email(self, to: str, subject: str, body: str) -> Dict[str, Any]:
        logger.info(f"Email to {to}: {subject}")
        return self._record("email", to=to, subject=subject, body=body)

    async def send_sms(self, to: str, body: str) -> Dict[str, Any]:
        logger.info(f"SMS to {to}: {body[:60]}")
        return self._record("sms", to=to, body=body)

    async def call_webhook(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        logger.info(f"Webhook to {url}")
        return self._record("webhook", url=url, payload=payload)


class HttpMessagingProvider:
    """Delivers email and SMS through an HTTP relay and calls webhooks directly."""

    def __init__(
        self,
        base_url: str = MESSAGING_RELAY_URL,
        api_key: str = MESSAGING_API_KEY,
        timeout: float = MESSAGING_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the provider.

        Args:
            base_url: Root URL of the relay exposing /email and /sms
            api_key: Bearer token for the relay, sent only when set
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport, used to stub the network in tests
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                response = await client.post(url, headers=headers, json=payload, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.error(f"Delivery to {url} failed: {e}")
            raise MessagingError(f"Delivery to {url} failed: {e}") from e

        if response.status_code >= 400:
            logger.error(f"Delivery to {url} rejected: {response.status_code} - {response.text}")
            raise MessagingError(f"Delivery to {url} rejected with status {response.status_code}")

        try:
            body = response.json()
        except ValueError:
            body = {}
        return {"status_code": response.status_code, **(body if isinstance(body, dict) else {})}

    def _relay_url(self, path: str) -> str:
        if not self.base_url:
            raise MessagingError("MESSAGING_RELAY_URL is not configured")
        return f"{self.base_url}/{path}"

    async def send_email(self, to: str, subject: str, body: str) -> Dict[str, Any]:
        logger.info(f"Sending email to {to}")
        return await self._post(
            self._relay_url("email"),
            {"to": to, "subject": subject, "body": body},
            self._get_headers(),
        )

    async def send_sms(self, to: str, body: str) -> Dict[str, Any]:
        logger.info(f"Sending SMS to {to}")
        return await self._post(self._relay_url("sms"), {"to": to, "body": body}, self._get_headers())

    async def call_webhook(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        logger.info(f"Calling webhook {url}")
        return await self._post(url, payload, {"Content-Type": "application/json"})
