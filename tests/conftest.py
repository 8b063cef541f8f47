import logging
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from callflow.core.context_cache import ContextCache
from callflow.core.conversation_handler import ConversationHandler
from callflow.core.orchestrator import CallflowOrchestrator
from callflow.models.call import IncomingCall
from callflow.services.business_data import InMemoryBusinessDataProvider, InMemoryRecordStore
from callflow.services.messaging import LoggingMessagingProvider

BUSINESS_ID = "acme-plumbing"


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset logging configuration before each test"""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    logging.basicConfig(level=logging.NOTSET)
    yield


def business_data():
    now = datetime.now(timezone.utc)
    return {
        "profile": {
            "name": "Acme Plumbing",
            "business_type": "plumbing",
            "industry": "Home Services",
            "phone": "+15550100",
            "email": "office@acme.example",
            "services": ["drain_cleaning", "water_heater", "leak_repair"],
            "emergency_contact": "+15550199",
        },
        "jobs": [
            {"id": "job_1", "title": "Drain", "status": "completed", "value": 300, "created_at": now - timedelta(days=2)},
            {"id": "job_2", "title": "Heater", "status": "scheduled", "value": 900, "created_at": now - timedelta(days=1)},
        ],
        "customers": [
            {"id": "cust_vip", "name": "Big Spender", "total_value": 15000, "last_contact": now - timedelta(days=5)},
            {"id": "cust_old", "name": "Gone Quiet", "total_value": 500, "last_contact": now - timedelta(days=200)},
        ],
        "invoices": [
            {"id": "inv_1", "amount": 1000, "status": "paid", "created_at": now},
            {"id": "inv_2", "amount": 250, "status": "overdue", "created_at": now - timedelta(days=40)},
        ],
        "expenses": [{"id": "exp_1", "amount": 600, "created_at": now}],
        "operations": {"average_response_minutes": 30, "customer_satisfaction": 4.6},
        "records": {"invoice": {"status": "overdue", "amount": 250}},
    }


@pytest.fixture
def provider():
    return InMemoryBusinessDataProvider({BUSINESS_ID: business_data()})


@pytest.fixture
def context_cache(provider):
    return ContextCache(provider)


@pytest.fixture
def conversation_handler(context_cache):
    return ConversationHandler(context_cache)


@pytest.fixture
def messaging():
    return LoggingMessagingProvider()


@pytest.fixture
def records():
    return InMemoryRecordStore()


@pytest.fixture
def orchestrator(provider, messaging, records):
    return CallflowOrchestrator(provider, messaging=messaging, records=records)


@pytest.fixture
def business_id():
    return BUSINESS_ID


@pytest_asyncio.fixture
async def routed_call(orchestrator, business_id):
    """Route a call through a wildcard route and return its id."""
    orchestrator.register_route({"agent_config": {"business_id": business_id}})
    outcome = await orchestrator.route_call(
        IncomingCall(from_number="+15551234567", to_number="+15550100", business_id=business_id)
    )
    return outcome.call.id
