"""
Business data access for the orchestration core.

The core never talks to a database directly. It reads through a
``BusinessDataProvider`` and writes through a ``RecordStore``; both are
protocols so a deployment can plug in its own storage. The in-memory
implementations below back the development server and the tests.
"""

import logging
import uuid
from copy import deepcopy
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from callflow.config.constants import LOGGER_NAME
from callflow.errors import BusinessNotFoundError

logger = logging.getLogger(LOGGER_NAME)

Record = Dict[str, Any]


class BusinessDataProvider(Protocol):
    """Read-side interface keyed by business id."""

    async def get_business_profile(self, business_id: str) -> Record: ...

    async def get_recent_activity(
        self, business_id: str, since: datetime, limit: int
    ) -> Dict[str, List[Record]]: ...

    async def get_customers(self, business_id: str) -> List[Record]: ...

    async def get_financial_aggregates(self, business_id: str, since: datetime) -> Record: ...

    async def get_operational_aggregates(self, business_id: str, since: datetime) -> Record: ...

    async def get_industry_type(self, business_id: str) -> str: ...

    async def get_record_value(self, business_id: str, data_source: str, field: str) -> Any: ...


class RecordStore(Protocol):
    """Write-side interface used by workflow actions."""

    async def create_record(self, business_id: str, kind: str, data: Record) -> str: ...

    async def update_record(
        self, business_id: str, kind: str, record_id: str, changes: Record
    ) -> Record: ...


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _created_since(rows: List[Record], since: datetime) -> List[Record]:
    recent = [row for row in rows if (_parse_time(row.get("created_at")) or since) >= since]
    recent.sort(key=lambda row: _parse_time(row.get("created_at")) or since, reverse=True)
    return recent


class InMemoryBusinessDataProvider:
    """Dictionary-backed provider.

    Each business is a dict with a ``profile`` mapping and optional row lists
    under ``jobs``, ``customers``, ``communications``, ``invoices`` and
    ``expenses``, plus free-form ``records`` keyed by data source for workflow
    condition lookups.
    """

    def __init__(self, businesses: Optional[Dict[str, Dict[str, Any]]] = None):
        self.businesses: Dict[str, Dict[str, Any]] = deepcopy(businesses) if businesses else {}

    def add_business(self, business_id: str, data: Dict[str, Any]) -> None:
        self.businesses[business_id] = deepcopy(data)

    def _business(self, business_id: str) -> Dict[str, Any]:
        try:
            return self.businesses[business_id]
        except KeyError:
            raise BusinessNotFoundError(business_id) from None

    async def get_business_profile(self, business_id: str) -> Record:
        profile = dict(self._business(business_id).get("profile", {}))
        profile.setdefault("id", business_id)
        return profile

    async def get_recent_activity(
        self, business_id: str, since: datetime, limit: int
    ) -> Dict[str, List[Record]]:
        business = self._business(business_id)
        return {
            "jobs": _created_since(business.get("jobs", []), since)[:limit],
            "customers": _created_since(business.get("customers", []), since)[:limit],
            "communications": _created_since(business.get("communications", []), since)[:limit],
            "financials": _created_since(business.get("invoices", []), since)[:limit],
        }

    async def get_customers(self, business_id: str) -> List[Record]:
        return [dict(row) for row in self._business(business_id).get("customers", [])]

    async def get_financial_aggregates(self, business_id: str, since: datetime) -> Record:
        business = self._business(business_id)
        invoices = business.get("invoices", [])
        paid = [inv for inv in _created_since(invoices, since) if inv.get("status") == "paid"]
        expenses = _created_since(business.get("expenses", []), since)
        open_invoices = [inv for inv in invoices if inv.get("status") in ("pending", "overdue")]
        completed_jobs = [job for job in business.get("jobs", []) if job.get("status") == "completed"]
        job_values = [float(job.get("value", 0)) for job in completed_jobs]
        return {
            "revenue": sum(float(inv.get("amount", 0)) for inv in paid),
            "expenses": sum(float(exp.get("amount", 0)) for exp in expenses),
            "outstanding": sum(float(inv.get("amount", 0)) for inv in open_invoices),
            "overdue_count": sum(1 for inv in open_invoices if inv.get("status") == "overdue"),
            "average_job_value": sum(job_values) / len(job_values) if job_values else 0.0,
        }

    async def get_operational_aggregates(self, business_id: str, since: datetime) -> Record:
        business = self._business(business_id)
        jobs = _created_since(business.get("jobs", []), since)
        metrics = business.get("operations", {})
        return {
            "total_jobs": len(jobs),
            "jobs_completed": sum(1 for job in jobs if job.get("status") == "completed"),
            "average_response_minutes": float(metrics.get("average_response_minutes", 0)),
            "customer_satisfaction": float(metrics.get("customer_satisfaction", 0)),
        }

    async def get_industry_type(self, business_id: str) -> str:
        profile = self._business(business_id).get("profile", {})
        return profile.get("business_type") or profile.get("industry") or "General"

    async def get_record_value(self, business_id: str, data_source: str, field: str) -> Any:
        records = self._business(business_id).get("records", {}).get(data_source, {})
        value: Any = records
        for part in field.split("."):
            if not isinstance(value, dict) or part not in value:
                return None
            value = value[part]
        return value


class InMemoryRecordStore:
    """Keeps created and updated records per business and kind."""

    def __init__(self):
        self.records: Dict[str, Dict[str, Dict[str, Record]]] = {}

    async def create_record(self, business_id: str, kind: str, data: Record) -> str:
        record_id = data.get("id") or f"{kind}_{uuid.uuid4().hex[:12]}"
        bucket = self.records.setdefault(business_id, {}).setdefault(kind, {})
        bucket[record_id] = {**data, "id": record_id}
        logger.info(f"Created {kind} record {record_id} for business {business_id}")
        return record_id

    async def update_record(
        self, business_id: str, kind: str, record_id: str, changes: Record
    ) -> Record:
        bucket = self.records.setdefault(business_id, {}).setdefault(kind, {})
        record = bucket.setdefault(record_id, {"id": record_id})
        record.update(changes)
        logger.info(f"Updated {kind} record {record_id} for business {business_id}")
        return dict(record)

    def get(self, business_id: str, kind: str, record_id: str) -> Optional[Record]:
        return self.records.get(business_id, {}).get(kind, {}).get(record_id)
