"""
TTL cache of business context snapshots.

``ContextCache.get`` returns the cached snapshot for a business while it is
younger than the TTL, otherwise it reads every data source concurrently and
assembles a fresh, immutable ``BusinessContext``. Refreshes for the same
business are serialized so a burst of concurrent misses costs one fetch.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from callflow.config.constants import (
    CONTEXT_CACHE_TTL_SECONDS,
    LOGGER_NAME,
    RECENT_ACTIVITY_LIMIT,
    RECENT_ACTIVITY_WINDOW_DAYS,
)
from callflow.errors import ContextRefreshError, NotFoundError
from callflow.models.business import (
    BusinessContext,
    BusinessProfile,
    CommunicationSummary,
    CustomerData,
    CustomerRelationship,
    CustomerSummary,
    FinancialActivity,
    FinancialSnapshot,
    IndustryContext,
    JobSummary,
    OperationalMetrics,
    RecentActivity,
    determine_customer_relationship,
    season_for,
    seasonal_patterns_for,
)
from callflow.services.business_data import BusinessDataProvider, Record

logger = logging.getLogger(LOGGER_NAME)


class _CacheEntry(NamedTuple):
    context: BusinessContext
    stored_at: float


class ContextCache:
    """Per-business snapshot cache with a time-to-live.

    Args:
        provider: Source of business data
        ttl_seconds: Age at which a snapshot is considered stale
        clock: Monotonic clock in seconds, injectable for tests
        max_entries: Optional bound on cached businesses; the oldest entry is evicted
    """

    def __init__(
        self,
        provider: BusinessDataProvider,
        ttl_seconds: float = CONTEXT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        max_entries: Optional[int] = None,
    ):
        self.provider = provider
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, _CacheEntry]" = OrderedDict()
        self._locks: Dict[str, asyncio.Lock] = {}
        self.hits = 0
        self.misses = 0

    def _fresh_entry(self, business_id: str) -> Optional[_CacheEntry]:
        entry = self._entries.get(business_id)
        if entry is not None and self.clock() - entry.stored_at < self.ttl_seconds:
            return entry
        return None

    async def get(self, business_id: str) -> BusinessContext:
        """Return the business context, refreshing it when missing or stale."""
        entry = self._fresh_entry(business_id)
        if entry is not None:
            self.hits += 1
            return entry.context

        lock = self._locks.setdefault(business_id, asyncio.Lock())
        async with lock:
            # Another waiter may have refreshed while we queued on the lock
            entry = self._fresh_entry(business_id)
            if entry is not None:
                self.hits += 1
                return entry.context

            self.misses += 1
            context = await self._build_context(business_id)
            self._store(business_id, context)
            return context

    def _store(self, business_id: str, context: BusinessContext) -> None:
        self._entries.pop(business_id, None)
        self._entries[business_id] = _CacheEntry(context, self.clock())
        if self.max_entries is not None:
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Evicted business context for {evicted}")

    def cached_business_ids(self) -> List[str]:
        return list(self._entries.keys())

    async def _build_context(self, business_id: str) -> BusinessContext:
        now = datetime.now(timezone.utc)
        since = now - timedelta(days=RECENT_ACTIVITY_WINDOW_DAYS)
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        logger.info(f"Refreshing business context for {business_id}")

        try:
            profile, activity, customers, financials, operations, industry_type = await asyncio.gather(
                self.provider.get_business_profile(business_id),
                self.provider.get_recent_activity(business_id, since, RECENT_ACTIVITY_LIMIT),
                self.provider.get_customers(business_id),
                self.provider.get_financial_aggregates(business_id, month_start),
                self.provider.get_operational_aggregates(business_id, since),
                self.provider.get_industry_type(business_id),
            )
        except NotFoundError:
            raise
        except Exception as e:
            logger.error(f"Context refresh failed for {business_id}: {e}", exc_info=True)
            raise ContextRefreshError(business_id, e) from e

        customer_summaries = [self._customer(row, now) for row in customers]
        return BusinessContext(
            business_id=business_id,
            business_profile=BusinessProfile(**profile),
            recent_activity=self._recent_activity(activity, now),
            customer_data=self._customer_data(customer_summaries, since),
            financial_snapshot=self._financial_snapshot(financials),
            operational_metrics=self._operational_metrics(operations),
            industry_context=IndustryContext(
                industry_type=industry_type,
                seasonal_patterns=seasonal_patterns_for(industry_type),
                current_season=season_for(now),
            ),
            fetched_at=now,
        )

    @staticmethod
    def _customer(row: Record, now: datetime) -> CustomerSummary:
        summary = CustomerSummary(**{k: v for k, v in row.items() if k in CustomerSummary.model_fields})
        relationship = determine_customer_relationship(summary.total_value, summary.last_contact, now)
        return summary.model_copy(update={"relationship": relationship})

    def _recent_activity(self, activity: Dict[str, List[Record]], now: datetime) -> RecentActivity:
        def rows(key: str, model) -> List[Any]:
            return [
                model(**{k: v for k, v in row.items() if k in model.model_fields})
                for row in activity.get(key, [])
            ]

        return RecentActivity(
            recent_jobs=rows("jobs", JobSummary),
            recent_customers=[self._customer(row, now) for row in activity.get("customers", [])],
            recent_communications=rows("communications", CommunicationSummary),
            recent_financials=rows("financials", FinancialActivity),
        )

    @staticmethod
    def _customer_data(customers: List[CustomerSummary], since: datetime) -> CustomerData:
        top = sorted(customers, key=lambda c: c.total_value, reverse=True)[:5]
        return CustomerData(
            total_customers=len(customers),
            active_customers=sum(
                1 for c in customers if c.last_contact is not None and c.last_contact >= since
            ),
            at_risk_customers=sum(1 for c in customers if c.relationship == CustomerRelationship.AT_RISK),
            vip_customers=sum(1 for c in customers if c.relationship == CustomerRelationship.VIP),
            top_customers=top,
        )

    @staticmethod
    def _financial_snapshot(financials: Record) -> FinancialSnapshot:
        revenue = float(financials.get("revenue", 0))
        expenses = float(financials.get("expenses", 0))
        margin = ((revenue - expenses) / revenue * 100) if revenue > 0 else 0.0
        return FinancialSnapshot(
            monthly_revenue=revenue,
            monthly_expenses=expenses,
            profit_margin=round(margin, 2),
            outstanding_invoices=float(financials.get("outstanding", 0)),
            overdue_invoices=int(financials.get("overdue_count", 0)),
            average_job_value=float(financials.get("average_job_value", 0)),
            cash_flow=revenue - expenses,
        )

    @staticmethod
    def _operational_metrics(operations: Record) -> OperationalMetrics:
        total = int(operations.get("total_jobs", 0))
        completed = int(operations.get("jobs_completed", 0))
        return OperationalMetrics(
            jobs_completed=completed,
            total_jobs=total,
            booking_rate=round(completed / total * 100, 2) if total else 0.0,
            average_response_minutes=float(operations.get("average_response_minutes", 0)),
            customer_satisfaction=float(operations.get("customer_satisfaction", 0)),
        )
