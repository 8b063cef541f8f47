"""
Business context snapshot models.

A BusinessContext is assembled by the context cache from several data provider
reads and is shared read-only by every conversation and workflow execution of
that business. All models here are frozen: a refresh produces a new snapshot,
it never edits the old one.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from callflow.config.constants import (
    AT_RISK_AFTER_DAYS,
    DEFAULT_BUSINESS_HOURS,
    DEFAULT_BUSINESS_NAME,
    DEFAULT_SERVICES,
    DEFAULT_TIME_SLOTS,
    REGULAR_CUSTOMER_VALUE,
    VIP_CUSTOMER_VALUE,
)


class FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True)


class CustomerRelationship(str, Enum):
    NEW = "new"
    REGULAR = "regular"
    VIP = "vip"
    AT_RISK = "at_risk"


class BusinessHours(FrozenModel):
    start: str = Field(DEFAULT_BUSINESS_HOURS[0], description="Opening time, HH:MM")
    end: str = Field(DEFAULT_BUSINESS_HOURS[1], description="Closing time, HH:MM")


class BusinessProfile(FrozenModel):
    id: str
    name: str = DEFAULT_BUSINESS_NAME
    business_type: str = "General"
    industry: str = "Services"
    size: int = 1
    location: str = "Unknown"
    phone: Optional[str] = None
    email: Optional[str] = None
    services: Tuple[str, ...] = DEFAULT_SERVICES
    business_hours: BusinessHours = Field(default_factory=BusinessHours)
    available_time_slots: Tuple[str, ...] = DEFAULT_TIME_SLOTS
    emergency_contact: Optional[str] = Field(
        None, description="Number paged when a caller reports an emergency"
    )


class JobSummary(FrozenModel):
    id: str
    title: str = ""
    status: str = "scheduled"
    value: float = 0.0
    scheduled_for: Optional[datetime] = None
    created_at: Optional[datetime] = None


class CustomerSummary(FrozenModel):
    id: str
    name: str = ""
    phone: Optional[str] = None
    email: Optional[str] = None
    total_value: float = 0.0
    last_contact: Optional[datetime] = None
    relationship: CustomerRelationship = CustomerRelationship.NEW

    @field_validator("last_contact")
    def assume_utc(cls, v):
        """Treat naive timestamps as UTC so they compare with aware ones."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class CommunicationSummary(FrozenModel):
    id: str
    channel: str = "phone"
    direction: str = "inbound"
    summary: str = ""
    created_at: Optional[datetime] = None


class FinancialActivity(FrozenModel):
    id: str
    kind: str = "invoice"
    amount: float = 0.0
    status: str = "pending"
    created_at: Optional[datetime] = None


class RecentActivity(FrozenModel):
    recent_jobs: Tuple[JobSummary, ...] = ()
    recent_customers: Tuple[CustomerSummary, ...] = ()
    recent_communications: Tuple[CommunicationSummary, ...] = ()
    recent_financials: Tuple[FinancialActivity, ...] = ()


class CustomerData(FrozenModel):
    total_customers: int = 0
    active_customers: int = 0
    at_risk_customers: int = 0
    vip_customers: int = 0
    top_customers: Tuple[CustomerSummary, ...] = ()


class FinancialSnapshot(FrozenModel):
    monthly_revenue: float = 0.0
    monthly_expenses: float = 0.0
    profit_margin: float = Field(0.0, description="Percentage of revenue kept as profit")
    outstanding_invoices: float = 0.0
    overdue_invoices: int = 0
    average_job_value: float = 0.0
    cash_flow: float = 0.0


class OperationalMetrics(FrozenModel):
    jobs_completed: int = 0
    total_jobs: int = 0
    booking_rate: float = Field(0.0, description="Percentage of jobs that completed")
    average_response_minutes: float = 0.0
    customer_satisfaction: float = 0.0


class SeasonalPattern(FrozenModel):
    season: str
    demand: str
    services: Tuple[str, ...] = ()


class IndustryContext(FrozenModel):
    industry_type: str = "General"
    seasonal_patterns: Tuple[SeasonalPattern, ...] = ()
    current_season: str = ""


class BusinessInsight(FrozenModel):
    kind: str
    priority: str
    title: str
    description: str
    recommendation: str


class BusinessContext(FrozenModel):
    """Immutable snapshot of everything the orchestration layer knows about a business."""

    business_id: str
    business_profile: BusinessProfile
    recent_activity: RecentActivity = Field(default_factory=RecentActivity)
    customer_data: CustomerData = Field(default_factory=CustomerData)
    financial_snapshot: FinancialSnapshot = Field(default_factory=FinancialSnapshot)
    operational_metrics: OperationalMetrics = Field(default_factory=OperationalMetrics)
    industry_context: IndustryContext = Field(default_factory=IndustryContext)
    fetched_at: datetime


SEASONAL_PATTERNS: Dict[str, Tuple[SeasonalPattern, ...]] = {
    "hvac": (
        SeasonalPattern(season="summer", demand="high", services=("ac_repair", "ac_installation")),
        SeasonalPattern(season="winter", demand="high", services=("heating_repair", "furnace_maintenance")),
        SeasonalPattern(season="spring", demand="medium", services=("maintenance", "tune_ups")),
        SeasonalPattern(season="fall", demand="medium", services=("heating_prep", "maintenance")),
    ),
    "landscaping": (
        SeasonalPattern(season="spring", demand="high", services=("planting", "lawn_care")),
        SeasonalPattern(season="summer", demand="high", services=("maintenance", "irrigation")),
        SeasonalPattern(season="fall", demand="medium", services=("leaf_removal", "winterizing")),
        SeasonalPattern(season="winter", demand="low", services=("snow_removal",)),
    ),
    "personal care": (
        SeasonalPattern(season="spring", demand="medium", services=("styling",)),
        SeasonalPattern(season="summer", demand="high", services=("styling", "treatments")),
        SeasonalPattern(season="fall", demand="medium", services=("styling",)),
        SeasonalPattern(season="winter", demand="high", services=("holiday_styling", "treatments")),
    ),
}


def season_for(moment: datetime) -> str:
    """Northern-hemisphere meteorological season of a date."""
    month = moment.month
    if month in (12, 1, 2):
        return "winter"
    if month in (3, 4, 5):
        return "spring"
    if month in (6, 7, 8):
        return "summer"
    return "fall"


def seasonal_patterns_for(industry_type: str) -> Tuple[SeasonalPattern, ...]:
    return SEASONAL_PATTERNS.get(industry_type.strip().lower(), ())


def determine_customer_relationship(
    total_value: float, last_contact: Optional[datetime], now: datetime
) -> CustomerRelationship:
    """Classify a customer from lifetime value and recency of contact.

    Args:
        total_value: Lifetime revenue attributed to the customer
        last_contact: When the business last heard from the customer, if ever
        now: Reference time, timezone-aware

    Returns:
        The relationship bucket used for prioritisation
    """
    if not total_value and last_contact is None:
        return CustomerRelationship.NEW
    if last_contact is not None and (now - last_contact).days > AT_RISK_AFTER_DAYS:
        return CustomerRelationship.AT_RISK
    if total_value >= VIP_CUSTOMER_VALUE:
        return CustomerRelationship.VIP
    if total_value >= REGULAR_CUSTOMER_VALUE:
        return CustomerRelationship.REGULAR
    return CustomerRelationship.NEW
