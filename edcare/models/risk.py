"""Pydantic models for ED-utilization risk assessment."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class RiskTier(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class RiskConvention(str, Enum):
    """Which threshold table turns visit counts into a tier.

    ``dual_window`` looks at both the 12- and 24-month counts.
    ``single_window`` only uses the 12-month count and is meant for callers
    that cannot supply a 24-month history.
    """
    DUAL_WINDOW = "dual_window"
    SINGLE_WINDOW = "single_window"


class RiskSummary(BaseModel):
    """Risk tier plus the evidence it was derived from.

    Recomputed on every call; never stored.
    """
    ed_visit_count_12_months: int = Field(0, ge=0)
    ed_visit_count_24_months: int = Field(0, ge=0)
    risk_tier: RiskTier = RiskTier.LOW
    chronic_conditions: list[str] = []
    has_high_risk_medication: bool = False
    has_ed_history: bool = False
    convention: RiskConvention = RiskConvention.DUAL_WINDOW


class RiskFactor(BaseModel):
    level: str = ""
    text: str = ""


class VisitPatterns(BaseModel):
    time_of_day: dict[str, int] = {}
    day_of_week: dict[str, int] = {}
    reasons: dict[str, int] = {}
    seasonal: dict[str, int] = {}


class MonthlyVisits(BaseModel):
    month: str
    visits: int = 0


class RiskAssessment(BaseModel):
    summary: RiskSummary
    recommendations: list[str] = []
    risk_factors: list[RiskFactor] = []
    visit_patterns: VisitPatterns = VisitPatterns()
    monthly_visits: list[MonthlyVisits] = []
    reference_time: str = ""


class RiskSummaryRequest(BaseModel):
    encounters: list[dict[str, Any]] = []
    conditions: list[dict[str, Any]] = []
    medications: list[dict[str, Any]] = []
    reference_time: datetime | None = None
    convention: RiskConvention | None = None


class RiskTierRequest(BaseModel):
    count_12_months: int = Field(0, ge=0)
    count_24_months: int = Field(0, ge=0)
    convention: RiskConvention = RiskConvention.DUAL_WINDOW


class RiskTierResponse(BaseModel):
    risk_tier: RiskTier
    convention: RiskConvention
