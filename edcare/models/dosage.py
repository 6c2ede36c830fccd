"""Pydantic models for medication schedules and adherence tracking."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ScheduleKind(str, Enum):
    FIXED = "fixed"
    PRN = "prn"
    UNRECOGNIZED = "unrecognized"


class ResolvedSchedule(BaseModel):
    """Schedule plus how it was derived.

    ``times`` is empty both for PRN and for text no rule understood;
    ``kind`` tells the two apart.
    """
    times: list[str] = []
    kind: ScheduleKind = ScheduleKind.UNRECOGNIZED
    rule: str | None = None


class NextDose(BaseModel):
    time: str
    is_today: bool


class DoseEvent(BaseModel):
    scheduled_time: str = Field(..., pattern=r"^\d{2}:\d{2}$")
    taken: bool
    recorded_at: str = ""


class DoseEventCreate(BaseModel):
    medication: str = Field(..., min_length=1)
    scheduled_time: str = Field(..., pattern=r"^\d{2}:\d{2}$")
    taken: bool


class DoseEventRecord(BaseModel):
    id: str
    patient_id: str
    medication: str
    scheduled_time: str
    taken: bool
    recorded_at: str
    fhir_statement_id: str | None = None


class AdherenceReport(BaseModel):
    patient_id: str = ""
    taken: int = 0
    missed: int = 0
    adherence_rate: int = 100


class MedicationSchedule(BaseModel):
    medication: str
    times: list[str] = []
    display_times: list[str] = []
    is_complex: bool = False
    next_dose: NextDose | None = None
    reminders: list[str] = []


class TextScheduleRequest(BaseModel):
    text: str = ""


class TimingScheduleRequest(BaseModel):
    timing: dict[str, Any] = {}


class ScheduleResponse(BaseModel):
    times: list[str] = []
    display_times: list[str] = []
    kind: ScheduleKind | None = None
    rule: str | None = None
    is_complex: bool = False


class NextDoseRequest(BaseModel):
    schedule: list[str] = []
    now: datetime | None = None


class OverdueRequest(BaseModel):
    scheduled_time: str = Field(..., pattern=r"^\d{2}:\d{2}$")
    now: datetime | None = None
    grace_minutes: int | None = Field(None, ge=0)


class OverdueResponse(BaseModel):
    scheduled_time: str
    overdue: bool


class ComplexityRequest(BaseModel):
    schedule: list[str] = []


class AdherenceRequest(BaseModel):
    taken: int = Field(0, ge=0)
    missed: int = Field(0, ge=0)
