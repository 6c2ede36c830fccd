import logging
from datetime import datetime

from fastapi import APIRouter, Header

from edcare.config import OVERDUE_GRACE_MINUTES
from edcare.models.dosage import (
    AdherenceReport,
    AdherenceRequest,
    ComplexityRequest,
    MedicationSchedule,
    NextDose,
    NextDoseRequest,
    OverdueRequest,
    OverdueResponse,
    ScheduleResponse,
    TextScheduleRequest,
    TimingScheduleRequest,
)
from edcare.services.dosage import (
    adherence_rate,
    dosage_text,
    format_for_display,
    generate_reminder_message,
    is_complex_schedule,
    is_overdue,
    next_dose_time,
    resolve_medication_schedule,
    resolve_schedule,
    resolve_schedule_from_timing,
)
from edcare.services.fhir_client import bearer_token, fetch_clinical_data
from edcare.services.risk import medication_display

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["schedule"])


def _schedule_response(times: list[str], **extra) -> ScheduleResponse:
    return ScheduleResponse(
        times=times,
        display_times=[format_for_display(t) for t in times],
        is_complex=is_complex_schedule(times),
        **extra,
    )


@router.post("/schedule/text", response_model=ScheduleResponse)
async def schedule_from_text(body: TextScheduleRequest):
    """Resolve free-text dosage instructions into daily clock times."""
    resolved = resolve_schedule(body.text)
    return _schedule_response(resolved.times, kind=resolved.kind, rule=resolved.rule)


@router.post("/schedule/timing", response_model=ScheduleResponse)
async def schedule_from_timing(body: TimingScheduleRequest):
    """Resolve a FHIR Timing object into daily clock times."""
    return _schedule_response(resolve_schedule_from_timing(body.timing))


@router.post("/schedule/next-dose", response_model=NextDose | None)
async def next_dose(body: NextDoseRequest):
    return next_dose_time(body.schedule, body.now or datetime.now())


@router.post("/schedule/overdue", response_model=OverdueResponse)
async def overdue(body: OverdueRequest):
    grace = OVERDUE_GRACE_MINUTES if body.grace_minutes is None else body.grace_minutes
    return OverdueResponse(
        scheduled_time=body.scheduled_time,
        overdue=is_overdue(body.scheduled_time, body.now or datetime.now(), grace),
    )


@router.post("/schedule/complexity")
async def complexity(body: ComplexityRequest):
    return {"schedule": body.schedule, "is_complex": is_complex_schedule(body.schedule)}


@router.post("/schedule/adherence", response_model=AdherenceReport)
async def adherence(body: AdherenceRequest):
    return AdherenceReport(
        taken=body.taken,
        missed=body.missed,
        adherence_rate=adherence_rate(body.taken, body.missed),
    )


@router.get("/patients/{patient_id}/schedules", response_model=list[MedicationSchedule])
async def patient_schedules(patient_id: str, authorization: str | None = Header(None)):
    """Daily schedule for each of a patient's medication requests."""
    data = await fetch_clinical_data(patient_id, token=bearer_token(authorization))
    now = datetime.now()
    schedules = []
    for med in data["medications"]:
        times = resolve_medication_schedule(med)
        name = medication_display(med) or "Medication"
        instructions = dosage_text(med)
        schedules.append(MedicationSchedule(
            medication=name,
            times=times,
            display_times=[format_for_display(t) for t in times],
            is_complex=is_complex_schedule(times),
            next_dose=next_dose_time(times, now),
            reminders=[generate_reminder_message(name, t, instructions) for t in times],
        ))
    logger.info("Resolved %d medication schedules for patient %s", len(schedules), patient_id)
    return schedules
