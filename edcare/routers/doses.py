import logging
import uuid
from datetime import UTC, datetime

import httpx
from fastapi import APIRouter, Header, HTTPException

from edcare.config import FHIR_WRITEBACK_ENABLED
from edcare.database import get_db
from edcare.models.dosage import AdherenceReport, DoseEventCreate, DoseEventRecord
from edcare.services.dosage import adherence_rate
from edcare.services.fhir_client import bearer_token, create_medication_statement

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/patients", tags=["doses"])


def _row_to_record(row) -> DoseEventRecord:
    return DoseEventRecord(
        id=row["id"],
        patient_id=row["patient_id"],
        medication=row["medication"],
        scheduled_time=row["scheduled_time"],
        taken=bool(row["taken"]),
        recorded_at=row["recorded_at"],
        fhir_statement_id=row["fhir_statement_id"],
    )


@router.post("/{patient_id}/doses", response_model=DoseEventRecord)
async def record_dose(
    patient_id: str,
    body: DoseEventCreate,
    authorization: str | None = Header(None),
):
    """Record a scheduled dose as taken or missed."""
    record = DoseEventRecord(
        id=str(uuid.uuid4()),
        patient_id=patient_id,
        medication=body.medication,
        scheduled_time=body.scheduled_time,
        taken=body.taken,
        recorded_at=datetime.now(UTC).isoformat(),
    )

    if FHIR_WRITEBACK_ENABLED:
        try:
            created = await create_medication_statement(
                patient_id, record, token=bearer_token(authorization),
            )
        except httpx.HTTPError as exc:
            logger.error("MedicationStatement write-back failed for %s: %s", patient_id, exc)
            raise HTTPException(status_code=502, detail="FHIR write-back failed") from exc
        record.fhir_statement_id = created.get("id")

    db = await get_db()
    await db.execute(
        """INSERT INTO dose_events
           (id, patient_id, medication, scheduled_time, taken, recorded_at, fhir_statement_id)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (
            record.id,
            record.patient_id,
            record.medication,
            record.scheduled_time,
            int(record.taken),
            record.recorded_at,
            record.fhir_statement_id,
        ),
    )
    await db.commit()
    logger.info(
        "Recorded %s dose of %s at %s for patient %s",
        "taken" if record.taken else "missed", record.medication, record.scheduled_time, patient_id,
    )
    return record


@router.get("/{patient_id}/doses", response_model=list[DoseEventRecord])
async def list_doses(patient_id: str, medication: str | None = None):
    """List recorded dose events, newest first."""
    db = await get_db()
    if medication:
        rows = await db.fetch_all(
            "SELECT * FROM dose_events WHERE patient_id = ? AND medication = ? ORDER BY recorded_at DESC",
            (patient_id, medication),
        )
    else:
        rows = await db.fetch_all(
            "SELECT * FROM dose_events WHERE patient_id = ? ORDER BY recorded_at DESC",
            (patient_id,),
        )
    return [_row_to_record(row) for row in rows]


@router.delete("/{patient_id}/doses/{event_id}")
async def delete_dose(patient_id: str, event_id: str):
    """Remove a dose event recorded in error."""
    db = await get_db()
    row = await db.fetch_one(
        "SELECT id FROM dose_events WHERE id = ? AND patient_id = ?",
        (event_id, patient_id),
    )
    if not row:
        raise HTTPException(status_code=404, detail="Dose event not found")

    await db.execute("DELETE FROM dose_events WHERE id = ?", (event_id,))
    await db.commit()
    return {"id": event_id, "deleted": True}


@router.get("/{patient_id}/adherence", response_model=AdherenceReport)
async def patient_adherence(patient_id: str, medication: str | None = None):
    """Adherence rate over every recorded dose event for the patient."""
    db = await get_db()
    query = "SELECT taken, COUNT(*) AS count FROM dose_events WHERE patient_id = ?"
    params: list = [patient_id]
    if medication:
        query += " AND medication = ?"
        params.append(medication)
    rows = await db.fetch_all(query + " GROUP BY taken", params)

    taken = sum(row["count"] for row in rows if row["taken"])
    missed = sum(row["count"] for row in rows if not row["taken"])
    return AdherenceReport(
        patient_id=patient_id,
        taken=taken,
        missed=missed,
        adherence_rate=adherence_rate(taken, missed),
    )
