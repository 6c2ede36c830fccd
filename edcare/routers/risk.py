import logging
from datetime import UTC, datetime

import httpx
from fastapi import APIRouter, Header

from edcare.config import FHIR_WRITEBACK_ENABLED, RISK_CONVENTION
from edcare.models.risk import (
    RiskAssessment,
    RiskConvention,
    RiskSummaryRequest,
    RiskTier,
    RiskTierRequest,
    RiskTierResponse,
)
from edcare.services.fhir_client import bearer_token, create_high_risk_flag, fetch_clinical_data
from edcare.services.risk import assess, tier_for_counts

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["risk"])


def default_convention() -> RiskConvention:
    try:
        return RiskConvention(RISK_CONVENTION)
    except ValueError:
        logger.warning("Unknown RISK_CONVENTION %r, using dual_window", RISK_CONVENTION)
        return RiskConvention.DUAL_WINDOW


@router.post("/risk/summary", response_model=RiskAssessment)
async def summarize_risk(body: RiskSummaryRequest):
    """Assess ED-utilization risk from FHIR resources supplied by the caller."""
    reference_time = body.reference_time or datetime.now(UTC)
    return assess(
        body.encounters,
        body.conditions,
        body.medications,
        reference_time,
        body.convention or default_convention(),
    )


@router.post("/risk/tier", response_model=RiskTierResponse)
async def risk_tier(body: RiskTierRequest):
    """Map raw visit counts to a tier under the chosen convention."""
    tier = tier_for_counts(body.count_12_months, body.count_24_months, body.convention)
    return RiskTierResponse(risk_tier=tier, convention=body.convention)


@router.get("/patients/{patient_id}/risk", response_model=RiskAssessment)
async def patient_risk(
    patient_id: str,
    convention: RiskConvention | None = None,
    authorization: str | None = Header(None),
):
    """Fetch a patient's clinical data from FHIR and assess it."""
    token = bearer_token(authorization)
    data = await fetch_clinical_data(patient_id, token=token)
    reference_time = datetime.now(UTC)
    assessment = assess(
        data["encounters"],
        data["conditions"],
        data["medications"],
        reference_time,
        convention or default_convention(),
    )

    if FHIR_WRITEBACK_ENABLED and assessment.summary.risk_tier == RiskTier.HIGH:
        try:
            await create_high_risk_flag(
                patient_id,
                "High risk per ED utilization and comorbidity.",
                token=token,
            )
        except httpx.HTTPError as exc:
            logger.warning("Failed to flag high-risk patient %s: %s", patient_id, exc)

    return assessment
