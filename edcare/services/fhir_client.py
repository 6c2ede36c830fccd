"""FHIR R4 client for the clinical data the risk and schedule services consume.

Reads a patient's Encounters, Conditions and MedicationRequests from a FHIR
server (the SMART sandbox with Synthea data by default) and, when write-back
is enabled, records dose events as MedicationStatement resources and raises a
Flag for high-risk patients.

The SMART launch / OAuth handshake is not handled here; the server is
expected to accept the requests as configured (open sandbox or a bearer
token supplied by the caller).
"""

import asyncio
import logging

import httpx

from edcare.config import FHIR_BASE_URL, FHIR_TIMEOUT
from edcare.models.dosage import DoseEventRecord

logger = logging.getLogger(__name__)

FHIR_HEADERS = {
    "Accept": "application/fhir+json",
}

HIGH_RISK_FLAG_CODE = {
    "system": "http://snomed.info/sct",
    "code": "225915006",
    "display": "High risk patient",
}


def _extract_entries(bundle: dict) -> list[dict]:
    """Extract resource entries from a FHIR Bundle."""
    if not bundle or bundle.get("resourceType") != "Bundle":
        return []
    return [e["resource"] for e in bundle.get("entry", []) if "resource" in e]


def _headers(token: str | None = None) -> dict[str, str]:
    if not token:
        return FHIR_HEADERS
    return {**FHIR_HEADERS, "Authorization": f"Bearer {token}"}


async def _search(
    client: httpx.AsyncClient,
    base_url: str,
    resource_type: str,
    params: dict[str, str],
    token: str | None = None,
) -> list[dict]:
    resp = await client.get(
        f"{base_url}/{resource_type}",
        params=params,
        headers=_headers(token),
    )
    resp.raise_for_status()
    return _extract_entries(resp.json())


async def get_encounters(
    client: httpx.AsyncClient,
    base_url: str,
    patient_id: str,
    token: str | None = None,
) -> list[dict]:
    """Fetch the patient's most recent Encounters (newest first)."""
    return await _search(
        client, base_url, "Encounter",
        {"patient": patient_id, "_sort": "-date", "_count": "100"},
        token,
    )


async def get_conditions(
    client: httpx.AsyncClient,
    base_url: str,
    patient_id: str,
    token: str | None = None,
) -> list[dict]:
    """Fetch active, recurring and remitting Conditions."""
    return await _search(
        client, base_url, "Condition",
        {"patient": patient_id, "clinical-status": "active,recurrence,remission"},
        token,
    )


async def get_medication_requests(
    client: httpx.AsyncClient,
    base_url: str,
    patient_id: str,
    token: str | None = None,
) -> list[dict]:
    """Fetch active and completed MedicationRequests, newest first."""
    return await _search(
        client, base_url, "MedicationRequest",
        {
            "patient": patient_id,
            "status": "active,completed",
            "_sort": "-authoredon",
            "_count": "50",
        },
        token,
    )


async def fetch_clinical_data(
    patient_id: str,
    base_url: str | None = None,
    token: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> dict[str, list[dict]]:
    """Fetch encounters, conditions and medications concurrently.

    A collection that fails to load is logged and returned as an empty list
    so that callers can still work from partial data.

    Returns:
        Dict with keys: encounters, conditions, medications.
    """
    base_url = (base_url or FHIR_BASE_URL).rstrip("/")

    async def _gather(c: httpx.AsyncClient) -> list:
        fetchers = [
            get_encounters(c, base_url, patient_id, token),
            get_conditions(c, base_url, patient_id, token),
            get_medication_requests(c, base_url, patient_id, token),
        ]
        return await asyncio.gather(*fetchers, return_exceptions=True)

    if client is None:
        async with httpx.AsyncClient(timeout=FHIR_TIMEOUT) as own_client:
            results_list = await _gather(own_client)
    else:
        results_list = await _gather(client)

    keys = ["encounters", "conditions", "medications"]
    result: dict[str, list[dict]] = {}
    for key, value in zip(keys, results_list, strict=True):
        if isinstance(value, BaseException):
            logger.warning("Failed to fetch %s for patient %s: %s", key, patient_id, value)
            result[key] = []
        else:
            result[key] = list(value)
    return result


# --- Write-back ---


def build_medication_statement(patient_id: str, event: DoseEventRecord) -> dict:
    """MedicationStatement recording a single taken or missed dose."""
    return {
        "resourceType": "MedicationStatement",
        "status": "active" if event.taken else "on-hold",
        "medicationCodeableConcept": {"text": event.medication},
        "subject": {"reference": f"Patient/{patient_id}"},
        "effectiveDateTime": event.recorded_at,
        "dateAsserted": event.recorded_at,
        "note": [{
            "text": (
                f"Medication taken as prescribed ({event.scheduled_time})"
                if event.taken
                else f"Medication dose missed ({event.scheduled_time})"
            ),
        }],
    }


def build_high_risk_flag(patient_id: str, reason: str) -> dict:
    return {
        "resourceType": "Flag",
        "status": "active",
        "category": [{
            "coding": [{
                "system": "http://terminology.hl7.org/CodeSystem/flag-category",
                "code": "clinical",
                "display": "Clinical",
            }],
        }],
        "code": {"coding": [HIGH_RISK_FLAG_CODE], "text": reason},
        "subject": {"reference": f"Patient/{patient_id}"},
    }


async def _create(
    resource: dict,
    base_url: str | None = None,
    token: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> dict:
    base_url = (base_url or FHIR_BASE_URL).rstrip("/")
    url = f"{base_url}/{resource['resourceType']}"
    headers = {**_headers(token), "Content-Type": "application/fhir+json"}

    if client is None:
        async with httpx.AsyncClient(timeout=FHIR_TIMEOUT) as own_client:
            resp = await own_client.post(url, json=resource, headers=headers)
    else:
        resp = await client.post(url, json=resource, headers=headers)
    resp.raise_for_status()
    created = resp.json()
    logger.info("Created %s/%s", resource["resourceType"], created.get("id"))
    return created


async def create_medication_statement(
    patient_id: str,
    event: DoseEventRecord,
    base_url: str | None = None,
    token: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> dict:
    return await _create(
        build_medication_statement(patient_id, event),
        base_url=base_url, token=token, client=client,
    )


async def create_high_risk_flag(
    patient_id: str,
    reason: str,
    base_url: str | None = None,
    token: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> dict:
    return await _create(
        build_high_risk_flag(patient_id, reason),
        base_url=base_url, token=token, client=client,
    )


def bearer_token(authorization: str | None) -> str | None:
    """Token from an ``Authorization: Bearer ...`` header, forwarded to the FHIR server."""
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return None
