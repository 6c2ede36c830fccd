"""ED-utilization risk classifier.

Turns a patient's FHIR Encounter / Condition / MedicationRequest history into
a LOW / MEDIUM / HIGH tier with the evidence behind it:

- Encounters are classified as ED visits with a loose text
  heuristic over their class and type codes.
- ED visits are counted in trailing 12- and 24-month windows.
- Counts map to a tier through a fixed threshold table (two named variants).
- Chronic conditions and high-risk medication classes are surfaced alongside.

Every function here is pure and total: malformed or missing fields count as
"no signal" rather than raising. Time-dependent functions take an explicit
reference time; the only wall-clock read is in ``summarize``, the caller-facing
wrapper around ``summarize_at``.
"""

import logging
import re
from datetime import UTC, datetime
from typing import Any

from dateutil.parser import isoparse
from dateutil.relativedelta import relativedelta

from edcare.models.risk import (
    MonthlyVisits,
    RiskAssessment,
    RiskConvention,
    RiskFactor,
    RiskSummary,
    RiskTier,
    VisitPatterns,
)

logger = logging.getLogger(__name__)

ED_PATTERN = re.compile(r"emergency|ED|ER|urgent", re.IGNORECASE)
HIGH_RISK_MEDICATION_PATTERN = re.compile(r"fentanyl|oxycodone|morphine|opioid", re.IGNORECASE)

DAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

TIER_RECOMMENDATIONS = {
    RiskTier.HIGH: [
        "Immediate care coordination required",
        "Weekly follow-up with primary care provider",
        "Consider enrollment in case management program",
        "Daily medication adherence monitoring",
    ],
    RiskTier.MEDIUM: [
        "Schedule primary care follow-up within 7 days",
        "Review medication regimen with pharmacist",
        "Consider telehealth check-ins",
        "Patient education on warning signs",
    ],
    RiskTier.LOW: [
        "Continue regular primary care visits",
        "Maintain medication adherence",
        "Use patient portal for non-urgent concerns",
    ],
}

# (condition pattern, extra recommendations), checked in order
CONDITION_RECOMMENDATIONS = [
    (re.compile(r"diabetes|diabetic", re.IGNORECASE), [
        "Monitor blood glucose daily",
        "Nutrition counseling recommended",
    ]),
    (re.compile(r"heart|cardiac|hypertension", re.IGNORECASE), [
        "Monitor blood pressure daily",
        "Cardiac rehabilitation referral",
    ]),
    (re.compile(r"copd|asthma|respiratory", re.IGNORECASE), [
        "Ensure inhaler technique is correct",
        "Pulmonary rehabilitation referral",
    ]),
]


# --- Field extraction helpers ---


def _unwrap(item: Any) -> dict:
    """Accept either a bare resource or a Bundle entry wrapping one."""
    if not isinstance(item, dict):
        return {}
    resource = item.get("resource")
    if isinstance(resource, dict):
        return resource
    return item


def _as_list(value: Any) -> list:
    if isinstance(value, list):
        return value
    if value is None:
        return []
    return [value]


def _concept_label(concept: Any) -> str:
    """Label of a CodeableConcept: ``text``, else the first coding display."""
    if not isinstance(concept, dict):
        return ""
    text = concept.get("text")
    if isinstance(text, str) and text.strip():
        return text
    for coding in _as_list(concept.get("coding")):
        if isinstance(coding, dict):
            display = coding.get("display")
            if isinstance(display, str) and display.strip():
                return display
    return ""


def _class_parts(encounter_class: Any) -> list[str]:
    # R4 carries a single Coding, R5 a list of CodeableConcepts; bare strings
    # are taken as codes
    parts: list[str] = []
    for entry in _as_list(encounter_class):
        if isinstance(entry, str):
            if entry:
                parts.append(entry)
            continue
        if not isinstance(entry, dict):
            continue
        codings = [entry, *_as_list(entry.get("coding"))]
        for coding in codings:
            if not isinstance(coding, dict):
                continue
            for key in ("code", "display"):
                value = coding.get(key)
                if isinstance(value, str) and value:
                    parts.append(value)
    return parts


def _type_codes(types: Any) -> list[str]:
    codes: list[str] = []
    for concept in _as_list(types):
        if isinstance(concept, str):
            if concept:
                codes.append(concept)
            continue
        if not isinstance(concept, dict):
            continue
        for coding in _as_list(concept.get("coding")):
            if isinstance(coding, dict):
                code = coding.get("code")
                if isinstance(code, str) and code:
                    codes.append(code)
    return codes


def parse_fhir_datetime(value: Any) -> datetime | None:
    """Parse a FHIR ``date`` / ``dateTime`` into an aware datetime.

    Partial dates (``2024``, ``2024-05``) are accepted; naive values are taken
    as UTC. Returns None for anything unparseable.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = isoparse(value.strip())
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _encounter_start(encounter: dict) -> datetime | None:
    period = encounter.get("period")
    if not isinstance(period, dict):
        return None
    return parse_fhir_datetime(period.get("start"))


def _aware(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment


# --- Classification and counting ---


def classify_ed_encounter(encounter: Any) -> bool:
    """Heuristically decide whether an encounter was an ED visit.

    Class code/display and every type coding code (or bare string codes) are
    joined and searched for ``emergency|ED|ER|urgent`` case-insensitively.
    The match is a substring match, so urgent-care visits and words like
    "encounter" also hit.
    """
    resource = _unwrap(encounter)
    if not resource:
        return False
    parts = _class_parts(resource.get("class")) + _type_codes(resource.get("type"))
    return bool(ED_PATTERN.search(" ".join(parts)))


def ed_visit_dates(encounters: Any) -> list[datetime]:
    """Start timestamps of every dated ED encounter, in input order."""
    dates = []
    for item in _as_list(encounters):
        resource = _unwrap(item)
        if not classify_ed_encounter(resource):
            continue
        start = _encounter_start(resource)
        if start is not None:
            dates.append(start)
    return dates


def count_ed_visits(encounters: Any, reference_date: datetime, window_months: int) -> int:
    """Count dated ED encounters starting on or after ``reference_date - window_months``."""
    if not isinstance(encounters, list):
        return 0
    cutoff = _aware(reference_date) - relativedelta(months=window_months)
    return sum(1 for start in ed_visit_dates(encounters) if start >= cutoff)


def has_ed_history(encounters: Any) -> bool:
    """True if any encounter classifies as ED, dated or not."""
    return any(classify_ed_encounter(item) for item in _as_list(encounters))


# --- Tiering ---


def compute_risk_tier(count_12: int, count_24: int) -> RiskTier:
    """Dual-window threshold table; first matching row wins."""
    if count_12 >= 4 or count_24 >= 8:
        return RiskTier.HIGH
    if count_12 >= 2 or count_24 >= 4:
        return RiskTier.MEDIUM
    return RiskTier.LOW


def compute_risk_tier_single_window(count_12: int) -> RiskTier:
    """Tier from the 12-month count alone."""
    if count_12 >= 4:
        return RiskTier.HIGH
    if count_12 >= 2:
        return RiskTier.MEDIUM
    return RiskTier.LOW


def tier_for_counts(
    count_12: int,
    count_24: int,
    convention: RiskConvention = RiskConvention.DUAL_WINDOW,
) -> RiskTier:
    if convention == RiskConvention.SINGLE_WINDOW:
        return compute_risk_tier_single_window(count_12)
    return compute_risk_tier(count_12, count_24)


# --- Summary ---


def chronic_condition_labels(conditions: Any) -> list[str]:
    """Distinct non-empty condition labels in order of first appearance."""
    labels: list[str] = []
    for item in _as_list(conditions):
        label = _concept_label(_unwrap(item).get("code"))
        if label and label not in labels:
            labels.append(label)
    return labels


def medication_display(medication: Any) -> str:
    resource = _unwrap(medication)
    label = _concept_label(resource.get("medicationCodeableConcept"))
    if label:
        return label
    reference = resource.get("medicationReference")
    if isinstance(reference, dict) and isinstance(reference.get("display"), str):
        return reference["display"]
    return ""


def has_high_risk_medication(medications: Any) -> bool:
    return any(
        HIGH_RISK_MEDICATION_PATTERN.search(medication_display(med))
        for med in _as_list(medications)
    )


def summarize(
    encounters: Any,
    conditions: Any,
    medications: Any,
    reference_time: datetime | None = None,
    convention: RiskConvention = RiskConvention.DUAL_WINDOW,
) -> RiskSummary:
    """Caller-facing entry point: reads the clock once when no time is given."""
    if reference_time is None:
        reference_time = datetime.now(UTC)
    return summarize_at(encounters, conditions, medications, reference_time, convention)


def summarize_at(
    encounters: Any,
    conditions: Any,
    medications: Any,
    reference_time: datetime,
    convention: RiskConvention = RiskConvention.DUAL_WINDOW,
) -> RiskSummary:
    """Build a RiskSummary from raw FHIR collections.

    ``reference_time`` anchors both windows.
    """
    encounters = encounters if isinstance(encounters, list) else []
    conditions = conditions if isinstance(conditions, list) else []
    medications = medications if isinstance(medications, list) else []

    count_12 = count_ed_visits(encounters, reference_time, 12)
    count_24 = count_ed_visits(encounters, reference_time, 24)
    tier = tier_for_counts(count_12, count_24, convention)

    summary = RiskSummary(
        ed_visit_count_12_months=count_12,
        ed_visit_count_24_months=count_24,
        risk_tier=tier,
        chronic_conditions=chronic_condition_labels(conditions),
        has_high_risk_medication=has_high_risk_medication(medications),
        has_ed_history=has_ed_history(encounters),
        convention=convention,
    )
    logger.debug(
        "Risk summary: %d/%d ED visits (12m/24m) -> %s",
        count_12, count_24, tier.value,
    )
    return summary


# --- Supporting analytics ---


def intervention_recommendations(tier: RiskTier, chronic_conditions: list[str]) -> list[str]:
    """Care-coordination suggestions for a tier, plus condition-specific ones."""
    recommendations = list(TIER_RECOMMENDATIONS.get(tier, TIER_RECOMMENDATIONS[RiskTier.LOW]))
    for pattern, extra in CONDITION_RECOMMENDATIONS:
        if any(pattern.search(condition) for condition in chronic_conditions):
            recommendations.extend(extra)
    return recommendations


def risk_factors(encounters: Any, reference_time: datetime) -> list[RiskFactor]:
    factors = []
    last_year = count_ed_visits(encounters, reference_time, 12)
    last_two_years = count_ed_visits(encounters, reference_time, 24)
    last_month = count_ed_visits(encounters, reference_time, 1)

    if last_year >= 4:
        factors.append(RiskFactor(
            level="high",
            text=f"{last_year} ED visits in the past year (threshold: 4)",
        ))
    if last_two_years >= 8:
        factors.append(RiskFactor(
            level="high",
            text=f"{last_two_years} ED visits in the past 2 years (threshold: 8)",
        ))
    if last_month >= 2:
        factors.append(RiskFactor(
            level="urgent",
            text=f"{last_month} ED visits in the past month - immediate intervention needed",
        ))
    return factors


def _time_slot(hour: int) -> str:
    if hour < 8:
        return "night"
    if hour < 17:
        return "day"
    return "evening"


def _season(month: int) -> str:
    if month <= 3:
        return "Winter"
    if month <= 6:
        return "Spring"
    if month <= 9:
        return "Summer"
    return "Fall"


def _first_reason(encounter: dict) -> str:
    reasons = _as_list(encounter.get("reasonCode"))
    if not reasons:
        return ""
    return _concept_label(reasons[0]) or "Unknown"


def analyze_visit_patterns(encounters: Any) -> VisitPatterns:
    """Tally dated ED visits by time of day, weekday, reason and season."""
    patterns = VisitPatterns()
    for item in _as_list(encounters):
        resource = _unwrap(item)
        if not classify_ed_encounter(resource):
            continue
        start = _encounter_start(resource)
        if start is None:
            continue

        slot = _time_slot(start.hour)
        patterns.time_of_day[slot] = patterns.time_of_day.get(slot, 0) + 1

        day = DAY_NAMES[start.weekday()]
        patterns.day_of_week[day] = patterns.day_of_week.get(day, 0) + 1

        reason = _first_reason(resource)
        if reason:
            patterns.reasons[reason] = patterns.reasons.get(reason, 0) + 1

        season = _season(start.month)
        patterns.seasonal[season] = patterns.seasonal.get(season, 0) + 1
    return patterns


def monthly_visit_counts(
    encounters: Any,
    reference_time: datetime,
    months: int = 12,
) -> list[MonthlyVisits]:
    """ED visits per calendar month for the trailing ``months`` months, oldest first."""
    reference_time = _aware(reference_time).astimezone(UTC)
    first = reference_time.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    keys = [first - relativedelta(months=offset) for offset in range(months - 1, -1, -1)]
    counts = {(k.year, k.month): 0 for k in keys}

    for start in ed_visit_dates(encounters):
        start = start.astimezone(UTC)
        key = (start.year, start.month)
        if key in counts:
            counts[key] += 1

    return [
        MonthlyVisits(month=f"{k.month:02d}/{k.year % 100:02d}", visits=counts[(k.year, k.month)])
        for k in keys
    ]


def assess(
    encounters: Any,
    conditions: Any,
    medications: Any,
    reference_time: datetime,
    convention: RiskConvention = RiskConvention.DUAL_WINDOW,
) -> RiskAssessment:
    """Summary plus recommendations and visit analytics, all at one reference time."""
    encounters = encounters if isinstance(encounters, list) else []
    summary = summarize_at(encounters, conditions, medications, reference_time, convention)
    return RiskAssessment(
        summary=summary,
        recommendations=intervention_recommendations(summary.risk_tier, summary.chronic_conditions),
        risk_factors=risk_factors(encounters, reference_time),
        visit_patterns=analyze_visit_patterns(encounters),
        monthly_visits=monthly_visit_counts(encounters, reference_time),
        reference_time=_aware(reference_time).isoformat(),
    )
