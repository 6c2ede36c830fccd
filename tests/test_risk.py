"""Tests for the ED-utilization risk classifier."""

from datetime import UTC, datetime

import pytest
from dateutil.relativedelta import relativedelta

from edcare.models.risk import RiskConvention, RiskTier
from edcare.services.risk import (
    analyze_visit_patterns,
    assess,
    chronic_condition_labels,
    classify_ed_encounter,
    compute_risk_tier,
    compute_risk_tier_single_window,
    count_ed_visits,
    has_ed_history,
    has_high_risk_medication,
    intervention_recommendations,
    monthly_visit_counts,
    parse_fhir_datetime,
    risk_factors,
    summarize,
    summarize_at,
    tier_for_counts,
)

REF = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)


def _ed(start: str | None, **extra) -> dict:
    encounter = {"resourceType": "Encounter", "class": {"code": "EMER"}, **extra}
    if start is not None:
        encounter["period"] = {"start": start}
    return encounter


def _ambulatory(start: str) -> dict:
    return {"resourceType": "Encounter", "class": {"code": "AMB"}, "period": {"start": start}}


def _months_ago(months: int, days: int = 0) -> str:
    return (REF - relativedelta(months=months, days=days)).isoformat()


# --- Classification ---


class TestClassifyEdEncounter:
    def test_emer_class(self):
        assert classify_ed_encounter({"class": {"code": "EMER"}}) is True

    def test_ambulatory_class(self):
        assert classify_ed_encounter({"class": {"code": "AMB"}, "type": []}) is False

    def test_urgent_type_code(self):
        assert classify_ed_encounter({"type": [{"coding": [{"code": "urgent"}]}]}) is True

    def test_class_display(self):
        enc = {"class": {"code": "X1", "display": "Emergency"}}
        assert classify_ed_encounter(enc) is True

    def test_case_insensitive(self):
        assert classify_ed_encounter({"class": {"code": "emer"}}) is True

    def test_substring_match_is_over_inclusive(self):
        enc = {"class": {"code": "IMP", "display": "inpatient encounter"}}
        assert classify_ed_encounter(enc) is True

    def test_type_display_not_considered(self):
        enc = {"class": {"code": "AMB"}, "type": [{"coding": [{"code": "185349003", "display": "Emergency"}]}]}
        assert classify_ed_encounter(enc) is False

    def test_r5_class_list(self):
        enc = {"class": [{"coding": [{"code": "EMER"}]}]}
        assert classify_ed_encounter(enc) is True

    def test_plain_string_class(self):
        assert classify_ed_encounter({"class": "EMER"}) is True

    def test_list_of_string_classes(self):
        assert classify_ed_encounter({"class": ["AMB", "emergency"]}) is True
        assert classify_ed_encounter({"class": ["AMB", "IMP"]}) is False

    def test_string_type_entries(self):
        assert classify_ed_encounter({"class": "AMB", "type": ["urgent"]}) is True
        assert classify_ed_encounter({"type": ["wellness", "checkup"]}) is False

    def test_string_class_counted_in_window(self):
        encounters = [
            {"class": "EMER", "period": {"start": "2025-12-01T10:00:00Z"}},
            {"class": ["emergency"], "period": {"start": "2025-11-01T10:00:00Z"}},
        ]
        assert count_ed_visits(encounters, REF, 12) == 2

    def test_bundle_entry_wrapper(self):
        assert classify_ed_encounter({"resource": {"class": {"code": "EMER"}}}) is True

    def test_empty_and_malformed(self):
        assert classify_ed_encounter({}) is False
        assert classify_ed_encounter(None) is False
        assert classify_ed_encounter("EMER") is False
        assert classify_ed_encounter({"class": None, "type": "bad"}) is False


# --- Date parsing ---


class TestParseFhirDatetime:
    def test_datetime_with_offset(self):
        parsed = parse_fhir_datetime("2025-06-01T10:30:00-05:00")
        assert parsed.astimezone(UTC).hour == 15

    def test_zulu(self):
        assert parse_fhir_datetime("2025-06-01T10:30:00Z").tzinfo is not None

    def test_date_only_is_utc_midnight(self):
        assert parse_fhir_datetime("2025-06-01") == datetime(2025, 6, 1, tzinfo=UTC)

    def test_partial_date(self):
        assert parse_fhir_datetime("2025-06") == datetime(2025, 6, 1, tzinfo=UTC)

    def test_unparseable(self):
        assert parse_fhir_datetime("yesterday") is None
        assert parse_fhir_datetime("") is None
        assert parse_fhir_datetime(None) is None
        assert parse_fhir_datetime(20250601) is None


# --- Counting ---


class TestCountEdVisits:
    def test_counts_within_window(self):
        encounters = [_ed(_months_ago(1)), _ed(_months_ago(6)), _ed(_months_ago(13))]
        assert count_ed_visits(encounters, REF, 12) == 2
        assert count_ed_visits(encounters, REF, 24) == 3

    def test_boundary_is_inclusive(self):
        encounters = [_ed(_months_ago(12))]
        assert count_ed_visits(encounters, REF, 12) == 1

    def test_just_outside_window(self):
        encounters = [_ed(_months_ago(12, days=1))]
        assert count_ed_visits(encounters, REF, 12) == 0

    def test_non_ed_encounters_ignored(self):
        encounters = [_ambulatory(_months_ago(1)), _ed(_months_ago(2))]
        assert count_ed_visits(encounters, REF, 12) == 1

    def test_missing_or_bad_dates_excluded(self):
        encounters = [_ed(None), _ed("not-a-date"), _ed(_months_ago(3))]
        assert count_ed_visits(encounters, REF, 12) == 1

    def test_naive_reference_date(self):
        encounters = [_ed("2025-12-01")]
        assert count_ed_visits(encounters, datetime(2026, 1, 1), 12) == 1

    def test_non_list_input(self):
        assert count_ed_visits(None, REF, 12) == 0
        assert count_ed_visits({"class": {"code": "EMER"}}, REF, 12) == 0

    def test_window_monotonicity(self):
        encounters = [_ed(_months_ago(m)) for m in (0, 3, 11, 12, 14, 20, 23, 30)]
        assert count_ed_visits(encounters, REF, 12) <= count_ed_visits(encounters, REF, 24)

    def test_undated_ed_still_counts_as_history(self):
        assert has_ed_history([_ed(None)]) is True
        assert has_ed_history([_ambulatory(_months_ago(1))]) is False


# --- Tiers ---


class TestComputeRiskTier:
    def test_high_by_12_months(self):
        assert compute_risk_tier(4, 0) == RiskTier.HIGH

    def test_high_by_24_months(self):
        assert compute_risk_tier(0, 8) == RiskTier.HIGH

    def test_medium_by_12_months(self):
        assert compute_risk_tier(2, 0) == RiskTier.MEDIUM

    def test_medium_by_24_months(self):
        assert compute_risk_tier(1, 4) == RiskTier.MEDIUM

    def test_medium_one_and_three(self):
        assert compute_risk_tier(1, 3) == RiskTier.MEDIUM

    def test_low(self):
        assert compute_risk_tier(1, 2) == RiskTier.LOW
        assert compute_risk_tier(0, 0) == RiskTier.LOW


class TestSingleWindow:
    def test_thresholds(self):
        assert compute_risk_tier_single_window(4) == RiskTier.HIGH
        assert compute_risk_tier_single_window(3) == RiskTier.MEDIUM
        assert compute_risk_tier_single_window(2) == RiskTier.MEDIUM
        assert compute_risk_tier_single_window(1) == RiskTier.LOW

    def test_convention_selection(self):
        assert tier_for_counts(1, 8, RiskConvention.DUAL_WINDOW) == RiskTier.HIGH
        assert tier_for_counts(1, 8, RiskConvention.SINGLE_WINDOW) == RiskTier.LOW


# --- Conditions and medications ---


class TestConditionsAndMedications:
    def test_condition_labels_order_and_dedup(self):
        conditions = [
            {"code": {"text": "Diabetes"}},
            {"code": {"coding": [{"display": "Hypertension"}]}},
            {"code": {"text": "Diabetes"}},
            {"code": {"text": "diabetes"}},
        ]
        assert chronic_condition_labels(conditions) == ["Diabetes", "Hypertension", "diabetes"]

    def test_condition_text_preferred_over_display(self):
        conditions = [{"code": {"text": "Asthma", "coding": [{"display": "Asthma (disorder)"}]}}]
        assert chronic_condition_labels(conditions) == ["Asthma"]

    def test_empty_condition_labels_skipped(self):
        conditions = [{"code": {"text": ""}}, {"code": None}, {}, None]
        assert chronic_condition_labels(conditions) == []

    def test_high_risk_medication_text(self):
        meds = [{"medicationCodeableConcept": {"text": "Oxycodone 5mg"}}]
        assert has_high_risk_medication(meds) is True

    def test_high_risk_medication_coding_display(self):
        meds = [{"medicationCodeableConcept": {"coding": [{"display": "FENTANYL patch"}]}}]
        assert has_high_risk_medication(meds) is True

    def test_no_high_risk_medication(self):
        meds = [{"medicationCodeableConcept": {"text": "Metformin 500mg"}}, {}]
        assert has_high_risk_medication(meds) is False


# --- Summary ---


class TestSummarize:
    def test_end_to_end_high_risk(self):
        encounters = [_ed(_months_ago(m)) for m in (1, 3, 5, 8, 11)]
        conditions = [{"code": {"text": "Diabetes"}}, {"code": {"text": "Hypertension"}}]
        medications = [{"medicationCodeableConcept": {"text": "Oxycodone 5mg"}}]

        summary = summarize(encounters, conditions, medications, reference_time=REF)

        assert summary.ed_visit_count_12_months == 5
        assert summary.ed_visit_count_24_months == 5
        assert summary.risk_tier == RiskTier.HIGH
        assert summary.chronic_conditions == ["Diabetes", "Hypertension"]
        assert summary.has_high_risk_medication is True
        assert summary.has_ed_history is True

    def test_older_visits_raise_24_month_count(self):
        encounters = [_ed(_months_ago(m)) for m in (1, 14, 15, 16)]
        summary = summarize(encounters, [], [], reference_time=REF)
        assert summary.ed_visit_count_12_months == 1
        assert summary.ed_visit_count_24_months == 4
        assert summary.risk_tier == RiskTier.MEDIUM

    def test_single_window_convention(self):
        encounters = [_ed(_months_ago(m)) for m in (1, 14, 15, 16)]
        summary = summarize(encounters, [], [], REF, RiskConvention.SINGLE_WINDOW)
        assert summary.risk_tier == RiskTier.LOW
        assert summary.convention == RiskConvention.SINGLE_WINDOW

    def test_malformed_inputs_give_empty_summary(self):
        summary = summarize(None, "bad", {"x": 1}, reference_time=REF)
        assert summary.ed_visit_count_12_months == 0
        assert summary.ed_visit_count_24_months == 0
        assert summary.risk_tier == RiskTier.LOW
        assert summary.chronic_conditions == []
        assert summary.has_high_risk_medication is False

    def test_defaults_to_now(self):
        recent = datetime.now(UTC).isoformat()
        summary = summarize([_ed(recent)], [], [])
        assert summary.ed_visit_count_12_months == 1

    def test_summarize_at_requires_reference_time(self):
        with pytest.raises(TypeError):
            summarize_at([], [], [])

    def test_summarize_matches_summarize_at(self):
        encounters = [_ed(_months_ago(m)) for m in (1, 14, 15, 16)]
        assert summarize(encounters, [], [], REF) == summarize_at(encounters, [], [], REF)

    def test_bundle_entries_accepted(self):
        encounters = [{"resource": _ed(_months_ago(1))}]
        conditions = [{"resource": {"code": {"text": "COPD"}}}]
        summary = summarize(encounters, conditions, [], reference_time=REF)
        assert summary.ed_visit_count_12_months == 1
        assert summary.chronic_conditions == ["COPD"]


# --- Analytics ---


class TestRecommendations:
    def test_high_tier(self):
        recs = intervention_recommendations(RiskTier.HIGH, [])
        assert recs[0] == "Immediate care coordination required"
        assert len(recs) == 4

    def test_condition_specific_appended(self):
        recs = intervention_recommendations(RiskTier.LOW, ["Type 2 diabetes", "Asthma"])
        assert "Monitor blood glucose daily" in recs
        assert "Ensure inhaler technique is correct" in recs
        assert "Monitor blood pressure daily" not in recs


class TestRiskFactors:
    def test_high_and_urgent(self):
        encounters = [_ed(_months_ago(0, days=d)) for d in (2, 10)]
        encounters += [_ed(_months_ago(m)) for m in (3, 6, 14, 15, 18, 20)]
        factors = risk_factors(encounters, REF)
        levels = [f.level for f in factors]
        assert levels == ["high", "high", "urgent"]
        assert factors[0].text.startswith("4 ED visits in the past year")
        assert factors[1].text.startswith("8 ED visits in the past 2 years")

    def test_none(self):
        assert risk_factors([_ed(_months_ago(5))], REF) == []


class TestVisitPatterns:
    def test_tallies(self):
        encounters = [
            # Thursday, January, night
            _ed("2026-01-08T03:00:00+00:00", reasonCode=[{"text": "Chest pain"}]),
            # Saturday, July, evening
            _ed("2025-07-12T19:30:00+00:00", reasonCode=[{"coding": [{"display": "Asthma attack"}]}]),
            # Monday, October, day
            _ed("2025-10-06T10:00:00+00:00"),
            _ambulatory("2025-10-06T10:00:00+00:00"),
            _ed(None),
        ]
        patterns = analyze_visit_patterns(encounters)
        assert patterns.time_of_day == {"night": 1, "evening": 1, "day": 1}
        assert patterns.day_of_week == {"Thursday": 1, "Saturday": 1, "Monday": 1}
        assert patterns.reasons == {"Chest pain": 1, "Asthma attack": 1}
        assert patterns.seasonal == {"Winter": 1, "Summer": 1, "Fall": 1}

    def test_reason_without_label_is_unknown(self):
        patterns = analyze_visit_patterns([_ed("2025-05-05T12:00:00Z", reasonCode=[{}])])
        assert patterns.reasons == {"Unknown": 1}


class TestMonthlyVisitCounts:
    def test_trailing_months(self):
        encounters = [_ed("2026-01-02T00:00:00Z"), _ed("2025-12-20T00:00:00Z"), _ed("2025-12-21T00:00:00Z"),
                      _ed("2024-12-20T00:00:00Z")]
        months = monthly_visit_counts(encounters, REF, months=3)
        assert [m.month for m in months] == ["11/25", "12/25", "01/26"]
        assert [m.visits for m in months] == [0, 2, 1]

    def test_default_twelve(self):
        assert len(monthly_visit_counts([], REF)) == 12


class TestAssess:
    def test_assessment_is_consistent(self):
        encounters = [_ed(_months_ago(m)) for m in (1, 2)]
        conditions = [{"code": {"text": "Heart failure"}}]
        result = assess(encounters, conditions, [], REF)
        assert result.summary.risk_tier == RiskTier.MEDIUM
        assert "Cardiac rehabilitation referral" in result.recommendations
        assert sum(m.visits for m in result.monthly_visits) == 2
        assert result.reference_time == REF.isoformat()
