"""
Unit tests for request_rules: create/harvest/pest/feedback validation.

Covers:
  - full-pass collection of every violation
  - numeric-string coercion and "not a number" violations
  - hass breakdown over selected sizes only
  - harvest date window relative to the UTC day
  - the harvest/pest detail sum type on create and update
"""

from __future__ import annotations

from datetime import date, timedelta

import pytest

from agriops.core.errors import BusinessRuleViolation, ValidationError, raise_for_violations
from agriops.services import request_rules
from tests.factories import create_payload, harvest_details, harvest_payload, pest_details

TODAY = date(2026, 10, 18)


def _fields(result):
    return {v.field for v in result.violations}


# ── coercion ─────────────────────────────────────────────────────────


def test_coerce_number_accepts_numeric_strings():
    violations = []
    assert request_rules.coerce_number("12", "x", violations) == 12
    assert request_rules.coerce_number(" 7.5 ", "x", violations) == 7.5
    assert request_rules.coerce_number(3.0, "x", violations) == 3.0
    assert violations == []


def test_coerce_number_records_violation_instead_of_raising():
    violations = []
    assert request_rules.coerce_number("a dozen", "workers_needed", violations) is None
    assert request_rules.coerce_number(True, "workers_needed", violations) is None
    assert [v.message for v in violations] == [
        "workers_needed must be a number",
        "workers_needed must be a number",
    ]


def test_coerce_number_integer_rejects_fractions():
    violations = []
    assert request_rules.coerce_number("2.5", "trees_to_harvest", violations, integer=True) is None
    assert violations[0].message == "trees_to_harvest must be a whole number"


# ── create ───────────────────────────────────────────────────────────


def test_validate_create_normalises_defaults():
    result = request_rules.validate_create(create_payload(), today=TODAY)

    assert result.ok
    assert result.value["priority"] == "medium"
    assert result.value["harvest_details"] is None
    assert result.value["pest_management_details"] is None
    assert result.value["attachments"] == []


def test_validate_create_collects_all_violations():
    payload = create_payload(
        service_type="space_travel",
        title="Hi",
        description="short",
        priority="whenever",
        location={"district": "Rwamagana"},
        cost_estimate=-10,
    )
    result = request_rules.validate_create(payload, today=TODAY)

    assert _fields(result) == {
        "service_type",
        "title",
        "description",
        "priority",
        "location.province",
        "cost_estimate",
    }


def test_validate_create_rejects_out_of_range_coordinates():
    payload = create_payload(
        location={"province": "Eastern", "coordinates": {"latitude": 95, "longitude": "30.1"}}
    )
    result = request_rules.validate_create(payload, today=TODAY)

    assert _fields(result) == {"location.coordinates.latitude"}


def test_harvest_type_requires_harvest_details():
    result = request_rules.validate_create(create_payload(service_type="harvest"), today=TODAY)
    assert _fields(result) == {"harvest_details"}


def test_harvest_details_rejected_on_non_harvest_type():
    payload = create_payload(harvest_details=harvest_details(TODAY))
    result = request_rules.validate_create(payload, today=TODAY)
    assert _fields(result) == {"harvest_details"}


def test_pest_details_only_for_pest_control():
    rejected = request_rules.validate_create(create_payload(pest_management_details=pest_details()), today=TODAY)
    accepted = request_rules.validate_create(
        create_payload(service_type="pest_control", pest_management_details=pest_details()),
        today=request_rules.utc_today(),
    )

    assert _fields(rejected) == {"pest_management_details"}
    assert accepted.ok
    assert accepted.value["pest_management_details"]["severity_level"] == "high"


# ── harvest ──────────────────────────────────────────────────────────


def test_harvest_accepts_numeric_strings():
    details = harvest_details(TODAY, workers_needed="5", trees_to_harvest="100")
    result = request_rules.validate_harvest(details, today=TODAY)

    assert result.ok
    assert result.value["workers_needed"] == 5
    assert result.value["trees_to_harvest"] == 100


def test_harvest_start_in_the_past_is_rejected():
    details = harvest_details(
        TODAY,
        harvest_date_from=(TODAY - timedelta(days=1)).isoformat(),
        harvest_date_to=(TODAY + timedelta(days=2)).isoformat(),
    )
    result = request_rules.validate_harvest(details, today=TODAY)

    assert [v.message for v in result.violations] == ["Harvest start date cannot be in the past"]
    assert result.violations[0].kind == "business_rule"


def test_harvest_start_today_is_allowed():
    details = harvest_details(
        TODAY,
        harvest_date_from=TODAY.isoformat(),
        harvest_date_to=(TODAY + timedelta(days=30)).isoformat(),
    )
    assert request_rules.validate_harvest(details, today=TODAY).ok


def test_harvest_window_longer_than_thirty_days_is_rejected():
    start = TODAY + timedelta(days=1)
    details = harvest_details(
        TODAY,
        harvest_date_from=start.isoformat(),
        harvest_date_to=(start + timedelta(days=31)).isoformat(),
    )
    result = request_rules.validate_harvest(details, today=TODAY)

    assert [v.message for v in result.violations] == ["Harvest window cannot exceed 30 days"]


def test_harvest_end_before_start_is_rejected():
    details = harvest_details(
        TODAY,
        harvest_date_from=(TODAY + timedelta(days=5)).isoformat(),
        harvest_date_to=(TODAY + timedelta(days=4)).isoformat(),
    )
    assert _fields(request_rules.validate_harvest(details, today=TODAY)) == {"harvest_date_to"}


@pytest.mark.parametrize("workers", [0, 51, "-3"])
def test_worker_count_bounds(workers):
    result = request_rules.validate_harvest(harvest_details(TODAY, workers_needed=workers), today=TODAY)
    assert _fields(result) == {"workers_needed"}
    assert result.violations[0].kind == "business_rule"


def test_worker_count_not_a_number():
    result = request_rules.validate_harvest(harvest_details(TODAY, workers_needed="lots"), today=TODAY)
    assert [v.message for v in result.violations] == ["workers_needed must be a number"]
    assert result.violations[0].kind == "validation"


def test_harvest_reports_every_broken_rule_at_once():
    details = harvest_details(
        TODAY,
        workers_needed=0,
        trees_to_harvest="x",
        harvest_date_from=(TODAY - timedelta(days=2)).isoformat(),
        hass_breakdown={"selected_sizes": ["c12c14", "c16c18"], "c12c14": 70, "c16c18": 70},
    )
    result = request_rules.validate_harvest(details, today=TODAY)

    assert _fields(result) == {"workers_needed", "trees_to_harvest", "harvest_date_from", "hass_breakdown"}


# ── hass breakdown ───────────────────────────────────────────────────


def test_hass_sum_over_one_hundred_is_a_business_rule_violation():
    breakdown = {"selected_sizes": ["c12c14", "c16c18", "c20c24"], "c12c14": 40, "c16c18": 40, "c20c24": 21}
    result = request_rules.validate_hass_breakdown(breakdown)

    assert [v.message for v in result.violations] == [
        "Total percentage of selected sizes cannot exceed 100 (got 101)"
    ]
    with pytest.raises(BusinessRuleViolation):
        raise_for_violations(result.violations)


def test_hass_ignores_unselected_sizes():
    breakdown = {"selectedSizes": ["c12c14"], "c12c14": "60", "c16c18": 90, "c20c24": 90}
    result = request_rules.validate_hass_breakdown(breakdown)

    assert result.ok
    assert result.value == {"selected_sizes": ["c12c14"], "c12c14": 60}


def test_hass_selected_size_requires_percentage():
    result = request_rules.validate_hass_breakdown({"selected_sizes": ["c20c24"]})
    assert [v.message for v in result.violations] == ["Percentage for c20c24 is required"]


def test_hass_percentage_out_of_range():
    result = request_rules.validate_hass_breakdown({"selected_sizes": ["c16c18"], "c16c18": 120})
    assert _fields(result) == {"hass_breakdown.c16c18"}


# ── pest management ──────────────────────────────────────────────────


def test_pest_first_spotted_in_future_is_rejected():
    details = pest_details(
        pests_diseases=[{"name": "Mites", "first_spotted_date": (TODAY + timedelta(days=1)).isoformat()}]
    )
    result = request_rules.validate_pest_details(details, today=TODAY)
    assert _fields(result) == {"pests_diseases[0].first_spotted_date"}


def test_pest_only_one_primary():
    details = pest_details(
        pests_diseases=[
            {"name": "Mites", "first_spotted_date": TODAY.isoformat(), "is_primary": True},
            {"name": "Thrips", "first_spotted_date": TODAY.isoformat(), "is_primary": True},
        ]
    )
    result = request_rules.validate_pest_details(details, today=TODAY)
    assert [v.message for v in result.violations] == ["Only one pest can be marked as primary"]


def test_pest_requires_entries_and_text_fields():
    result = request_rules.validate_pest_details({"severity_level": "extreme"}, today=TODAY)
    assert _fields(result) == {
        "pests_diseases",
        "first_noticed",
        "damage_observed",
        "damage_details",
        "control_methods_tried",
        "severity_level",
    }


# ── update ───────────────────────────────────────────────────────────


def test_update_only_checks_present_fields():
    result = request_rules.validate_update({"title": "New title here"}, {"service_type": "harvest"}, today=TODAY)
    assert result.ok
    assert result.value == {"title": "New title here"}


def test_update_type_change_to_harvest_needs_details():
    result = request_rules.validate_update(
        {"service_type": "harvest"},
        {"service_type": "crop_consultation"},
        today=TODAY,
    )
    assert _fields(result) == {"harvest_details"}


def test_update_type_change_away_from_harvest_clears_details():
    result = request_rules.validate_update(
        {"service_type": "soil_testing"},
        {"service_type": "harvest"},
        today=TODAY,
    )
    assert result.ok
    assert result.value["harvest_details"] is None


def test_update_resubmitted_harvest_is_revalidated():
    result = request_rules.validate_update(
        {"harvest_details": harvest_details(TODAY, workers_needed=99)},
        {"service_type": "harvest"},
        today=TODAY,
    )
    assert _fields(result) == {"workers_needed"}


# ── feedback ─────────────────────────────────────────────────────────


def test_feedback_rating_bounds():
    assert request_rules.validate_feedback({"rating": "5"}).value == {"rating": 5}
    assert _fields(request_rules.validate_feedback({"rating": 6})) == {"rating"}
    assert _fields(request_rules.validate_feedback({})) == {"rating"}


def test_feedback_optional_scores():
    result = request_rules.validate_feedback(
        {"rating": 4, "service_quality": 5, "agent_professionalism": 0, "would_recommend": True, "comment": " ok "}
    )
    assert _fields(result) == {"agent_professionalism"}
    assert result.value["comment"] == "ok"
    assert result.value["would_recommend"] is True


def test_raise_for_violations_picks_validation_error_for_input_problems():
    result = request_rules.validate_create(create_payload(title=""), today=TODAY)
    with pytest.raises(ValidationError) as exc:
        raise_for_violations(result.violations)
    assert not isinstance(exc.value, BusinessRuleViolation)
    assert exc.value.errors[0].field == "title"


@pytest.mark.parametrize("cost", [10**400, "12345678901", 10_000_000_000])
def test_cost_above_column_capacity_is_a_violation(cost):
    result = request_rules.validate_create(create_payload(cost_estimate=cost), today=TODAY)
    assert _fields(result) == {"cost_estimate"}
    assert request_rules.validate_cost(cost, "final_cost").violations[0].field == "final_cost"


def test_cost_at_column_capacity_is_accepted():
    assert request_rules.validate_cost("9999999999.99", "final_cost").value == {"final_cost": 9999999999.99}


def test_overlong_province_and_district_are_rejected():
    result = request_rules.validate_location({"province": "P" * 101, "district": "D" * 101})
    assert _fields(result) == {"location.province", "location.district"}
    assert request_rules.validate_location({"province": "P" * 100, "district": "D" * 100}).ok


def test_harvest_payload_factory_is_valid():
    assert request_rules.validate_create(harvest_payload()).ok
