"""Domain rules for service requests and the harvest / pest sub-types.

Every validator makes a full pass and returns *all* violations it finds
together with a normalised copy of the payload; nothing here touches the
database or mutates its input.  "Today" is always the current UTC day.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional

from agriops.core.config import get_settings
from agriops.core.errors import Violation
from agriops.schemas.service_request import (
    HARVEST_SERVICE_TYPES,
    PEST_SERVICE_TYPES,
    HassSize,
    PestSeverity,
    Priority,
    ServiceType,
)

TITLE_MIN, TITLE_MAX = 5, 200
DESCRIPTION_MIN, DESCRIPTION_MAX = 10, 1000
RATING_MIN, RATING_MAX = 1, 5
# Largest amount a Numeric(12, 2) cost column holds.
COST_MAX = 9_999_999_999.99
# province and district are copied into String(100) columns for filtering.
LOCATION_INDEXED_MAX = 100

SERVICE_TYPES = {item.value for item in ServiceType}
PRIORITIES = {item.value for item in Priority}
HASS_SIZES = {item.value for item in HassSize}
PEST_SEVERITIES = {item.value for item in PestSeverity}

LOCATION_TEXT_FIELDS = (
    "farm_name",
    "street_address",
    "city",
    "province",
    "district",
    "sector",
    "cell",
    "village",
    "access_instructions",
)
PEST_TEXT_FIELDS = ("first_noticed", "damage_observed", "damage_details", "control_methods_tried")


@dataclass
class RuleResult:
    value: dict[str, Any] = field(default_factory=dict)
    violations: list[Violation] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.violations


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_today() -> date:
    return utc_now().date()


def is_harvest_type(service_type: Optional[str]) -> bool:
    return service_type in HARVEST_SERVICE_TYPES


def is_pest_type(service_type: Optional[str]) -> bool:
    return service_type in PEST_SERVICE_TYPES


# ── coercion helpers ─────────────────────────────────────────────────


def _clean_number(number: float) -> int | float:
    if isinstance(number, float) and number.is_integer():
        return int(number)
    return number


def coerce_number(
    value: Any,
    field_name: str,
    violations: list[Violation],
    *,
    integer: bool = False,
) -> Optional[int | float]:
    """Coerce a number or numeric string; record a violation on failure."""
    if value is None or isinstance(value, bool):
        violations.append(Violation(field_name, f"{field_name} must be a number"))
        return None
    if isinstance(value, (int, float)):
        number = value
    elif isinstance(value, str):
        raw = value.strip()
        try:
            number = int(raw)
        except ValueError:
            try:
                number = float(raw)
            except ValueError:
                violations.append(Violation(field_name, f"{field_name} must be a number"))
                return None
    else:
        violations.append(Violation(field_name, f"{field_name} must be a number"))
        return None

    if number != number or number in (float("inf"), float("-inf")):
        violations.append(Violation(field_name, f"{field_name} must be a number"))
        return None
    if integer:
        if isinstance(number, float) and not number.is_integer():
            violations.append(Violation(field_name, f"{field_name} must be a whole number"))
            return None
        return int(number)
    return _clean_number(float(number)) if isinstance(number, float) else number


def coerce_date(value: Any, field_name: str, violations: list[Violation]) -> Optional[date]:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        raw = value.strip()
        try:
            return date.fromisoformat(raw)
        except ValueError:
            pass
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            violations.append(Violation(field_name, f"{field_name} must be a valid date"))
            return None
        return coerce_date(parsed, field_name, violations)
    violations.append(Violation(field_name, f"{field_name} is required"))
    return None


def _clean_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _string_list(value: Any, field_name: str, violations: list[Violation]) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        violations.append(Violation(field_name, f"{field_name} must be a list"))
        return []
    return [str(item).strip() for item in value if str(item).strip()]


def _check_length(value: str, field_name: str, low: int, high: int, violations: list[Violation]) -> None:
    if len(value) < low:
        violations.append(Violation(field_name, f"{field_name} must be at least {low} characters long"))
    elif len(value) > high:
        violations.append(Violation(field_name, f"{field_name} cannot exceed {high} characters"))


def _cost_amount(value: Any, field_name: str, violations: list[Violation]) -> Optional[int | float]:
    number = coerce_number(value, field_name, violations)
    if number is not None and number < 0:
        violations.append(Violation(field_name, f"{field_name} cannot be negative", "business_rule"))
        return None
    if number is not None and number > COST_MAX:
        violations.append(Violation(field_name, f"{field_name} cannot exceed {COST_MAX:,.2f}"))
        return None
    return number


def validate_cost(value: Any, field_name: str) -> RuleResult:
    result = RuleResult()
    if value is not None:
        number = _cost_amount(value, field_name, result.violations)
        if number is not None:
            result.value[field_name] = number
    return result


def _worker_count(value: Any, field_name: str, violations: list[Violation]) -> Optional[int]:
    max_workers = get_settings().harvest_max_workers
    number = coerce_number(value, field_name, violations, integer=True)
    if number is None:
        return None
    if number < 1 or number > max_workers:
        violations.append(
            Violation(field_name, f"{field_name} must be between 1 and {max_workers}", "business_rule")
        )
        return None
    return number


# ── location / contact ───────────────────────────────────────────────


def validate_location(location: Any) -> RuleResult:
    result = RuleResult()
    if not isinstance(location, dict):
        result.violations.append(Violation("location", "location is required"))
        return result

    cleaned: dict[str, Any] = {}
    for key in LOCATION_TEXT_FIELDS:
        text = _clean_str(location.get(key))
        if text is not None:
            cleaned[key] = text
    if "province" not in cleaned:
        result.violations.append(Violation("location.province", "location.province is required"))
    for key in ("province", "district"):
        if len(cleaned.get(key) or "") > LOCATION_INDEXED_MAX:
            result.violations.append(
                Violation(f"location.{key}", f"location.{key} cannot exceed {LOCATION_INDEXED_MAX} characters")
            )

    coordinates = location.get("coordinates")
    if coordinates is not None:
        if not isinstance(coordinates, dict):
            result.violations.append(Violation("location.coordinates", "coordinates must be an object"))
        else:
            lat = coerce_number(coordinates.get("latitude"), "location.coordinates.latitude", result.violations)
            lon = coerce_number(coordinates.get("longitude"), "location.coordinates.longitude", result.violations)
            if lat is not None and not -90 <= lat <= 90:
                result.violations.append(
                    Violation("location.coordinates.latitude", "latitude must be between -90 and 90")
                )
            if lon is not None and not -180 <= lon <= 180:
                result.violations.append(
                    Violation("location.coordinates.longitude", "longitude must be between -180 and 180")
                )
            if lat is not None and lon is not None:
                cleaned["coordinates"] = {"latitude": lat, "longitude": lon}

    result.value = cleaned
    return result


def validate_farmer_info(info: Any) -> RuleResult:
    result = RuleResult()
    if not isinstance(info, dict):
        result.violations.append(Violation("farmer_info", "farmer_info must be an object"))
        return result
    cleaned = {key: _clean_str(info.get(key)) for key in ("name", "phone", "email", "location")}
    for key in ("name", "phone"):
        if cleaned[key] is None:
            result.violations.append(Violation(f"farmer_info.{key}", f"farmer_info.{key} is required"))
    result.value = {key: value for key, value in cleaned.items() if value is not None}
    return result


# ── harvest ──────────────────────────────────────────────────────────


def validate_hass_breakdown(breakdown: Any) -> RuleResult:
    """Check percentages of the *selected* size categories only.

    Each selected category must carry a percentage in [0, 100] and the sum
    over the selection cannot exceed 100.  Unselected categories are ignored.
    """
    result = RuleResult()
    if breakdown is None:
        return result
    if not isinstance(breakdown, dict):
        result.violations.append(Violation("hass_breakdown", "hass_breakdown must be an object"))
        return result

    selected = breakdown.get("selected_sizes", breakdown.get("selectedSizes"))
    sizes = _string_list(selected, "hass_breakdown.selected_sizes", result.violations)
    cleaned: dict[str, Any] = {"selected_sizes": []}
    total = 0
    for size in sizes:
        if size not in HASS_SIZES:
            result.violations.append(
                Violation("hass_breakdown.selected_sizes", f"Unknown size category: {size}")
            )
            continue
        if size in cleaned["selected_sizes"]:
            continue
        cleaned["selected_sizes"].append(size)
        field_name = f"hass_breakdown.{size}"
        raw = breakdown.get(size)
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            result.violations.append(Violation(field_name, f"Percentage for {size} is required"))
            continue
        percentage = coerce_number(raw, field_name, result.violations)
        if percentage is None:
            continue
        if not 0 <= percentage <= 100:
            result.violations.append(
                Violation(field_name, f"Percentage for {size} must be between 0 and 100", "business_rule")
            )
            continue
        cleaned[size] = percentage
        total += percentage

    if total > 100:
        result.violations.append(
            Violation(
                "hass_breakdown",
                f"Total percentage of selected sizes cannot exceed 100 (got {_clean_number(float(total))})",
                "business_rule",
            )
        )
    result.value = cleaned
    return result


def validate_harvest(payload: Any, *, today: Optional[date] = None) -> RuleResult:
    result = RuleResult()
    if not isinstance(payload, dict):
        result.violations.append(Violation("harvest_details", "harvest_details is required for harvest requests"))
        return result

    today = today or utc_today()
    settings = get_settings()
    violations = result.violations
    cleaned: dict[str, Any] = {}

    workers = _worker_count(payload.get("workers_needed"), "workers_needed", violations)
    if workers is not None:
        cleaned["workers_needed"] = workers

    trees = coerce_number(payload.get("trees_to_harvest"), "trees_to_harvest", violations, integer=True)
    if trees is not None:
        if trees < 1:
            violations.append(Violation("trees_to_harvest", "trees_to_harvest must be at least 1", "business_rule"))
        else:
            cleaned["trees_to_harvest"] = trees

    cleaned["equipment_needed"] = _string_list(payload.get("equipment_needed"), "equipment_needed", violations)
    cleaned["harvest_images"] = _string_list(payload.get("harvest_images"), "harvest_images", violations)

    date_from = coerce_date(payload.get("harvest_date_from"), "harvest_date_from", violations)
    date_to = coerce_date(payload.get("harvest_date_to"), "harvest_date_to", violations)
    if date_from is not None:
        if date_from < today:
            violations.append(
                Violation("harvest_date_from", "Harvest start date cannot be in the past", "business_rule")
            )
        cleaned["harvest_date_from"] = date_from.isoformat()
    if date_to is not None:
        cleaned["harvest_date_to"] = date_to.isoformat()
    if date_from is not None and date_to is not None:
        if date_to < date_from:
            violations.append(
                Violation("harvest_date_to", "Harvest end date must be on or after the start date", "business_rule")
            )
        elif date_to - date_from > timedelta(days=settings.harvest_max_window_days):
            violations.append(
                Violation(
                    "harvest_date_to",
                    f"Harvest window cannot exceed {settings.harvest_max_window_days} days",
                    "business_rule",
                )
            )

    hass = validate_hass_breakdown(payload.get("hass_breakdown", payload.get("hassBreakdown")))
    violations.extend(hass.violations)
    if payload.get("hass_breakdown", payload.get("hassBreakdown")) is not None:
        cleaned["hass_breakdown"] = hass.value

    result.value = cleaned
    return result


def validate_approval_details(
    approved_workers: Any = None,
    approved_equipment: Any = None,
) -> RuleResult:
    result = RuleResult()
    if approved_workers is not None:
        workers = _worker_count(approved_workers, "approved_workers", result.violations)
        if workers is not None:
            result.value["approved_workers"] = workers
    if approved_equipment is not None:
        result.value["approved_equipment"] = _string_list(
            approved_equipment, "approved_equipment", result.violations
        )
    return result


def validate_completion_details(payload: dict[str, Any]) -> RuleResult:
    result = RuleResult()
    if payload.get("actual_workers_used") is not None:
        workers = _worker_count(payload["actual_workers_used"], "actual_workers_used", result.violations)
        if workers is not None:
            result.value["actual_workers_used"] = workers
    for key in ("actual_harvest_amount", "harvest_quality_notes"):
        text = _clean_str(payload.get(key))
        if text is not None:
            result.value[key] = text
    if payload.get("completion_images") is not None:
        result.value["completion_images"] = _string_list(
            payload["completion_images"], "completion_images", result.violations
        )
    return result


# ── pest management ──────────────────────────────────────────────────


def validate_pest_details(payload: Any, *, today: Optional[date] = None) -> RuleResult:
    result = RuleResult()
    if not isinstance(payload, dict):
        result.violations.append(Violation("pest_management_details", "pest_management_details must be an object"))
        return result

    today = today or utc_today()
    violations = result.violations
    cleaned: dict[str, Any] = {}

    pests = payload.get("pests_diseases")
    if not isinstance(pests, list) or not pests:
        violations.append(Violation("pests_diseases", "At least one pest or disease is required"))
        pests = []
    cleaned_pests = []
    primary_count = 0
    for index, item in enumerate(pests):
        prefix = f"pests_diseases[{index}]"
        if not isinstance(item, dict):
            violations.append(Violation(prefix, "Each pest entry must be an object"))
            continue
        name = _clean_str(item.get("name"))
        if name is None:
            violations.append(Violation(f"{prefix}.name", "name is required"))
        spotted = coerce_date(item.get("first_spotted_date"), f"{prefix}.first_spotted_date", violations)
        if spotted is not None and spotted > today:
            violations.append(
                Violation(f"{prefix}.first_spotted_date", "first_spotted_date cannot be in the future", "business_rule")
            )
        order = coerce_number(item.get("order", index + 1), f"{prefix}.order", violations, integer=True)
        if order is not None and order < 1:
            violations.append(Violation(f"{prefix}.order", "order must be at least 1"))
        is_primary = bool(item.get("is_primary", False))
        primary_count += int(is_primary)
        cleaned_pests.append(
            {
                "name": name,
                "first_spotted_date": spotted.isoformat() if spotted else None,
                "order": order,
                "is_primary": is_primary,
            }
        )
    if primary_count > 1:
        violations.append(Violation("pests_diseases", "Only one pest can be marked as primary", "business_rule"))
    cleaned["pests_diseases"] = cleaned_pests

    for key in PEST_TEXT_FIELDS:
        text = _clean_str(payload.get(key))
        if text is None:
            violations.append(Violation(key, f"{key} is required"))
        cleaned[key] = text

    severity = _clean_str(payload.get("severity_level"))
    if severity not in PEST_SEVERITIES:
        violations.append(Violation("severity_level", "severity_level must be one of low, medium, high, critical"))
    cleaned["severity_level"] = severity

    result.value = cleaned
    return result


# ── request-level ────────────────────────────────────────────────────


def validate_service_details(
    service_type: Optional[str],
    harvest_details: Any,
    pest_details: Any,
    *,
    today: Optional[date] = None,
) -> RuleResult:
    """Enforce the detail sum type: harvest details iff harvest, pest details only for pest control."""
    result = RuleResult(value={"harvest_details": None, "pest_management_details": None})
    if is_harvest_type(service_type):
        if harvest_details is None:
            result.violations.append(
                Violation("harvest_details", "harvest_details is required for harvest requests")
            )
        else:
            harvest = validate_harvest(harvest_details, today=today)
            result.violations.extend(harvest.violations)
            result.value["harvest_details"] = harvest.value
    elif harvest_details is not None:
        result.violations.append(
            Violation("harvest_details", "harvest_details is only allowed for harvest requests")
        )

    if pest_details is not None:
        if is_pest_type(service_type):
            pest = validate_pest_details(pest_details, today=today)
            result.violations.extend(pest.violations)
            result.value["pest_management_details"] = pest.value
        else:
            result.violations.append(
                Violation("pest_management_details", "pest_management_details is only allowed for pest control requests")
            )
    return result


def validate_create(payload: dict[str, Any], *, today: Optional[date] = None) -> RuleResult:
    result = RuleResult()
    violations = result.violations
    cleaned: dict[str, Any] = {}

    service_type = _clean_str(payload.get("service_type"))
    if service_type not in SERVICE_TYPES:
        violations.append(Violation("service_type", "Service type must be a valid service type"))
    cleaned["service_type"] = service_type

    title = _clean_str(payload.get("title")) or ""
    _check_length(title, "title", TITLE_MIN, TITLE_MAX, violations)
    cleaned["title"] = title

    description = _clean_str(payload.get("description")) or ""
    _check_length(description, "description", DESCRIPTION_MIN, DESCRIPTION_MAX, violations)
    cleaned["description"] = description

    priority = _clean_str(payload.get("priority")) or Priority.MEDIUM.value
    if priority not in PRIORITIES:
        violations.append(Violation("priority", "priority must be one of low, medium, high, urgent"))
    cleaned["priority"] = priority

    location = validate_location(payload.get("location"))
    violations.extend(location.violations)
    cleaned["location"] = location.value

    if payload.get("cost_estimate") is not None:
        cleaned["cost_estimate"] = _cost_amount(payload["cost_estimate"], "cost_estimate", violations)

    if payload.get("farmer_info") is not None:
        info = validate_farmer_info(payload["farmer_info"])
        violations.extend(info.violations)
        cleaned["farmer_info"] = info.value

    cleaned["notes"] = _clean_str(payload.get("notes"))
    cleaned["attachments"] = _string_list(payload.get("attachments"), "attachments", violations)

    details = validate_service_details(
        service_type,
        payload.get("harvest_details"),
        payload.get("pest_management_details"),
        today=today,
    )
    violations.extend(details.violations)
    cleaned.update(details.value)

    result.value = cleaned
    return result


def validate_update(changes: dict[str, Any], current: dict[str, Any], *, today: Optional[date] = None) -> RuleResult:
    """Validate a partial update.

    Only fields present in ``changes`` are checked. A service-type change
    requires the matching detail block to be supplied in the same update;
    ``current`` provides the stored service type.
    """
    result = RuleResult()
    violations = result.violations
    cleaned: dict[str, Any] = {}

    if "service_type" in changes:
        service_type = _clean_str(changes["service_type"])
        if service_type not in SERVICE_TYPES:
            violations.append(Violation("service_type", "Service type must be a valid service type"))
        cleaned["service_type"] = service_type
    if "title" in changes:
        title = _clean_str(changes["title"]) or ""
        _check_length(title, "title", TITLE_MIN, TITLE_MAX, violations)
        cleaned["title"] = title
    if "description" in changes:
        description = _clean_str(changes["description"]) or ""
        _check_length(description, "description", DESCRIPTION_MIN, DESCRIPTION_MAX, violations)
        cleaned["description"] = description
    if "priority" in changes:
        priority = _clean_str(changes["priority"])
        if priority not in PRIORITIES:
            violations.append(Violation("priority", "priority must be one of low, medium, high, urgent"))
        cleaned["priority"] = priority
    if "location" in changes:
        location = validate_location(changes["location"])
        violations.extend(location.violations)
        cleaned["location"] = location.value
    for key in ("cost_estimate", "final_cost"):
        if key in changes:
            cleaned[key] = None if changes[key] is None else _cost_amount(changes[key], key, violations)
    if "farmer_info" in changes:
        info = validate_farmer_info(changes["farmer_info"])
        violations.extend(info.violations)
        cleaned["farmer_info"] = info.value
    if "attachments" in changes:
        cleaned["attachments"] = _string_list(changes["attachments"], "attachments", violations)
    if "notes" in changes:
        cleaned["notes"] = _clean_str(changes["notes"])
    if "scheduled_date" in changes:
        cleaned["scheduled_date"] = changes["scheduled_date"]

    service_type = cleaned.get("service_type", current.get("service_type"))
    type_changed = "service_type" in cleaned and cleaned["service_type"] != current.get("service_type")
    if type_changed:
        details = validate_service_details(
            service_type,
            changes.get("harvest_details"),
            changes.get("pest_management_details"),
            today=today,
        )
        violations.extend(details.violations)
        cleaned.update(details.value)
    else:
        # Stored blocks were validated when written; only resubmitted ones are re-checked.
        if "harvest_details" in changes:
            if not is_harvest_type(service_type):
                violations.append(
                    Violation("harvest_details", "harvest_details is only allowed for harvest requests")
                )
            elif changes["harvest_details"] is None:
                violations.append(
                    Violation("harvest_details", "harvest_details is required for harvest requests")
                )
            else:
                harvest = validate_harvest(changes["harvest_details"], today=today)
                violations.extend(harvest.violations)
                cleaned["harvest_details"] = harvest.value
        if "pest_management_details" in changes:
            pest_payload = changes["pest_management_details"]
            if pest_payload is None:
                cleaned["pest_management_details"] = None
            elif not is_pest_type(service_type):
                violations.append(
                    Violation("pest_management_details", "pest_management_details is only allowed for pest control requests")
                )
            else:
                pest = validate_pest_details(pest_payload, today=today)
                violations.extend(pest.violations)
                cleaned["pest_management_details"] = pest.value

    result.value = cleaned
    return result


def validate_feedback(payload: dict[str, Any]) -> RuleResult:
    result = RuleResult()
    violations = result.violations
    cleaned: dict[str, Any] = {}

    rating = coerce_number(payload.get("rating"), "rating", violations, integer=True)
    if rating is not None:
        if not RATING_MIN <= rating <= RATING_MAX:
            violations.append(Violation("rating", "rating must be between 1 and 5"))
        else:
            cleaned["rating"] = rating

    for key in ("farmer_satisfaction", "agent_professionalism", "service_quality"):
        if payload.get(key) is None:
            continue
        score = coerce_number(payload[key], key, violations, integer=True)
        if score is not None:
            if not RATING_MIN <= score <= RATING_MAX:
                violations.append(Violation(key, f"{key} must be between 1 and 5"))
            else:
                cleaned[key] = score

    comment = _clean_str(payload.get("comment"))
    if comment is not None:
        if len(comment) > DESCRIPTION_MAX:
            violations.append(Violation("comment", f"comment cannot exceed {DESCRIPTION_MAX} characters"))
        cleaned["comment"] = comment
    if payload.get("would_recommend") is not None:
        cleaned["would_recommend"] = bool(payload["would_recommend"])

    result.value = cleaned
    return result
