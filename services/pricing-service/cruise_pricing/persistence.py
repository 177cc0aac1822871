import json
import logging
import os
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable

from . import domain

DATA_FILE = os.getenv("PROMOTIONS_FILE_PATH", "promotions.json")

logger = logging.getLogger(__name__)


def _get(row: dict, *keys: str, default: Any = None) -> Any:
    # Rows come from API payloads (camelCase) or database exports (snake_case).
    for k in keys:
        if k in row and row[k] is not None:
            return row[k]
    return default


def _decimal(value: Any, field: str) -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{field} must be numeric, got {value!r}")


def _opt_decimal(value: Any, field: str) -> Decimal | None:
    if value is None or value == "":
        return None
    return _decimal(value, field)


def _opt_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def _opt_tuple(value: Any) -> tuple[str, ...] | None:
    if not value:
        return None
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


def _flag(value: Any) -> bool:
    # Hand-edited and CSV-sourced rows carry booleans as text.
    if isinstance(value, str):
        v = value.strip().lower()
        if v in {"1", "true", "yes", "on"}:
            return True
        if v in {"0", "false", "no", "off", ""}:
            return False
        raise ValueError(f"Expected a boolean, got {value!r}")
    return bool(value)


def _timestamp(value: Any, field: str) -> datetime:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value.strip():
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        raise ValueError(f"{field} is required")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _conditions_from_row(raw: dict | None) -> domain.PromotionConditions:
    raw = raw or {}
    age_raw = _get(raw, "ageRequirements", "age_requirements")
    age = None
    if age_raw:
        age = domain.AgeRequirements(
            seniors=_opt_int(_get(age_raw, "seniors", "minSeniors", "min_seniors")),
            children=_opt_int(_get(age_raw, "children", "maxChildren", "max_children")),
        )
    return domain.PromotionConditions(
        min_guests=_opt_int(_get(raw, "minGuests", "min_guests")),
        max_guests=_opt_int(_get(raw, "maxGuests", "max_guests")),
        min_booking_amount=_opt_decimal(_get(raw, "minBookingAmount", "min_booking_amount"), "minBookingAmount"),
        max_booking_amount=_opt_decimal(_get(raw, "maxBookingAmount", "max_booking_amount"), "maxBookingAmount"),
        early_booking_days=_opt_int(_get(raw, "earlyBookingDays", "early_booking_days")),
        last_minute_days=_opt_int(_get(raw, "lastMinuteDays", "last_minute_days")),
        group_size=_opt_int(_get(raw, "groupSize", "group_size")),
        cruise_lines=_opt_tuple(_get(raw, "cruiseLines", "cruise_lines")),
        destinations=_opt_tuple(_get(raw, "destinations")),
        cabin_types=_opt_tuple(_get(raw, "cabinTypes", "cabin_types")),
        age_requirements=age,
        coupon_code=_get(raw, "couponCode", "requiredCouponCode", "coupon_code", "required_coupon_code"),
    )


def promotion_from_row(row: dict) -> domain.PromotionRule:
    """
    Build a PromotionRule from a catalog row.

    Interpretation:
    - "fixed_amount" (database spelling) is the same as "fixed"
    - when isCombinable is absent, a non-empty combinable_with list means combinable
    - priority defaults to 1
    """
    pid = str(_get(row, "id", default="")).strip()
    if not pid:
        raise ValueError("id is required")

    dtype = str(_get(row, "discountType", "discount_type", default="")).strip().lower()
    if dtype == "fixed_amount":
        dtype = "fixed"
    if dtype not in ("percentage", "fixed"):
        raise ValueError(f"Unknown discount type {dtype!r} for promotion {pid}")

    combinable = _get(row, "isCombinable", "is_combinable")
    if combinable is None:
        combinable = bool(_get(row, "combinableWith", "combinable_with"))

    return domain.PromotionRule(
        id=pid,
        name=str(_get(row, "name", default="")),
        description=str(_get(row, "description", default="")),
        discount_type=dtype,  # type: ignore[arg-type]
        discount_value=_decimal(_get(row, "discountValue", "discount_value"), "discountValue"),
        max_discount=_opt_decimal(_get(row, "maxDiscount", "max_discount"), "maxDiscount"),
        conditions=_conditions_from_row(_get(row, "conditions")),
        valid_from=_timestamp(_get(row, "validFrom", "valid_from"), "validFrom"),
        valid_to=_timestamp(_get(row, "validTo", "valid_to"), "validTo"),
        is_active=_flag(_get(row, "isActive", "is_active", default=True)),
        is_combinable=_flag(combinable),
        priority=int(_get(row, "priority", default=1)),
        max_uses=_opt_int(_get(row, "maxUses", "max_uses")),
        current_uses=int(_get(row, "currentUses", "current_uses", default=0)),
    )


def promotions_from_rows(rows: Iterable[dict]) -> list[domain.PromotionRule]:
    out: list[domain.PromotionRule] = []
    for row in rows:
        try:
            out.append(promotion_from_row(row))
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning("Skipping malformed promotion row (id=%s): %s", (row or {}).get("id") if isinstance(row, dict) else None, e)
    return out


def _num(x: Decimal | None) -> str | None:
    return None if x is None else str(x)


def promotion_to_row(rule: domain.PromotionRule) -> dict:
    c = rule.conditions
    conditions: dict[str, Any] = {
        "minGuests": c.min_guests,
        "maxGuests": c.max_guests,
        "minBookingAmount": _num(c.min_booking_amount),
        "maxBookingAmount": _num(c.max_booking_amount),
        "earlyBookingDays": c.early_booking_days,
        "lastMinuteDays": c.last_minute_days,
        "groupSize": c.group_size,
        "cruiseLines": list(c.cruise_lines) if c.cruise_lines else None,
        "destinations": list(c.destinations) if c.destinations else None,
        "cabinTypes": list(c.cabin_types) if c.cabin_types else None,
        "couponCode": c.coupon_code,
    }
    if c.age_requirements:
        conditions["ageRequirements"] = {
            "seniors": c.age_requirements.seniors,
            "children": c.age_requirements.children,
        }
    return {
        "id": rule.id,
        "name": rule.name,
        "description": rule.description,
        "discountType": rule.discount_type,
        "discountValue": str(rule.discount_value),
        "maxDiscount": _num(rule.max_discount),
        "conditions": {k: v for k, v in conditions.items() if v is not None},
        "validFrom": rule.valid_from.isoformat(),
        "validTo": rule.valid_to.isoformat(),
        "isActive": rule.is_active,
        "isCombinable": rule.is_combinable,
        "priority": rule.priority,
        "maxUses": rule.max_uses,
        "currentUses": rule.current_uses,
    }


def save_promotions(rules: Iterable[domain.PromotionRule]) -> None:
    data = {"promotions": [promotion_to_row(r) for r in rules]}
    with open(DATA_FILE, "w") as f:
        json.dump(data, f, indent=2)


def load_promotions() -> list[domain.PromotionRule]:
    if not os.path.exists(DATA_FILE):
        return []

    with open(DATA_FILE, "r") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning("Promotion catalog %s is not valid JSON: %s", DATA_FILE, e)
            return []

    rows = data.get("promotions", []) if isinstance(data, dict) else data
    return promotions_from_rows(rows or [])
