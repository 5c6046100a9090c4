from __future__ import annotations

import math
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable

from rentdesk.common.enums import STAFF_ROLES


def as_dict(record: Any) -> Dict[str, Any]:
    """Normalise a Prisma model, mapping or plain object into a ``dict``."""

    if record is None:
        return {}
    if isinstance(record, dict):
        return dict(record)
    if hasattr(record, "model_dump"):
        return record.model_dump()
    return dict(vars(record))


def extract(record: Any, key: str, default: Any | None = None) -> Any:
    if isinstance(record, dict):
        return record.get(key, default)
    return getattr(record, key, default)


def coerce_number(value: Any) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def money(value: Any) -> float:
    return round(coerce_number(value), 2)


def optional_money(value: Any) -> float | None:
    if value is None:
        return None
    return money(value)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def rental_days(start: Any, end: Any) -> int:
    """Whole rental days between two instants, never less than one."""

    start_at = parse_datetime(start)
    end_at = parse_datetime(end)
    if start_at is None or end_at is None:
        return 1
    seconds = (end_at - start_at).total_seconds()
    return max(1, math.ceil(seconds / 86400))


def ranges_overlap(start_a: Any, end_a: Any, start_b: Any, end_b: Any) -> bool:
    return parse_datetime(start_a) < parse_datetime(end_b) and parse_datetime(end_a) > parse_datetime(start_b)


def is_staff(user: Any) -> bool:
    role = extract(user, "role")
    role = getattr(role, "value", role)
    return str(role or "").upper() in STAFF_ROLES


def user_id(user: Any) -> Any:
    return extract(user, "id")


def display_name(user: Any, fallback: str = "Someone") -> str:
    return extract(user, "name") or extract(user, "email") or fallback


def vehicle_name(vehicle: Any) -> str:
    brand = extract(vehicle, "brand")
    model = extract(vehicle, "model")
    name = " ".join(part for part in (brand, model) if part)
    return name or extract(vehicle, "name") or "your vehicle"


def sum_amounts(records: Iterable[Any], key: str = "amount") -> float:
    return round(sum(coerce_number(extract(record, key)) for record in records), 2)
