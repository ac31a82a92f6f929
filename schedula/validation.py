"""
Request payload validation shared by the service layer and routes.

Two kinds of failure:
- ValidationError: the request itself is malformed (400)
- ConflictError: the request is well-formed but collides with existing data (409)

validate_payload() drives catalog writes: the model's column metadata decides
types, nullability and string limits, a ModelValidationPolicy decides which
of those columns a client may set.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from email_validator import EmailNotValidError, validate_email
from sqlalchemy import Boolean, Integer, String, Text

from schedula.time_utils import parse_iso_datetime


# $99,999.99
MAX_PRICE_CENTS = 9_999_999

# Shortest bookable service, in minutes; also the slot granularity floor
MIN_SERVICE_DURATION = 15

# One working day
MAX_SERVICE_DURATION = 12 * 60


class ValidationError(ValueError):
    """400-level input problem."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., duplicate tenant slug)."""


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    writable_fields: columns a client may set
    required_on_create: columns a create request must carry
    rules: extra checks run on the cleaned patch
    """
    writable_fields: frozenset[str]
    required_on_create: frozenset[str] = frozenset()
    rules: tuple[Callable[[dict], None], ...] = field(default_factory=tuple)


def is_valid_email(value: Any) -> bool:
    """Syntax check only; no DNS lookups."""
    if not isinstance(value, str):
        return False
    try:
        validate_email(value.strip(), check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


def parse_id_field(payload: dict, key: str, *, required: bool = False) -> int | None:
    """Positive integer id from a JSON payload; None when absent and optional."""
    raw = payload.get(key)
    if raw is None or raw == "":
        if required:
            raise ValidationError(f"{key} is required")
        return None
    value = _as_int(key, raw)
    if value < 1:
        raise ValidationError(f"{key} must be a positive integer")
    return value


def parse_text_field(payload: dict, key: str, *, max_length: int | None = None) -> str | None:
    """Stripped string or None; any other JSON type is rejected."""
    raw = payload.get(key)
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise ValidationError(f"{key} must be a string")
    text = raw.strip()
    if max_length is not None and len(text) > max_length:
        raise ValidationError(f"{key} exceeds max length {max_length}")
    return text or None


def parse_datetime_field(payload: dict, key: str, *, required: bool = True) -> datetime | None:
    raw = payload.get(key)
    if raw in (None, ""):
        if required:
            raise ValidationError(f"{key} is required")
        return None
    if isinstance(raw, datetime):
        return raw
    try:
        parsed = parse_iso_datetime(str(raw))
    except ValueError:
        parsed = None
    if parsed is None:
        raise ValidationError(f"{key} must be an ISO-8601 datetime")
    return parsed


def _as_int(key: str, value: Any) -> int:
    # JSON numbers only; "60" from a form post is tolerated, 60.5 and true are not
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(f"{key} must be a whole number")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise ValidationError(f"{key} must be a whole number")


def _clean(column, value: Any) -> Any:
    coltype = column.type
    if isinstance(coltype, Boolean):
        if not isinstance(value, bool):
            raise ValidationError(f"{column.key} must be true or false")
        return value
    if isinstance(coltype, Integer):
        return _as_int(column.key, value)
    if isinstance(coltype, (String, Text)):
        if not isinstance(value, str):
            raise ValidationError(f"{column.key} must be a string")
        text = value.strip()
        if text == "" and not column.nullable:
            raise ValidationError(f"{column.key} cannot be blank")
        if isinstance(coltype, String) and coltype.length and len(text) > coltype.length:
            raise ValidationError(f"{column.key} exceeds max length {coltype.length}")
        return text or None
    return value


def validate_payload(*, model, payload: Any, policy: ModelValidationPolicy, partial: bool) -> dict:
    """
    Return the cleaned subset of payload a client may write to model.

    Unknown keys are rejected rather than dropped so typos surface as 400s.
    On create (partial=False) every required_on_create field must be present.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    unknown = sorted(k for k in payload if k not in policy.writable_fields)
    if unknown:
        raise ValidationError(f"Field not allowed: {', '.join(unknown)}")

    if not partial:
        missing = sorted(f for f in policy.required_on_create if payload.get(f) in (None, ""))
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    columns = {c.key: c for c in model.__mapper__.columns}
    patch: dict = {}
    for key, raw in payload.items():
        column = columns[key]
        if raw is None:
            if not column.nullable:
                raise ValidationError(f"{key} cannot be null")
            patch[key] = None
            continue
        patch[key] = _clean(column, raw)

    for rule in policy.rules:
        rule(patch)
    return patch


def enforce_rules_service(patch: dict) -> None:
    """Catalog limits the column metadata does not capture."""
    price = patch.get("price_cents")
    if price is not None and not 0 <= price <= MAX_PRICE_CENTS:
        raise ValidationError(f"price_cents must be between 0 and {MAX_PRICE_CENTS}")

    duration = patch.get("duration_minutes")
    if duration is not None and not MIN_SERVICE_DURATION <= duration <= MAX_SERVICE_DURATION:
        raise ValidationError(
            f"duration_minutes must be between {MIN_SERVICE_DURATION} and {MAX_SERVICE_DURATION}"
        )
