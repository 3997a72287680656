"""
Shared validation helpers for Pond services.
"""

from __future__ import annotations

import math
import re
import uuid
from typing import Optional, Sequence

from pond.errors import ValidationIssue

_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def validate_required_text(value: str, field: str, max_len: int) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationIssue(f"{field} must be a non-empty string", field=field, error_type="required")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_limit(value: int, field: str, max_value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationIssue(f"{field} must be an integer", field=field, error_type="invalid_type")
    if value <= 0 or value > max_value:
        raise ValidationIssue(f"{field} must be between 1 and {max_value}", field=field, error_type="out_of_range")


def validate_offset(value: int, field: str = "offset") -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationIssue(f"{field} must be an integer", field=field, error_type="invalid_type")
    if value < 0:
        raise ValidationIssue(f"{field} must not be negative", field=field, error_type="out_of_range")


def validate_threshold(value: float, field: str = "threshold") -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationIssue(f"{field} must be a number", field=field, error_type="invalid_type")
    if not math.isfinite(value):
        raise ValidationIssue(f"{field} must be finite", field=field, error_type="invalid_value")


def is_uuid(value: Optional[str]) -> bool:
    if not isinstance(value, str) or not _UUID_PATTERN.match(value):
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def validate_tenant_id(tenant_id: Optional[str]) -> str:
    if tenant_id is None:
        raise ValidationIssue("tenant_id is required", field="tenant_id", error_type="required")
    if isinstance(tenant_id, uuid.UUID):
        return str(tenant_id)
    if not is_uuid(tenant_id):
        raise ValidationIssue("tenant_id must be a UUID", field="tenant_id", error_type="invalid_format")
    return tenant_id.lower()


def validate_vector(values: Sequence[float], allowed_dimensions: Sequence[int]) -> None:
    if not values:
        raise ValidationIssue("Vector cannot be empty", field="vector", error_type="required")
    if len(values) not in allowed_dimensions:
        raise ValidationIssue(
            f"Vector must have one of the dimensions {list(allowed_dimensions)}, got {len(values)}",
            field="vector",
            error_type="invalid_dimensions",
        )
    for value in values:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationIssue("Vector must contain only numbers", field="vector", error_type="invalid_type")
        if math.isnan(value):
            raise ValidationIssue("Vector cannot contain NaN values", field="vector", error_type="invalid_value")
        if math.isinf(value):
            raise ValidationIssue("Vector cannot contain infinite values", field="vector", error_type="invalid_value")
    if all(value == 0 for value in values):
        raise ValidationIssue("Vector cannot be zero vector", field="vector", error_type="invalid_value")
