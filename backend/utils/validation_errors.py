"""
Structured Validation Errors

Request problems are answered with 422 and a machine-readable body, so a
caller can tell a bad tenant ID or filter apart from a reconciliation
failure:

{
    "error": "invalid_parameter",
    "parameter": "tenant_id",
    "message": "tenant_id must be a valid UUID",
    "received_value": "abc"
}
"""

import uuid
from enum import Enum
from typing import Optional, Any, Type, List

from fastapi import HTTPException, status


class ValidationErrorCode(str, Enum):
    MISSING_PARAMETER = "missing_parameter"
    INVALID_PARAMETER = "invalid_parameter"
    INVALID_CONFIGURATION = "invalid_configuration"


class ValidationErrorResponse:
    """Builds the 422 error body."""

    @staticmethod
    def build(
        code: ValidationErrorCode,
        message: str,
        parameter: Optional[str] = None,
        value: Optional[Any] = None,
    ) -> dict:
        body = {"error": code.value, "parameter": parameter, "message": message}
        if value is not None:
            body["received_value"] = str(value)[:100]
        return body


def _unprocessable(code: ValidationErrorCode, message: str, parameter: Optional[str] = None, value: Any = None):
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=ValidationErrorResponse.build(code, message, parameter, value)
    )


def raise_missing_parameter(parameter: str, message: Optional[str] = None):
    _unprocessable(ValidationErrorCode.MISSING_PARAMETER, message or f"{parameter} is required", parameter)


def raise_invalid_parameter(parameter: str, message: str, value: Optional[Any] = None):
    _unprocessable(ValidationErrorCode.INVALID_PARAMETER, message, parameter, value)


def raise_invalid_configuration(message: str):
    """Thresholds or weights that cannot produce a meaningful score."""
    _unprocessable(ValidationErrorCode.INVALID_CONFIGURATION, message)


def validate_required_uuid(value: Optional[str], parameter: str) -> str:
    """
    Tenant, transaction and account IDs are UUID strings.

    Returns the value unchanged; raises a structured 422 when it is missing
    or malformed.
    """
    if not value:
        raise_missing_parameter(parameter)

    try:
        uuid.UUID(value)
    except ValueError:
        raise_invalid_parameter(parameter, f"{parameter} must be a valid UUID", value)
    return value


def validate_uuid_list(values: List[str], parameter: str) -> List[str]:
    """Every entry must be a UUID; the first bad entry is reported."""
    if not values:
        raise_missing_parameter(parameter, f"{parameter} must not be empty")
    return [validate_required_uuid(v, parameter) for v in values]


def validate_optional_enum(value: Optional[str], enum_cls: Type[Enum], parameter: str) -> Optional[str]:
    """Status, severity and type filters must name a known value."""
    if not value:
        return None

    valid = [e.value for e in enum_cls]
    if value not in valid:
        raise_invalid_parameter(parameter, f"{parameter} must be one of {valid}", value)
    return value
