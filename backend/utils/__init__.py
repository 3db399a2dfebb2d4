"""
Utils Package

- validation_errors: structured 422 responses for request validation
"""

from .validation_errors import (
    ValidationErrorCode,
    ValidationErrorResponse,
    raise_missing_parameter,
    raise_invalid_parameter,
    raise_invalid_configuration,
    validate_required_uuid,
    validate_uuid_list,
    validate_optional_enum,
)

__all__ = [
    'ValidationErrorCode',
    'ValidationErrorResponse',
    'raise_missing_parameter',
    'raise_invalid_parameter',
    'raise_invalid_configuration',
    'validate_required_uuid',
    'validate_uuid_list',
    'validate_optional_enum',
]
