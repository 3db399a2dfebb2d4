"""
Reconciliation error types.

The API layer maps these to HTTP status codes; inside a batch run they are
logged against the transaction and counted as unmatched.
"""


class ReconciliationError(Exception):
    """Base class for reconciliation failures."""


class ThresholdConfigurationError(ReconciliationError, ValueError):
    """Weights or cutoffs that cannot produce a meaningful score."""


class NotFoundError(ReconciliationError, ValueError):
    """Referenced match, exception or transaction does not exist for the tenant."""


class InvalidTransitionError(ReconciliationError, ValueError):
    """State change not allowed from the record's current status."""
