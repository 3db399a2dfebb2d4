from .connection import get_db, get_engine, get_session_factory, init_db, Base

# Import reconciliation models to ensure they are registered with Base
from .reconciliation_models import (
    BankTransactionDB, DocumentDB, LedgerEntryDB,
    ReconciliationMatchDB, ReconciliationExceptionDB, ReconciliationEventDB,
    MatchingThresholdsDB
)

__all__ = [
    'get_db', 'get_engine', 'get_session_factory', 'init_db', 'Base',
    # Source records
    'BankTransactionDB', 'DocumentDB', 'LedgerEntryDB',
    # Engine records
    'ReconciliationMatchDB', 'ReconciliationExceptionDB', 'ReconciliationEventDB',
    'MatchingThresholdsDB',
]
