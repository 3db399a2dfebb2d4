"""
Tests for structured logging with reconciliation context.

Run with: pytest backend/tests/test_logging_config.py -v
"""

import json
import logging
import sys

from logging_config import (
    JSONFormatter,
    ReconciliationContextFilter,
    set_reconciliation_context,
    reset_reconciliation_context,
    get_reconciliation_context,
)


def make_record(msg="matched", **extra):
    record = logging.LogRecord("reconciliation", logging.INFO, __file__, 10, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestContextFilter:

    def setup_method(self):
        self.tokens = set_reconciliation_context("tenant-1", "run-1")

    def teardown_method(self):
        reset_reconciliation_context(self.tokens)

    def test_stamps_current_context(self):
        record = make_record()

        assert ReconciliationContextFilter().filter(record) is True
        assert (record.tenant_id, record.run_id) == ("tenant-1", "run-1")

    def test_explicit_values_win(self):
        record = make_record(tenant_id="tenant-2")

        ReconciliationContextFilter().filter(record)

        assert record.tenant_id == "tenant-2"
        assert record.run_id == "run-1"


class TestContextReset:

    def test_reset_restores_outer_context(self):
        outer = set_reconciliation_context("tenant-1")
        inner = set_reconciliation_context("tenant-1", "run-2")
        assert get_reconciliation_context() == {"tenant_id": "tenant-1", "run_id": "run-2"}

        reset_reconciliation_context(inner)
        assert get_reconciliation_context() == {"tenant_id": "tenant-1", "run_id": None}

        reset_reconciliation_context(outer)
        assert get_reconciliation_context() == {"tenant_id": None, "run_id": None}


class TestJSONFormatter:

    def test_context_top_level_and_extra_nested(self):
        record = make_record("Reconciliation event", tenant_id="tenant-1", run_id=None, match_id="m-1")

        entry = json.loads(JSONFormatter(service_name="recon-test").format(record))

        assert entry["message"] == "Reconciliation event"
        assert entry["service"] == "recon-test"
        assert entry["tenant_id"] == "tenant-1"
        assert "run_id" not in entry
        assert entry["extra"] == {"match_id": "m-1"}

    def test_exception_included(self):
        try:
            raise KeyError("document")
        except KeyError:
            record = logging.LogRecord("reconciliation", logging.ERROR, __file__, 10, "failed", None, sys.exc_info())

        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "ERROR"
        assert entry["exception"]["type"] == "KeyError"
        assert "Traceback" in entry["exception"]["traceback"]
