from __future__ import annotations

import structlog

from cai.core.logging import configure_logging, get_logger, request_context


def test_request_context_binds_correlation_id():
    with request_context("req-42", stage="analysis"):
        bound = structlog.contextvars.get_contextvars()
        assert bound["request_id"] == "req-42"
        assert bound["stage"] == "analysis"

    assert "request_id" not in structlog.contextvars.get_contextvars()


def test_configure_logging_installs_structlog_pipeline():
    try:
        configure_logging("DEBUG", json_logs=False)

        assert structlog.is_configured()
        processors = structlog.get_config()["processors"]
        assert structlog.contextvars.merge_contextvars in processors
        get_logger(name="cai.tests", component="logging").info("logging_configured")
    finally:
        structlog.reset_defaults()
