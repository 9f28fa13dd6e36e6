"""
Tests for structured logging infrastructure.

Tests:
- JSON and console output
- Standard library records with extra fields
- Request context propagation
- Secret and e-mail redaction
"""

import asyncio
import json
import logging

import pytest

from subledger.observability.logging import (
    RequestContext,
    add_exception_info,
    add_request_context,
    configure_logging,
    get_delivery_id,
    get_logger,
    get_request_id,
    get_subscriber_id,
    redact_email,
    redact_sensitive_fields,
    set_subscriber_id,
)


def _last_json_line(output: str) -> dict:
    return json.loads(output.strip().splitlines()[-1])


def test_configure_logging_console_output():
    """Console logging can be configured."""
    configure_logging(log_level="INFO", json_output=False, colorized=False)

    logger = get_logger("test")
    logger.info("Test message", test_field="value")


def test_get_logger():
    logger = get_logger("test_logger")

    assert logger is not None
    assert hasattr(logger, "info")
    assert hasattr(logger, "error")
    assert hasattr(logger, "warning")
    assert hasattr(logger, "debug")


def test_json_output_includes_service_metadata(capsys):
    configure_logging(
        log_level="INFO",
        json_output=True,
        service_name="subledger",
        service_version="9.9.9",
        environment="staging",
    )

    get_logger("test").info("Quota consumed", input_tokens=1200)

    event = _last_json_line(capsys.readouterr().out)
    assert event["event"] == "Quota consumed"
    assert event["input_tokens"] == 1200
    assert event["service"] == "subledger"
    assert event["version"] == "9.9.9"
    assert event["environment"] == "staging"
    assert event["level"] == "info"
    assert event["timestamp"].endswith("Z")


def test_stdlib_extra_fields_rendered(capsys):
    """Modules using logging.getLogger(__name__) get the same rendering."""
    configure_logging(log_level="INFO", json_output=True)

    logging.getLogger("subledger.billing.test").info(
        "Subscription synced",
        extra={"plan": "PRO", "email": "someone@example.com"},
    )

    event = _last_json_line(capsys.readouterr().out)
    assert event["event"] == "Subscription synced"
    assert event["plan"] == "PRO"
    assert event["email"] == "***@example.com"
    assert event["logger"] == "subledger.billing.test"


def test_request_context_in_json_output(capsys):
    configure_logging(log_level="INFO", json_output=True)

    with RequestContext(subscriber_id="sub-42", request_id="req_ctx"):
        logging.getLogger("subledger.test").info("Consume rejected")

    event = _last_json_line(capsys.readouterr().out)
    assert event["request_id"] == "req_ctx"
    assert event["subscriber_id"] == "sub-42"


def test_level_filtering(capsys):
    configure_logging(log_level="WARNING", json_output=True)

    logging.getLogger("subledger.test").info("hidden")
    logging.getLogger("subledger.test").warning("shown")

    out = capsys.readouterr().out
    assert "hidden" not in out
    assert "shown" in out


def test_exception_logging(capsys):
    configure_logging(log_level="INFO", json_output=True)

    try:
        raise ValueError("Test exception")
    except ValueError:
        logging.getLogger("subledger.test").error("Sweep failed", exc_info=True)

    event = _last_json_line(capsys.readouterr().out)
    assert event["exception_type"] == "ValueError"
    assert event["exception_message"] == "Test exception"


# ============================================================================
# PROCESSORS
# ============================================================================


def test_redact_sensitive_fields():
    event = redact_sensitive_fields(
        None,
        "info",
        {
            "event": "Provider configured",
            "stripe_api_key": "sk_live_abcdefgh123456789",
            "secret": "short",
            "customer_email": "buyer@shop.io",
            "plan": "PRO",
        },
    )

    assert event["stripe_api_key"] == "sk_live_***789"
    assert event["secret"] == "***REDACTED***"
    assert event["customer_email"] == "***@shop.io"
    assert event["plan"] == "PRO"


def test_redact_email_without_at_sign():
    assert redact_email("not-an-email") == "not-an-email"


def test_add_request_context_does_not_override_explicit_fields():
    with RequestContext(subscriber_id="sub-ctx"):
        event = add_request_context(None, "info", {"subscriber_id": "sub-explicit"})

    assert event["subscriber_id"] == "sub-explicit"
    assert event["request_id"].startswith("req_")


def test_add_exception_info_from_exception_instance():
    error = RuntimeError("boom")

    event = add_exception_info(None, "error", {"exc_info": error})

    assert event["exception_type"] == "RuntimeError"
    assert event["exception_message"] == "boom"


# ============================================================================
# CONTEXT
# ============================================================================


def test_request_context():
    with RequestContext(subscriber_id="sub-1", delivery_id="evt_1", request_id="req_123"):
        assert get_request_id() == "req_123"
        assert get_subscriber_id() == "sub-1"
        assert get_delivery_id() == "evt_1"

    assert get_request_id() is None
    assert get_subscriber_id() is None
    assert get_delivery_id() is None


def test_request_context_auto_generation():
    with RequestContext(subscriber_id="sub-1") as ctx:
        request_id = get_request_id()
        assert request_id == ctx.request_id
        assert request_id.startswith("req_")
        assert len(request_id) == len("req_") + 16


def test_nested_request_contexts():
    with RequestContext(subscriber_id="sub-1", request_id="req1"):
        with RequestContext(subscriber_id="sub-2", request_id="req2"):
            assert get_subscriber_id() == "sub-2"
            assert get_request_id() == "req2"

        assert get_subscriber_id() == "sub-1"
        assert get_request_id() == "req1"


def test_context_setters_inside_request_context():
    with RequestContext(request_id="req_outer"):
        set_subscriber_id("sub-set")

        assert get_subscriber_id() == "sub-set"
        assert get_request_id() == "req_outer"

    assert get_subscriber_id() is None


def test_request_context_in_async_code():
    """Context variables are visible inside coroutines."""

    async def async_operation():
        assert get_request_id() == "req_async"
        assert get_subscriber_id() == "sub_async"

    with RequestContext(subscriber_id="sub_async", request_id="req_async"):
        asyncio.run(async_operation())


@pytest.fixture(autouse=True)
def _restore_logging():
    yield
    configure_logging(log_level="INFO", json_output=False, colorized=False)
