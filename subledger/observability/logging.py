"""
Structured logging with JSON output.

Features:
- JSON output for log aggregation, console output for development
- Request context propagation (request_id, subscriber_id, delivery_id)
- Secret and e-mail redaction
- Standard library loggers rendered through the same processors, including
  their ``extra={...}`` fields

Architecture:
- structlog for structured logging
- Context variables for request-scoped data
- ``structlog.stdlib.ProcessorFormatter`` on the root handler so modules can
  keep using ``logging.getLogger(__name__)``
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar

import structlog
from structlog.types import EventDict, Processor

# Context variables for request-scoped data
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
subscriber_id_var: ContextVar[str | None] = ContextVar("subscriber_id", default=None)
delivery_id_var: ContextVar[str | None] = ContextVar("delivery_id", default=None)

SENSITIVE_FIELDS = {
    "api_key",
    "admin_api_key",
    "password",
    "authorization",
    "secret",
    "signature",
    "stripe_api_key",
    "token",
}
EMAIL_FIELDS = {"email", "customer_email"}


# ============================================================================
# CUSTOM PROCESSORS
# ============================================================================


def add_request_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Inject request_id, subscriber_id and delivery_id when set."""
    for key, var in (
        ("request_id", request_id_var),
        ("subscriber_id", subscriber_id_var),
        ("delivery_id", delivery_id_var),
    ):
        value = var.get()
        if value and key not in event_dict:
            event_dict[key] = value
    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add ISO 8601 timestamp with microsecond precision.

    Format: 2025-01-15T10:30:45.123456Z
    """
    now = time.time()
    event_dict["timestamp"] = (
        time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(now)) + f".{int((now % 1) * 1000000):06d}Z"
    )
    return event_dict


def service_metadata_processor(
    service_name: str, service_version: str, environment: str
) -> Processor:
    """Build a processor that stamps service, version and environment."""

    def add_service_metadata(
        logger: logging.Logger, method_name: str, event_dict: EventDict
    ) -> EventDict:
        event_dict["service"] = service_name
        event_dict["version"] = service_version
        event_dict["environment"] = environment
        return event_dict

    return add_service_metadata


def redact_email(value: str) -> str:
    """user@example.com -> ***@example.com"""
    if "@" not in value:
        return value
    return f"***@{value.split('@', 1)[1]}"


def redact_sensitive_fields(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Redact credentials and e-mail addresses.

    - Secrets keep a short prefix and suffix for debugging (sk_live_abcd***xyz)
    - E-mail addresses keep only the domain
    """
    for key in list(event_dict.keys()):
        value = event_dict[key]
        if not isinstance(value, str):
            continue

        lowered = key.lower()
        if lowered in SENSITIVE_FIELDS:
            if len(value) > 12:
                event_dict[key] = f"{value[:8]}***{value[-3:]}"
            else:
                event_dict[key] = "***REDACTED***"
        elif lowered in EMAIL_FIELDS:
            event_dict[key] = redact_email(value)

    return event_dict


def add_exception_info(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add exception_type / exception_message for error aggregation."""
    exc_info = event_dict.get("exc_info")
    if exc_info is True:
        exc_info = sys.exc_info()
    if isinstance(exc_info, BaseException):
        exc_info = (type(exc_info), exc_info, exc_info.__traceback__)
    if isinstance(exc_info, tuple) and len(exc_info) == 3 and exc_info[0] is not None:
        event_dict["exception_type"] = exc_info[0].__name__
        event_dict["exception_message"] = str(exc_info[1])
    return event_dict


# ============================================================================
# LOGGER CONFIGURATION
# ============================================================================


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    colorized: bool = False,
    service_name: str = "subledger",
    service_version: str = "0.1.0",
    environment: str = "development",
) -> None:
    """
    Configure structured logging.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Use JSON output (True for production, False for development)
        colorized: Colorize console output (only for development)
        service_name: Stamped on every event
        service_version: Stamped on every event
        environment: Stamped on every event

    JSON output:
        {
          "timestamp": "2025-01-15T10:30:45.123456Z",
          "level": "info",
          "event": "Subscription synced",
          "service": "subledger",
          "request_id": "req_abc123",
          "subscriber_id": "sub-42",
          "plan": "PRO"
        }
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_request_context,
        service_metadata_processor(service_name, service_version, environment),
        add_timestamp,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        add_exception_info,
    ]

    renderer: Processor
    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=colorized)

    structlog.configure(
        processors=shared_processors
        + [redact_sensitive_fields, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Standard library records (logging.getLogger(__name__)) go through the
    # same chain; ExtraAdder lifts their extra={...} fields into the event.
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors
        + [structlog.stdlib.ExtraAdder(), redact_sensitive_fields],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, log_level.upper()))


# ============================================================================
# LOGGER FACTORY
# ============================================================================


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("Quota consumed", subscriber_id="sub-42", input_tokens=1200)
    """
    return structlog.get_logger(name)


# ============================================================================
# CONTEXT MANAGERS
# ============================================================================


class RequestContext:
    """
    Context manager for request-scoped logging.

    Generates a request_id if none is given and binds subscriber_id and
    delivery_id for everything logged inside the block.

    Usage:
        with RequestContext(subscriber_id=subscriber_id):
            await ledger.consume(subscriber_id, 1200, 180)
    """

    def __init__(
        self,
        subscriber_id: str | None = None,
        delivery_id: str | None = None,
        request_id: str | None = None,
    ):
        self.request_id = request_id or f"req_{uuid.uuid4().hex[:16]}"
        self.subscriber_id = subscriber_id
        self.delivery_id = delivery_id
        self._tokens: list = []

    def __enter__(self):
        # Always set every var (even to None) so reset restores the outer value
        self._tokens = [
            (request_id_var, request_id_var.set(self.request_id)),
            (subscriber_id_var, subscriber_id_var.set(self.subscriber_id)),
            (delivery_id_var, delivery_id_var.set(self.delivery_id)),
        ]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens = []


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def set_subscriber_id(subscriber_id: str) -> None:
    """Set subscriber ID for current context."""
    subscriber_id_var.set(subscriber_id)


def get_request_id() -> str | None:
    return request_id_var.get()


def get_subscriber_id() -> str | None:
    return subscriber_id_var.get()


def get_delivery_id() -> str | None:
    return delivery_id_var.get()
