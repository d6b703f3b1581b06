"""structlog configuration module."""

import logging
import sys

import structlog

# Keys that may carry secrets or signature material; never rendered.
REDACTED_KEYS = frozenset(
    {
        "signature",
        "stripe_signature",
        "webhook_secret",
        "secret_key",
        "authorization",
    }
)
REDACTED = "[redacted]"


def redact_secrets(_logger, _method_name: str, event_dict: dict) -> dict:
    """structlog processor that masks secret-bearing keys."""
    for key in REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def setup_logging(debug: bool = False) -> None:
    """
    Configure structlog and stdlib logging.

    In debug mode: colored, human-readable console output.
    In production mode: JSON output for log aggregation.

    Args:
        debug: If True, use ConsoleRenderer; otherwise use JSONRenderer.
    """
    shared_processors: list = [
        structlog.contextvars.merge_contextvars,  # request_id, path, event_id
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if debug:
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    level = logging.DEBUG if debug else logging.INFO
    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    # stripe and httpx log through stdlib; keep them on the same stream.
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    logging.getLogger("stripe").setLevel(logging.WARNING)
