"""
Logging configuration for the CDK app.

Structured JSON events go to stderr so that anything the CDK CLI reads
from stdout stays untouched.
"""

import logging
import sys

import structlog


def configure_logging(app_name: str, level: str = "INFO") -> None:
    """
    Configure structured logging for the app.

    Args:
        app_name: Name added to every event
        level: Standard logging level name
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper(), logging.INFO),
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_app_name(app_name),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


def _add_app_name(app_name: str):
    """Processor to add the app name to all logs."""

    def processor(logger, method_name, event_dict):
        event_dict["app"] = app_name
        return event_dict

    return processor
