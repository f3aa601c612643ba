"""structlog setup for the marketplace, with request and instance context binding."""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, WrappedLogger

# Keys dropped from every event: signed material and caller addresses.
REDACTED_KEYS = frozenset(
    {"signature", "public_key", "private_key", "admin_key", "ip", "client_ip", "x_forwarded_for"}
)
# Hashed addresses are kept only as a short prefix.
IP_HASH_PREFIX_LEN = 8

REQUEST_CONTEXT_KEYS = ("request_id", "instance_id", "method", "path")


def redact_sensitive(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Remove signatures, keys and raw addresses; shorten ``ip_hash``."""
    for key in REDACTED_KEYS.intersection(event_dict):
        del event_dict[key]
    ip_hash = event_dict.get("ip_hash")
    if isinstance(ip_hash, str):
        event_dict["ip_hash"] = ip_hash[:IP_HASH_PREFIX_LEN]
    return event_dict


def build_processors(json_format: bool) -> list[structlog.types.Processor]:
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        redact_sensitive,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if json_format:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    return processors


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    service_name: str = "marketplace",
) -> None:
    """
    Configure structlog once at startup.

    JSON lines in production, console rendering for development. ``service``
    is bound process-wide; per-request keys are bound by the request
    middleware and the attestation gateway.
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    structlog.configure(
        processors=build_processors(json_format),
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service=service_name)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_request_context(request_id: str, **kwargs: Any) -> None:
    structlog.contextvars.bind_contextvars(request_id=request_id, **kwargs)


def bind_instance_context(instance_id: str) -> None:
    """Tag the rest of the request's log entries with the authenticated instance."""
    structlog.contextvars.bind_contextvars(instance_id=instance_id)


def clear_request_context() -> None:
    """Drop per-request keys, keeping the process-wide ``service`` binding."""
    structlog.contextvars.unbind_contextvars(*REQUEST_CONTEXT_KEYS)
