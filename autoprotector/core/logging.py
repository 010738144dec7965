"""Structured logging via structlog.

Configures structlog once at process startup. Module loggers obtained with
``logging.getLogger(__name__)`` are routed through the same processor chain
via ``structlog.stdlib.ProcessorFormatter``, so library and application log
lines share one format.

Renderer selection:
  debug=True:  `ConsoleRenderer` with colours for local development.
  debug=False: `JSONRenderer` for machine-parseable logs in production.

ContextVar injection:
  The `delivery_id` of the webhook delivery being handled (GitHub's
  X-GitHub-Delivery header) is injected into every log line, so everything
  logged while handling one event can be correlated without passing the ID
  around.

Never pass secrets, JWTs or access tokens to a logger.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar, Token

import structlog

_delivery_id_var: ContextVar[str] = ContextVar("delivery_id", default="")


def bind_delivery_id(delivery_id: str) -> Token[str]:
    """Set the delivery ID for the current task's context.

    Returns the token to pass to ``reset_delivery_id`` when the binding
    should be undone.
    """
    return _delivery_id_var.set(delivery_id)


def reset_delivery_id(token: Token[str]) -> None:
    _delivery_id_var.reset(token)


def get_delivery_id() -> str:
    """Return the current delivery ID, or empty string if not set."""
    return _delivery_id_var.get()


def _inject_context_vars(
    logger: logging.Logger,
    method: str,
    event_dict: dict,
) -> dict:
    """Structlog processor: inject delivery_id from its ContextVar."""
    delivery_id = get_delivery_id()
    if delivery_id:
        event_dict["delivery_id"] = delivery_id
    return event_dict


def configure_structlog(debug: bool = False) -> None:
    """Configure structlog and the stdlib bridge for the process lifetime.

    Calling multiple times is safe; the root handler is replaced, not added.
    """
    shared_processors: list = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        _inject_context_vars,
        structlog.processors.StackInfoRenderer(),
    ]

    if debug:
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=shared_processors
        + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
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
    root.setLevel(logging.DEBUG if debug else logging.INFO)

    # httpx logs every request URL at INFO; keep that for debug runs only
    logging.getLogger("httpx").setLevel(logging.DEBUG if debug else logging.WARNING)
