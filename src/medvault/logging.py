"""Structured logging: structlog for bound loggers, stdlib records routed through it.

Modules log with ``logging.getLogger(__name__)``; those records go through the
same processor chain as structlog loggers, so every entry carries the request
correlation id and wallet-valued fields are shortened before rendering.
"""

from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar
from typing import IO, Any

import structlog

__all__ = [
    "configure_logging",
    "get_logger",
    "correlation_id_var",
    "new_correlation_id",
    "mask_wallet",
]

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

# Event fields that hold wallet addresses
_WALLET_FIELDS = frozenset(
    {"wallet", "wallet_address", "doctor_wallet", "patient_wallet", "owner_wallet", "actor"}
)


def new_correlation_id() -> str:
    """Generate and set a new correlation ID for the current context."""
    cid = str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def mask_wallet(wallet: str | None) -> str:
    """Shorten a wallet address for log output (0x1234...abcd)."""
    if not wallet:
        return "-"
    if len(wallet) <= 10:
        return wallet
    return f"{wallet[:6]}...{wallet[-4:]}"


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    cid = correlation_id_var.get("")
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _mask_wallet_fields(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    for key in _WALLET_FIELDS.intersection(event_dict):
        value = event_dict[key]
        if isinstance(value, str) and value.startswith("0x"):
            event_dict[key] = mask_wallet(value)
    return event_dict


class _StructlogHandler(logging.StreamHandler):  # type: ignore[type-arg]
    """Root handler installed by :func:`configure_logging`."""


def configure_logging(
    *, json_output: bool = True, level: str = "INFO", stream: IO[str] | None = None
) -> None:
    """Configure structlog and the root stdlib logger.

    Calling it again replaces the handler installed by the previous call.

    Args:
        json_output: True for JSON (production), False for console (dev).
        level: Log level string.
        stream: Where rendered entries go (stderr when None).
    """
    shared: list[Any] = [
        structlog.contextvars.merge_contextvars,
        _add_correlation_id,
        _mask_wallet_fields,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    renderer: list[Any]
    if json_output:
        renderer = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        renderer = [structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=[
            *shared,
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = _StructlogHandler(stream)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *renderer],
        )
    )
    root = logging.getLogger()
    for existing in [h for h in root.handlers if isinstance(h, _StructlogHandler)]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper())


def get_logger(name: str | None = None, **kwargs: Any) -> structlog.stdlib.BoundLogger:
    """Get a bound logger with optional initial context."""
    return structlog.get_logger(name, **kwargs)  # type: ignore[no-any-return]
