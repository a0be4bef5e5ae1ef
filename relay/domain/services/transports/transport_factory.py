"""
Transport Factory - builds the delivery transport selected by DISPATCH_TRANSPORT.

The transport is a lazy process-wide singleton. ``CallbackTransport`` wraps an
in-process callable, so it is never built from settings: an embedding
application installs it with ``set_delivery_transport``.
"""
from __future__ import annotations

import threading

from relay.core.config import settings
from relay.core.logging import get_logger
from relay.domain.services.transports.base_transport import BaseDeliveryTransport

logger = get_logger(__name__)

_transport: BaseDeliveryTransport | None = None
_lock = threading.Lock()


def _create_transport(transport_type: str) -> BaseDeliveryTransport:
    if transport_type == "log":
        from relay.domain.services.transports.log_transport import LogTransport

        return LogTransport()

    raise ValueError(f"Unknown delivery transport: {transport_type}")


def get_delivery_transport() -> BaseDeliveryTransport:
    global _transport
    if _transport is None:
        with _lock:
            if _transport is None:
                _transport = _create_transport(settings.DISPATCH_TRANSPORT)
                logger.info(
                    "Delivery transport initialized",
                    extra_data={"transport": _transport.transport_name},
                )
    return _transport


def set_delivery_transport(transport: BaseDeliveryTransport) -> None:
    """Install a transport explicitly (embedding applications, tests)."""
    global _transport
    with _lock:
        _transport = transport
    logger.info(
        "Delivery transport installed",
        extra_data={"transport": transport.transport_name},
    )


def reset_transports() -> None:
    """Forget the current transport (tests)."""
    global _transport
    with _lock:
        _transport = None
