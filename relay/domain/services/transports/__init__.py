"""
Delivery Transport Abstraction Layer

The worker pool only knows ``BaseDeliveryTransport``. Which concrete transport
runs is chosen by DISPATCH_TRANSPORT through the factory.
"""
from relay.domain.services.transports.base_transport import BaseDeliveryTransport
from relay.domain.services.transports.transport_factory import (
    get_delivery_transport,
    set_delivery_transport,
    reset_transports,
)

__all__ = [
    "BaseDeliveryTransport",
    "get_delivery_transport",
    "set_delivery_transport",
    "reset_transports",
]
