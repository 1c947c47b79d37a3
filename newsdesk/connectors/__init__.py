"""Network gateways for newsdesk.

Supported: the Currents-compatible REST API (latest-news, search, actions).
"""

from newsdesk.connectors.base import (
    GatewayRequest,
    GatewayResponse,
    NetworkGateway,
    RequestKind,
    SearchFilters,
)
from newsdesk.connectors.api import CurrentsGateway

__all__ = [
    "GatewayRequest",
    "GatewayResponse",
    "NetworkGateway",
    "RequestKind",
    "SearchFilters",
    "CurrentsGateway",
]
