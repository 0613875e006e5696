"""Signing gateway adapters.

The guard core only depends on the `SigningGateway` protocol. The simulated
gateway is the default; the HTTP gateway talks to a custody service.
"""

from .http_gateway import HttpSigningGateway
from .interfaces import SigningGateway, build_transaction_intent
from .simulated import SimulatedSigningGateway

__all__ = [
    "HttpSigningGateway",
    "SigningGateway",
    "SimulatedSigningGateway",
    "build_transaction_intent",
]
