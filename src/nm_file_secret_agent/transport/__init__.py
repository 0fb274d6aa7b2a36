"""Transports connecting the agent session to the connection manager."""

from .interface import (
    ManagerLost,
    ManagerTransport,
    RegistrationError,
    RegistrationHandle,
    RequestEvent,
    TransportError,
    TransportEvent,
)

__all__ = [
    "ManagerLost",
    "ManagerTransport",
    "RegistrationError",
    "RegistrationHandle",
    "RequestEvent",
    "TransportError",
    "TransportEvent",
]
