"""Transport interface between the agent session and the connection manager.

The session never talks to D-Bus directly. A transport registers the agent,
turns incoming GetSecrets calls into RequestEvents and reports when the
connection manager went away.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Callable

from ..models import ResponseFragment, SecretRequest


class RegistrationError(Exception):
    """Registration with the connection manager failed (retryable)."""


class TransportError(Exception):
    """A reply could not be delivered to the connection manager."""


@dataclass(frozen=True)
class RegistrationHandle:
    """Proof of a successful registration.

    ``manager_owner`` is the bus name of the manager instance the agent
    registered with; a new instance means a new registration is needed.
    """

    identity: str
    manager_owner: str | None = None
    registered_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class RequestEvent:
    """A secret request paired with the sink its answer must go to."""

    request: SecretRequest
    reply_sink: Callable[[ResponseFragment], None]

    def reply(self, payload: ResponseFragment) -> None:
        """Send the answer; an empty payload means "no secrets"."""
        self.reply_sink(payload)


@dataclass(frozen=True)
class ManagerLost:
    """The connection manager disappeared or was replaced by a new instance."""

    reason: str


TransportEvent = RequestEvent | ManagerLost


class ManagerTransport(ABC):
    """Abstract interface for connection manager transports."""

    @abstractmethod
    def register(self, identity: str) -> RegistrationHandle:
        """Register the agent with the connection manager.

        Args:
            identity: Agent identifier shown by the manager

        Returns:
            Handle for the new registration

        Raises:
            RegistrationError: If the manager is unavailable or rejected the agent
        """
        pass

    @abstractmethod
    def unregister(self, handle: RegistrationHandle) -> None:
        """Release a registration.

        Raises:
            RegistrationError: If the manager could not be told
        """
        pass

    @abstractmethod
    def next_event(self, timeout: float | None = None) -> TransportEvent | None:
        """Wait for the next event.

        Args:
            timeout: Seconds to wait; None blocks until something arrives

        Returns:
            The next event, or None if the timeout expired
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Release every resource held by the transport."""
        pass
