"""pytest configuration for nm-file-secret-agent tests."""

import sys
from collections import deque
from pathlib import Path

import pytest

# Add src directory to path so tests can import nm_file_secret_agent
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from nm_file_secret_agent.metrics import MetricsCollector  # noqa: E402
from nm_file_secret_agent.models import Rule, RuleSet, SecretRequest  # noqa: E402
from nm_file_secret_agent.session import AgentSession, RetryBackoff  # noqa: E402
from nm_file_secret_agent.transport.interface import (  # noqa: E402
    ManagerLost,
    ManagerTransport,
    RegistrationError,
    RegistrationHandle,
    RequestEvent,
)


class FakeTransport(ManagerTransport):
    """Deterministic in-memory transport.

    Events are queued explicitly by the tests; nothing happens on timers.
    """

    def __init__(self, failures_before_success: int = 0):
        self.failures_remaining = failures_before_success
        self.events: deque = deque()
        self.replies: list[dict] = []
        self.register_calls = 0
        self.unregistered: list[RegistrationHandle] = []
        self.closed = False
        self.on_idle = None
        self.on_register_failure = None
        self._generation = 0

    def register(self, identity: str) -> RegistrationHandle:
        self.register_calls += 1
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            if self.on_register_failure:
                self.on_register_failure()
            raise RegistrationError("org.freedesktop.DBus.Error.ServiceUnknown: NetworkManager is not running")
        self._generation += 1
        return RegistrationHandle(identity=identity, manager_owner=f":1.{self._generation}")

    def unregister(self, handle: RegistrationHandle) -> None:
        self.unregistered.append(handle)

    def next_event(self, timeout=None):
        if self.events:
            return self.events.popleft()
        if self.on_idle:
            self.on_idle()
        return None

    def close(self) -> None:
        self.closed = True

    def push_request(self, request: SecretRequest) -> None:
        self.events.append(RequestEvent(request=request, reply_sink=self.replies.append))

    def push_manager_lost(self, reason: str = "NetworkManager left the bus") -> None:
        self.events.append(ManagerLost(reason))


@pytest.fixture
def fake_transport():
    """Transport that registers on the first attempt."""
    return FakeTransport()


@pytest.fixture
def metrics():
    """Fresh metrics collector, isolated from the global one."""
    return MetricsCollector()


@pytest.fixture
def no_wait_backoff():
    """Backoff that retries immediately so tests never sleep."""
    return RetryBackoff(initial=0.0, maximum=0.0)


@pytest.fixture
def wireguard_key_file(tmp_path):
    """Secret file holding a WireGuard private key."""
    path = tmp_path / "key"
    path.write_text("ABCD\n")
    return path


@pytest.fixture
def wireguard_rules(wireguard_key_file):
    """Single entry answering wireguard private-key requests."""
    return RuleSet(
        rules=(
            Rule(
                match_type="wireguard",
                match_setting="wireguard",
                key="private-key",
                file=str(wireguard_key_file),
            ),
        )
    )


@pytest.fixture
def make_session(fake_transport, metrics, no_wait_backoff):
    """Factory for sessions wired to the fake transport."""

    def _make(rules: RuleSet, transport: FakeTransport | None = None) -> AgentSession:
        return AgentSession(
            transport or fake_transport,
            rules,
            backoff=no_wait_backoff,
            poll_interval=0.0,
            metrics=metrics,
        )

    return _make
