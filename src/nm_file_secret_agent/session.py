"""Agent session: registration lifecycle and request handling.

The session owns the registration handle. It moves through

    unregistered -> registering -> active -> reconnecting -> registering -> ...
                                                          -> shutting_down -> terminated

and answers secret requests only while active. Registration failures are
retried forever with bounded exponential backoff; a lost connection manager
triggers a new registration without restarting the process.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum

from .logging_utils import clear_request_id, log_debug, log_info, log_warning, set_request_id
from .matcher import iter_matches
from .metrics import (
    OUTCOME_ANSWERED,
    OUTCOME_FILE_UNAVAILABLE,
    OUTCOME_INTERNAL_ERROR,
    OUTCOME_MALFORMED,
    OUTCOME_NO_MATCH,
    OUTCOME_NOT_ACTIVE,
    MetricsCollector,
    get_metrics_collector,
)
from .models import NO_SECRETS, GetSecretsFlags, ResponseFragment, Rule, RuleSet, SecretRequest
from .resolver import ResolveError, resolve
from .settings import DEFAULT_IDENTITY
from .transport.interface import (
    ManagerLost,
    ManagerTransport,
    RegistrationError,
    RegistrationHandle,
    RequestEvent,
    TransportError,
    TransportEvent,
)

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    UNREGISTERED = "unregistered"
    REGISTERING = "registering"
    ACTIVE = "active"
    RECONNECTING = "reconnecting"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


# Valid state transitions
VALID_TRANSITIONS = {
    SessionState.UNREGISTERED: [SessionState.REGISTERING, SessionState.SHUTTING_DOWN],
    SessionState.REGISTERING: [SessionState.ACTIVE, SessionState.SHUTTING_DOWN],
    SessionState.ACTIVE: [SessionState.RECONNECTING, SessionState.SHUTTING_DOWN],
    SessionState.RECONNECTING: [SessionState.REGISTERING, SessionState.SHUTTING_DOWN],
    SessionState.SHUTTING_DOWN: [SessionState.TERMINATED],
    SessionState.TERMINATED: [],
}


@dataclass(frozen=True)
class RetryBackoff:
    """Exponential backoff between registration attempts, capped at ``maximum``."""

    initial: float = 1.0
    maximum: float = 30.0
    factor: float = 2.0

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given (zero-based) failed attempt."""
        return min(self.initial * self.factor**attempt, self.maximum)


class AgentSession:
    """Registration state machine plus per-request handling.

    Args:
        transport: Transport connecting the agent to the connection manager.
        rules: Rules loaded at startup.
        identity: Agent identifier sent with the registration.
        backoff: Delays between failed registration attempts.
        poll_interval: Seconds to wait for an event before checking for shutdown.
        metrics: Collector for request and registration counters.
    """

    def __init__(
        self,
        transport: ManagerTransport,
        rules: RuleSet,
        identity: str = DEFAULT_IDENTITY,
        backoff: RetryBackoff | None = None,
        poll_interval: float = 1.0,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.transport = transport
        self.rules = rules
        self.identity = identity
        self.backoff = backoff or RetryBackoff()
        self.poll_interval = poll_interval
        self.metrics = metrics or get_metrics_collector()
        self._state = SessionState.UNREGISTERED
        self._handle: RegistrationHandle | None = None
        self._shutdown_requested = threading.Event()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_registered(self) -> bool:
        return self._handle is not None

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested.is_set()

    def _transition(self, new_state: SessionState) -> None:
        """Move to a new state.

        Raises:
            ValueError: If the transition is not allowed
        """
        valid_next_states = VALID_TRANSITIONS[self._state]
        if new_state not in valid_next_states:
            raise ValueError(
                f"Invalid session transition from '{self._state.value}' to '{new_state.value}'. "
                f"Valid transitions: {[s.value for s in valid_next_states]}"
            )
        logger.debug("Session state %s -> %s", self._state.value, new_state.value)
        self._state = new_state

    def request_shutdown(self) -> None:
        """Ask the session to stop; safe to call from a signal handler."""
        self._shutdown_requested.set()

    def register(self) -> bool:
        """Register with the connection manager, retrying until it works.

        Returns:
            True once registered, False if shutdown was requested first
        """
        self._transition(SessionState.REGISTERING)
        attempt = 0
        while not self._shutdown_requested.is_set():
            try:
                handle = self.transport.register(self.identity)
            except RegistrationError as e:
                self.metrics.record_registration(success=False)
                delay = self.backoff.delay(attempt)
                attempt += 1
                logger.warning(
                    "Could not register with NetworkManager (attempt %d): %s; retrying in %.1fs",
                    attempt,
                    e,
                    delay,
                )
                if self._shutdown_requested.wait(delay):
                    break
                continue

            self.metrics.record_registration(success=True)
            self._handle = handle
            self._transition(SessionState.ACTIVE)
            logger.info("Registered with NetworkManager as %s; now serving secret requests", self.identity)
            return True

        logger.info("Registration abandoned because shutdown was requested")
        return False

    def on_manager_lost(self, reason: str) -> None:
        """Drop the stale registration after the connection manager went away."""
        if self._state != SessionState.ACTIVE:
            logger.debug("Ignoring manager loss (%s) in state %s", reason, self._state.value)
            return
        self.metrics.record_manager_restart()
        logger.warning("Lost NetworkManager: %s; registering again", reason)
        self._transition(SessionState.RECONNECTING)
        self._handle = None

    def reconnect(self, reason: str) -> bool:
        """Handle a lost connection manager and register again right away."""
        self.on_manager_lost(reason)
        if self._state != SessionState.RECONNECTING:
            return self._state == SessionState.ACTIVE
        return self.register()

    def handle_request(self, request: SecretRequest) -> ResponseFragment:
        """Answer one secret request.

        Never raises. Anything that prevents an answer results in the empty
        "no secrets" payload and a log line.

        Args:
            request: The decoded request

        Returns:
            The reply payload
        """
        set_request_id()
        try:
            return self._answer(request)
        except Exception:
            self.metrics.record_request(OUTCOME_INTERNAL_ERROR)
            logger.exception("Unexpected error while answering secret request; answering with no secrets")
            return dict(NO_SECRETS)
        finally:
            clear_request_id()

    def _answer(self, request: SecretRequest) -> ResponseFragment:
        if self._state != SessionState.ACTIVE:
            self.metrics.record_request(OUTCOME_NOT_ACTIVE)
            log_warning(logger, "Not answering secret request while not registered", state=self._state.value)
            return dict(NO_SECRETS)

        if request.is_malformed:
            self.metrics.record_request(OUTCOME_MALFORMED)
            log_warning(
                logger,
                "Could not interpret secret request; answering with no secrets",
                reason=request.malformed_reason,
                connection_path=request.connection_path,
            )
            return dict(NO_SECRETS)

        log_info(logger, "Resolving secret request with configured entries", **request.to_log_fields())
        if request.flags & GetSecretsFlags.REQUEST_NEW:
            log_debug(logger, "NetworkManager asked for new secrets; answering with the configured ones anyway")

        matches = list(iter_matches(request, self.rules))
        if not matches:
            self.metrics.record_request(OUTCOME_NO_MATCH)
            log_info(logger, "No configured entry matches the request so no secrets are returned")
            return dict(NO_SECRETS)

        rule = matches[0]
        if len(matches) > 1:
            log_debug(
                logger,
                "Several entries match; using the first one",
                selected=self.rules.index(rule),
                shadowed=[self.rules.index(other) for other in matches[1:]],
            )

        try:
            fragment = resolve(rule, request.setting_name)
        except ResolveError as e:
            self.metrics.record_request(OUTCOME_FILE_UNAVAILABLE)
            log_warning(
                logger,
                "Could not read secret file; answering with no secrets",
                error=e,
                entry=rule.describe(),
            )
            return dict(NO_SECRETS)

        self._log_missing_hints(request, rule)
        self.metrics.record_request(OUTCOME_ANSWERED, request.setting_name)
        log_info(logger, "Returning secret value", answered=f"{request.setting_name}.{rule.key}")
        return fragment

    def _log_missing_hints(self, request: SecretRequest, rule: Rule) -> None:
        missing = sorted(request.requested_keys - {rule.key, rule.top_level_key})
        if missing:
            log_info(
                logger,
                "NetworkManager asked for more keys than this agent provides",
                setting_name=request.setting_name,
                missing_keys=missing,
            )

    def dispatch(self, event: TransportEvent) -> None:
        """Act on one transport event."""
        if isinstance(event, ManagerLost):
            self.reconnect(event.reason)
        elif isinstance(event, RequestEvent):
            payload = self.handle_request(event.request)
            try:
                event.reply(payload)
            except TransportError as e:
                logger.warning("Could not deliver reply to NetworkManager: %s", e)
        else:
            logger.warning("Ignoring unknown transport event %r", event)

    def run(self) -> None:
        """Register and serve requests until shutdown is requested."""
        try:
            if not self.register():
                return
            while not self._shutdown_requested.is_set():
                event = self.transport.next_event(timeout=self.poll_interval)
                if event is not None:
                    self.dispatch(event)
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        """Release the registration (if any) and close the transport."""
        if self._state in (SessionState.SHUTTING_DOWN, SessionState.TERMINATED):
            return
        self._shutdown_requested.set()
        self._transition(SessionState.SHUTTING_DOWN)

        if self._handle is not None:
            try:
                self.transport.unregister(self._handle)
            except RegistrationError as e:
                logger.warning("Could not unregister from NetworkManager: %s", e)
            self._handle = None

        self.transport.close()
        self._transition(SessionState.TERMINATED)
        logger.info("Secret agent stopped; %s", self.metrics.get_snapshot())
