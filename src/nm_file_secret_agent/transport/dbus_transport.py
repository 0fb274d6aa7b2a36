"""D-Bus transport talking to NetworkManager through jeepney's blocking I/O.

The agent exports org.freedesktop.NetworkManager.SecretAgent on the bus,
registers with NetworkManager's AgentManager and watches NameOwnerChanged so
that a restarted NetworkManager is noticed and the agent registers again.
"""

import logging
from collections import deque
from contextlib import ExitStack

from jeepney import (
    DBusAddress,
    HeaderFields,
    Message,
    MessageType,
    new_error,
    new_method_call,
    new_method_return,
)
from jeepney.bus_messages import MatchRule, message_bus
from jeepney.io.blocking import DBusConnection, open_dbus_connection
from jeepney.wrappers import DBusErrorResponse, unwrap_msg

from ..logging_utils import log_debug, redact_settings
from ..models import ResponseFragment
from .codec import SECRETS_SIGNATURE, decode_get_secrets, encode_secrets, unwrap_variants
from .interface import (
    ManagerLost,
    ManagerTransport,
    RegistrationError,
    RegistrationHandle,
    RequestEvent,
    TransportError,
    TransportEvent,
)

logger = logging.getLogger(__name__)

NM_BUS_NAME = "org.freedesktop.NetworkManager"
AGENT_MANAGER_PATH = "/org/freedesktop/NetworkManager/AgentManager"
AGENT_MANAGER_INTERFACE = "org.freedesktop.NetworkManager.AgentManager"

SECRET_AGENT_PATH = "/org/freedesktop/NetworkManager/SecretAgent"
SECRET_AGENT_INTERFACE = "org.freedesktop.NetworkManager.SecretAgent"
INTROSPECTABLE_INTERFACE = "org.freedesktop.DBus.Introspectable"

ERROR_ACCESS_DENIED = "org.freedesktop.DBus.Error.AccessDenied"
ERROR_UNKNOWN_METHOD = "org.freedesktop.DBus.Error.UnknownMethod"
ERROR_UNKNOWN_OBJECT = "org.freedesktop.DBus.Error.UnknownObject"

# NMSecretAgentCapabilities: this agent offers no VPN hints
CAPABILITIES_NONE = 0

INTROSPECTION_XML = """<!DOCTYPE node PUBLIC "-//freedesktop//DTD D-BUS Object Introspection 1.0//EN"
 "http://www.freedesktop.org/standards/dbus/1.0/introspect.dtd">
<node>
  <interface name="org.freedesktop.DBus.Introspectable">
    <method name="Introspect">
      <arg name="xml_data" type="s" direction="out"/>
    </method>
  </interface>
  <interface name="org.freedesktop.NetworkManager.SecretAgent">
    <method name="GetSecrets">
      <arg name="connection" type="a{sa{sv}}" direction="in"/>
      <arg name="connection_path" type="o" direction="in"/>
      <arg name="setting_name" type="s" direction="in"/>
      <arg name="hints" type="as" direction="in"/>
      <arg name="flags" type="u" direction="in"/>
      <arg name="secrets" type="a{sa{sv}}" direction="out"/>
    </method>
    <method name="CancelGetSecrets">
      <arg name="connection_path" type="o" direction="in"/>
      <arg name="setting_name" type="s" direction="in"/>
    </method>
    <method name="SaveSecrets">
      <arg name="connection" type="a{sa{sv}}" direction="in"/>
      <arg name="connection_path" type="o" direction="in"/>
    </method>
    <method name="DeleteSecrets">
      <arg name="connection" type="a{sa{sv}}" direction="in"/>
      <arg name="connection_path" type="o" direction="in"/>
    </method>
  </interface>
</node>
"""

AGENT_MANAGER = DBusAddress(AGENT_MANAGER_PATH, bus_name=NM_BUS_NAME, interface=AGENT_MANAGER_INTERFACE)


def name_owner_changed_rule() -> MatchRule:
    """Match rule for ownership changes of NetworkManager's bus name."""
    rule = MatchRule(
        type="signal",
        sender=message_bus.bus_name,
        interface=message_bus.interface,
        member="NameOwnerChanged",
        path=message_bus.object_path,
    )
    rule.add_arg_condition(0, NM_BUS_NAME)
    return rule


class DBusManagerTransport(ManagerTransport):
    """ManagerTransport implementation on top of a jeepney blocking connection.

    The bus connection is opened lazily by ``register()``. Losing it (for
    example because the bus daemon restarted) is reported as ManagerLost and
    the next registration opens a fresh one.
    """

    def __init__(self, bus: str = "system", call_timeout: float = 5.0):
        """Initialize the transport.

        Args:
            bus: "system" or "session"
            call_timeout: Seconds to wait for replies to our own D-Bus calls
        """
        self.bus = bus
        self.call_timeout = call_timeout
        self._conn: DBusConnection | None = None
        self._filters: ExitStack | None = None
        self._incoming: deque[Message] = deque()
        self._manager_names: tuple[str, ...] = ()
        self._manager_owner: str | None = None

    @property
    def connected(self) -> bool:
        return self._conn is not None

    def _connect(self) -> DBusConnection:
        """Open the bus connection and start collecting incoming messages."""
        if self._conn is not None:
            return self._conn

        logger.debug("Connecting to %s bus", self.bus)
        try:
            conn = open_dbus_connection(bus=self.bus.upper())
        except (OSError, ValueError, KeyError) as e:
            raise RegistrationError(f"Could not connect to the {self.bus} D-Bus daemon: {e}") from e

        filters = ExitStack()
        filters.enter_context(conn.filter(MatchRule(type="method_call"), queue=self._incoming))
        filters.enter_context(conn.filter(name_owner_changed_rule(), queue=self._incoming))

        self._conn = conn
        self._filters = filters
        logger.debug("Connected to bus as %s", conn.unique_name)

        try:
            self._call(message_bus.AddMatch(name_owner_changed_rule()))
        except RegistrationError:
            self._disconnect()
            raise
        return conn

    def _disconnect(self) -> None:
        if self._filters is not None:
            self._filters.close()
            self._filters = None
        if self._conn is not None:
            try:
                self._conn.close()
            except OSError as e:
                logger.debug("Error while closing bus connection: %s", e)
            self._conn = None
        self._incoming.clear()
        self._manager_names = ()
        self._manager_owner = None

    def _call(self, message: Message) -> tuple:
        """Send a method call and return the reply body.

        Raises:
            RegistrationError: On error replies, timeouts and connection loss
        """
        if self._conn is None:
            raise RegistrationError("Not connected to the bus")
        try:
            reply = self._conn.send_and_get_reply(message, timeout=self.call_timeout)
            return unwrap_msg(reply)
        except DBusErrorResponse as e:
            raise RegistrationError(f"{e.name}: {' '.join(map(str, e.data))}") from e
        except TimeoutError as e:
            raise RegistrationError(f"No reply within {self.call_timeout}s") from e
        except (ConnectionError, OSError) as e:
            self._disconnect()
            raise RegistrationError(f"Lost bus connection: {e}") from e

    def _lookup_manager_owner(self) -> str:
        (owner,) = self._call(message_bus.GetNameOwner(NM_BUS_NAME))
        return owner

    def register(self, identity: str) -> RegistrationHandle:
        self._connect()

        logger.debug("Querying the bus for the owner of %s", NM_BUS_NAME)
        owner = self._lookup_manager_owner()
        self._manager_owner = owner
        self._manager_names = (owner, NM_BUS_NAME)

        logger.debug("Registering secret agent %s with NetworkManager (%s)", identity, owner)
        self._call(
            new_method_call(
                AGENT_MANAGER, "RegisterWithCapabilities", "su", (identity, CAPABILITIES_NONE)
            )
        )
        return RegistrationHandle(identity=identity, manager_owner=owner)

    def unregister(self, handle: RegistrationHandle) -> None:
        if self._conn is None:
            return
        if handle.manager_owner != self._manager_owner:
            logger.debug("Not unregistering from stale manager instance %s", handle.manager_owner)
            return
        logger.debug("Unregistering secret agent %s", handle.identity)
        self._call(new_method_call(AGENT_MANAGER, "Unregister"))

    def close(self) -> None:
        self._disconnect()

    def next_event(self, timeout: float | None = None) -> TransportEvent | None:
        if self._conn is None:
            return ManagerLost("not connected to the bus")

        while True:
            if not self._incoming:
                try:
                    self._conn.recv_messages(timeout=timeout)
                except TimeoutError:
                    return None
                except (ConnectionError, OSError) as e:
                    self._disconnect()
                    return ManagerLost(f"bus connection lost: {e}")
                if not self._incoming:
                    # A message nobody filters for (e.g. a late reply)
                    continue

            msg = self._incoming.popleft()
            try:
                event = self._handle_message(msg)
            except TransportError as e:
                self._disconnect()
                return ManagerLost(str(e))
            if event is not None:
                return event
            if not self._incoming:
                return None

    def _handle_message(self, msg: Message) -> TransportEvent | None:
        """Turn one incoming message into an event, answering it directly if possible."""
        if msg.header.message_type == MessageType.signal:
            return self._handle_name_owner_changed(msg)
        if msg.header.message_type == MessageType.method_call:
            return self._handle_method_call(msg)
        return None

    def _handle_name_owner_changed(self, msg: Message) -> ManagerLost | None:
        try:
            name, old_owner, new_owner = msg.body
        except (TypeError, ValueError):
            logger.debug("Ignoring NameOwnerChanged signal with unexpected body %r", msg.body)
            return None
        if name != NM_BUS_NAME or self._manager_owner is None:
            return None
        if new_owner == self._manager_owner:
            return None

        if new_owner:
            reason = f"NetworkManager moved from {old_owner or '(none)'} to {new_owner}"
        else:
            reason = f"NetworkManager ({old_owner}) left the bus"
        self._manager_owner = None
        self._manager_names = ()
        return ManagerLost(reason)

    def _handle_method_call(self, msg: Message) -> RequestEvent | None:
        fields = msg.header.fields
        path = fields.get(HeaderFields.path)
        interface = fields.get(HeaderFields.interface)
        member = fields.get(HeaderFields.member)
        sender = fields.get(HeaderFields.sender)

        if path != SECRET_AGENT_PATH:
            self._send(new_error(msg, ERROR_UNKNOWN_OBJECT, "s", (f"No object at {path}",)))
            return None

        if interface == INTROSPECTABLE_INTERFACE or (interface is None and member == "Introspect"):
            if member == "Introspect":
                self._send(new_method_return(msg, "s", (INTROSPECTION_XML,)))
            else:
                self._send(new_error(msg, ERROR_UNKNOWN_METHOD, "s", (f"Unknown method {member}",)))
            return None

        if interface not in (SECRET_AGENT_INTERFACE, None):
            self._send(new_error(msg, ERROR_UNKNOWN_METHOD, "s", (f"Unknown interface {interface}",)))
            return None

        if not self._verify_access(sender):
            self._send(new_error(msg, ERROR_ACCESS_DENIED, "s", ("Access Denied",)))
            return None

        if member == "GetSecrets":
            log_debug(logger, "Got GetSecrets() call", sender=sender)
            signature = fields.get(HeaderFields.signature)
            request = decode_get_secrets(msg.body, signature)
            if request.malformed_reason is None and logger.isEnabledFor(logging.DEBUG):
                log_debug(
                    logger,
                    "Connection profile of request",
                    profile=redact_settings(unwrap_variants(msg.body[0])),
                )
            return RequestEvent(request=request, reply_sink=lambda payload: self._reply_secrets(msg, payload))

        if member == "CancelGetSecrets":
            logger.debug("Got CancelGetSecrets() call for %r", msg.body)
        elif member in ("SaveSecrets", "DeleteSecrets"):
            # Nothing is ever stored by this agent
            logger.debug("Got %s() call for %s", member, msg.body[1] if len(msg.body) > 1 else None)
        else:
            self._send(new_error(msg, ERROR_UNKNOWN_METHOD, "s", (f"Unknown method {member}",)))
            return None

        self._send(new_method_return(msg))
        return None

    def _verify_access(self, sender: str | None) -> bool:
        """Only NetworkManager itself may call the agent."""
        if sender is None:
            logger.debug("Denying method access for sender without a bus name")
            return False
        if sender not in self._manager_names:
            logger.debug("Denying method access for %s which is not NetworkManager", sender)
            return False
        return True

    def _reply_secrets(self, msg: Message, payload: ResponseFragment) -> None:
        self._send(new_method_return(msg, SECRETS_SIGNATURE, (encode_secrets(payload),)))

    def _send(self, message: Message) -> None:
        if self._conn is None:
            raise TransportError("Not connected to the bus")
        try:
            self._conn.send(message)
        except (ConnectionError, OSError) as e:
            raise TransportError(f"Could not send reply: {e}") from e
