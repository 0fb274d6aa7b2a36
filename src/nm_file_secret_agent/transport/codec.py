"""Conversion between NetworkManager's D-Bus shapes and the agent's model.

jeepney represents a D-Bus variant as a ``(signature, value)`` tuple, so a
connection profile (``a{sa{sv}}``) arrives as
``{"connection": {"id": ("s", "home"), ...}, ...}``.
"""

import logging
from typing import Any

from ..models import GetSecretsFlags, ResponseFragment, SecretRequest

logger = logging.getLogger(__name__)

GET_SECRETS_SIGNATURE = "a{sa{sv}}osasu"
SECRETS_SIGNATURE = "a{sa{sv}}"

CONNECTION_SETTING = "connection"

WIREGUARD_SETTING = "wireguard"
WIREGUARD_PEERS_KEY = "peers"
WIREGUARD_PEER_ID_KEY = "public-key"


class MalformedRequest(ValueError):
    """The body of a GetSecrets call does not have the expected shape."""


def _string_variant(settings: dict[Any, Any], key: str) -> str | None:
    """Return the string held by variant ``settings[key]``, or None.

    Raises:
        MalformedRequest: If the key is present but does not hold a string
    """
    if key not in settings:
        return None
    variant = settings[key]
    if isinstance(variant, tuple) and len(variant) == 2:
        signature, value = variant
        if signature == "s" and isinstance(value, str):
            return value
    raise MalformedRequest(f"connection.{key} is not a string")


def decode_get_secrets(body: Any, signature: str | None = GET_SECRETS_SIGNATURE) -> SecretRequest:
    """Decode the arguments of a GetSecrets call.

    Never raises: anything that cannot be interpreted yields a request with
    ``malformed_reason`` set, and only the fields read before the problem was
    found are kept.

    Args:
        body: Message body tuple ``(connection, connection_path, setting_name, hints, flags)``
        signature: Signature of the message body

    Returns:
        The decoded SecretRequest
    """
    fields: dict[str, Any] = {}
    try:
        if signature != GET_SECRETS_SIGNATURE:
            raise MalformedRequest(f"unexpected signature {signature!r}")
        if not isinstance(body, (tuple, list)) or len(body) != 5:
            raise MalformedRequest("unexpected number of arguments")

        connection, connection_path, setting_name, hints, flags = body

        if isinstance(connection_path, str):
            fields["connection_path"] = connection_path
        if not isinstance(setting_name, str):
            raise MalformedRequest("setting_name is not a string")
        fields["setting_name"] = setting_name or None

        if not isinstance(hints, (list, tuple)) or not all(isinstance(h, str) for h in hints):
            raise MalformedRequest("hints are not a list of strings")
        fields["requested_keys"] = frozenset(h for h in hints if h)

        if not isinstance(flags, int):
            raise MalformedRequest("flags are not an integer")
        fields["flags"] = GetSecretsFlags(flags)

        if not isinstance(connection, dict):
            raise MalformedRequest("connection is not a settings dictionary")
        conn_settings = connection.get(CONNECTION_SETTING, {})
        if not isinstance(conn_settings, dict):
            raise MalformedRequest("connection setting is not a dictionary")

        fields["connection_id"] = _string_variant(conn_settings, "id")
        fields["connection_uuid"] = _string_variant(conn_settings, "uuid")
        fields["connection_type"] = _string_variant(conn_settings, "type")
        fields["interface_name"] = _string_variant(conn_settings, "interface-name")
    except MalformedRequest as e:
        return SecretRequest(
            setting_name=fields.get("setting_name"),
            connection_path=fields.get("connection_path"),
            requested_keys=fields.get("requested_keys", frozenset()),
            flags=fields.get("flags", GetSecretsFlags.NONE),
            malformed_reason=str(e),
        )

    return SecretRequest(**fields)


def unwrap_variants(value: Any) -> Any:
    """Strip variant tuples from a decoded settings structure (for logging)."""
    if isinstance(value, dict):
        return {key: unwrap_variants(item) for key, item in value.items()}
    if isinstance(value, tuple) and len(value) == 2 and isinstance(value[0], str):
        return unwrap_variants(value[1])
    if isinstance(value, list):
        return [unwrap_variants(item) for item in value]
    return value


def _encode_value(value: Any) -> tuple[str, Any]:
    if isinstance(value, dict):
        return ("a{sv}", {key: _encode_value(item) for key, item in value.items()})
    return ("s", str(value))


def _encode_wireguard_peers(peers: dict[str, dict[str, Any]]) -> tuple[str, list[dict[str, Any]]]:
    """Encode peer secrets as the list of dictionaries NetworkManager expects.

    Every element must carry ``public-key`` so that NetworkManager can find
    the peer it belongs to (see nm_setting_wireguard_class_init()).
    """
    peer_list = []
    for public_key, secrets in peers.items():
        props = {key: _encode_value(value) for key, value in secrets.items()}
        props[WIREGUARD_PEER_ID_KEY] = ("s", public_key)
        peer_list.append(props)
    return ("aa{sv}", peer_list)


def encode_secrets(payload: ResponseFragment) -> dict[str, dict[str, tuple[str, Any]]]:
    """Encode a reply payload as the ``a{sa{sv}}`` body of a GetSecrets reply.

    Args:
        payload: Mapping setting -> key -> value, possibly nested for peer secrets

    Returns:
        Dictionary ready to be sent with signature ``a{sa{sv}}``
    """
    encoded: dict[str, dict[str, tuple[str, Any]]] = {}
    for setting_name, secrets in payload.items():
        props: dict[str, tuple[str, Any]] = {}
        for key, value in secrets.items():
            if setting_name == WIREGUARD_SETTING and key == WIREGUARD_PEERS_KEY and isinstance(value, dict):
                props[key] = _encode_wireguard_peers(value)
            else:
                props[key] = _encode_value(value)
        encoded[setting_name] = props
    return encoded
