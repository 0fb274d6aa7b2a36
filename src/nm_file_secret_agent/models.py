"""Data model shared by the matcher, resolver and session.

Rules are loaded once at startup and never change afterwards. Secret requests
are built per incoming GetSecrets call and discarded once answered.
"""

from dataclasses import dataclass, field
from enum import IntFlag
from typing import Any, Iterator

# Delimiter used by nested (peer-scoped) keys such as "peers.<pubkey>.preshared-key"
KEY_DELIMITER = "."

# A reply mapping setting name -> key -> value. The empty mapping means "no secrets".
ResponseFragment = dict[str, dict[str, Any]]

NO_SECRETS: ResponseFragment = {}


class GetSecretsFlags(IntFlag):
    """Hints from NetworkManager about why secrets are requested.

    See NMSecretAgentGetSecretsFlags in the NetworkManager D-Bus API reference.
    None of these flags change whether the agent answers.
    """

    NONE = 0x0
    ALLOW_INTERACTION = 0x1
    REQUEST_NEW = 0x2
    USER_REQUESTED = 0x4
    WPS_PBC_ACTIVE = 0x8


@dataclass(frozen=True)
class KeyPath:
    """Parsed form of a rule key.

    ``scope`` and ``nested`` are set only for nested keys, in which case the
    secret lives at ``top -> scope -> nested``.
    """

    top: str
    scope: str | None = None
    nested: str | None = None

    @property
    def is_nested(self) -> bool:
        return self.scope is not None

    @classmethod
    def parse(cls, key: str) -> "KeyPath":
        parts = key.split(KEY_DELIMITER)
        if len(parts) == 3 and all(parts):
            return cls(top=parts[0], scope=parts[1], nested=parts[2])
        return cls(top=key)


@dataclass(frozen=True)
class Rule:
    """One configured entry: match predicates plus the (key, file) answer."""

    key: str
    file: str
    match_id: str | None = None
    match_uuid: str | None = None
    match_type: str | None = None
    match_iface: str | None = None
    match_setting: str | None = None

    @property
    def key_path(self) -> KeyPath:
        return KeyPath.parse(self.key)

    @property
    def top_level_key(self) -> str:
        """Key placed directly under the setting in the reply."""
        return self.key_path.top

    @property
    def is_global(self) -> bool:
        """True if the rule has no predicates and matches every request."""
        return all(
            value is None
            for value in (
                self.match_id,
                self.match_uuid,
                self.match_type,
                self.match_iface,
                self.match_setting,
            )
        )

    def describe(self) -> str:
        """Short human readable description used in log lines."""
        predicates = [
            f"{name}={value}"
            for name, value in (
                ("match_id", self.match_id),
                ("match_uuid", self.match_uuid),
                ("match_type", self.match_type),
                ("match_iface", self.match_iface),
                ("match_setting", self.match_setting),
            )
            if value is not None
        ]
        return f"key={self.key} [{', '.join(predicates) or 'global'}]"


@dataclass(frozen=True)
class RuleSet:
    """Ordered, immutable collection of rules. Order decides ties."""

    rules: tuple[Rule, ...] = ()
    source: str | None = None

    def __iter__(self) -> Iterator[Rule]:
        return iter(self.rules)

    def __len__(self) -> int:
        return len(self.rules)

    def index(self, rule: Rule) -> int:
        return self.rules.index(rule)


@dataclass(frozen=True)
class SecretRequest:
    """One GetSecrets query from NetworkManager.

    Every connection field is optional: NetworkManager does not always supply
    them, and a request that could not be decoded has them all unset together
    with ``malformed_reason``.
    """

    setting_name: str | None
    connection_id: str | None = None
    connection_uuid: str | None = None
    connection_type: str | None = None
    interface_name: str | None = None
    requested_keys: frozenset[str] = field(default_factory=frozenset)
    flags: GetSecretsFlags = GetSecretsFlags.NONE
    connection_path: str | None = None
    malformed_reason: str | None = None

    @property
    def is_malformed(self) -> bool:
        return self.malformed_reason is not None

    def to_log_fields(self) -> dict[str, Any]:
        """Fields describing this request for structured logging."""
        return {
            "connection_id": self.connection_id,
            "connection_uuid": self.connection_uuid,
            "connection_type": self.connection_type,
            "interface_name": self.interface_name,
            "setting_name": self.setting_name,
            "requested_keys": sorted(self.requested_keys),
            "flags": int(self.flags),
        }
