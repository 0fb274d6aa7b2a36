"""Rule configuration loader.

Loads the list of secret entries from a TOML file (``[[entry]]`` tables) or a
YAML file (top-level ``entry:`` list). Any problem with the file is fatal: the
agent must not start serving with a partial rule set.
"""

import logging
import os
import tomllib
import uuid
from pathlib import Path
from typing import Any

import yaml

from .models import Rule, RuleSet

logger = logging.getLogger(__name__)

YAML_SUFFIXES = (".yaml", ".yml")

REQUIRED_FIELDS = ("key", "file")
PREDICATE_FIELDS = ("match_id", "match_uuid", "match_type", "match_iface", "match_setting")
KNOWN_FIELDS = frozenset(REQUIRED_FIELDS + PREDICATE_FIELDS)


class ConfigError(ValueError):
    """Raised when the configuration cannot be loaded."""


def _parse_rule(index: int, data: Any) -> Rule:
    """Parse one configuration entry into a Rule.

    Args:
        index: Position of the entry in the file (used in error messages).
        data: Dictionary with the entry's fields.

    Returns:
        Rule object with parsed values.

    Raises:
        ConfigError: If required fields are missing or fields have the wrong type.
    """
    if not isinstance(data, dict):
        raise ConfigError(f"Entry {index} must be a table, got {type(data).__name__}")

    unknown = sorted(set(data) - KNOWN_FIELDS)
    if unknown:
        raise ConfigError(f"Entry {index} has unknown field(s): {', '.join(map(str, unknown))}")

    for field in REQUIRED_FIELDS:
        if field not in data:
            raise ConfigError(f"Entry {index} is missing required field: {field}")
        if not isinstance(data[field], str) or not data[field]:
            raise ConfigError(f"Entry {index} field '{field}' must be a non-empty string")

    for field in PREDICATE_FIELDS:
        value = data.get(field)
        if value is not None and not isinstance(value, str):
            raise ConfigError(f"Entry {index} field '{field}' must be a string")

    return Rule(
        key=data["key"],
        file=data["file"],
        match_id=data.get("match_id"),
        match_uuid=data.get("match_uuid"),
        match_type=data.get("match_type"),
        match_iface=data.get("match_iface"),
        match_setting=data.get("match_setting"),
    )


def _read_document(path: Path) -> Any:
    """Read and decode the configuration file according to its suffix."""
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Could not read config file {path}: {e}") from e

    if path.suffix.lower() in YAML_SUFFIXES:
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigError(f"Could not parse config file {path} as YAML: {e}") from e

    try:
        return tomllib.loads(text)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Could not parse config file {path} as TOML: {e}") from e


def warn_about_rules(rules: RuleSet) -> None:
    """Log warnings about entries that load fine but probably won't do what was meant.

    Secret files are only checked for existence here; they are read lazily
    when a request needs them, so a missing file is not an error.
    """
    if not len(rules):
        logger.warning("Config %s contains no entries; every request will be answered with no secrets", rules.source)

    for i, rule in enumerate(rules):
        if rule.match_uuid is not None:
            try:
                uuid.UUID(rule.match_uuid)
            except ValueError:
                logger.warning(
                    "match_uuid value %s of config entry %d is not a valid uuid and "
                    "will prevent the entry from matching anything",
                    rule.match_uuid,
                    i,
                )

        if not os.path.exists(rule.file):
            logger.warning(
                "Secret file %s of config entry %d does not exist yet; requests for %s "
                "will be answered with no secrets until it does",
                rule.file,
                i,
                rule.key,
            )


def load_rule_set(config_path: str | os.PathLike[str]) -> RuleSet:
    """Load the rule set from a configuration file.

    Args:
        config_path: Path to a TOML or YAML configuration file.

    Returns:
        RuleSet with the entries in file order.

    Raises:
        ConfigError: If the file is missing, unparsable or contains invalid entries.
    """
    path = Path(config_path)
    data = _read_document(path)

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level")
    if "entry" not in data:
        raise ConfigError(f"Config file {path} must contain an 'entry' list")

    entries = data["entry"]
    if entries is None:
        entries = []
    if not isinstance(entries, list):
        raise ConfigError(f"'entry' in config file {path} must be a list")

    rules = RuleSet(
        rules=tuple(_parse_rule(i, entry) for i, entry in enumerate(entries)),
        source=str(path),
    )
    logger.info("Loaded %d secret entries from %s", len(rules), path)
    warn_about_rules(rules)
    return rules
