"""Turn a selected rule into a reply fragment by reading its secret file.

Secret files are read on every request. Nothing is cached, and a missing or
unreadable file is reported as FileUnavailable so that the caller can answer
"no secrets" instead of failing.
"""

import logging
from pathlib import Path

from .models import ResponseFragment, Rule

logger = logging.getLogger(__name__)


class ResolveError(Exception):
    """Base class for errors while producing a secret value."""


class FileUnavailable(ResolveError):
    """The secret file of a rule could not be opened or read."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Secret file {path} is unavailable: {reason}")
        self.path = path
        self.reason = reason


def strip_trailing_newline(content: str) -> str:
    """Remove exactly one trailing line terminator ("\\n" or "\\r\\n")."""
    if content.endswith("\r\n"):
        return content[:-2]
    if content.endswith("\n"):
        return content[:-1]
    return content


def read_secret(path: str) -> str:
    """Read a secret file and apply the trailing newline policy.

    Args:
        path: Path to the secret file, absolute or relative to the working directory

    Returns:
        The secret value

    Raises:
        FileUnavailable: If the file is missing, unreadable or not valid UTF-8
    """
    logger.debug("Reading secret from file %s", path)
    try:
        content = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        raise FileUnavailable(path, "file does not exist") from None
    except PermissionError:
        raise FileUnavailable(path, "permission denied") from None
    except IsADirectoryError:
        raise FileUnavailable(path, "path is a directory") from None
    except UnicodeDecodeError as e:
        raise FileUnavailable(path, f"content is not valid UTF-8 ({e.reason})") from None
    except OSError as e:
        raise FileUnavailable(path, e.strerror or str(e)) from None

    return strip_trailing_newline(content)


def shape_fragment(rule: Rule, setting_name: str, value: str) -> ResponseFragment:
    """Place a secret value where NetworkManager expects it.

    Nested keys like ``peers.<pubkey>.preshared-key`` end up one level deeper
    than plain setting keys: ``{setting: {"peers": {<pubkey>: {"preshared-key": value}}}}``.
    NetworkManager silently drops peer secrets that are sent flat.
    """
    path = rule.key_path
    if path.is_nested:
        return {setting_name: {path.top: {path.scope: {path.nested: value}}}}
    return {setting_name: {rule.key: value}}


def resolve(rule: Rule, setting_name: str) -> ResponseFragment:
    """Read the rule's file and build the reply fragment for a setting.

    Args:
        rule: The rule selected for the request
        setting_name: Setting section the request asked for

    Returns:
        Reply fragment mapping the setting to the secret

    Raises:
        FileUnavailable: If the secret file cannot be read
    """
    value = read_secret(rule.file)
    logger.debug("Read secret for %s.%s from %s", setting_name, rule.key, rule.file)
    return shape_fragment(rule, setting_name, value)
