"""NetworkManager secret agent answering requests with the content of files.

The agent registers with NetworkManager over D-Bus and answers GetSecrets
calls from a configured list of rules, each pointing at a file that holds the
secret value.
"""

__version__ = "0.1.0"

from .config import ConfigError, load_rule_set
from .matcher import select
from .models import GetSecretsFlags, Rule, RuleSet, SecretRequest
from .resolver import FileUnavailable, ResolveError, resolve
from .session import AgentSession, RetryBackoff, SessionState

__all__ = [
    "AgentSession",
    "ConfigError",
    "FileUnavailable",
    "GetSecretsFlags",
    "ResolveError",
    "RetryBackoff",
    "Rule",
    "RuleSet",
    "SecretRequest",
    "SessionState",
    "load_rule_set",
    "resolve",
    "select",
]
