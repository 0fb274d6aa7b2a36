"""Selection of the configured rule that answers a secret request."""

from typing import Iterator

from .models import Rule, RuleSet, SecretRequest

# Rule predicate attribute -> SecretRequest attribute
PREDICATE_FIELDS = (
    ("match_id", "connection_id"),
    ("match_uuid", "connection_uuid"),
    ("match_type", "connection_type"),
    ("match_iface", "interface_name"),
    ("match_setting", "setting_name"),
)


def rule_matches(rule: Rule, request: SecretRequest) -> bool:
    """Check whether a single rule answers the given request.

    Args:
        rule: Configured rule
        request: Incoming secret request

    Returns:
        True if every predicate the rule specifies equals the request's value
        and, when the request names keys, one of them names the rule's key.
    """
    if not request.setting_name:
        return False

    for predicate, attribute in PREDICATE_FIELDS:
        expected = getattr(rule, predicate)
        if expected is None:
            continue
        actual = getattr(request, attribute)
        if actual is None or actual != expected:
            return False

    if request.requested_keys and not is_requested(rule, request.requested_keys):
        return False

    return True


def is_requested(rule: Rule, requested_keys: frozenset[str]) -> bool:
    """Check whether NetworkManager's hints ask for the key a rule provides.

    A hint names either the full key (``peers.<pubkey>.preshared-key``) or
    just its top-level part (``peers``).
    """
    return rule.key in requested_keys or rule.top_level_key in requested_keys


def iter_matches(request: SecretRequest, rules: RuleSet | None) -> Iterator[Rule]:
    """Yield every rule that matches the request, in configured order."""
    if rules is None:
        return
    for rule in rules:
        if rule_matches(rule, request):
            yield rule


def select(request: SecretRequest, rules: RuleSet | None) -> Rule | None:
    """Return the first configured rule matching the request, or None."""
    return next(iter_matches(request, rules), None)
