"""
Conditions deciding whether a CRM value means "member of this Mailchimp group".

Two kinds exist:

- ``bool``: the CRM field holds exactly one of two literals
  (``trueCondition`` / ``falseCondition``).
- ``contains``: the CRM field is free text that may contain a marker
  (``trueContainsString`` / ``falseContainsString``). The false marker wins
  if both are present.

Conditions are immutable values; the functions below derive the boolean from
CRM data and render a boolean back into a ``CrmValue``.
"""

from typing import Any, Dict, NamedTuple, Optional

from .crm_value import CrmValue, MODE_APPEND, MODE_REPLACE
from .exceptions import ConfigError

KIND_BOOL = "bool"
KIND_CONTAINS = "contains"


class GroupCondition(NamedTuple):
    kind: str
    true_value: str
    false_value: str


def make_group_condition(config: Dict[str, Any]) -> GroupCondition:
    """Build a condition from a group field config, validating that exactly one kind is used."""
    true_condition = config.get("trueCondition")
    false_condition = config.get("falseCondition")
    true_contains = config.get("trueContainsString")
    false_contains = config.get("falseContainsString")

    if not true_condition and not true_contains:
        raise ConfigError(
            "Field: Missing condition definition. Either 'trueCondition' or 'trueContainsString' must be present."
        )
    if not false_condition and not false_contains:
        raise ConfigError(
            "Field: Missing condition definition. Either 'falseCondition' or 'falseContainsString' must be present."
        )

    if true_condition and true_contains:
        raise ConfigError(
            "Field: 'trueCondition' and 'trueContainsString' are mutually exclusive. Make sure there is only one of them."
        )
    if false_condition and false_contains:
        raise ConfigError(
            "Field: 'falseCondition' and 'falseContainsString' are mutually exclusive. Make sure there is only one of them."
        )

    if true_condition and false_contains:
        raise ConfigError(
            "Field: 'trueCondition' and 'falseContainsString' can not be combined. "
            "If you use 'trueCondition' you must use 'falseCondition'."
        )
    if true_contains and false_condition:
        raise ConfigError(
            "Field: 'trueContainsString' and 'falseCondition' can not be combined. "
            "If you use 'trueContainsString' you must use 'falseContainsString'."
        )

    if true_condition:
        return GroupCondition(KIND_BOOL, str(true_condition), str(false_condition))
    return GroupCondition(KIND_CONTAINS, str(true_contains), str(false_contains))


def derive_bool(condition: GroupCondition, crm_value: Optional[Any]) -> bool:
    """Group membership encoded in the given CRM value."""
    text = "" if crm_value is None else str(crm_value)

    if condition.kind == KIND_BOOL:
        return text == condition.true_value

    if condition.false_value in text:
        return False
    return condition.true_value in text


def render_crm(condition: GroupCondition, crm_key: str, value: bool) -> CrmValue:
    """CRM write instruction expressing the given group membership."""
    literal = condition.true_value if value else condition.false_value

    if condition.kind == KIND_BOOL:
        return CrmValue(crm_key, literal, MODE_REPLACE)
    return CrmValue(crm_key, literal, MODE_APPEND)
