"""
Rule producers and the merge step.

Rules for a form come from three places: the explicit rules table, the
form's own item metadata and the legacy rules module. Each source is a pure
function returning ``Rule`` objects; ``merge_rules`` combines them with a
single documented precedence.
"""

from collections.abc import Iterable

from ..expressions import is_formula
from ..models import Rule, RuleType
from ..ports import FormItem

DEFAULT_FORMAT_MESSAGE = "Invalid format"
DEFAULT_REQUIRED_MESSAGE = "This field is required"

# Legacy action types and the rule type / severity they map to.
LEGACY_ACTION_TYPES: dict[str, tuple[str, str]] = {
    "DISCREPANCY_NRS": (RuleType.BUSINESS_LOGIC.value, "warning"),
    "DISCREPANCY_RS": (RuleType.BUSINESS_LOGIC.value, "error"),
    "EMAIL": ("notification", "error"),
    "HIDE": (RuleType.CONSISTENCY.value, "error"),
    "SHOW": (RuleType.CONSISTENCY.value, "error"),
    "INSERT": ("calculation", "error"),
    "RANDOMIZATION": (RuleType.BUSINESS_LOGIC.value, "error"),
    "STRATIFICATION_FACTOR": ("calculation", "error"),
}


def rules_from_metadata(form_id: int, items: Iterable[FormItem], form_version_id: int | None = None) -> list[Rule]:
    """
    Implicit rules declared by item metadata.

    A required item yields a ``required`` rule; an item with a validation
    pattern yields a ``format`` rule. Formula patterns keep their
    ``=FORMULA:`` marker so the format validator evaluates them as formulas.
    """
    rules: list[Rule] = []
    for item in sorted(items, key=lambda i: i.name):
        if item.required:
            rules.append(
                Rule(
                    form_id=form_id,
                    form_version_id=form_version_id,
                    item_id=item.item_id,
                    name=f"{item.name} required",
                    rule_type=RuleType.REQUIRED.value,
                    field_path=item.name,
                    error_message=DEFAULT_REQUIRED_MESSAGE,
                    source="metadata",
                )
            )
        pattern = (item.regexp or "").strip()
        if pattern:
            rules.append(
                Rule(
                    form_id=form_id,
                    form_version_id=form_version_id,
                    item_id=item.item_id,
                    name=f"{item.name} format",
                    rule_type=RuleType.FORMAT.value,
                    field_path=item.name,
                    error_message=item.regexp_error_message or DEFAULT_FORMAT_MESSAGE,
                    pattern=pattern,
                    format_type=None if is_formula(pattern) else "custom_regex",
                    source="metadata",
                )
            )
    return rules


def legacy_rule_type(action: str | None) -> tuple[str, str]:
    """(rule_type, severity) for a legacy action type; unknown actions are business logic errors."""
    return LEGACY_ACTION_TYPES.get((action or "").upper(), (RuleType.BUSINESS_LOGIC.value, "error"))


def merge_rules(explicit: Iterable[Rule], metadata: Iterable[Rule], legacy: Iterable[Rule]) -> list[Rule]:
    """
    Merge the three rule sources.

    Precedence is explicit > metadata > legacy on a (field_path, rule_type)
    collision: a rule is dropped when a higher-precedence source already
    covers its key. Rules from the same source never displace each other. A
    legacy rule whose expression repeats one already kept is dropped too.
    Output order: explicit, then metadata, then legacy.
    """
    merged = list(explicit)
    explicit_keys = {(rule.field_path, rule.rule_type) for rule in merged}

    kept_metadata = [
        rule for rule in metadata if (rule.field_path, rule.rule_type) not in explicit_keys
    ]
    merged.extend(kept_metadata)

    covered = explicit_keys | {(rule.field_path, rule.rule_type) for rule in kept_metadata}
    expressions = {rule.custom_expression for rule in merged if rule.custom_expression}
    for rule in legacy:
        if (rule.field_path, rule.rule_type) in covered:
            continue
        if rule.custom_expression and rule.custom_expression in expressions:
            continue
        if rule.custom_expression:
            expressions.add(rule.custom_expression)
        merged.append(rule)

    return merged
