"""
Rule configuration management.

Loads rule definitions from YAML files: explicit rule definitions for the
admin CLI, and the legacy declarative rules module that the rule store merges
in as a read-only source. Also provides a builder for constructing rule
lists programmatically.
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from ..models import Rule, RuleCreate, RuleType
from .rule_sources import legacy_rule_type


class RuleConfigLoader:
    """
    Loads explicit rule definitions from a YAML file.

    Expected YAML format:
    ```yaml
    forms:
      12:
        demographics.age:
          - type: required
          - type: range
            name: Age in range
            message: Age must be between 18 and 100
            params:
              min_value: 18
              max_value: 100

        visit_date:
          - type: consistency
            severity: warning
            params:
              operator: ">="
              compare_field_path: consent_date
    ```
    """

    def __init__(self, config_path: str | Path):
        """
        Initialize the rule config loader.

        Args:
            config_path: Path to the YAML configuration file
        """
        self.config_path = Path(config_path)
        if not self.config_path.exists():
            raise FileNotFoundError(f"Rule configuration file not found: {config_path}")

    def load_rules(self) -> list[RuleCreate]:
        """
        Load and parse rule definitions from the YAML file.

        Returns:
            RuleCreate payloads in file order

        Raises:
            ValueError: If YAML is invalid or missing required fields
        """
        with open(self.config_path) as f:
            config = yaml.safe_load(f)

        if not config or "forms" not in config:
            raise ValueError("Configuration file must contain 'forms' section")

        rules = []
        for form_id, fields in config["forms"].items():
            if not isinstance(fields, dict):
                raise ValueError(f"Rules for form '{form_id}' must be a mapping of field paths")

            for field_path, field_rule_list in fields.items():
                if not isinstance(field_rule_list, list):
                    raise ValueError(f"Rules for field '{field_path}' must be a list")

                for idx, rule_def in enumerate(field_rule_list):
                    rules.append(self._parse_rule(int(form_id), str(field_path), rule_def, idx))

        return rules

    def _parse_rule(self, form_id: int, field_path: str, rule_def: dict[str, Any], idx: int) -> RuleCreate:
        """
        Parse a single rule definition.

        Raises:
            ValueError: If rule definition is invalid
        """
        if not isinstance(rule_def, dict) or "type" not in rule_def:
            raise ValueError(f"Rule for field '{field_path}' is missing 'type'")

        rule_type = rule_def["type"]
        rule_name = rule_def.get("name", f"{field_path}_{rule_type}_{idx}")

        severity = rule_def.get("severity", "error")
        if severity not in ("error", "warning"):
            raise ValueError(f"Invalid severity '{severity}' for rule '{rule_name}'. Must be 'error' or 'warning'")

        parameters = rule_def.get("params", rule_def.get("parameters", {})) or {}
        message = rule_def.get("message", f"{field_path} failed {rule_type} check")

        return RuleCreate(
            form_id=form_id,
            name=rule_name,
            rule_type=rule_type,
            field_path=field_path,
            severity=severity,
            error_message=message,
            warning_message=rule_def.get("warning_message"),
            active=rule_def.get("enabled", True),
            description=rule_def.get("description"),
            item_id=rule_def.get("item_id"),
            **parameters,
        )


class LegacyRuleEntry(BaseModel):
    """
    One rule from the legacy declarative rules module.

    Attributes:
        name: Rule name
        target: Field path or item OID the rule is attached to
        expression: Boolean expression (or "=" formula) that must hold
        action: Legacy action type (DISCREPANCY_RS, DISCREPANCY_NRS, HIDE, ...)
        message: Message shown when the expression fails
        enabled: Disabled entries are not loaded
        item_id: Stored item the target refers to, when known
    """

    name: str = Field(default="Legacy rule", min_length=1)
    target: str = Field(..., min_length=1)
    expression: str | None = None
    action: str | None = "DISCREPANCY_RS"
    message: str | None = None
    enabled: bool = True
    item_id: int | None = None
    description: str | None = None

    def to_rule(self, form_id: int) -> Rule:
        rule_type, severity = legacy_rule_type(self.action)
        message = self.message or "Validation failed"
        return Rule(
            form_id=form_id,
            item_id=self.item_id,
            name=self.name,
            description=self.description,
            rule_type=rule_type,
            field_path=self.target,
            severity=severity,
            error_message=message,
            warning_message=message if severity == "warning" else None,
            active=self.enabled,
            custom_expression=self.expression,
            source="legacy",
        )


class LegacyRuleModule:
    """
    Read-only legacy rules, loaded from YAML.

    Expected YAML format:
    ```yaml
    forms:
      12:
        - name: Adult subjects only
          target: I_DEMO_AGE
          expression: "value >= 18"
          action: DISCREPANCY_RS
          message: Subject must be an adult
    ```
    """

    def __init__(self, config_path: str | Path):
        self.config_path = Path(config_path)

    def rules_for_form(self, form_id: int) -> list[Rule]:
        """
        Enabled legacy rules attached to a form.

        Raises:
            FileNotFoundError: If the module file is missing
            ValueError: If the module is malformed
        """
        with open(self.config_path) as f:
            config = yaml.safe_load(f) or {}

        forms = config.get("forms") or {}
        if not isinstance(forms, dict):
            raise ValueError("Legacy rules module 'forms' must be a mapping")

        entries = forms.get(form_id, forms.get(str(form_id))) or []
        if not isinstance(entries, list):
            raise ValueError(f"Legacy rules for form '{form_id}' must be a list")

        rules = []
        for raw in entries:
            entry = LegacyRuleEntry(**raw)
            if entry.enabled:
                rules.append(entry.to_rule(form_id))
        return rules


class RuleBuilder:
    """
    Programmatically build rule lists (for tests, the CLI and dynamic rules).

    Example:
        rules = (
            RuleBuilder(form_id=12)
            .add_required("demographics.age")
            .add_range("demographics.age", min_value=18, max_value=100)
            .build()
        )
    """

    def __init__(self, form_id: int):
        """Initialize an empty rule list for one form."""
        self.form_id = form_id
        self.rules: list[Rule] = []
        self._next_id = 1

    def _add(self, **fields: Any) -> "RuleBuilder":
        fields.setdefault("rule_id", self._next_id)
        fields.setdefault("severity", "error")
        self._next_id += 1
        self.rules.append(Rule(form_id=self.form_id, **fields))
        return self

    def add_required(self, field_path: str, message: str | None = None, **extra: Any) -> "RuleBuilder":
        """Add a required rule."""
        return self._add(
            name=extra.pop("name", f"{field_path}_required"),
            rule_type=RuleType.REQUIRED.value,
            field_path=field_path,
            error_message=message or f"{field_path} is required",
            **extra,
        )

    def add_range(
        self,
        field_path: str,
        min_value: Any = None,
        max_value: Any = None,
        message: str | None = None,
        **extra: Any,
    ) -> "RuleBuilder":
        """Add a range rule (pass value_kind="date" for date bounds)."""
        return self._add(
            name=extra.pop("name", f"{field_path}_range"),
            rule_type=RuleType.RANGE.value,
            field_path=field_path,
            min_value=min_value,
            max_value=max_value,
            error_message=message or f"{field_path} is out of range",
            **extra,
        )

    def add_format(
        self,
        field_path: str,
        pattern: str | None = None,
        format_type: str | None = None,
        message: str | None = None,
        **extra: Any,
    ) -> "RuleBuilder":
        """Add a format rule from a regex, a formula or a named format type."""
        return self._add(
            name=extra.pop("name", f"{field_path}_format"),
            rule_type=RuleType.FORMAT.value,
            field_path=field_path,
            pattern=pattern,
            format_type=format_type,
            error_message=message or f"{field_path} has an invalid format",
            **extra,
        )

    def add_consistency(
        self,
        field_path: str,
        operator: str,
        compare_field_path: str,
        message: str | None = None,
        **extra: Any,
    ) -> "RuleBuilder":
        """Add a consistency rule comparing two fields."""
        return self._add(
            name=extra.pop("name", f"{field_path}_consistency"),
            rule_type=RuleType.CONSISTENCY.value,
            field_path=field_path,
            operator=operator,
            compare_field_path=compare_field_path,
            error_message=message or f"{field_path} is inconsistent with {compare_field_path}",
            **extra,
        )

    def add_expression(
        self,
        field_path: str,
        expression: str,
        message: str | None = None,
        rule_type: str = RuleType.BUSINESS_LOGIC.value,
        **extra: Any,
    ) -> "RuleBuilder":
        """Add a business_logic (or cross_form) rule."""
        return self._add(
            name=extra.pop("name", f"{field_path}_{rule_type}"),
            rule_type=rule_type,
            field_path=field_path,
            custom_expression=expression,
            error_message=message or f"{field_path} failed {rule_type} check",
            **extra,
        )

    def build(self) -> list[Rule]:
        """Build and return the rule list."""
        return list(self.rules)
