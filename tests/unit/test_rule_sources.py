"""
Unit tests for rule sources: item metadata, the legacy module, YAML
configuration, the rule builder and the merge step.
"""

import pytest
from pydantic import ValidationError as PydanticValidationError

from edc_validation.core.models import Rule
from edc_validation.core.ports import FormItem
from edc_validation.core.rules import (
    LegacyRuleModule,
    RuleBuilder,
    RuleConfigLoader,
    merge_rules,
    rules_from_metadata,
)
from edc_validation.core.rules.rule_sources import legacy_rule_type


def rule(field_path: str, rule_type: str, source: str = "explicit", **fields) -> Rule:
    return Rule(
        form_id=1,
        name=f"{source} {field_path} {rule_type}",
        rule_type=rule_type,
        field_path=field_path,
        error_message="failed",
        source=source,
        **fields,
    )


class TestRulesFromMetadata:
    """Tests for rules synthesised from form item metadata"""

    def test_required_and_regex_items(self):
        items = [
            FormItem(item_id=2, name="initials", regexp="^[A-Z]{2,3}$", regexp_error_message="Bad initials"),
            FormItem(item_id=1, name="age", required=True),
        ]
        rules = rules_from_metadata(10, items, form_version_id=11)

        assert [(r.field_path, r.rule_type) for r in rules] == [("age", "required"), ("initials", "format")]
        required, fmt = rules
        assert required.rule_id is None
        assert required.item_id == 1
        assert required.source == "metadata"
        assert required.read_only
        assert fmt.format_type == "custom_regex"
        assert fmt.error_message == "Bad initials"
        assert fmt.form_version_id == 11

    def test_formula_pattern_keeps_marker(self):
        items = [FormItem(item_id=3, name="weight", regexp="=FORMULA:{value} > 0")]
        (fmt,) = rules_from_metadata(10, items)
        assert fmt.pattern == "=FORMULA:{value} > 0"
        assert fmt.format_type is None
        assert fmt.error_message == "Invalid format"

    def test_plain_items_yield_nothing(self):
        assert rules_from_metadata(10, [FormItem(item_id=4, name="notes", regexp="  ")]) == []


class TestMergeRules:
    """Tests for explicit > metadata > legacy precedence"""

    def test_explicit_beats_metadata_on_same_key(self):
        explicit = [rule("age", "required")]
        metadata = [rule("age", "required", "metadata"), rule("initials", "format", "metadata")]
        merged = merge_rules(explicit, metadata, [])
        assert [(r.source, r.field_path) for r in merged] == [("explicit", "age"), ("metadata", "initials")]

    def test_legacy_dropped_on_key_collision(self):
        metadata = [rule("age", "required", "metadata")]
        legacy = [rule("age", "required", "legacy"), rule("age", "business_logic", "legacy")]
        merged = merge_rules([], metadata, legacy)
        assert [(r.source, r.rule_type) for r in merged] == [
            ("metadata", "required"),
            ("legacy", "business_logic"),
        ]

    def test_legacy_dropped_on_duplicate_expression(self):
        explicit = [rule("age", "business_logic", custom_expression="value >= 18")]
        legacy = [
            rule("I_DEMO_AGE", "business_logic", "legacy", custom_expression="value >= 18"),
            rule("I_DEMO_AGE", "consistency", "legacy", custom_expression="value < 120"),
            rule("weight", "consistency", "legacy", custom_expression="value < 120"),
        ]
        merged = merge_rules(explicit, [], legacy)
        assert [(r.source, r.field_path, r.rule_type) for r in merged] == [
            ("explicit", "age", "business_logic"),
            ("legacy", "I_DEMO_AGE", "consistency"),
        ]

    def test_same_source_rules_coexist(self):
        explicit = [rule("age", "range", min_value=0), rule("age", "range", max_value=120)]
        assert len(merge_rules(explicit, [], [])) == 2


class TestLegacyRuleModule:
    """Tests for the read-only legacy rules module"""

    def test_loads_enabled_entries(self, tmp_path):
        path = tmp_path / "legacy.yaml"
        path.write_text(
            """
forms:
  10:
    - name: Adult subjects only
      target: I_DEMO_AGE
      expression: "value >= 18"
      action: DISCREPANCY_RS
      message: Subject must be an adult
    - name: Weight advisory
      target: weight
      expression: "value < 200"
      action: discrepancy_nrs
      message: Unusual weight
    - name: Retired check
      target: age
      expression: "value > 0"
      enabled: false
"""
        )
        rules = LegacyRuleModule(path).rules_for_form(10)

        assert [r.name for r in rules] == ["Adult subjects only", "Weight advisory"]
        adult, advisory = rules
        assert adult.rule_type == "business_logic" and adult.severity == "error"
        assert adult.source == "legacy" and adult.rule_id is None
        assert advisory.severity == "warning"
        assert advisory.message_for_severity() == "Unusual weight"

    def test_unknown_form_is_empty(self, tmp_path):
        path = tmp_path / "legacy.yaml"
        path.write_text("forms:\n  10: []\n")
        assert LegacyRuleModule(path).rules_for_form(99) == []

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            LegacyRuleModule(tmp_path / "absent.yaml").rules_for_form(10)

    def test_entry_without_target_is_rejected(self, tmp_path):
        path = tmp_path / "legacy.yaml"
        path.write_text("forms:\n  10:\n    - name: Broken\n")
        with pytest.raises(PydanticValidationError):
            LegacyRuleModule(path).rules_for_form(10)

    def test_action_mapping(self):
        assert legacy_rule_type("HIDE") == ("consistency", "error")
        assert legacy_rule_type("DISCREPANCY_NRS") == ("business_logic", "warning")
        assert legacy_rule_type("SOMETHING_NEW") == ("business_logic", "error")
        assert legacy_rule_type(None) == ("business_logic", "error")


class TestRuleConfigLoader:
    """Tests for explicit rule definitions loaded from YAML"""

    def test_loads_rules(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text(
            """
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
"""
        )
        rules = RuleConfigLoader(path).load_rules()

        assert [(r.field_path, r.rule_type) for r in rules] == [
            ("demographics.age", "required"),
            ("demographics.age", "range"),
            ("visit_date", "consistency"),
        ]
        assert rules[0].name == "demographics.age_required_0"
        assert rules[1].min_value == 18.0 and rules[1].max_value == 100.0
        assert rules[2].severity == "warning"
        assert all(r.form_id == 12 for r in rules)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            RuleConfigLoader(tmp_path / "nope.yaml")

    def test_missing_forms_section(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text("rules: []\n")
        with pytest.raises(ValueError, match="forms"):
            RuleConfigLoader(path).load_rules()

    def test_invalid_severity(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text("forms:\n  1:\n    age:\n      - type: required\n        severity: fatal\n")
        with pytest.raises(ValueError, match="Invalid severity"):
            RuleConfigLoader(path).load_rules()

    def test_missing_type(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text("forms:\n  1:\n    age:\n      - name: untyped\n")
        with pytest.raises(ValueError, match="missing 'type'"):
            RuleConfigLoader(path).load_rules()


class TestRuleBuilder:
    """Tests for the fluent rule builder"""

    def test_builds_numbered_rules(self):
        rules = (
            RuleBuilder(form_id=12)
            .add_required("age")
            .add_range("age", min_value=18, max_value=100)
            .add_format("initials", format_type="initials")
            .add_consistency("visit_date", ">=", "consent_date")
            .add_expression("age", "value < 150", rule_type="cross_form")
            .build()
        )

        assert [r.rule_id for r in rules] == [1, 2, 3, 4, 5]
        assert [r.rule_type for r in rules] == ["required", "range", "format", "consistency", "cross_form"]
        assert rules[3].compare_field_path == "consent_date"
        assert rules[4].custom_expression == "value < 150"

    def test_date_range(self):
        (rule_,) = RuleBuilder(form_id=1).add_range(
            "visit_date", min_value="2024-01-01", value_kind="date", name="Visit window"
        ).build()
        assert rule_.name == "Visit window"
        assert rule_.min_value.isoformat() == "2024-01-01"
