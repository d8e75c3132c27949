"""
Unit tests for field resolution and field matching.
"""

import pytest

from edc_validation.core.models import Rule, ValueKind
from edc_validation.core.ports import DataPoint
from edc_validation.core.rules.field_resolver import (
    build_data_point_map,
    camel_to_snake,
    lookup_data_point_id,
    matches_field,
    resolve_compare_value,
    resolve_field_value,
    rule_data_point_id,
)


def make_rule(field_path: str, item_id: int | None = None) -> Rule:
    return Rule(
        form_id=1,
        name=f"{field_path} rule",
        rule_type="required",
        field_path=field_path,
        error_message="required",
        item_id=item_id,
    )


@pytest.fixture
def data_point_map():
    return build_data_point_map(
        [
            DataPoint(data_point_id=11, item_id=101, name="age", oid="I_DEMO_AGE"),
            DataPoint(data_point_id=12, item_id=102, name="SubjectInitials", oid=None),
        ]
    )


class TestResolveFieldValue:
    """Tests for each resolution strategy, in order"""

    def test_exact_literal_key(self):
        rule = make_rule("demographics.age")
        value = resolve_field_value(rule, {"demographics.age": "30", "demographics": {"age": "40"}})
        assert value.raw == "30"

    def test_nested_dotted_traversal(self):
        rule = make_rule("demographics.age")
        assert resolve_field_value(rule, {"demographics": {"age": "40"}}).raw == "40"

    def test_case_insensitive_full_path(self):
        rule = make_rule("Demographics.Age")
        assert resolve_field_value(rule, {"demographics.age": 5}).raw == 5

    def test_last_segment(self):
        rule = make_rule("demographics.age")
        assert resolve_field_value(rule, {"age": "22"}).raw == "22"
        assert resolve_field_value(rule, {"AGE": "23"}).raw == "23"

    def test_camel_case_canonical(self):
        rule = make_rule("vitals.systolicBp")
        assert resolve_field_value(rule, {"systolic_bp": "120"}).raw == "120"

    def test_data_point_map(self, data_point_map):
        """A submitted OID key maps to the same data point as the rule's name"""
        rule = make_rule("age")
        value = resolve_field_value(rule, {"I_DEMO_AGE": "31"}, data_point_map)
        assert value.raw == "31"

    def test_deep_search(self):
        rule = make_rule("weight")
        data = {"vitals": {"measurements": {"Weight": "70"}}}
        assert resolve_field_value(rule, data).raw == "70"

    def test_absent_field_is_none(self):
        assert resolve_field_value(make_rule("height"), {"age": "1"}) is None

    def test_present_but_null_is_not_absent(self):
        value = resolve_field_value(make_rule("age"), {"age": None})
        assert value is not None
        assert value.kind is ValueKind.NULL

    def test_compare_value_uses_same_strategies(self):
        assert resolve_compare_value("visit.consentDate", {"consent_date": "2024-01-01"}).raw == "2024-01-01"
        assert resolve_compare_value("missing", {}) is None


class TestMatchesField:
    """Tests for single-field rule matching"""

    def test_item_id(self):
        assert matches_field(make_rule("x", item_id=7), "anything", item_id=7)

    def test_exact_and_case_insensitive(self):
        assert matches_field(make_rule("demographics.age"), "demographics.age")
        assert matches_field(make_rule("demographics.age"), "Demographics.AGE")

    def test_last_segment_and_snake_case(self):
        assert matches_field(make_rule("demographics.age"), "age")
        assert matches_field(make_rule("vitals.heartRate"), "heart_rate")

    def test_shared_data_point(self, data_point_map):
        assert matches_field(make_rule("I_DEMO_AGE"), "age", data_point_map=data_point_map)

    def test_unrelated_field(self):
        assert not matches_field(make_rule("demographics.age"), "weight")


class TestDataPointMap:
    """Tests for data point indexing and lookup"""

    def test_keys(self, data_point_map):
        assert data_point_map["age"] == 11
        assert data_point_map["I_DEMO_AGE"] == 11
        assert data_point_map["item_101"] == 11
        assert data_point_map["subjectinitials"] == 12

    def test_lookup(self, data_point_map):
        assert lookup_data_point_id("demographics.age", data_point_map) == 11
        assert lookup_data_point_id("SUBJECTINITIALS", data_point_map) == 12
        assert lookup_data_point_id("unknown", data_point_map) is None
        assert lookup_data_point_id("age", {}) is None

    def test_rule_data_point_prefers_item_id(self, data_point_map):
        rule = make_rule("SubjectInitials", item_id=101)
        assert rule_data_point_id(rule, data_point_map) == 11

    def test_camel_to_snake(self):
        assert camel_to_snake("ageYears") == "age_years"
        assert camel_to_snake("age_years") == "age_years"
        assert camel_to_snake("HeartRate") == "heart_rate"
