"""
Rule resolution, rule sources and configuration management.

The validation engine itself lives in ``rule_engine`` and is imported from
there (it depends on the validators, which depend on the field resolver).
"""

from .field_resolver import (
    build_data_point_map,
    camel_to_snake,
    lookup_data_point_id,
    matches_field,
    resolve_field_value,
)
from .rule_config import LegacyRuleModule, RuleBuilder, RuleConfigLoader
from .rule_sources import merge_rules, rules_from_metadata

__all__ = [
    "LegacyRuleModule",
    "RuleBuilder",
    "RuleConfigLoader",
    "build_data_point_map",
    "camel_to_snake",
    "lookup_data_point_id",
    "matches_field",
    "merge_rules",
    "resolve_field_value",
    "rules_from_metadata",
]
