"""
Field resolution: locating the submitted value a rule targets.

Clinical forms are authored once and then filled in under different field
naming regimes (form builder paths, legacy importer names, item OIDs), so a
rule's ``field_path`` rarely matches the submitted key verbatim. Resolution
tries strategies from most to least specific and the first hit wins.

A field missing from the submission resolves to ``None``, which is distinct
from a field that is present but empty (``FieldValue`` of kind NULL or "").
"""

import re
from collections.abc import Iterable, Mapping
from typing import Any

from ..models import FieldValue, Rule
from ..ports import DataPoint

_MISSING = object()
_UPPER_RE = re.compile(r"([A-Z])")


def camel_to_snake(name: str) -> str:
    """``ageYears`` -> ``age_years``; already-snake names are lower-cased."""
    return _UPPER_RE.sub(r"_\1", name).lower().lstrip("_")


def last_segment(path: str) -> str:
    return path.rsplit(".", 1)[-1]


def resolve_path(data: Mapping[str, Any], path: str) -> Any:
    """
    Exact lookup of a dotted path.

    A literal key equal to the whole path wins over nested traversal.
    Returns the module's missing sentinel when nothing is found.
    """
    if not path:
        return _MISSING
    if path in data:
        return data[path]
    current: Any = data
    for segment in path.split("."):
        if not isinstance(current, Mapping) or segment not in current:
            return _MISSING
        current = current[segment]
    return current


def _find_key_ci(data: Mapping[str, Any], name: str) -> Any:
    lowered = name.lower()
    for key, value in data.items():
        if str(key).lower() == lowered:
            return value
    return _MISSING


def _deep_search(data: Mapping[str, Any], name: str) -> Any:
    lowered = name.lower()
    for key, value in data.items():
        if str(key).lower() == lowered:
            return value
        if isinstance(value, Mapping):
            nested = _deep_search(value, name)
            if nested is not _MISSING:
                return nested
    return _MISSING


def lookup_data_point_id(field_path: str, data_point_map: Mapping[str, int]) -> int | None:
    """Data point for a field path: exact, lower-case, then last segment."""
    if not field_path or not data_point_map:
        return None
    name = last_segment(field_path)
    for candidate in (field_path, field_path.lower(), name, name.lower()):
        data_point_id = data_point_map.get(candidate)
        if data_point_id:
            return data_point_id
    return None


def build_data_point_map(data_points: Iterable[DataPoint]) -> dict[str, int]:
    """
    Index a form instance's data points by every identifier a rule may use.

    Keys are the item name, its lower-case form, the item OID and
    ``item_<item_id>``.
    """
    data_point_map: dict[str, int] = {}
    for point in data_points:
        data_point_map[point.name] = point.data_point_id
        data_point_map[point.name.lower()] = point.data_point_id
        if point.oid:
            data_point_map[point.oid] = point.data_point_id
        data_point_map[f"item_{point.item_id}"] = point.data_point_id
    return data_point_map


def rule_data_point_id(rule: Rule, data_point_map: Mapping[str, int]) -> int | None:
    """Data point a rule targets, via its item id and then its field path."""
    if not data_point_map:
        return None
    if rule.item_id is not None:
        data_point_id = data_point_map.get(f"item_{rule.item_id}")
        if data_point_id:
            return data_point_id
    return lookup_data_point_id(rule.field_path, data_point_map)


def find_raw_value(
    field_path: str,
    submitted: Mapping[str, Any],
    data_point_map: Mapping[str, int] | None = None,
    item_id: int | None = None,
) -> Any:
    """
    Raw value for a field path, or the missing sentinel.

    Strategies, first hit wins:
    1. exact path (literal key, then nested dotted traversal)
    2. case-insensitive full path
    3. last path segment, exact then case-insensitive
    4. camelCase -> snake_case canonical form of the last segment
    5. a submitted key that maps to the same stored data point
    6. case-insensitive search of nested (non-list) mappings
    """
    if not field_path:
        return _MISSING

    value = resolve_path(submitted, field_path)
    if value is not _MISSING:
        return value

    value = _find_key_ci(submitted, field_path)
    if value is not _MISSING:
        return value

    name = last_segment(field_path)
    if name in submitted:
        return submitted[name]
    value = _find_key_ci(submitted, name)
    if value is not _MISSING:
        return value

    canonical = camel_to_snake(name)
    for key, candidate in submitted.items():
        if camel_to_snake(str(key)) == canonical:
            return candidate

    if data_point_map:
        target = None
        if item_id is not None:
            target = data_point_map.get(f"item_{item_id}")
        target = target or lookup_data_point_id(field_path, data_point_map)
        if target:
            for key, candidate in submitted.items():
                if lookup_data_point_id(str(key), data_point_map) == target:
                    return candidate

    return _deep_search(submitted, name)


def resolve_field_value(
    rule: Rule,
    submitted: Mapping[str, Any],
    data_point_map: Mapping[str, int] | None = None,
) -> FieldValue | None:
    """
    Resolve the value a rule targets.

    Args:
        rule: Rule being evaluated
        submitted: Submitted form data
        data_point_map: Identifier -> data point id for the form instance

    Returns:
        FieldValue, or None when the field is absent from the submission
    """
    value = find_raw_value(rule.field_path, submitted, data_point_map, rule.item_id)
    if value is _MISSING:
        return None
    return FieldValue.from_raw(value)


def resolve_compare_value(
    field_path: str,
    submitted: Mapping[str, Any],
    data_point_map: Mapping[str, int] | None = None,
) -> FieldValue | None:
    """Resolve a consistency rule's comparison field with the same strategies."""
    value = find_raw_value(field_path, submitted, data_point_map)
    if value is _MISSING:
        return None
    return FieldValue.from_raw(value)


def matches_field(
    rule: Rule,
    field_path: str,
    item_id: int | None = None,
    data_point_map: Mapping[str, int] | None = None,
) -> bool:
    """
    Whether a rule applies to one specific field (single-field validation).

    Order: item id equality; exact path; case-insensitive path; last segment
    case-insensitive; snake_case canonical form; shared data point.
    """
    if rule.item_id is not None and item_id is not None and rule.item_id == item_id:
        return True
    if not rule.field_path or not field_path:
        return False
    if rule.field_path == field_path:
        return True
    if rule.field_path.lower() == field_path.lower():
        return True

    rule_name = last_segment(rule.field_path)
    field_name = last_segment(field_path)
    if rule_name.lower() == field_name.lower():
        return True
    if camel_to_snake(rule_name) == camel_to_snake(field_name):
        return True

    if data_point_map:
        rule_point = data_point_map.get(rule.field_path) or data_point_map.get(rule.field_path.lower())
        field_point = data_point_map.get(field_path) or data_point_map.get(field_path.lower())
        if rule_point and field_point and rule_point == field_point:
            return True
    return False
