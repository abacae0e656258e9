"""
Normalization of tracker payloads into core types.

Payloads arrive with camelCase or snake_case field names. They are renamed,
checked against the JSON schemas (unknown fields are rejected), and only then
turned into WorkItem / Team / ProgramIncrement / DependencyRelationship.
"""

import re

from artplan.lib.constants import ID_PATTERN, WORK_ITEM_TYPES
from artplan.lib.errors import ValidationError
from artplan.lib.validate import validate
from artplan.planning.models import (
    DependencyKind,
    DependencyRelationship,
    DependencyStrength,
    DetectionMethod,
    ProgramIncrement,
    Team,
    WorkItem,
)

_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")

# Tracker field names that differ from ours beyond camelCase
FIELD_ALIASES = {
    "estimate": "story_points",
    "points": "story_points",
    "sourceId": "source_id",
    "targetId": "target_id",
    "velocity": "average_velocity",
    "members": "member_count",
    "iteration_length": "iteration_length_days",
}


def _snake(key: str) -> str:
    return _CAMEL.sub("_", key).lower()


def rename_fields(payload: dict, schema_name: str) -> dict:
    """Map tracker field names onto ours; conflicting duplicates are rejected."""
    if not isinstance(payload, dict):
        raise ValidationError(schema_name, f"Expected an object, got {type(payload).__name__}")
    result = {}
    for key, value in payload.items():
        name = FIELD_ALIASES.get(key) or _snake(key)
        if name in result and result[name] != value:
            raise ValidationError(schema_name, f"Conflicting values for '{name}'", key)
        result[name] = value
    return result


def _check_id(value: str, schema_name: str, field: str) -> None:
    if not ID_PATTERN.match(value):
        raise ValidationError(schema_name, f"Invalid identifier '{value}'", field)


def normalize_work_item(payload: dict) -> WorkItem:
    data = rename_fields(payload, "work_item")
    validate(data, "work_item")
    _check_id(data["id"], "work_item", "id")
    if data.get("type", "story") not in WORK_ITEM_TYPES:
        raise ValidationError("work_item", f"Unknown type '{data['type']}'", "type")
    return WorkItem.from_dict(data)


def normalize_team(payload: dict) -> Team:
    data = rename_fields(payload, "team")
    validate(data, "team")
    _check_id(data["id"], "team", "id")
    return Team.from_dict(data)


def normalize_program_increment(payload: dict) -> ProgramIncrement:
    data = rename_fields(payload, "program_increment")
    validate(data, "program_increment")
    _check_id(data["id"], "program_increment", "id")
    try:
        pi = ProgramIncrement.from_dict(data)
    except ValueError as e:
        raise ValidationError("program_increment", str(e), "start_date") from None
    if pi.end_date <= pi.start_date:
        raise ValidationError("program_increment", "end_date must be after start_date", "end_date")
    return pi


def normalize_relationship(payload: dict) -> DependencyRelationship:
    data = rename_fields(payload, "relationship")
    validate(data, "relationship")
    kind = DependencyKind(data["kind"])
    strength = DependencyStrength.SOFT if kind == DependencyKind.RELATED else DependencyStrength.HARD
    return DependencyRelationship(
        source_id=data["source_id"],
        target_id=data["target_id"],
        kind=kind,
        strength=strength,
        detection_method=DetectionMethod.MANUAL,
        rationale=data.get("rationale", ""),
        confidence=1.0,
        methods=(DetectionMethod.MANUAL,),
    )


def normalize_backlog(payloads: list[dict]) -> list[WorkItem]:
    """Normalize every item, rejecting the whole snapshot on the first bad one."""
    items = []
    seen = set()
    for index, payload in enumerate(payloads):
        try:
            item = normalize_work_item(payload)
        except ValidationError as e:
            raise ValidationError(e.schema_name, e.message, f"items[{index}].{e.path or '(root)'}") from None
        if item.id in seen:
            raise ValidationError("work_item", f"Duplicate work item id '{item.id}'", f"items[{index}].id")
        seen.add(item.id)
        items.append(item)
    return items
