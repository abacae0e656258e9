"""
Schema validation for the planning engine.

Every tracker payload is checked before it is normalized, the team roster
before it is used, and every plan document before it is written. Schemas live
in ``artplan/schemas/<name>.schema.json`` and are compiled once per process.
"""

import json
from functools import lru_cache
from pathlib import Path

import jsonschema
from jsonschema.exceptions import best_match

from .errors import ValidationError

SCHEMAS_DIR = Path(__file__).parent.parent / "schemas"


@lru_cache(maxsize=None)
def get_validator(schema_name: str) -> jsonschema.Draft7Validator:
    """Compile the named schema; unknown names are a validation failure."""
    schema_path = SCHEMAS_DIR / f"{schema_name}.schema.json"
    if not schema_path.is_file():
        raise ValidationError(schema_name, f"No schema named '{schema_name}' in {SCHEMAS_DIR}")
    schema = json.loads(schema_path.read_text())
    jsonschema.Draft7Validator.check_schema(schema)
    return jsonschema.Draft7Validator(schema)


def format_path(parts) -> str:
    """Render a jsonschema path as ``items[2].title``; empty means the document root."""
    rendered = ""
    for part in parts:
        if isinstance(part, int):
            rendered += f"[{part}]"
        else:
            rendered += f".{part}" if rendered else str(part)
    return rendered or "(root)"


def validate(data: dict, schema_name: str) -> None:
    """
    Validate data against a named schema.

    When several constraints fail, the most relevant one (jsonschema's
    best_match) is reported, with the total count appended.

    Raises:
        ValidationError: carrying the schema name, message and field path
    """
    errors = list(get_validator(schema_name).iter_errors(data))
    if not errors:
        return
    error = best_match(errors)
    message = error.message
    if len(errors) > 1:
        message += f" ({len(errors) - 1} more problem(s))"
    raise ValidationError(schema_name, message, format_path(error.absolute_path))


def validate_before_write(data: dict, schema_name: str, filepath: Path) -> None:
    """Refuse to write a document that does not match its schema."""
    try:
        validate(data, schema_name)
    except ValidationError as e:
        raise ValidationError(
            schema_name, f"Refusing to write invalid data to {filepath}: {e.message}", e.path
        ) from None
