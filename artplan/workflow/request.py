"""Command-surface parameters for a planning pass."""

from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from artplan.lib.constants import ID_PATTERN, MAX_ID_LEN
from artplan.lib.errors import ValidationError


class PlanRequest(BaseModel):
    """Validated inputs for plan_program_increment.

    "This PI" style references are resolved to ids by the caller; the core
    only ever sees explicit identifiers.
    """
    pi_id: str
    team_id: str
    iteration_count: Optional[int] = Field(default=None, ge=1, le=12)
    dry_run: bool = False
    commit: bool = True
    allow_partial: bool = False

    @field_validator("pi_id", "team_id")
    @classmethod
    def check_identifier(cls, value: str) -> str:
        if not value or len(value) > MAX_ID_LEN or not ID_PATTERN.match(value):
            raise ValueError(f"invalid identifier '{value}'")
        return value


def parse_request(**params) -> PlanRequest:
    """Build a PlanRequest, converting pydantic errors into ValidationError."""
    try:
        return PlanRequest(**params)
    except PydanticValidationError as e:
        first = e.errors()[0]
        path = ".".join(str(p) for p in first.get("loc", ())) or None
        raise ValidationError("plan_request", first.get("msg", str(e)), path) from None
