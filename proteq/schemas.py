"""Pydantic v2 contracts for incident intake and lifecycle requests.

Every contract accepts the camelCase names used by the web forms, the
snake_case attribute names, and the legacy field names of the first
public form (``incidentType``, ``priorityLevel``, ...).
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Type, TypeVar

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .errors import InvalidInput

SchemaT = TypeVar("SchemaT", bound=BaseModel)

# Старые значения формы, которые по смыслу совпадают с допустимыми
PRIORITY_ALIASES = {"medium": "moderate"}
SAFETY_ALIASES = {"danger": "unknown"}


class StrictSchema(BaseModel):
    """Base strict schema: forbids unknown fields and strips strings."""

    model_config = ConfigDict(extra='forbid', str_strip_whitespace=True, populate_by_name=True)


def lenient_coordinate(value: Any, bound: float) -> Optional[float]:
    """Координата или None: кривые значения не отклоняют заявку."""
    if value is None:
        return None
    try:
        s = str(value).strip()
        if s == "":
            return None
        out = float(s)
    except (TypeError, ValueError):
        return None
    if out != out or not (-bound <= out <= bound):  # NaN или вне диапазона
        return None
    return out


def _normalize_choice(value: Any, aliases: Dict[str, str]) -> Any:
    if isinstance(value, str):
        v = value.strip().lower()
        return aliases.get(v, v)
    return value


class IncidentReportSchema(StrictSchema):
    """Contract for an incident report from an authenticated user."""

    report_type: str = Field(
        min_length=1,
        max_length=64,
        validation_alias=AliasChoices("reportType", "incidentType", "report_type"),
    )
    narrative: str = Field(
        min_length=1,
        max_length=10000,
        validation_alias=AliasChoices("narrative", "description"),
    )
    location: str = Field(min_length=1, max_length=200)
    priority: Literal["low", "moderate", "high", "critical"] = Field(
        validation_alias=AliasChoices("priority", "priorityLevel"),
    )
    reporter_safety: Literal["safe", "injured", "unknown"] = Field(
        validation_alias=AliasChoices("reporterSafety", "safetyStatus", "reporter_safety"),
    )
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @field_validator("priority", mode="before")
    @classmethod
    def _priority(cls, value: Any) -> Any:
        return _normalize_choice(value, PRIORITY_ALIASES)

    @field_validator("reporter_safety", mode="before")
    @classmethod
    def _safety(cls, value: Any) -> Any:
        return _normalize_choice(value, SAFETY_ALIASES)

    @field_validator("latitude", mode="before")
    @classmethod
    def _latitude(cls, value: Any) -> Optional[float]:
        return lenient_coordinate(value, 90)

    @field_validator("longitude", mode="before")
    @classmethod
    def _longitude(cls, value: Any) -> Optional[float]:
        return lenient_coordinate(value, 180)


class GuestIncidentReportSchema(IncidentReportSchema):
    """Contract for an incident report submitted without an account."""

    guest_name: str = Field(
        min_length=1,
        max_length=128,
        validation_alias=AliasChoices("guestName", "guest_name"),
    )
    guest_contact: str = Field(
        min_length=1,
        max_length=128,
        validation_alias=AliasChoices("guestContact", "guest_contact"),
    )


class AssignmentTargetSchema(StrictSchema):
    """Either ``{"team": id}`` or ``{"staff": id}``, never both."""

    team: Optional[int] = Field(default=None, validation_alias=AliasChoices("team", "teamId"))
    staff: Optional[int] = Field(default=None, validation_alias=AliasChoices("staff", "staffId"))

    @model_validator(mode="after")
    def _exactly_one(self) -> "AssignmentTargetSchema":
        if (self.team is None) == (self.staff is None):
            raise ValueError("exactly one of team or staff must be given")
        return self


class ValidationDecisionSchema(StrictSchema):
    """Contract for the validate operation."""

    validation_status: Literal["validated", "rejected"] = Field(
        validation_alias=AliasChoices("validationStatus", "decision", "validation_status"),
    )
    validation_notes: Optional[str] = Field(
        default=None,
        max_length=5000,
        validation_alias=AliasChoices("validationNotes", "notes", "validation_notes"),
    )
    assignment_target: Optional[AssignmentTargetSchema] = Field(
        default=None,
        validation_alias=AliasChoices("assignmentTarget", "assignment_target"),
    )
    # Старый клиент передавал только id сотрудника
    assigned_to: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("assignedTo", "assigned_to"),
    )

    @field_validator("validation_status", mode="before")
    @classmethod
    def _decision(cls, value: Any) -> Any:
        return _normalize_choice(value, {})

    def target(self) -> Optional[AssignmentTargetSchema]:
        if self.assignment_target is not None:
            return self.assignment_target
        if self.assigned_to is not None:
            return AssignmentTargetSchema(staff=self.assigned_to)
        return None


class StatusUpdateSchema(StrictSchema):
    status: Literal["pending", "in_progress", "resolved", "closed"]
    notes: Optional[str] = Field(default=None, max_length=5000)

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value: Any) -> Any:
        return _normalize_choice(value, {})


class AssignTeamSchema(StrictSchema):
    # Ключ обязателен; null означает «снять назначение»
    team_id: Optional[int] = Field(validation_alias=AliasChoices("teamId", "team_id"))


class AssignStaffSchema(StrictSchema):
    staff_id: Optional[int] = Field(validation_alias=AliasChoices("staffId", "staff_id"))


_REASONS = {
    "missing": "missing",
    "string_too_short": "empty",
    "string_too_long": "too long",
    "literal_error": "invalid value",
    "extra_forbidden": "unexpected field",
    "int_parsing": "not an integer",
    "int_type": "not an integer",
    "string_type": "not a string",
}


def field_errors(exc: ValidationError) -> List[Dict[str, str]]:
    """Превратить ValidationError в список ``{"field", "reason"}``.

    Чистая функция: ничего не бросает и не пишет в лог.
    """
    out: List[Dict[str, str]] = []
    seen = set()
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if not isinstance(p, int)]
        field = ".".join(loc) or "payload"
        if field in seen:
            continue
        seen.add(field)
        reason = _REASONS.get(err.get("type", ""), err.get("msg") or "invalid")
        if err.get("type") == "value_error":
            reason = str(err.get("ctx", {}).get("error") or err.get("msg") or "invalid")
        out.append({"field": field, "reason": reason})
    return out


def parse_payload(schema: Type[SchemaT], payload: Any) -> SchemaT:
    """Провалидировать payload по контракту или бросить InvalidInput.

    В ошибке перечислены все отсутствующие/некорректные поля сразу.
    """
    if not isinstance(payload, dict):
        raise InvalidInput([{"field": "payload", "reason": "expected a JSON object"}])
    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        raise InvalidInput(field_errors(exc)) from None
