"""Разрешение цели назначения (команда или сотрудник).

Резолвер ничего не пишет в базу: он проверяет право на назначение и
возвращает :class:`ResolvedAssignment`, то есть готовый вариант назначения
плюс список получателей уведомления. Запись делает координатор
(:mod:`proteq.services.incident_service`) в своей транзакции.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from ..errors import InvalidInput, NoEligibleMembers, NotFound
from ..models import Assignment, IncidentReport, StaffAssignment, TeamAssignment
from ..schemas import AssignmentTargetSchema, parse_payload
from . import roster_service
from .roster_service import RosterMember


@dataclass(frozen=True)
class ResolvedAssignment:
    assignment: Assignment
    label: str
    recipients: List[RosterMember] = field(default_factory=list)
    total_members: int = 0

    @property
    def kind(self) -> str:
        return self.assignment.kind

    def detail(self) -> Dict[str, Any]:
        if isinstance(self.assignment, TeamAssignment):
            return {
                "teamId": self.assignment.team_id,
                "teamName": self.label,
                "totalMembers": self.total_members,
                "eligibleMembers": len(self.recipients),
            }
        member = self.recipients[0] if self.recipients else None
        return {
            "staffId": self.assignment.target_id,
            "staffName": self.label,
            "staffEmail": member.email if member else None,
            "staffPosition": member.position if member else None,
        }


def resolve_team(team_id: int) -> ResolvedAssignment:
    """Проверить команду и вернуть назначение на неё.

    Команда должна существовать и иметь хотя бы одного участника,
    который одновременно активен и доступен. Иначе
    :class:`NoEligibleMembers` с общим числом участников.
    """
    team = roster_service.get_team(team_id)
    if team is None:
        raise NotFound("team", team_id)
    members = roster_service.team_members(team_id)
    eligible = [m for m in members if m.eligible_for_team_duty]
    if not eligible:
        raise NoEligibleMembers(team_id, team.name, len(members))
    return ResolvedAssignment(
        assignment=TeamAssignment(team_id),
        label=team.name,
        recipients=eligible,
        total_members=len(members),
    )


def resolve_staff(staff_id: int) -> ResolvedAssignment:
    """Проверить сотрудника и вернуть назначение на него.

    Достаточно, чтобы сотрудник был активен; доступность (занятость)
    для индивидуального назначения не проверяется.
    """
    member = roster_service.staff_member(staff_id)
    if member is None:
        raise NotFound("staff", staff_id)
    if not member.active:
        raise InvalidInput(
            [{"field": "staffId", "reason": "inactive"}],
            message=f'Staff member "{member.name}" is inactive and cannot be assigned.',
        )
    return ResolvedAssignment(
        assignment=StaffAssignment(staff_id),
        label=member.name,
        recipients=[member],
        total_members=1,
    )


def resolve_target(target: Union[AssignmentTargetSchema, Dict[str, Any]]) -> ResolvedAssignment:
    if isinstance(target, dict):
        target = parse_payload(AssignmentTargetSchema, target)
    if target.team is not None:
        return resolve_team(target.team)
    return resolve_staff(target.staff)


def apply_assignment(incident: IncidentReport, resolved: Optional[ResolvedAssignment]) -> bool:
    """Записать вариант назначения в запись. Вернуть True, если он изменился."""
    new_value = resolved.assignment if resolved is not None else None
    if incident.assignment == new_value:
        return False
    incident.assignment = new_value
    return True
