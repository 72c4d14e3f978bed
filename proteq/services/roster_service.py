"""Сервисный слой для ростера команд и сотрудников.

С точки зрения жизненного цикла инцидента ростер только читается:
проверка права на назначение и список получателей рассылки. Ведёт
ростер внешний модуль управления персоналом.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from ..extensions import db
from ..models import StaffMember, Team


@dataclass(frozen=True)
class RosterMember:
    """Срез сотрудника, достаточный для проверки и рассылки."""

    id: int
    name: str
    email: Optional[str]
    position: Optional[str]
    active: bool
    available: bool

    @property
    def eligible_for_team_duty(self) -> bool:
        return self.active and self.available

    @classmethod
    def from_model(cls, staff: StaffMember) -> "RosterMember":
        return cls(
            id=staff.id,
            name=staff.name,
            email=staff.email,
            position=staff.position,
            active=bool(staff.is_active),
            available=bool(staff.is_available),
        )


def get_team(team_id: int) -> Optional[Team]:
    return db.session.get(Team, team_id)


def team_members(team_id: int) -> List[RosterMember]:
    """Все участники команды (включая неактивных и занятых)."""
    rows = (
        StaffMember.query
        .filter(StaffMember.team_id == team_id)
        .order_by(StaffMember.id.asc())
        .all()
    )
    return [RosterMember.from_model(s) for s in rows]


def staff_member(staff_id: int) -> Optional[RosterMember]:
    staff = db.session.get(StaffMember, staff_id)
    return RosterMember.from_model(staff) if staff is not None else None


def staff_team_id(staff_id: int) -> Optional[int]:
    staff = db.session.get(StaffMember, staff_id)
    return staff.team_id if staff is not None else None
