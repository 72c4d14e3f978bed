"""
Модели базы данных для подсистемы инцидентов.

Здесь определены заявки об инцидентах (включая гостевые), ростер
команд и сотрудников, журнал аудита и журнал рассылок уведомлений.
Ростер с точки зрения этой подсистемы read-mostly: его ведёт
отдельный модуль управления персоналом.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.mutable import MutableDict

from .extensions import db


PRIORITIES = ("low", "moderate", "high", "critical")
SAFETY_STATUSES = ("safe", "injured", "unknown")
VALIDATION_STATUSES = ("unvalidated", "validated", "rejected")
INCIDENT_STATUSES = ("pending", "in_progress", "resolved", "closed")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _in_clause(column: str, values) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


# ---------------------------------------------------------------------------
# Назначение: либо команда, либо сотрудник
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TeamAssignment:
    team_id: int
    kind = "team"

    @property
    def target_id(self) -> int:
        return self.team_id


@dataclass(frozen=True)
class StaffAssignment:
    staff_id: int
    kind = "staff"

    @property
    def target_id(self) -> int:
        return self.staff_id


Assignment = Union[TeamAssignment, StaffAssignment]


# ---------------------------------------------------------------------------
# Ростер
# ---------------------------------------------------------------------------


class Team(db.Model):
    """Команда реагирования.

    Команда назначаема, только если в ней есть хотя бы один участник,
    одновременно активный и доступный.
    """

    __tablename__ = 'teams'

    id: int = db.Column(db.Integer, primary_key=True)
    name: str = db.Column(db.String(128), unique=True, nullable=False)
    description: str = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=_utcnow)

    members = db.relationship('StaffMember', back_populates='team', lazy='selectin', order_by='StaffMember.id')


class StaffMember(db.Model):
    """Сотрудник (респондент).

    ``is_active``: учётная запись не отключена; ``is_available``:
    сотрудник сейчас не занят. Для индивидуального назначения
    проверяется только ``is_active``.
    """

    __tablename__ = 'staff_members'
    __table_args__ = (
        db.Index('ix_staff_members_team', 'team_id'),
    )

    id: int = db.Column(db.Integer, primary_key=True)
    name: str = db.Column(db.String(128), nullable=False)
    email: str = db.Column(db.String(255), nullable=True)
    position: str = db.Column(db.String(128), nullable=True)
    is_active: bool = db.Column(db.Boolean, nullable=False, default=True)
    is_available: bool = db.Column(db.Boolean, nullable=False, default=True)
    team_id: int = db.Column(db.Integer, db.ForeignKey('teams.id'), nullable=True)

    team = db.relationship('Team', back_populates='members')


# ---------------------------------------------------------------------------
# Инциденты
# ---------------------------------------------------------------------------


class IncidentReport(db.Model):
    """Заявка об инциденте.

    Заявитель: либо аутентифицированный пользователь
    (``reporter_user_id``), либо гость (связанная запись
    :class:`GuestReporter`); ровно одно из двух, задаётся при создании.

    Назначение хранится парой ``assignee_kind``/``assignee_id``: в одной
    колонке не может одновременно оказаться и команда, и сотрудник, а
    CHECK-ограничение не даёт записать «половину» варианта. Читать и
    писать назначение нужно через свойство :attr:`assignment`.

    ``version`` используется SQLAlchemy для оптимистичной блокировки:
    UPDATE с устаревшей версией не затронет ни одной строки и
    закончится ``StaleDataError``.
    """

    __tablename__ = 'incident_reports'
    __table_args__ = (
        db.Index('ix_incident_reports_reported_at', 'reported_at'),
        db.Index('ix_incident_reports_status', 'status'),
        db.Index('ix_incident_reports_assignee', 'assignee_kind', 'assignee_id'),
        db.CheckConstraint(
            "(assignee_kind IS NULL AND assignee_id IS NULL) OR "
            "(assignee_kind IN ('team', 'staff') AND assignee_id IS NOT NULL)",
            name='ck_incident_assignment_variant',
        ),
        db.CheckConstraint(
            "(reporter_kind = 'user' AND reporter_user_id IS NOT NULL) OR "
            "(reporter_kind = 'guest' AND reporter_user_id IS NULL)",
            name='ck_incident_reporter_variant',
        ),
        db.CheckConstraint(_in_clause('status', INCIDENT_STATUSES), name='ck_incident_status'),
        db.CheckConstraint(_in_clause('priority', PRIORITIES), name='ck_incident_priority'),
        db.CheckConstraint(_in_clause('reporter_safety', SAFETY_STATUSES), name='ck_incident_reporter_safety'),
        db.CheckConstraint(_in_clause('validation_status', VALIDATION_STATUSES), name='ck_incident_validation_status'),
    )

    id: int = db.Column(db.Integer, primary_key=True)
    report_type: str = db.Column(db.String(64), nullable=False)
    narrative: str = db.Column(db.Text, nullable=False)
    location_text: str = db.Column(db.Text, nullable=False)
    latitude: float = db.Column(db.Float, nullable=True)
    longitude: float = db.Column(db.Float, nullable=True)
    # reporter | default: откуда взялись координаты
    coordinates_source: str = db.Column(db.String(16), nullable=True)
    geocoded_address: str = db.Column(db.String(255), nullable=True)
    priority: str = db.Column(db.String(16), nullable=False)
    reporter_safety: str = db.Column(db.String(16), nullable=False)
    # user | guest, задаётся при создании
    reporter_kind: str = db.Column(db.String(8), nullable=False)
    reporter_user_id: int = db.Column(db.Integer, nullable=True, index=True)

    validation_status: str = db.Column(db.String(16), nullable=False, default='unvalidated')
    validation_notes: str = db.Column(db.Text, nullable=True)

    assignee_kind: str = db.Column(db.String(8), nullable=True)
    assignee_id: int = db.Column(db.Integer, nullable=True)

    status: str = db.Column(db.String(16), nullable=False, default='pending')
    reported_at = db.Column(db.DateTime, nullable=False, default=_utcnow)
    # Меняется только сервисом и только при реальном изменении записи
    updated_at = db.Column(db.DateTime, nullable=False, default=_utcnow)
    version: int = db.Column(db.Integer, nullable=False)

    guest = db.relationship(
        'GuestReporter',
        back_populates='incident',
        uselist=False,
        lazy='selectin',
        cascade='all, delete-orphan',
    )

    __mapper_args__ = {'version_id_col': version}

    # -- assignment ---------------------------------------------------------

    @property
    def assignment(self) -> Optional[Assignment]:
        if self.assignee_kind == 'team':
            return TeamAssignment(self.assignee_id)
        if self.assignee_kind == 'staff':
            return StaffAssignment(self.assignee_id)
        return None

    @assignment.setter
    def assignment(self, value: Optional[Assignment]) -> None:
        if value is None:
            kind, ref = None, None
        elif isinstance(value, (TeamAssignment, StaffAssignment)):
            kind, ref = value.kind, value.target_id
        else:
            raise TypeError(f"unsupported assignment: {value!r}")
        # Оба столбца меняются вместе: предыдущий вариант всегда стирается
        self.assignee_kind, self.assignee_id = kind, ref

    @property
    def assigned_team_id(self) -> Optional[int]:
        return self.assignee_id if self.assignee_kind == 'team' else None

    @property
    def assigned_staff_id(self) -> Optional[int]:
        return self.assignee_id if self.assignee_kind == 'staff' else None

    # -- reporter -----------------------------------------------------------

    @property
    def is_guest_report(self) -> bool:
        return self.reporter_kind == 'guest'

    def reporter_ref(self) -> Dict[str, Any]:
        if not self.is_guest_report:
            return {'kind': 'user', 'id': self.reporter_user_id}
        guest = self.guest
        return {
            'kind': 'guest',
            'name': guest.name if guest else None,
            'contact': guest.contact if guest else None,
        }

    @property
    def is_terminal(self) -> bool:
        return self.status in ('resolved', 'closed')

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'report_type': self.report_type,
            'narrative': self.narrative,
            'location': {
                'text': self.location_text,
                'latitude': self.latitude,
                'longitude': self.longitude,
                'source': self.coordinates_source,
                'address': self.geocoded_address,
            },
            'priority': self.priority,
            'reporter_safety': self.reporter_safety,
            'reporter': self.reporter_ref(),
            'validation_status': self.validation_status,
            'validation_notes': self.validation_notes,
            'assignment': (
                {'kind': self.assignee_kind, 'id': self.assignee_id}
                if self.assignee_kind else None
            ),
            'assigned_team_id': self.assigned_team_id,
            'assigned_staff_id': self.assigned_staff_id,
            'status': self.status,
            'reported_at': _iso(self.reported_at),
            'updated_at': _iso(self.updated_at),
            'version': self.version,
        }


class GuestReporter(db.Model):
    """Контакты гостя, подавшего заявку без учётной записи.

    Пишется строго в одной транзакции с :class:`IncidentReport`.
    """

    __tablename__ = 'guest_reporters'

    id: int = db.Column(db.Integer, primary_key=True)
    incident_id: int = db.Column(
        db.Integer, db.ForeignKey('incident_reports.id'), nullable=False, unique=True
    )
    name: str = db.Column(db.String(128), nullable=False)
    contact: str = db.Column(db.String(128), nullable=False)
    created_at = db.Column(db.DateTime, default=_utcnow)

    incident = db.relationship('IncidentReport', back_populates='guest')


# ---------------------------------------------------------------------------
# Аудит и журнал рассылок
# ---------------------------------------------------------------------------


class AuditEntry(db.Model):
    """Запись аудита (append-only).

    Подсистема только добавляет записи. ``prev_hash`` и ``signature``
    сшивают журнал в цепочку (см. :func:`proteq.audit.logger.verify_audit_chain`),
    поэтому правка или удаление строки «задним числом» обнаруживается.
    """

    __tablename__ = 'audit_entries'
    __table_args__ = (
        db.Index('ix_audit_entries_ts', 'ts'),
        db.Index('ix_audit_entries_action', 'action'),
        db.Index('ix_audit_entries_incident', 'incident_id'),
    )

    id: int = db.Column(db.Integer, primary_key=True)
    ts = db.Column(db.DateTime, nullable=False, default=_utcnow)
    actor_kind: str = db.Column(db.String(16), nullable=False, default='system')
    actor_id: int = db.Column(db.Integer, nullable=True)
    action: str = db.Column(db.String(64), nullable=False)
    detail: str = db.Column(db.Text, nullable=True)
    incident_id: int = db.Column(db.Integer, nullable=True)
    payload = db.Column(MutableDict.as_mutable(db.JSON().with_variant(JSONB, 'postgresql')), nullable=True)
    prev_hash: str = db.Column(db.String(64), nullable=False)
    signature: str = db.Column(db.String(64), nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'ts': _iso(self.ts),
            'actor': {'kind': self.actor_kind, 'id': self.actor_id},
            'action': self.action,
            'detail': self.detail,
            'incident_id': self.incident_id,
            'payload': self.payload or {},
        }


class AuditChainHead(db.Model):
    """Единственная строка-замок для дописывания в цепочку аудита.

    Писатель сначала делает UPDATE этой строки и только потом читает
    подпись последней записи, поэтому параллельные писатели выстраиваются
    в очередь и не продолжают цепочку от одного и того же ``prev_hash``.
    """

    __tablename__ = 'audit_chain_head'

    id: int = db.Column(db.Integer, primary_key=True)
    length: int = db.Column(db.Integer, nullable=False, default=0)


class NotificationLog(db.Model):
    """Итог одной рассылки о назначении (команде или сотруднику)."""

    __tablename__ = 'notification_logs'
    __table_args__ = (
        db.Index('ix_notification_logs_incident', 'incident_id'),
    )

    id: int = db.Column(db.Integer, primary_key=True)
    incident_id: int = db.Column(db.Integer, nullable=False)
    team_id: int = db.Column(db.Integer, nullable=True)
    staff_id: int = db.Column(db.Integer, nullable=True)
    total_recipients: int = db.Column(db.Integer, nullable=False, default=0)
    delivered: int = db.Column(db.Integer, nullable=False, default=0)
    failed: int = db.Column(db.Integer, nullable=False, default=0)
    error: str = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=_utcnow)
