"""Сервисный слой жизненного цикла инцидента.

Координатор связывает вместе валидацию входа, машину состояний,
резолвер назначений, аудит и рассылку уведомлений:

1. запись блокируется на время операции (``SELECT ... FOR UPDATE`` на
   PostgreSQL, плюс ``version_id_col`` на любой СУБД);
2. все проверки выполняются до первой записи, ошибка откатывает всё;
3. основное изменение коммитится одной транзакцией;
4. только после коммита пишется аудит и отправляются уведомления;
   их сбои не откатывают уже сохранённое изменение.

Функции возвращают словари, готовые к сериализации в JSON.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Union

from flask import current_app
from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..actors import SYSTEM, Actor
from ..audit.logger import list_entries, record_action
from ..errors import (
    ConcurrentUpdate,
    IncidentError,
    InvalidInput,
    NotFound,
    StorageUnavailable,
    TerminalStateViolation,
)
from ..extensions import db
from ..models import INCIDENT_STATUSES, GuestReporter, IncidentReport
from ..notifications import gateway as notifications
from ..notifications.messages import staff_assignment_message, team_assignment_message
from ..schemas import (
    AssignmentTargetSchema,
    GuestIncidentReportSchema,
    IncidentReportSchema,
    parse_payload,
)
from . import roster_service
from .assignment_service import (
    ResolvedAssignment,
    apply_assignment,
    resolve_staff,
    resolve_target,
    resolve_team,
)
from .location_service import resolve_location
from .transitions import (
    VALIDATION_OUTCOMES,
    check_transition,
    ensure_mutable,
    status_after_validation,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Транзакции
# ---------------------------------------------------------------------------


def _rollback() -> None:
    try:
        db.session.rollback()
    except SQLAlchemyError:
        logger.debug("Rollback failed", exc_info=True)


def _commit(incident_id: Optional[int] = None) -> None:
    try:
        db.session.commit()
    except StaleDataError:
        _rollback()
        logger.info("Concurrent update rejected for incident %s", incident_id)
        raise ConcurrentUpdate(incident_id) from None
    except SQLAlchemyError:
        _rollback()
        logger.exception("Failed to commit incident %s", incident_id)
        raise StorageUnavailable() from None


def _load_for_update(incident_id: int) -> IncidentReport:
    try:
        incident = (
            IncidentReport.query
            .filter(IncidentReport.id == incident_id)
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )
    except SQLAlchemyError:
        _rollback()
        logger.exception("Failed to load incident %s", incident_id)
        raise StorageUnavailable() from None
    if incident is None:
        raise NotFound("incident", incident_id)
    return incident


@contextmanager
def _locked(incident_id: int) -> Iterator[IncidentReport]:
    """Заблокировать запись; любая ошибка внутри блока откатывает транзакцию."""
    try:
        yield _load_for_update(incident_id)
    except IncidentError:
        _rollback()
        raise
    except SQLAlchemyError:
        _rollback()
        logger.exception("Storage error while incident %s was locked", incident_id)
        raise StorageUnavailable() from None


def _read(fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except SQLAlchemyError:
        _rollback()
        logger.exception("Incident query failed")
        raise StorageUnavailable() from None


# ---------------------------------------------------------------------------
# Рассылка
# ---------------------------------------------------------------------------


def _assignment_message(incident: IncidentReport, resolved: ResolvedAssignment):
    if resolved.kind == "team":
        team = roster_service.get_team(resolved.assignment.target_id)
        return team_assignment_message(
            incident,
            resolved.label,
            len(resolved.recipients),
            team.description if team is not None else None,
        )
    member = resolved.recipients[0] if resolved.recipients else None
    return staff_assignment_message(incident, resolved.label, member.position if member else None)


def _fan_out(incident: IncidentReport, resolved: ResolvedAssignment) -> Dict[str, Any]:
    """Разослать уведомление о назначении. Никогда не бросает."""
    recipients = [m.email for m in resolved.recipients]
    try:
        message = _assignment_message(incident, resolved)
        report = notifications.get_notification_gateway().send(recipients, message)
    except Exception:
        logger.exception("Notification gateway failed for incident %s", incident.id)
        report = notifications.DeliveryReport.not_sent([r for r in recipients if r], "gateway_error")

    notifications.record_delivery(
        incident.id,
        report,
        total_recipients=len(recipients),
        team_id=resolved.assignment.target_id if resolved.kind == "team" else None,
        staff_id=resolved.assignment.target_id if resolved.kind == "staff" else None,
    )
    detail = resolved.detail()
    detail.update(report.to_dict())
    return {"emailSent": report.sent, "emailDetail": detail}


def _assignment_ref(incident: IncidentReport) -> Optional[Dict[str, Any]]:
    current = incident.assignment
    return {"kind": current.kind, "id": current.target_id} if current is not None else None


def _assignment_action(resolved: Optional[ResolvedAssignment]) -> str:
    if resolved is None:
        return "incident_assignment_clear"
    return f"incident_assign_{resolved.kind}"


# ---------------------------------------------------------------------------
# Приём заявок
# ---------------------------------------------------------------------------


def _new_incident(data: IncidentReportSchema, reporter_user_id: Optional[int]) -> IncidentReport:
    loc = resolve_location(data.location, data.latitude, data.longitude)
    now = _now()
    return IncidentReport(
        report_type=data.report_type,
        narrative=data.narrative,
        location_text=loc.display(),
        latitude=loc.latitude,
        longitude=loc.longitude,
        coordinates_source=loc.source,
        geocoded_address=loc.address,
        priority=data.priority,
        reporter_safety=data.reporter_safety,
        reporter_kind="guest" if reporter_user_id is None else "user",
        reporter_user_id=reporter_user_id,
        validation_status="unvalidated",
        status="pending",
        reported_at=now,
        updated_at=now,
    )


def _write_guest_reporter(incident: IncidentReport, name: str, contact: str) -> GuestReporter:
    guest = GuestReporter(incident_id=incident.id, name=name, contact=contact)
    db.session.add(guest)
    db.session.flush()
    return guest


def submit(payload: Dict[str, Any], actor: Optional[Actor]) -> Dict[str, Any]:
    """Принять заявку от аутентифицированного пользователя."""
    if actor is None or actor.kind != "user" or actor.id is None:
        raise InvalidInput(
            [{"field": "actor", "reason": "authenticated user required"}],
            message="Incident reports require an authenticated user.",
        )
    data = parse_payload(IncidentReportSchema, payload)
    incident = _new_incident(data, reporter_user_id=actor.id)
    db.session.add(incident)
    _commit()

    logger.info("Incident %s submitted by %s", incident.id, actor.label())
    record_action(
        actor,
        "incident_report_submit",
        detail=f"Incident report #{incident.id} submitted ({incident.report_type})",
        incident_id=incident.id,
        payload={"priority": incident.priority, "guest": False},
    )
    return incident.to_dict()


def submit_guest(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Принять гостевую заявку.

    Заявка и контакты гостя пишутся одной транзакцией: если не удалось
    сохранить что-то одно, не сохраняется ничего.
    """
    data = parse_payload(GuestIncidentReportSchema, payload)
    incident = _new_incident(data, reporter_user_id=None)
    try:
        db.session.add(incident)
        db.session.flush()
        _write_guest_reporter(incident, data.guest_name, data.guest_contact)
    except SQLAlchemyError:
        _rollback()
        logger.exception("Failed to store guest incident report")
        raise StorageUnavailable() from None
    _commit()

    logger.info("Guest incident %s submitted", incident.id)
    record_action(
        SYSTEM,
        "incident_report_submit",
        detail=f"Guest incident report #{incident.id} submitted ({incident.report_type})",
        incident_id=incident.id,
        payload={"priority": incident.priority, "guest": True},
    )
    return incident.to_dict()


# ---------------------------------------------------------------------------
# Изменения жизненного цикла
# ---------------------------------------------------------------------------


def validate(
    incident_id: int,
    decision: str,
    notes: Optional[str] = None,
    assignment_target: Union[AssignmentTargetSchema, Dict[str, Any], None] = None,
    actor: Optional[Actor] = None,
) -> Dict[str, Any]:
    """Проверить заявку: ``validated`` → in_progress, ``rejected`` → closed.

    Необязательная цель назначения проверяется до любой записи. Повтор
    того же решения без других изменений ничего не пишет. Для закрытой
    записи допустим только такой повтор (без цели назначения и новых
    заметок), всё остальное даёт TerminalStateViolation.
    """
    decision = decision.strip().lower() if isinstance(decision, str) else decision
    if decision not in VALIDATION_OUTCOMES:
        raise InvalidInput([{"field": "validationStatus", "reason": "invalid value"}])
    with _locked(incident_id) as incident:
        if incident.is_terminal:
            same_notes = notes is None or notes == incident.validation_notes
            if incident.validation_status != decision or assignment_target is not None or not same_notes:
                raise TerminalStateViolation(incident.status)
            _rollback()
            return {"incident": incident.to_dict(), "changed": False}

        new_status = status_after_validation(incident.status, decision)
        resolved = resolve_target(assignment_target) if assignment_target is not None else None

        prev = {"validation_status": incident.validation_status, "status": incident.status}
        prev_assignment = _assignment_ref(incident)
        validation_changed = incident.validation_status != decision
        notes_changed = notes is not None and notes != incident.validation_notes

        incident.validation_status = decision
        if notes is not None:
            incident.validation_notes = notes
        incident.status = new_status
        assignment_changed = apply_assignment(incident, resolved) if resolved is not None else False

        changed = validation_changed or notes_changed or prev["status"] != new_status or assignment_changed
        if changed:
            incident.updated_at = _now()
            _commit(incident_id)
        else:
            _rollback()

    if validation_changed or notes_changed:
        record_action(
            actor,
            "incident_validate",
            detail=notes,
            incident_id=incident_id,
            payload={
                "from": prev,
                "to": {"validation_status": decision, "status": new_status},
            },
        )
    if assignment_changed:
        record_action(
            actor,
            _assignment_action(resolved),
            detail=f"Assigned to {resolved.label} during validation",
            incident_id=incident_id,
            payload={"from": prev_assignment, "to": _assignment_ref(incident)},
        )

    result: Dict[str, Any] = {"incident": incident.to_dict(), "changed": changed}
    if resolved is not None:
        result.update(_fan_out(incident, resolved))
    return result


def _assign(
    incident_id: int,
    resolved_or_none,
    actor: Optional[Actor],
) -> Dict[str, Any]:
    with _locked(incident_id) as incident:
        ensure_mutable(incident)
        resolved = resolved_or_none()
        prev_assignment = _assignment_ref(incident)
        changed = apply_assignment(incident, resolved)
        if changed:
            incident.updated_at = _now()
            _commit(incident_id)
        else:
            _rollback()

    if changed:
        record_action(
            actor,
            _assignment_action(resolved),
            detail=f"Assigned to {resolved.label}" if resolved is not None else "Assignment cleared",
            incident_id=incident_id,
            payload={"from": prev_assignment, "to": _assignment_ref(incident)},
        )

    result: Dict[str, Any] = {"incident": incident.to_dict(), "changed": changed}
    if resolved is None:
        result.update({"emailSent": False, "emailDetail": None})
    else:
        # Повторное назначение той же цели ничего не пишет, но уведомляет заново
        result.update(_fan_out(incident, resolved))
    return result


def assign_team(incident_id: int, team_id: Optional[int], actor: Optional[Actor] = None) -> Dict[str, Any]:
    """Назначить команду (или снять назначение при ``team_id=None``)."""
    return _assign(
        incident_id,
        lambda: resolve_team(team_id) if team_id is not None else None,
        actor,
    )


def assign_staff(incident_id: int, staff_id: Optional[int], actor: Optional[Actor] = None) -> Dict[str, Any]:
    """Назначить сотрудника (или снять назначение при ``staff_id=None``)."""
    return _assign(
        incident_id,
        lambda: resolve_staff(staff_id) if staff_id is not None else None,
        actor,
    )


def update_status(
    incident_id: int,
    status: str,
    notes: Optional[str] = None,
    actor: Optional[Actor] = None,
) -> Dict[str, Any]:
    """Сменить статус по таблице переходов."""
    target = status.strip().lower() if isinstance(status, str) else status
    with _locked(incident_id) as incident:
        previous = incident.status
        new_status = check_transition(previous, target)
        if new_status is None:
            _rollback()
            return {"incident": incident.to_dict(), "changed": False}
        incident.status = new_status
        incident.updated_at = _now()
        _commit(incident_id)

    logger.info("Incident %s status %s -> %s", incident_id, previous, new_status)
    record_action(
        actor,
        "incident_status_update",
        detail=notes,
        incident_id=incident_id,
        payload={"from": previous, "to": new_status},
    )
    return {"incident": incident.to_dict(), "changed": True}


# ---------------------------------------------------------------------------
# Запросы
# ---------------------------------------------------------------------------


def _page(limit: Optional[int], offset: Optional[int]):
    cfg = current_app.config
    default = int(cfg.get("INCIDENT_LIST_DEFAULT_LIMIT", 50))
    ceiling = int(cfg.get("INCIDENT_LIST_MAX_LIMIT", 500))
    limit = default if limit is None else max(1, min(int(limit), ceiling))
    return limit, max(0, int(offset or 0))


def get_incident(incident_id: int) -> Dict[str, Any]:
    incident = _read(db.session.get, IncidentReport, incident_id)
    if incident is None:
        raise NotFound("incident", incident_id)
    return incident.to_dict()


def list_incidents(
    status: Optional[str] = None,
    limit: Optional[int] = None,
    offset: Optional[int] = 0,
) -> List[Dict[str, Any]]:
    """Заявки от новых к старым, с необязательным фильтром по статусу."""
    if status is not None and status not in INCIDENT_STATUSES:
        raise InvalidInput([{"field": "status", "reason": "invalid value"}])
    limit, offset = _page(limit, offset)
    q = IncidentReport.query
    if status is not None:
        q = q.filter(IncidentReport.status == status)
    q = q.order_by(IncidentReport.reported_at.desc(), IncidentReport.id.desc())
    rows = _read(lambda: q.offset(offset).limit(limit).all())
    return [r.to_dict() for r in rows]


def incidents_for_reporter(user_id: int) -> List[Dict[str, Any]]:
    q = (
        IncidentReport.query
        .filter(IncidentReport.reporter_user_id == user_id)
        .order_by(IncidentReport.reported_at.desc(), IncidentReport.id.desc())
    )
    return [r.to_dict() for r in _read(q.all)]


def incidents_for_staff(staff_id: int) -> List[Dict[str, Any]]:
    """Заявки, назначенные сотруднику лично или его команде.

    Каждая запись помечена ``assignment_type``: ``individual`` или ``team``.
    """
    member = _read(roster_service.staff_member, staff_id)
    if member is None:
        raise NotFound("staff", staff_id)
    if not member.active:
        raise InvalidInput(
            [{"field": "staffId", "reason": "inactive"}],
            message=f'Staff member "{member.name}" is inactive.',
        )
    team_id = _read(roster_service.staff_team_id, staff_id)

    clauses = [and_(IncidentReport.assignee_kind == "staff", IncidentReport.assignee_id == staff_id)]
    if team_id is not None:
        clauses.append(and_(IncidentReport.assignee_kind == "team", IncidentReport.assignee_id == team_id))
    q = (
        IncidentReport.query
        .filter(or_(*clauses))
        .order_by(IncidentReport.reported_at.desc(), IncidentReport.id.desc())
    )
    out = []
    for row in _read(q.all):
        item = row.to_dict()
        item["assignment_type"] = "individual" if row.assignee_kind == "staff" else "team"
        out.append(item)
    return out


def incident_audit(incident_id: int, limit: int = 200, offset: int = 0) -> List[Dict[str, Any]]:
    """Журнал аудита одной заявки в порядке записи."""
    get_incident(incident_id)
    return _read(list_entries, incident_id=incident_id, limit=limit, offset=offset)
