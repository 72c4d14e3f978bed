"""Маршруты жизненного цикла инцидента.

Приём заявок (пользователь и гость), проверка, назначение команды или
сотрудника, смена статуса и выборки. Выдача токенов здесь не делается,
актор передаётся заголовками ``X-Actor-Kind`` и ``X-Actor-Id``.
"""

from __future__ import annotations

from typing import Optional

from flask import current_app, jsonify, request

from ..actors import ACTOR_KINDS, Actor
from ..errors import IncidentError, InvalidInput
from ..schemas import (
    AssignStaffSchema,
    AssignTeamSchema,
    StatusUpdateSchema,
    ValidationDecisionSchema,
    parse_payload,
)
from ..services import incident_service

from . import bp

# Кто может менять жизненный цикл заявки
OPERATOR_KINDS = ('admin', 'staff')


def _actor() -> Optional[Actor]:
    kind = (request.headers.get('X-Actor-Kind') or '').strip().lower()
    if not kind:
        return None
    if kind not in ACTOR_KINDS or kind == 'system':
        raise InvalidInput([{'field': 'X-Actor-Kind', 'reason': 'invalid value'}])
    raw_id = (request.headers.get('X-Actor-Id') or '').strip()
    if not raw_id:
        return Actor(kind)
    try:
        return Actor(kind, int(raw_id))
    except ValueError:
        raise InvalidInput([{'field': 'X-Actor-Id', 'reason': 'not an integer'}]) from None


def _operator_or_403():
    actor = _actor()
    if actor is None or actor.kind not in OPERATOR_KINDS:
        return None, (jsonify(error='forbidden'), 403)
    return actor, None


def _json_body():
    return request.get_json(silent=True)


def _int_arg(name: str) -> Optional[int]:
    raw = request.args.get(name)
    if raw is None or raw == '':
        return None
    try:
        return int(raw)
    except ValueError:
        raise InvalidInput([{'field': name, 'reason': 'not an integer'}]) from None


@bp.errorhandler(IncidentError)
def _incident_error(err: IncidentError):
    if err.http_status >= 500:
        current_app.logger.warning("Incident API failure: %s", err.message)
    return jsonify(err.to_dict()), err.http_status


# -----------------------------------------------------------------------------
# Приём заявок


@bp.post('/report')
def api_report():
    """Заявка аутентифицированного пользователя."""
    data = incident_service.submit(_json_body(), _actor())
    return jsonify(data), 201


@bp.post('/report-guest')
def api_report_guest():
    data = incident_service.submit_guest(_json_body())
    return jsonify(data), 201


# -----------------------------------------------------------------------------
# Выборки


@bp.get('')
def api_list():
    status = (request.args.get('status') or '').strip().lower() or None
    items = incident_service.list_incidents(
        status=status,
        limit=_int_arg('limit'),
        offset=_int_arg('offset') or 0,
    )
    return jsonify(items)


@bp.get('/<int:incident_id>')
def api_get(incident_id: int):
    return jsonify(incident_service.get_incident(incident_id))


@bp.get('/<int:incident_id>/audit')
def api_audit(incident_id: int):
    _, denied = _operator_or_403()
    if denied:
        return denied
    return jsonify(incident_service.incident_audit(
        incident_id,
        limit=_int_arg('limit') or 200,
        offset=_int_arg('offset') or 0,
    ))


@bp.get('/user/<int:user_id>')
def api_for_user(user_id: int):
    return jsonify(incident_service.incidents_for_reporter(user_id))


@bp.get('/staff/<int:staff_id>')
def api_for_staff(staff_id: int):
    return jsonify(incident_service.incidents_for_staff(staff_id))


# -----------------------------------------------------------------------------
# Изменения


@bp.put('/<int:incident_id>/validate')
def api_validate(incident_id: int):
    actor, denied = _operator_or_403()
    if denied:
        return denied
    body = parse_payload(ValidationDecisionSchema, _json_body())
    result = incident_service.validate(
        incident_id,
        body.validation_status,
        notes=body.validation_notes,
        assignment_target=body.target(),
        actor=actor,
    )
    return jsonify(result)


@bp.put('/<int:incident_id>/assign-team')
def api_assign_team(incident_id: int):
    actor, denied = _operator_or_403()
    if denied:
        return denied
    body = parse_payload(AssignTeamSchema, _json_body())
    return jsonify(incident_service.assign_team(incident_id, body.team_id, actor=actor))


@bp.put('/<int:incident_id>/assign-staff')
def api_assign_staff(incident_id: int):
    actor, denied = _operator_or_403()
    if denied:
        return denied
    body = parse_payload(AssignStaffSchema, _json_body())
    return jsonify(incident_service.assign_staff(incident_id, body.staff_id, actor=actor))


@bp.put('/<int:incident_id>/update-status')
def api_update_status(incident_id: int):
    actor, denied = _operator_or_403()
    if denied:
        return denied
    body = parse_payload(StatusUpdateSchema, _json_body())
    return jsonify(incident_service.update_status(
        incident_id, body.status, notes=body.notes, actor=actor,
    ))
