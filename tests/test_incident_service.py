from __future__ import annotations

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from proteq.actors import Actor
from proteq.audit import logger as audit_logger
from proteq.errors import (
    AuditFailure,
    ConcurrentUpdate,
    InvalidInput,
    InvalidTransition,
    NoEligibleMembers,
    NotFound,
    StorageUnavailable,
    TerminalStateViolation,
)
from proteq.models import AuditEntry, GuestReporter, IncidentReport, NotificationLog
from proteq.notifications.gateway import DeliveryReport
from proteq.services import incident_service
from tests.conftest import FakeGateway, guest_payload, report_payload


def _audit(incident_id, action=None):
    q = AuditEntry.query.filter(AuditEntry.incident_id == incident_id)
    if action:
        q = q.filter(AuditEntry.action == action)
    return q.order_by(AuditEntry.id).all()


def _submit(reporter, **overrides):
    return incident_service.submit(report_payload(**overrides), reporter)


# -----------------------------------------------------------------------------
# Приём заявок


def test_submit_creates_pending_report(db_session, reporter):
    data = _submit(reporter, latitude=13.94, longitude=121.16)

    assert data["status"] == "pending"
    assert data["validation_status"] == "unvalidated"
    assert data["assignment"] is None
    assert data["reporter"] == {"kind": "user", "id": 42}
    assert data["location"]["source"] == "reporter"
    assert "GPS Coordinates: 13.94, 121.16" in data["location"]["text"]

    entries = _audit(data["id"])
    assert [e.action for e in entries] == ["incident_report_submit"]
    assert (entries[0].actor_kind, entries[0].actor_id) == ("user", 42)


def test_submit_without_coordinates_uses_default(db_session, reporter):
    data = _submit(reporter, latitude="garbage")
    assert data["location"]["latitude"] == 13.7565
    assert data["location"]["longitude"] == 121.0583
    assert data["location"]["source"] == "default"
    assert data["location"]["text"] == "Public Market, Poblacion"


def test_long_location_with_precise_coordinates_is_stored(db_session, reporter):
    data = _submit(
        reporter,
        location="x" * 200,
        latitude="-89.12345678901234",
        longitude="-179.1234567890123",
    )

    assert len(data["location"]["text"]) > 255
    assert data["location"]["text"].startswith("x" * 200)
    assert incident_service.get_incident(data["id"])["location"]["text"] == data["location"]["text"]
    assert IncidentReport.__table__.c.location_text.type.length is None


def test_submit_requires_user_actor(db_session):
    with pytest.raises(InvalidInput) as exc:
        incident_service.submit(report_payload(), None)
    assert exc.value.field_names == ["actor"]
    with pytest.raises(InvalidInput):
        incident_service.submit(report_payload(), Actor("admin", 1))
    assert IncidentReport.query.count() == 0


def test_submit_rejects_invalid_payload_without_writing(db_session, reporter):
    with pytest.raises(InvalidInput) as exc:
        incident_service.submit({"reportType": "fire"}, reporter)
    assert "narrative" in exc.value.field_names
    assert IncidentReport.query.count() == 0
    assert AuditEntry.query.count() == 0


def test_submit_storage_failure(db_session, reporter, monkeypatch):
    def broken_commit(self):
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr("sqlalchemy.orm.Session.commit", broken_commit)
    with pytest.raises(StorageUnavailable) as exc:
        _submit(reporter)
    assert exc.value.http_status == 503
    assert "disk full" not in exc.value.message


def test_guest_submit_scenario(db_session):
    data = incident_service.submit_guest(guest_payload())

    assert data["status"] == "pending"
    assert data["reporter"] == {"kind": "guest", "name": "Juan Dela Cruz", "contact": "+63 917 000 0000"}
    assert GuestReporter.query.count() == 1

    entry = _audit(data["id"])[0]
    assert entry.action == "incident_report_submit"
    assert entry.actor_kind == "system"
    assert entry.payload["guest"] is True


def test_guest_submit_is_atomic(db_session, monkeypatch):
    def failing_guest_write(incident, name, contact):
        raise SQLAlchemyError("guest table unavailable")

    monkeypatch.setattr(incident_service, "_write_guest_reporter", failing_guest_write)

    with pytest.raises(StorageUnavailable):
        incident_service.submit_guest(guest_payload())

    assert IncidentReport.query.count() == 0
    assert GuestReporter.query.count() == 0
    assert AuditEntry.query.count() == 0


def test_guest_submit_missing_contact(db_session):
    payload = guest_payload()
    del payload["guestContact"]
    with pytest.raises(InvalidInput) as exc:
        incident_service.submit_guest(payload)
    assert exc.value.field_names == ["guestContact"]


# -----------------------------------------------------------------------------
# Проверка


def test_validate_moves_to_in_progress(db_session, reporter, admin):
    incident_id = _submit(reporter)["id"]

    result = incident_service.validate(incident_id, "validated", notes="confirmed by phone", actor=admin)

    assert result["changed"] is True
    assert result["incident"]["status"] == "in_progress"
    assert result["incident"]["validation_status"] == "validated"
    assert result["incident"]["validation_notes"] == "confirmed by phone"
    assert "emailSent" not in result

    entries = _audit(incident_id, "incident_validate")
    assert len(entries) == 1
    assert (entries[0].actor_kind, entries[0].actor_id) == ("admin", 1)
    assert entries[0].payload["to"] == {"validation_status": "validated", "status": "in_progress"}


def test_validate_resubmission_is_noop(db_session, reporter, admin):
    incident_id = _submit(reporter)["id"]
    first = incident_service.validate(incident_id, "validated", actor=admin)

    second = incident_service.validate(incident_id, "validated", actor=admin)

    assert second["changed"] is False
    assert second["incident"]["updated_at"] == first["incident"]["updated_at"]
    assert second["incident"]["version"] == first["incident"]["version"]
    assert len(_audit(incident_id, "incident_validate")) == 1


def test_reject_closes_record(db_session, reporter, admin):
    incident_id = _submit(reporter)["id"]
    result = incident_service.validate(incident_id, "rejected", notes="prank call", actor=admin)
    assert result["incident"]["status"] == "closed"
    assert result["incident"]["validation_status"] == "rejected"


def test_validate_terminal_record(db_session, reporter, admin):
    incident_id = _submit(reporter)["id"]
    incident_service.validate(incident_id, "rejected", actor=admin)
    before = incident_service.get_incident(incident_id)

    same = incident_service.validate(incident_id, "rejected", actor=admin)
    assert same["changed"] is False

    with pytest.raises(TerminalStateViolation) as exc:
        incident_service.validate(incident_id, "validated", actor=admin)
    assert exc.value.status == "closed"
    assert incident_service.get_incident(incident_id) == before


def test_validate_terminal_record_refuses_new_target_or_notes(db_session, reporter, admin, roster, gateway):
    incident_id = _submit(reporter)["id"]
    incident_service.validate(incident_id, "rejected", notes="prank call", actor=admin)
    before = incident_service.get_incident(incident_id)

    with pytest.raises(TerminalStateViolation):
        incident_service.validate(
            incident_id, "rejected", assignment_target={"team": roster.alpha}, actor=admin,
        )
    with pytest.raises(TerminalStateViolation):
        incident_service.validate(incident_id, "rejected", notes="changed", actor=admin)

    same = incident_service.validate(incident_id, "rejected", notes="prank call", actor=admin)
    assert same["changed"] is False
    assert incident_service.get_incident(incident_id) == before
    assert gateway.calls == []
    assert len(_audit(incident_id, "incident_validate")) == 1


def test_validate_unknown_decision(db_session, reporter, admin):
    incident_id = _submit(reporter)["id"]
    with pytest.raises(InvalidInput) as exc:
        incident_service.validate(incident_id, "approved", actor=admin)
    assert exc.value.field_names == ["validationStatus"]


def test_validate_with_team_assignment(db_session, reporter, admin, roster, gateway):
    incident_id = _submit(reporter)["id"]

    result = incident_service.validate(
        incident_id, "validated", assignment_target={"team": roster.alpha}, actor=admin,
    )

    assert result["incident"]["assigned_team_id"] == roster.alpha
    assert result["emailSent"] is True
    assert result["emailDetail"]["teamName"] == "Alpha"
    assert gateway.calls[0][0] == ["ana@example.com"]
    assert len(_audit(incident_id, "incident_validate")) == 1
    assert len(_audit(incident_id, "incident_assign_team")) == 1


def test_validate_with_ineligible_team_writes_nothing(db_session, reporter, admin, roster, gateway):
    incident_id = _submit(reporter)["id"]

    with pytest.raises(NoEligibleMembers):
        incident_service.validate(
            incident_id, "validated", assignment_target={"team": roster.bravo}, actor=admin,
        )

    data = incident_service.get_incident(incident_id)
    assert data["status"] == "pending"
    assert data["validation_status"] == "unvalidated"
    assert data["assignment"] is None
    assert gateway.calls == []
    assert _audit(incident_id, "incident_validate") == []


def test_validate_missing_incident(db_session, admin):
    with pytest.raises(NotFound):
        incident_service.validate(404, "validated", actor=admin)


# -----------------------------------------------------------------------------
# Назначение


def test_assign_team_notifies_eligible_members(db_session, reporter, admin, roster, gateway):
    incident_id = _submit(reporter)["id"]

    result = incident_service.assign_team(incident_id, roster.alpha, actor=admin)

    assert result["changed"] is True
    assert result["incident"]["assignment"] == {"kind": "team", "id": roster.alpha}
    assert result["emailSent"] is True
    assert result["emailDetail"]["delivered"] == 1
    recipients, message = gateway.calls[0]
    assert recipients == ["ana@example.com"]
    assert "Alpha" in message.subject
    assert f"#{incident_id}" in message.body

    log = NotificationLog.query.one()
    assert (log.team_id, log.delivered, log.total_recipients) == (roster.alpha, 1, 1)


def test_assign_staff_replaces_team(db_session, reporter, admin, roster, gateway):
    incident_id = _submit(reporter)["id"]
    incident_service.assign_team(incident_id, roster.alpha, actor=admin)

    result = incident_service.assign_staff(incident_id, roster.solo, actor=admin)

    data = result["incident"]
    assert data["assigned_staff_id"] == roster.solo
    assert data["assigned_team_id"] is None
    assert result["emailDetail"]["staffName"] == "Eve Santos"
    assert gateway.calls[-1][0] == ["eve@example.com"]


def test_assignment_variant_is_enforced_by_database(db_session, reporter):
    incident_id = _submit(reporter)["id"]
    with pytest.raises(IntegrityError):
        db_session.execute(
            text("UPDATE incident_reports SET assignee_kind = 'team', assignee_id = NULL WHERE id = :id"),
            {"id": incident_id},
        )
    db_session.rollback()


def test_no_eligible_members_keeps_prior_assignment(db_session, reporter, admin, roster, gateway):
    incident_id = _submit(reporter)["id"]
    incident_service.assign_team(incident_id, roster.alpha, actor=admin)
    before = incident_service.get_incident(incident_id)

    for team_id, total in ((roster.bravo, 2), (roster.empty, 0)):
        with pytest.raises(NoEligibleMembers) as exc:
            incident_service.assign_team(incident_id, team_id, actor=admin)
        assert exc.value.total_members == total

    assert incident_service.get_incident(incident_id) == before
    assert len(gateway.calls) == 1


def test_clear_team_scenario(db_session, reporter, admin, roster, gateway):
    incident_id = _submit(reporter)["id"]
    incident_service.assign_team(incident_id, roster.alpha, actor=admin)

    result = incident_service.assign_team(incident_id, None, actor=admin)

    assert result["incident"]["assignment"] is None
    assert result["emailSent"] is False
    assert result["emailDetail"] is None
    assert len(_audit(incident_id, "incident_assignment_clear")) == 1

    again = incident_service.assign_team(incident_id, None, actor=admin)
    assert again["changed"] is False
    assert len(_audit(incident_id, "incident_assignment_clear")) == 1


def test_reassigning_same_team_renotifies_without_write(db_session, reporter, admin, roster, gateway):
    incident_id = _submit(reporter)["id"]
    first = incident_service.assign_team(incident_id, roster.alpha, actor=admin)

    second = incident_service.assign_team(incident_id, roster.alpha, actor=admin)

    assert second["changed"] is False
    assert second["incident"]["updated_at"] == first["incident"]["updated_at"]
    assert len(gateway.calls) == 2
    assert len(_audit(incident_id, "incident_assign_team")) == 1


def test_inactive_staff_cannot_be_assigned(db_session, reporter, admin, roster, gateway):
    incident_id = _submit(reporter)["id"]
    with pytest.raises(InvalidInput) as exc:
        incident_service.assign_staff(incident_id, roster.lazy, actor=admin)
    assert exc.value.fields == [{"field": "staffId", "reason": "inactive"}]
    assert incident_service.get_incident(incident_id)["assignment"] is None


def test_assign_on_terminal_record(db_session, reporter, admin, roster, gateway):
    incident_id = _submit(reporter)["id"]
    incident_service.update_status(incident_id, "closed", actor=admin)
    with pytest.raises(TerminalStateViolation):
        incident_service.assign_team(incident_id, roster.alpha, actor=admin)
    with pytest.raises(TerminalStateViolation):
        incident_service.assign_staff(incident_id, None, actor=admin)
    assert gateway.calls == []


def test_roster_read_failure_under_lock(db_session, reporter, admin, roster, gateway, monkeypatch):
    incident_id = _submit(reporter)["id"]

    def broken_team(team_id):
        raise SQLAlchemyError("connection reset")

    monkeypatch.setattr("proteq.services.incident_service.resolve_team", broken_team)
    with pytest.raises(StorageUnavailable):
        incident_service.assign_team(incident_id, roster.alpha, actor=admin)

    assert incident_service.get_incident(incident_id)["assignment"] is None
    assert gateway.calls == []


def test_notification_failure_does_not_revert(db_session, reporter, admin, roster, monkeypatch):
    broken = FakeGateway(exc=RuntimeError("smtp exploded"))
    monkeypatch.setattr("proteq.notifications.gateway.get_notification_gateway", lambda: broken)
    incident_id = _submit(reporter)["id"]

    result = incident_service.assign_team(incident_id, roster.alpha, actor=admin)

    assert result["emailSent"] is False
    assert result["emailDetail"]["error"] == "gateway_error"
    assert incident_service.get_incident(incident_id)["assigned_team_id"] == roster.alpha


def test_partial_delivery_is_reported(db_session, reporter, admin, roster, monkeypatch):
    report = DeliveryReport(sent=False, delivered=0, failed=1, failed_addresses=["ana@example.com"], error="550")
    monkeypatch.setattr(
        "proteq.notifications.gateway.get_notification_gateway", lambda: FakeGateway(report=report),
    )
    incident_id = _submit(reporter)["id"]

    result = incident_service.assign_team(incident_id, roster.alpha, actor=admin)

    assert result["emailSent"] is False
    assert result["emailDetail"]["failedAddresses"] == ["ana@example.com"]
    assert NotificationLog.query.one().failed == 1


# -----------------------------------------------------------------------------
# Статусы


def test_double_resolve_scenario(db_session, reporter, admin):
    incident_id = _submit(reporter)["id"]
    incident_service.update_status(incident_id, "in_progress", actor=admin)
    result = incident_service.update_status(incident_id, "resolved", notes="fire out", actor=admin)
    assert result["incident"]["status"] == "resolved"

    with pytest.raises(TerminalStateViolation) as exc:
        incident_service.update_status(incident_id, "resolved", actor=admin)
    assert 'Current status is "resolved"' in exc.value.message

    entries = _audit(incident_id, "incident_status_update")
    assert [e.payload for e in entries] == [
        {"from": "pending", "to": "in_progress"},
        {"from": "in_progress", "to": "resolved"},
    ]
    assert entries[-1].detail == "fire out"


def test_same_status_update_is_noop(db_session, reporter, admin):
    created = _submit(reporter)
    result = incident_service.update_status(created["id"], "pending", actor=admin)
    assert result["changed"] is False
    assert result["incident"]["updated_at"] == created["updated_at"]
    assert _audit(created["id"], "incident_status_update") == []


def test_invalid_transition(db_session, reporter, admin):
    incident_id = _submit(reporter)["id"]
    with pytest.raises(InvalidTransition):
        incident_service.update_status(incident_id, "resolved", actor=admin)
    with pytest.raises(InvalidInput):
        incident_service.update_status(incident_id, "archived", actor=admin)
    assert incident_service.get_incident(incident_id)["status"] == "pending"


def test_terminal_record_is_immutable(db_session, reporter, admin, roster, gateway):
    incident_id = _submit(reporter)["id"]
    incident_service.update_status(incident_id, "closed", actor=admin)
    before = incident_service.get_incident(incident_id)
    audit_before = AuditEntry.query.count()

    attempts = [
        lambda: incident_service.update_status(incident_id, "in_progress", actor=admin),
        lambda: incident_service.update_status(incident_id, "closed", actor=admin),
        lambda: incident_service.validate(incident_id, "validated", actor=admin),
        lambda: incident_service.assign_team(incident_id, roster.alpha, actor=admin),
        lambda: incident_service.assign_staff(incident_id, roster.ready, actor=admin),
    ]
    for attempt in attempts:
        with pytest.raises(TerminalStateViolation):
            attempt()

    assert incident_service.get_incident(incident_id) == before
    assert AuditEntry.query.count() == audit_before


def test_concurrent_update_is_rejected(db_session, reporter, admin, monkeypatch):
    incident_id = _submit(reporter)["id"]
    load = incident_service._load_for_update

    def racing_load(iid):
        incident = load(iid)
        # Другой запрос успел изменить запись после нашего чтения
        db_session.execute(
            text("UPDATE incident_reports SET version = version + 1 WHERE id = :id"), {"id": iid},
        )
        return incident

    monkeypatch.setattr(incident_service, "_load_for_update", racing_load)

    with pytest.raises(ConcurrentUpdate):
        incident_service.update_status(incident_id, "in_progress", actor=admin)

    monkeypatch.undo()
    assert incident_service.get_incident(incident_id)["status"] == "pending"


def test_audit_failure_does_not_block_operation(db_session, reporter, admin, monkeypatch):
    incident_id = _submit(reporter)["id"]

    def broken_write(*args, **kwargs):
        raise AuditFailure("audit table locked")

    monkeypatch.setattr(audit_logger, "_write_entry", broken_write)

    result = incident_service.update_status(incident_id, "in_progress", actor=admin)

    assert result["changed"] is True
    monkeypatch.undo()
    assert incident_service.get_incident(incident_id)["status"] == "in_progress"
    assert _audit(incident_id, "incident_status_update") == []


# -----------------------------------------------------------------------------
# Выборки


def test_list_and_filters(db_session, reporter, admin):
    first = _submit(reporter)["id"]
    second = _submit(reporter, reportType="flood")["id"]
    guest = incident_service.submit_guest(guest_payload())["id"]
    incident_service.update_status(first, "in_progress", actor=admin)

    ids = [i["id"] for i in incident_service.list_incidents()]
    assert sorted(ids) == sorted([first, second, guest])
    assert [i["id"] for i in incident_service.list_incidents(status="in_progress")] == [first]
    assert len(incident_service.list_incidents(limit=1)) == 1
    assert {i["id"] for i in incident_service.incidents_for_reporter(42)} == {first, second}
    assert incident_service.incidents_for_reporter(7) == []

    with pytest.raises(InvalidInput):
        incident_service.list_incidents(status="done")


def test_incidents_for_staff_tags_assignment_type(db_session, reporter, admin, roster, gateway):
    team_incident = _submit(reporter)["id"]
    own_incident = _submit(reporter)["id"]
    _submit(reporter)
    incident_service.assign_team(team_incident, roster.alpha, actor=admin)
    incident_service.assign_staff(own_incident, roster.ready, actor=admin)

    items = {i["id"]: i["assignment_type"] for i in incident_service.incidents_for_staff(roster.ready)}

    assert items == {team_incident: "team", own_incident: "individual"}

    with pytest.raises(InvalidInput):
        incident_service.incidents_for_staff(roster.lazy)
    with pytest.raises(NotFound):
        incident_service.incidents_for_staff(9999)


def test_get_missing_incident(db_session):
    with pytest.raises(NotFound) as exc:
        incident_service.get_incident(12345)
    assert exc.value.to_dict() == {
        "error": "not_found",
        "message": "incident 12345 not found",
        "entity": "incident",
        "id": 12345,
    }


def test_incident_audit_trail(db_session, reporter, admin):
    incident_id = _submit(reporter)["id"]
    incident_service.validate(incident_id, "validated", actor=admin)
    trail = incident_service.incident_audit(incident_id)
    assert [e["action"] for e in trail] == ["incident_report_submit", "incident_validate"]
