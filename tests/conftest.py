from types import SimpleNamespace

import pytest

from proteq import create_app
from proteq.actors import Actor
from proteq.config import TestingConfig
from proteq.extensions import db
from proteq.models import StaffMember, Team
from proteq.notifications.gateway import DeliveryReport


@pytest.fixture()
def app(tmp_path):
    # Отдельная БД-файл на каждый тест
    class _Config(TestingConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'test.db'}"

    a = create_app(_Config)
    yield a
    with a.app_context():
        db.session.remove()
        db.engine.dispose()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def db_session(app):
    with app.app_context():
        yield db.session
        db.session.rollback()


@pytest.fixture()
def roster(db_session):
    """Ростер для тестов назначений.

    alpha: один активный и доступный участник, один неактивный;
    bravo: два участника, оба заняты;
    empty: без участников;
    solo: активный сотрудник без команды, lazy: неактивный.
    """
    alpha = Team(name="Alpha", description="Fire and rescue")
    bravo = Team(name="Bravo")
    empty = Team(name="Empty")
    db_session.add_all([alpha, bravo, empty])
    db_session.flush()

    ready = StaffMember(name="Ana Cruz", email="ana@example.com", position="Medic", team_id=alpha.id)
    retired = StaffMember(name="Ben Reyes", email="ben@example.com", is_active=False, team_id=alpha.id)
    busy1 = StaffMember(name="Carl Diaz", email="carl@example.com", is_available=False, team_id=bravo.id)
    busy2 = StaffMember(name="Dana Lim", email="dana@example.com", is_available=False, team_id=bravo.id)
    solo = StaffMember(name="Eve Santos", email="eve@example.com", position="Officer", is_available=False)
    lazy = StaffMember(name="Fay Go", email="fay@example.com", is_active=False)
    db_session.add_all([ready, retired, busy1, busy2, solo, lazy])
    db_session.commit()

    return SimpleNamespace(
        alpha=alpha.id,
        bravo=bravo.id,
        empty=empty.id,
        ready=ready.id,
        retired=retired.id,
        busy=busy1.id,
        solo=solo.id,
        lazy=lazy.id,
    )


class FakeGateway:
    def __init__(self, report=None, exc=None):
        self.calls = []
        self._report = report
        self._exc = exc

    def send(self, recipients, message):
        self.calls.append((list(recipients), message))
        if self._exc is not None:
            raise self._exc
        if self._report is not None:
            return self._report
        return DeliveryReport(sent=True, delivered=len(recipients))


@pytest.fixture()
def gateway(monkeypatch):
    fake = FakeGateway()
    monkeypatch.setattr("proteq.notifications.gateway.get_notification_gateway", lambda: fake)
    return fake


@pytest.fixture()
def admin():
    return Actor("admin", 1)


@pytest.fixture()
def reporter():
    return Actor("user", 42)


def report_payload(**overrides):
    payload = {
        "reportType": "fire",
        "narrative": "Smoke coming out of the market building",
        "location": "Public Market, Poblacion",
        "priority": "high",
        "reporterSafety": "safe",
    }
    payload.update(overrides)
    return payload


def guest_payload(**overrides):
    payload = report_payload(guestName="Juan Dela Cruz", guestContact="+63 917 000 0000")
    payload.update(overrides)
    return payload
