"""Таксономия ошибок жизненного цикла инцидента.

Сервисы бросают эти исключения, а HTTP-слой (см.
:mod:`proteq.incidents.routes`) превращает их в JSON-ответы с нужным
кодом. Каждое исключение знает, какое поле или какая причина привели
к отказу, чтобы сообщение было конкретным, а не «operation failed».
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class IncidentError(Exception):
    """Базовая ошибка: операция отменена, запись не изменена."""

    code = "incident_error"
    http_status = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message}


class InvalidInput(IncidentError):
    """Отсутствует или некорректно обязательное поле.

    ``fields``: список словарей ``{"field": ..., "reason": ...}``;
    в сообщении перечисляются все проблемные поля сразу.
    """

    code = "invalid_input"
    http_status = 400

    def __init__(self, fields: List[Dict[str, str]], message: Optional[str] = None) -> None:
        self.fields = list(fields)
        names = ", ".join(f["field"] for f in self.fields)
        super().__init__(message or f"Invalid or missing fields: {names}")

    @property
    def field_names(self) -> List[str]:
        return [f["field"] for f in self.fields]

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["fields"] = self.fields
        return out


class InvalidTransition(InvalidInput):
    """Переход статуса, которого нет в таблице переходов."""

    code = "invalid_transition"

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(
            [{"field": "status", "reason": f"cannot move from {current} to {target}"}],
            message=f'Cannot change status from "{current}" to "{target}".',
        )


class NotFound(IncidentError):
    code = "not_found"
    http_status = 404

    def __init__(self, entity: str, entity_id: Any) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out.update({"entity": self.entity, "id": self.entity_id})
        return out


class NoEligibleMembers(IncidentError):
    """В команде нет ни одного активного и доступного участника.

    ``total_members`` позволяет отличить пустую команду от команды,
    где участники есть, но все неактивны или заняты.
    """

    code = "no_eligible_members"
    http_status = 409

    def __init__(self, team_id: int, team_name: str, total_members: int) -> None:
        self.team_id = team_id
        self.team_name = team_name
        self.total_members = total_members
        if total_members == 0:
            reason = "team has no members"
        else:
            reason = f"none of {total_members} members is both active and available"
        super().__init__(f'Cannot assign team "{team_name}": {reason}.')

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out.update({
            "teamId": self.team_id,
            "teamName": self.team_name,
            "totalMembers": self.total_members,
        })
        return out


class TerminalStateViolation(IncidentError):
    code = "terminal_state"
    http_status = 409

    def __init__(self, status: str) -> None:
        self.status = status
        super().__init__(
            f'Cannot update incident. Current status is "{status}". '
            "Resolved and closed incidents cannot be modified."
        )

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["status"] = self.status
        return out


class ConcurrentUpdate(IncidentError):
    """Запись изменена другим запросом между чтением и записью."""

    code = "concurrent_update"
    http_status = 409

    def __init__(self, incident_id: int) -> None:
        self.incident_id = incident_id
        super().__init__(f"Incident {incident_id} was modified concurrently; retry the operation.")


class StorageUnavailable(IncidentError):
    """Инфраструктурный сбой хранилища; транзакция откатана."""

    code = "storage_unavailable"
    http_status = 503

    def __init__(self, message: str = "Operation failed, please try again.") -> None:
        super().__init__(message)


class NotificationFailure(Exception):
    """Сбой доставки уведомления.

    Никогда не выходит за пределы шлюза: шлюз превращает его в
    :class:`~proteq.notifications.gateway.DeliveryReport`.
    """


class AuditFailure(Exception):
    """Сбой записи аудита; подавляется внутри :mod:`proteq.audit.logger`."""
