"""Машина состояний инцидента.

::

    pending ──► in_progress ──► resolved
       │             │
       └──────► closed ◄┘

``resolved`` и ``closed`` терминальные: из них переходов нет, и
запись в этих статусах не изменяется обычными операциями.
"""

from __future__ import annotations

from typing import Dict, FrozenSet, Optional

from ..errors import InvalidInput, InvalidTransition, TerminalStateViolation
from ..models import INCIDENT_STATUSES, IncidentReport

TERMINAL_STATUSES: FrozenSet[str] = frozenset({"resolved", "closed"})

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"in_progress", "closed"}),
    "in_progress": frozenset({"resolved", "closed"}),
    "resolved": frozenset(),
    "closed": frozenset(),
}

# Какой статус выставляет решение валидации
VALIDATION_OUTCOMES: Dict[str, str] = {
    "validated": "in_progress",
    "rejected": "closed",
}


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def ensure_mutable(incident: IncidentReport) -> None:
    """Бросить TerminalStateViolation, если запись уже закрыта."""
    if is_terminal(incident.status):
        raise TerminalStateViolation(incident.status)


def check_transition(current: str, target: str) -> Optional[str]:
    """Проверить переход ``current → target``.

    Возвращает ``target``, если статус действительно меняется, и
    ``None`` для повторной отправки того же статуса (no-op). Из
    терминального статуса никакой вызов не проходит, даже повторный.
    """
    if target not in INCIDENT_STATUSES:
        raise InvalidInput([{"field": "status", "reason": "invalid value"}])
    if is_terminal(current):
        raise TerminalStateViolation(current)
    if target == current:
        return None
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition(current, target)
    return target


def status_after_validation(current: str, decision: str) -> str:
    """Статус, в который переводит запись решение валидации.

    Статус, который уже достигнут (например, повторное ``validated`` для
    записи в работе), просто сохраняется.
    """
    if decision not in VALIDATION_OUTCOMES:
        raise InvalidInput([{"field": "validationStatus", "reason": "invalid value"}])
    target = VALIDATION_OUTCOMES[decision]
    changed = check_transition(current, target)
    return changed or current
