"""Кто выполняет действие.

Каждый изменяющий вызов сервиса получает явный :class:`Actor`. Для
событий без аутентифицированного пользователя (гостевая заявка,
системные задачи) используется :data:`SYSTEM`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

ACTOR_KINDS = ("admin", "staff", "user", "system")


@dataclass(frozen=True)
class Actor:
    kind: str
    id: Optional[int] = None

    def __post_init__(self) -> None:
        if self.kind not in ACTOR_KINDS:
            raise ValueError(f"unknown actor kind: {self.kind}")

    @property
    def is_system(self) -> bool:
        return self.kind == "system"

    def label(self) -> str:
        if self.is_system or self.id is None:
            return self.kind
        return f"{self.kind}:{self.id}"


SYSTEM = Actor("system")


def actor_or_system(actor: Optional[Actor]) -> Actor:
    """Вернуть actor или системного актора, если он не известен."""
    return actor if actor is not None else SYSTEM
