"""Incident audit logging (best-effort) with a tamper-evident hash chain."""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from ..actors import Actor, actor_or_system
from ..errors import AuditFailure
from ..extensions import db
from ..models import AuditChainHead, AuditEntry

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64


def _normalize_ts(ts: datetime) -> str:
    # SQLite и timestamp without time zone возвращают naive-время
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts.isoformat(timespec="microseconds")


def _hash_fields(entry: AuditEntry) -> Dict[str, Any]:
    return {
        "ts": _normalize_ts(entry.ts),
        "actor_kind": str(entry.actor_kind),
        "actor_id": entry.actor_id,
        "action": str(entry.action),
        "detail": entry.detail,
        "incident_id": entry.incident_id,
        "payload": entry.payload or {},
    }


def generate_hash(data_dict: dict, prev_hash: str) -> str:
    """Сгенерировать SHA-256 хеш на основе данных записи и предыдущего хеша."""
    # Сортируем ключи, чтобы JSON всегда собирался одинаково
    data_string = json.dumps(data_dict, sort_keys=True, ensure_ascii=False, default=str)
    raw_string = f"{prev_hash}|{data_string}"
    return hashlib.sha256(raw_string.encode('utf-8')).hexdigest()


def _lock_chain() -> None:
    """Захватить строку-замок цепочки до чтения последней подписи.

    Строка создаётся при первой записи. Если два писателя создают её
    одновременно, проигравший получает IntegrityError и его запись
    аудита теряется (как и любая другая ошибка записи аудита).
    """
    bump = (
        update(AuditChainHead)
        .where(AuditChainHead.id == 1)
        .values(length=AuditChainHead.length + 1)
    )
    if db.session.execute(bump).rowcount:
        return
    db.session.add(AuditChainHead(id=1, length=1))
    db.session.flush()


def _write_entry(
    actor: Actor,
    action: str,
    detail: Optional[str],
    incident_id: Optional[int],
    payload: Optional[Dict[str, Any]],
) -> int:
    try:
        _lock_chain()
        last = AuditEntry.query.order_by(AuditEntry.id.desc()).first()
        prev_hash = last.signature if last is not None else GENESIS_HASH

        entry = AuditEntry(
            ts=datetime.now(timezone.utc).replace(tzinfo=None),
            actor_kind=actor.kind,
            actor_id=actor.id,
            action=action,
            detail=detail,
            incident_id=incident_id,
            payload=dict(payload) if payload else None,
            prev_hash=prev_hash,
        )
        entry.signature = generate_hash(_hash_fields(entry), prev_hash)
        db.session.add(entry)
        db.session.commit()
        return entry.id
    except SQLAlchemyError as exc:
        raise AuditFailure(str(exc)) from exc


def record_action(
    actor: Optional[Actor],
    action: str,
    detail: Optional[str] = None,
    incident_id: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> Optional[int]:
    """Записать аудит изменения состояния.

    Best-effort: вызывается уже после коммита основной операции и не
    должен её ломать, поэтому любые ошибки откатываются, пишутся в лог
    и подавляются. Если actor неизвестен (гость, системное событие),
    запись делается от имени системного актора.

    Возвращает id записи или None, если записать не удалось.
    """
    who = actor_or_system(actor)
    try:
        return _write_entry(who, action, detail, incident_id, payload)
    except Exception:
        try:
            db.session.rollback()
        except SQLAlchemyError:
            logger.debug("Rollback after audit failure also failed", exc_info=True)
        logger.warning(
            "Audit write failed: action=%s incident=%s actor=%s",
            action,
            incident_id,
            who.label(),
            exc_info=True,
        )
        return None


def list_entries(
    incident_id: Optional[int] = None,
    action: Optional[str] = None,
    limit: int = 200,
    offset: int = 0,
) -> List[Dict[str, Any]]:
    """Вернуть записи аудита в порядке добавления."""
    q = AuditEntry.query
    if incident_id is not None:
        q = q.filter(AuditEntry.incident_id == incident_id)
    if action:
        q = q.filter(AuditEntry.action == action)
    rows = q.order_by(AuditEntry.id.asc()).offset(max(0, offset)).limit(max(1, limit)).all()
    return [r.to_dict() for r in rows]


def count_entries(incident_id: Optional[int] = None) -> int:
    q = AuditEntry.query
    if incident_id is not None:
        q = q.filter(AuditEntry.incident_id == incident_id)
    return q.count()


def verify_audit_chain() -> Tuple[bool, str]:
    """
    Проверить весь журнал аудита на скрытые изменения.

    Выявляет удалённую строку (порвана цепочка ``prev_hash``) и
    изменённую вручную строку (подпись не совпадает с содержимым).
    """
    entries = AuditEntry.query.order_by(AuditEntry.id.asc()).all()
    if not entries:
        return True, "Audit log is empty."

    prev_hash = GENESIS_HASH
    for entry in entries:
        # 1. Не удалили ли строку перед этой
        if entry.prev_hash != prev_hash:
            return False, f"Chain broken at entry {entry.id}: expected prev {prev_hash}, found {entry.prev_hash}"

        # 2. Не изменили ли данные самой строки
        calculated = generate_hash(_hash_fields(entry), prev_hash)
        if calculated != entry.signature:
            return False, f"Entry {entry.id} was modified: signature does not match its content"

        prev_hash = entry.signature

    return True, f"Audit chain intact ({len(entries)} entries)."
