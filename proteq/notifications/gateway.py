"""Notification gateway: delivers assignment notices over SMTP.

The gateway never raises. Every outcome, including a misconfigured or
unreachable SMTP server, comes back as a :class:`DeliveryReport`.
"""

from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass, field
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Any, Dict, List, Optional, Sequence

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..errors import NotificationFailure
from ..extensions import db
from ..models import NotificationLog
from .messages import Message

logger = logging.getLogger(__name__)


@dataclass
class DeliveryReport:
    sent: bool
    delivered: int = 0
    failed: int = 0
    failed_addresses: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def not_sent(cls, recipients: Sequence[str], error: str) -> "DeliveryReport":
        return cls(
            sent=False,
            delivered=0,
            failed=len(recipients),
            failed_addresses=list(recipients),
            error=error,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sent": self.sent,
            "delivered": self.delivered,
            "failed": self.failed,
            "failedAddresses": list(self.failed_addresses),
            "error": self.error,
        }


@dataclass(frozen=True)
class SmtpSettings:
    enabled: bool
    host: str
    port: int
    username: str
    password: str
    starttls: bool
    timeout: int
    sender: str

    @classmethod
    def from_config(cls, cfg) -> "SmtpSettings":
        username = cfg.get("MAIL_USERNAME", "")
        from_address = cfg.get("MAIL_FROM_ADDRESS") or username
        return cls(
            enabled=bool(cfg.get("NOTIFICATIONS_ENABLED", True)),
            host=cfg.get("MAIL_SERVER", ""),
            port=int(cfg.get("MAIL_PORT", 587)),
            username=username,
            password=cfg.get("MAIL_PASSWORD", ""),
            starttls=bool(cfg.get("MAIL_USE_TLS", True)),
            timeout=int(cfg.get("MAIL_TIMEOUT_SEC", 20)),
            sender=formataddr((cfg.get("MAIL_FROM_NAME", ""), from_address)),
        )

    @property
    def complete(self) -> bool:
        return bool(self.host and self.username and self.password)


class EmailGateway:
    """Sends plain-text notices over SMTP (settings from app config by default)."""

    def __init__(self, settings: Optional[SmtpSettings] = None) -> None:
        self.settings = settings or SmtpSettings.from_config(current_app.config)

    def _connect(self) -> smtplib.SMTP:
        s = self.settings
        if s.starttls:
            server = smtplib.SMTP(s.host, s.port, timeout=s.timeout)
            server.starttls()
        else:
            server = smtplib.SMTP_SSL(s.host, s.port, timeout=s.timeout)
        server.login(s.username, s.password)
        return server

    def _build(self, address: str, message: Message) -> MIMEText:
        msg = MIMEText(message.body, "plain", _charset="utf-8")
        msg["From"] = self.settings.sender
        msg["To"] = address
        msg["Subject"] = message.subject
        return msg

    def _deliver(self, server: smtplib.SMTP, address: str, message: Message) -> None:
        try:
            server.send_message(self._build(address, message))
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationFailure(f"{address}: {exc}") from exc

    def send(self, recipients: Sequence[str], message: Message) -> DeliveryReport:
        """Отправить уведомление каждому адресату.

        Адресаты без email считаются недоставленными. Ошибка одного
        адресата не мешает остальным; ошибка подключения помечает
        недоставленными всех.
        """
        addresses = [a for a in recipients if a]
        missing = len(recipients) - len(addresses)

        if not recipients:
            return DeliveryReport(sent=False, error="no_recipients")
        if not self.settings.enabled:
            return DeliveryReport.not_sent(addresses, "notifications_disabled")
        if not self.settings.complete:
            logger.warning("SMTP is not fully configured; skip email send")
            return DeliveryReport.not_sent(addresses, "smtp_not_configured")
        if not addresses:
            return DeliveryReport(sent=False, failed=missing, error="recipients_without_email")

        delivered = 0
        failed: List[str] = []
        errors: List[str] = []
        try:
            server = self._connect()
        except Exception as exc:
            logger.exception("Failed to connect to SMTP server %s", self.settings.host)
            return DeliveryReport.not_sent(addresses, f"smtp_connect_failed: {exc}")

        try:
            for address in addresses:
                try:
                    self._deliver(server, address, message)
                    delivered += 1
                except NotificationFailure as exc:
                    logger.warning("Notification to %s failed: %s", address, exc)
                    failed.append(address)
                    errors.append(str(exc))
        finally:
            try:
                server.quit()
            except (smtplib.SMTPException, OSError):
                logger.debug("SMTP quit failed", exc_info=True)

        logger.info("Notification delivered to %d/%d recipients", delivered, len(addresses))
        error = "; ".join(errors) or None
        if missing:
            error = "; ".join(filter(None, [error, f"{missing} recipient(s) without email"]))
        return DeliveryReport(
            sent=delivered > 0,
            delivered=delivered,
            failed=len(failed) + missing,
            failed_addresses=failed,
            error=error,
        )


def record_delivery(
    incident_id: int,
    report: DeliveryReport,
    total_recipients: int,
    team_id: Optional[int] = None,
    staff_id: Optional[int] = None,
) -> None:
    """Сохранить итог рассылки в notification_logs (best-effort)."""
    try:
        db.session.add(NotificationLog(
            incident_id=incident_id,
            team_id=team_id,
            staff_id=staff_id,
            total_recipients=total_recipients,
            delivered=report.delivered,
            failed=report.failed,
            error=report.error,
        ))
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.warning("Failed to store notification log for incident %s", incident_id, exc_info=True)


def get_notification_gateway() -> EmailGateway:
    """Шлюз по текущей конфигурации приложения (подменяется в тестах)."""
    return EmailGateway()
