"""
Модуль конфигурации приложения.

Здесь определяются классы конфигурации Flask с различными
параметрами для разработки, тестов и продакшена. Все значения
читаются из переменных окружения, чтобы секреты (SMTP и т.п.)
не попадали в код.
"""

import os
import secrets
import warnings


def _safe_secret_key() -> str:
    """Получить SECRET_KEY из env или сгенерировать случайный.

    В продакшене ВСЕГДА задавайте SECRET_KEY через переменную окружения.
    """
    key = os.environ.get("SECRET_KEY", "").strip()
    if not key:
        key = secrets.token_hex(32)
        if os.environ.get("FLASK_ENV") != "development":
            warnings.warn(
                "SECRET_KEY не задан! Используется случайный ключ. "
                "Установите SECRET_KEY в переменных окружения для production.",
                RuntimeWarning,
                stacklevel=2,
            )
    return key


def _env_flag(name: str, default: str = "0") -> bool:
    return (os.environ.get(name, default) or default).strip().lower() in {"1", "true", "yes", "y"}


class Config:
    """Базовый класс конфигурации."""

    # Каталог, в котором размещается проект
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    # Основная база данных: инциденты, ростер команд/сотрудников и аудит.
    # Можно переопределить через переменную окружения DATABASE_URI.
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URI", f"sqlite:///{os.path.join(BASE_DIR, 'proteq.db')}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SECRET_KEY = _safe_secret_key()

    # Настройки логирования. По умолчанию уровень INFO и вывод только в консоль.
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FILE = os.environ.get("LOG_FILE")  # если не задан, лог пишется только в stdout
    LOG_FILE_MAX_BYTES = int(os.environ.get("LOG_FILE_MAX_BYTES", 5 * 1024 * 1024))
    LOG_FILE_BACKUPS = int(os.environ.get("LOG_FILE_BACKUPS", 5))

    # --- SMTP (уведомления о назначении) ---
    # Если сервер/логин/пароль не заданы, рассылка пропускается и
    # возвращается отчёт sent=false (назначение при этом сохраняется).
    NOTIFICATIONS_ENABLED = _env_flag("NOTIFICATIONS_ENABLED", "1")
    MAIL_SERVER = os.environ.get("MAIL_SERVER", "").strip()
    MAIL_PORT = int(os.environ.get("MAIL_PORT", 587))
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME", "").strip()
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD", "")
    MAIL_USE_TLS = _env_flag("MAIL_USE_TLS", "1")
    MAIL_TIMEOUT_SEC = int(os.environ.get("MAIL_TIMEOUT_SEC", 20))
    MAIL_FROM_NAME = os.environ.get("MAIL_FROM_NAME", "ProteQ Emergency Management")
    MAIL_FROM_ADDRESS = os.environ.get("MAIL_FROM_ADDRESS", "").strip()

    # --- Location enrichment ---
    # Координаты по умолчанию (San Juan, Batangas), если заявитель их не передал.
    DEFAULT_LATITUDE = float(os.environ.get("DEFAULT_LATITUDE", 13.7565))
    DEFAULT_LONGITUDE = float(os.environ.get("DEFAULT_LONGITUDE", 121.0583))
    # Обратное геокодирование через Nominatim: опционально, best-effort.
    GEOCODE_ENABLED = _env_flag("GEOCODE_ENABLED", "0")
    GEOCODE_TIMEOUT_SEC = float(os.environ.get("GEOCODE_TIMEOUT_SEC", 5))
    GEOCODE_USER_AGENT = os.environ.get("GEOCODE_USER_AGENT", "proteq-incidents")

    # Пагинация списков инцидентов
    INCIDENT_LIST_DEFAULT_LIMIT = int(os.environ.get("INCIDENT_LIST_DEFAULT_LIMIT", 50))
    INCIDENT_LIST_MAX_LIMIT = int(os.environ.get("INCIDENT_LIST_MAX_LIMIT", 500))


class DevelopmentConfig(Config):
    """Настройки для режима разработки."""

    DEBUG = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")


class TestingConfig(Config):
    """Настройки для тестов."""

    TESTING = True
    DEBUG = True
    # По умолчанию in-memory SQLite; conftest может подменить путь через env.
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URI", "sqlite://")
    # В тестах никогда не ходим во внешние сервисы
    GEOCODE_ENABLED = False
    MAIL_SERVER = ""
    MAIL_USERNAME = ""
    MAIL_PASSWORD = ""


class ProductionConfig(Config):
    """Настройки для режима продакшена."""

    DEBUG = False
