"""Flask extensions shared by the app factory and the services.

``db`` is created unbound and attached in :func:`init_extensions`, so
models and services can import it without importing the app.
"""

from __future__ import annotations

from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event

db = SQLAlchemy()


def _sqlite_pragmas(dbapi_conn, _record) -> None:
    # SQLite не проверяет FK без этого флага
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.execute("PRAGMA busy_timeout = 5000")
    cursor.close()


def init_extensions(app: Flask) -> None:
    db.init_app(app)
    with app.app_context():
        if db.engine.dialect.name == "sqlite":
            event.listen(db.engine, "connect", _sqlite_pragmas)
