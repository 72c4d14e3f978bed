"""Blueprint for the incident lifecycle API.

Маршруты здесь тонкие: разбирают запрос, определяют актора по
заголовкам и вызывают :mod:`proteq.services.incident_service`.
Регистрируется в ``proteq/__init__.py`` под префиксом ``/api/incidents``.
"""

from flask import Blueprint

bp = Blueprint('incidents', __name__, url_prefix='/api/incidents')

from . import routes  # noqa: E402,F401
