"""Сервисный слой для координат заявки.

Содержит :func:`resolve_location`: координаты от заявителя (если они
корректны) либо координаты по умолчанию из конфигурации, плюс
необязательное обратное геокодирование через Nominatim. Ни один сбой
здесь не мешает приёму заявки.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import requests
from flask import current_app

from ..schemas import lenient_coordinate

logger = logging.getLogger(__name__)

NOMINATIM_REVERSE_URL = 'https://nominatim.openstreetmap.org/reverse'


@dataclass(frozen=True)
class ResolvedLocation:
    text: str
    latitude: float
    longitude: float
    source: str  # reporter | default
    address: Optional[str] = None

    @property
    def from_reporter(self) -> bool:
        return self.source == 'reporter'

    def display(self) -> str:
        if self.from_reporter:
            return f"{self.text}\nGPS Coordinates: {self.latitude}, {self.longitude}"
        return self.text


def _reverse_geocode(lat: float, lon: float) -> Optional[str]:
    cfg = current_app.config
    try:
        r = requests.get(
            NOMINATIM_REVERSE_URL,
            params={'lat': lat, 'lon': lon, 'format': 'json'},
            headers={'User-Agent': cfg.get('GEOCODE_USER_AGENT', 'proteq-incidents')},
            timeout=float(cfg.get('GEOCODE_TIMEOUT_SEC', 5)),
        )
        if not r.ok:
            return None
        data = r.json()
        if isinstance(data, dict):
            name = data.get('display_name')
            return str(name)[:255] if name else None
    except (requests.RequestException, ValueError):
        logger.info("Reverse geocode failed for %s,%s", lat, lon, exc_info=True)
    return None


def resolve_location(text: str, lat: Any = None, lon: Any = None) -> ResolvedLocation:
    """Определить координаты заявки.

    Если обе координаты заданы и корректны, они сохраняются как есть
    (source='reporter'); иначе берутся ``DEFAULT_LATITUDE`` /
    ``DEFAULT_LONGITUDE`` (source='default').
    """
    cfg = current_app.config
    text = (text or '').strip()
    latitude = lenient_coordinate(lat, 90)
    longitude = lenient_coordinate(lon, 180)

    if latitude is None or longitude is None:
        return ResolvedLocation(
            text=text,
            latitude=float(cfg.get('DEFAULT_LATITUDE', 13.7565)),
            longitude=float(cfg.get('DEFAULT_LONGITUDE', 121.0583)),
            source='default',
        )

    address = None
    if cfg.get('GEOCODE_ENABLED'):
        address = _reverse_geocode(latitude, longitude)
    return ResolvedLocation(
        text=text,
        latitude=latitude,
        longitude=longitude,
        source='reporter',
        address=address,
    )
