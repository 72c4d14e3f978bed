"""Production WSGI entrypoint: ``gunicorn wsgi:app``.

``APP_CONFIG`` selects the config class (production by default).
"""

import os

import env_loader

env_loader.load_dotenv_like()

from proteq import create_app  # noqa: E402
from proteq.config import DevelopmentConfig, ProductionConfig, TestingConfig  # noqa: E402

_CONFIGS = {
    "prod": ProductionConfig,
    "production": ProductionConfig,
    "dev": DevelopmentConfig,
    "development": DevelopmentConfig,
    "test": TestingConfig,
    "testing": TestingConfig,
}


def config_from_env():
    return _CONFIGS.get(os.environ.get("APP_CONFIG", "production").lower(), ProductionConfig)


app = create_app(config_from_env())
