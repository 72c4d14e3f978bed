"""Сервер разработки (в продакшене: ``gunicorn wsgi:app``).

Конфигурация выбирается по ``APP_ENV`` или ``FLASK_ENV``: значения,
начинающиеся с ``prod``, дают ProductionConfig, остальные
DevelopmentConfig.
"""

import os

import env_loader

env_loader.load_dotenv_like()

from proteq import create_app  # noqa: E402
from proteq.config import DevelopmentConfig, ProductionConfig  # noqa: E402


def main() -> None:
    mode = os.getenv('APP_ENV') or os.getenv('FLASK_ENV') or 'development'
    config_class = ProductionConfig if mode.lower().startswith('prod') else DevelopmentConfig
    app = create_app(config_class)
    app.run(host='0.0.0.0', port=int(os.environ.get('PORT', 5000)), debug=app.config.get('DEBUG', True))


if __name__ == '__main__':
    main()
