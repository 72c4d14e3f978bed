from __future__ import annotations

import os
from pathlib import Path
from typing import Iterator


def _parse_env_lines(text: str) -> Iterator[tuple[str, str]]:
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.lower().startswith("export "):
            line = line[7:].strip()
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        yield key, value.strip().strip('"').strip("'")


def load_dotenv_like(*candidates: str) -> str | None:
    """Load the first .env file found into os.environ.

    Search order: explicit candidates, ``PROTEQ_ENV_FILE``, then ``.env``
    and ``.env.local`` in the cwd and the project root. Variables that are
    already set are never overwritten. Returns the loaded path or None.
    """
    project_root = Path(__file__).resolve().parent
    paths = [Path(c) for c in candidates if c]
    if os.environ.get("PROTEQ_ENV_FILE"):
        paths.append(Path(os.environ["PROTEQ_ENV_FILE"]))
    for name in (".env", ".env.local"):
        paths.extend([Path.cwd() / name, project_root / name])

    for path in paths:
        if not path.is_file():
            continue
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            continue
        for key, value in _parse_env_lines(content):
            os.environ.setdefault(key, value)
        return str(path)
    return None
