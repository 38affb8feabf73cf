"""Local .env loading for development.

Production sets every variable in the environment; a .env file only fills
gaps on developer machines and never overrides what is already exported.
"""

import logging
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# backend/.env, next to alembic.ini and start_api.py
BACKEND_ENV_FILE = Path(__file__).resolve().parents[2] / ".env"


def load_env_file() -> bool:
    """Load backend/.env, then ./.env, keeping existing variables.

    Called lazily by `database` and `security` when DATABASE_URL or
    TOKEN_ENCRYPTION_KEY is missing, so the API, the worker and alembic all
    work from either the repo root or backend/.

    Returns:
        True if at least one file was loaded
    """
    loaded = False
    seen = set()
    for path in (BACKEND_ENV_FILE, Path.cwd() / ".env"):
        path = path.resolve()
        if path in seen or not path.is_file():
            continue
        seen.add(path)
        load_dotenv(path, override=False)
        loaded = True
        logger.info(f"[ENV] Loaded {path} (existing variables were not overwritten)")

    if not loaded:
        logger.debug("[ENV] No local .env file found")
    return loaded
