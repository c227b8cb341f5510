from __future__ import annotations

import os
import tempfile

# Point the app at a throwaway SQLite database before any gwiplatform module builds its engine.
_DB_DIR = tempfile.mkdtemp(prefix="gwiplatform-tests-")
_DB_PATH = os.path.join(_DB_DIR, "gwiplatform.db")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_PATH}"
os.environ["LOGIN_LOCKOUT_BACKEND"] = "memory"
os.environ["PASSWORD_HASH_ROUNDS"] = "4"
os.environ["ENVIRONMENT"] = "test"

import pytest
from sqlalchemy import create_engine

from gwiplatform.core.config import get_settings
from gwiplatform.domain.models import Base
from gwiplatform.persistence.db import engine
from gwiplatform.services.auth.lockout import reset_lockout_store


@pytest.fixture(scope="session", autouse=True)
def create_schema() -> None:
    # Build the schema once from model metadata; migrations target Postgres.
    sync_engine = create_engine(f"sqlite:///{_DB_PATH}")
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()
    yield


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Lockout counters and cached settings must not leak between tests.
    reset_lockout_store()
    yield
    reset_lockout_store()
    get_settings.cache_clear()
