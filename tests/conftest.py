import asyncio
import os
import tempfile
from pathlib import Path

import pytest

_DB_DIR = tempfile.mkdtemp(prefix="cmms-approval-tests-")
_DB_PATH = Path(_DB_DIR) / "test.db"

# Settings are read at import time, so the environment is prepared first.
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_PATH}"
os.environ["ENVIRONMENT"] = "test"
os.environ["WEBHOOK_DISPATCHER_ENABLED"] = "false"
os.environ["WEBHOOK_CALLBACK_BASE"] = "http://testserver"
os.environ["DB_AUTO_INIT_ON_STARTUP"] = "true"

from app.db.engine import init_db  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def _database():
    asyncio.run(init_db())
    yield
