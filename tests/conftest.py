import os
import asyncio
import hashlib
import json
import sqlite3
from datetime import datetime, date
from pathlib import Path

import pytest

ADMIN_KEY = "test-admin-key-123"
REVOKED_ADMIN_KEY = "revoked-admin-key-456"

os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only")
os.environ.setdefault("USE_SQLITE", "true")
os.environ.setdefault("SQLITE_URL", "sqlite+aiosqlite:///./data/test.db")
os.environ.setdefault("EMAIL_ENABLED", "false")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("SITE_URL", "https://arbrebio.com")
os.environ.setdefault(
    "ADMIN_API_KEYS",
    json.dumps({
        "tests": hashlib.sha256(ADMIN_KEY.encode()).hexdigest(),
        "retired": hashlib.sha256(REVOKED_ADMIN_KEY.encode()).hexdigest(),
    }),
)
os.environ.setdefault("ADMIN_REVOKED_KEY_IDS", json.dumps(["retired"]))

# Avoid deprecated sqlite3 default datetime adapters in Python 3.12+.
sqlite3.register_adapter(datetime, lambda value: value.isoformat(sep=" "))
sqlite3.register_adapter(date, lambda value: value.isoformat())


@pytest.fixture(scope="session")
def sqlite_db_path() -> Path:
    return Path("data/test.db")


@pytest.fixture(autouse=True, scope="session")
def _ensure_test_db_dir(sqlite_db_path: Path) -> None:
    sqlite_db_path.parent.mkdir(parents=True, exist_ok=True)
    if sqlite_db_path.exists():
        sqlite_db_path.unlink()


@pytest.fixture(autouse=True)
def _reset_rate_limiter() -> None:
    """Every test starts with empty per-IP form buckets."""
    from arbrebio.services.rate_limiter import SlidingWindowRateLimiter, get_rate_limiter

    limiter = get_rate_limiter()
    if isinstance(limiter, SlidingWindowRateLimiter):
        limiter.reset()
    yield


@pytest.fixture(autouse=True, scope="session")
def _dispose_engine() -> None:
    yield
    from arbrebio.database import get_engine
    engine = get_engine()
    if engine is not None:
        loop = asyncio.new_event_loop()
        loop.run_until_complete(engine.dispose())
        loop.close()
