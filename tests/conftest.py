"""Pytest configuration and fixtures shared across all test modules.

Environment variables are set before any ``keyrelay`` import, because the
settings object is built when ``keyrelay.core.config`` is first imported.
"""

import os

os.environ["APP_ENV"] = "testing"
os.environ.setdefault("API_TOKEN", "test-proxy-token")
os.environ.setdefault("BIND_PATH", "/tmp/keyrelay-test.sock")
os.environ.setdefault("AUTH_MODE", "static")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from pathlib import Path
from typing import Callable

import pytest

from keyrelay.adapters.key_store.sqlite import SQLiteKeyStore


class FakeClock:
    """Settable millisecond clock."""

    def __init__(self, now: int = 1_700_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "data" / "keys.db"


@pytest.fixture
def store(db_path: Path):
    key_store = SQLiteKeyStore(db_path)
    key_store.initialize()
    yield key_store
    key_store.close()


@pytest.fixture
def make_store(db_path: Path) -> Callable[[], SQLiteKeyStore]:
    """Open additional stores on the same file (simulated restarts)."""

    opened: list[SQLiteKeyStore] = []

    def _open() -> SQLiteKeyStore:
        key_store = SQLiteKeyStore(db_path)
        key_store.initialize()
        opened.append(key_store)
        return key_store

    yield _open
    for key_store in opened:
        key_store.close()
