from __future__ import annotations

import random
import sqlite3
from concurrent.futures import ThreadPoolExecutor

import pytest

from app.core.config import FeatureToggles
from app.core.ledger import Dicks, Users
from app.core.metrics import Metrics
from app.core.models import ChatId
from app.storage.sqlite_repo import SQLiteRepository

CHAT_ID = -1001234567890
UID = 12345
NAME = "test"


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "data" / "bot.db")


@pytest.fixture
def repo(db_path):
    r = SQLiteRepository(db_path=db_path)
    r.migrate()
    yield r
    r.close()


@pytest.fixture
def executor():
    ex = ThreadPoolExecutor(max_workers=8, thread_name_prefix="test-storage")
    yield ex
    ex.shutdown(wait=True)


@pytest.fixture
def metrics():
    return Metrics()


@pytest.fixture
def users(repo, executor):
    return Users(repo, executor)


@pytest.fixture
def dicks(repo, executor, metrics):
    return Dicks(repo, FeatureToggles(), metrics=metrics, executor=executor, rng=random.Random(7))


@pytest.fixture
def chat_id():
    return ChatId(CHAT_ID)


@pytest.fixture
def count_rows(db_path):
    def _count(table: str = "dicks") -> int:
        con = sqlite3.connect(db_path)
        try:
            return con.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        finally:
            con.close()

    return _count
