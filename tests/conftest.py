import os
from datetime import datetime, timedelta

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("EMBEDDING_PROVIDER", "none")
os.environ.setdefault("REQUIRE_MCP_OWNER", "true")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from core.db import DB
from core.models import Base
from core.services import conversations, instructions, people, unknown_people


class Clock:
    """Controllable stand-in for core.models.utcnow."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def server_db(tmp_path):
    db_path = tmp_path / "contextgate.sqlite"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    previous_engine = DB.engine
    previous_session = DB.SessionLocal
    DB.engine = engine
    DB.SessionLocal = SessionLocal
    try:
        yield engine
    finally:
        # Drain background applied-tracking before the database goes away.
        instructions.shutdown_applied_tracking(wait=True)
        DB.engine = previous_engine
        DB.SessionLocal = previous_session
        engine.dispose()


@pytest.fixture
def db_session(server_db):
    session = DB.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock(monkeypatch):
    fake = Clock(datetime(2026, 3, 2, 12, 0, 0))
    for module in (conversations, instructions, people, unknown_people):
        monkeypatch.setattr(module, "utcnow", fake)
    return fake
