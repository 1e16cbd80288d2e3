from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


class FakeAIGrader:
    """Records requests and answers with a canned reply (or raises)."""

    model = "fake-model"

    def __init__(self, reply: Any = None, error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.requests: list[dict[str, Any]] = []

    def grade(self, request: dict[str, Any]) -> str:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if isinstance(self.reply, str):
            return self.reply
        return json.dumps(self.reply or {})


@pytest.fixture
def fake_ai() -> type[FakeAIGrader]:
    return FakeAIGrader


@pytest.fixture
def isolated_db(tmp_path):
    """Point the app at a fresh SQLite file for the duration of one test."""
    from sqlmodel import SQLModel, create_engine

    from classmark import db
    from classmark.settings import settings

    previous = (settings.data_dir, settings.sqlite_path, db.engine)
    settings.data_dir = str(tmp_path / "data")
    settings.sqlite_path = str(tmp_path / "test.db")
    db.engine = create_engine(settings.sqlite_url, connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(db.engine)
    yield db.engine
    settings.data_dir, settings.sqlite_path, db.engine = previous


@pytest.fixture(autouse=True)
def _reset_dependency_overrides() -> None:
    from classmark.main import app

    app.dependency_overrides.clear()
    yield
    app.dependency_overrides.clear()
