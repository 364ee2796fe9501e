from __future__ import annotations

import asyncio
import os
import sys
import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

ROOT = Path(__file__).resolve().parents[1]
API_DIR = ROOT / "API"
if str(API_DIR) not in sys.path:
    sys.path.insert(0, str(API_DIR))

# Test-mode runtime guards:
# - SQLite file database instead of PostgreSQL
# - in-process session registry instead of Redis
# - autosave effectively off so API tests only see explicit saves
_RUNTIME_DIR = Path(tempfile.mkdtemp(prefix="medquiz-tests-"))
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_RUNTIME_DIR / 'medquiz.db'}")
os.environ.setdefault("SESSION_REGISTRY_BACKEND", "memory")
os.environ.setdefault("LOCAL_CACHE_DIR", str(_RUNTIME_DIR / "local_cache"))
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("AUTOSAVE_INTERVAL_SECONDS", "3600")
os.environ.setdefault("CONTENT_LOAD_RETRIES", "1")

from medquiz.core.jwt_auth import create_token  # noqa: E402
from medquiz.main import app  # noqa: E402
from medquiz.memory.database import SessionLocal  # noqa: E402
from medquiz.models.base import Base  # noqa: E402
from medquiz.models.entities import CaseGroup, Question, QuestionOption  # noqa: E402


@dataclass
class SeededCourse:
    """Ids of the standard course: one case group (q2, q1) then q3 and q4 on their own."""

    course_id: str
    group_id: str
    questions: dict[str, str] = field(default_factory=dict)
    options: dict[str, str] = field(default_factory=dict)


async def seed_standard_course(factory: async_sessionmaker[AsyncSession], course_id: str | None = None) -> SeededCourse:
    course = SeededCourse(course_id=course_id or str(uuid.uuid4()), group_id=str(uuid.uuid4()))
    # label -> (group?, order_index, [(option label, is_correct)])
    layout = {
        "q1": (True, 2, [("a", True), ("b", True), ("c", False)]),
        "q2": (True, 1, [("d", True), ("e", False)]),
        "q3": (False, 0, [("f", True), ("g", False)]),
        "q4": (False, 0, [("h", True), ("i", False)]),
    }
    base_time = datetime(2026, 1, 1, tzinfo=timezone.utc)
    async with factory() as db:
        db.add(
            CaseGroup(
                id=course.group_id,
                course_id=course.course_id,
                title="Chest pain in the ED",
                title_fr="Douleur thoracique aux urgences",
                description="A 54-year-old presents with chest pain.",
                order_index=0,
            )
        )
        await db.flush()
        for position_in_load, (label, (grouped, order_index, options)) in enumerate(layout.items()):
            question_id = str(uuid.uuid4())
            course.questions[label] = question_id
            question = Question(
                id=question_id,
                course_id=course.course_id,
                group_id=course.group_id if grouped else None,
                text=f"Question {label}",
                text_fr=f"Question {label} (fr)",
                explanation=f"Because {label}",
                order_index=order_index,
                created_at=base_time + timedelta(seconds=position_in_load),
            )
            for position, (option_label, is_correct) in enumerate(options):
                option_id = str(uuid.uuid4())
                course.options[option_label] = option_id
                question.options.append(
                    QuestionOption(id=option_id, text=f"Option {option_label}", is_correct=is_correct, position=position)
                )
            db.add(question)
        await db.commit()
    return course


@pytest.fixture(scope="session")
def client() -> TestClient:
    with TestClient(app) as tc:
        yield tc


@pytest.fixture
def learner_id() -> str:
    return str(uuid.uuid4())


@pytest.fixture
def auth_headers(learner_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_token(learner_id)}"}


@pytest.fixture
def api_course(client) -> SeededCourse:
    """Standard course seeded into the application database."""
    return asyncio.run(seed_standard_course(SessionLocal))


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path):
    # One connection per session so concurrent writers really race on the unique index.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'progress.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def seed_course():
    return seed_standard_course
