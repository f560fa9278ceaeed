import os
import tempfile
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="examhost-uploads-"))
os.environ.setdefault("OPENAI_API_KEY", "")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import examhost.models  # noqa: F401
from examhost.database import Base, get_db
from examhost.errors import StorageError
from examhost.repository import ExamRepository
from examhost.schemas import ExamDraft
from examhost.services.clock import get_clock
from examhost.services.exam_creation import create_exam
from examhost.services.llm_service import TextGenerationService, get_llm_service
from examhost.storage import LocalFileStorage, get_storage

T0 = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FlakyStorage(LocalFileStorage):
    """Local storage that refuses any file whose name contains 'fail'."""

    def upload(self, path, data, content_type=None):
        if "fail" in path.rsplit("/", 1)[-1]:
            raise StorageError(f"Simulated outage for {path}")
        super().upload(path, data, content_type)


class FakeLLM(TextGenerationService):
    def __init__(self, reply: str = ""):
        super().__init__(api_key="test-key", model="test-model")
        self.reply = reply
        self.prompts = []

    def generate(self, prompt: str, temperature: float = 0.7, max_tokens: int = 1000) -> str:
        self.prompts.append(prompt)
        return self.reply


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def repo(db):
    return ExamRepository(db)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def storage(tmp_path):
    return FlakyStorage(str(tmp_path / "uploads"), "http://testserver/uploads")


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def make_exam(repo, storage, clock):
    """Create an exam through the creation service; returns the Exam row."""

    def _make_exam(**overrides):
        data = {
            "title": "Geography quiz",
            "description": "Capitals of Europe",
            "duration_minutes": 60,
            "start_time": None,
            "questions": [
                {
                    "question_text": "Capital of France?",
                    "type": "multiple_choice",
                    "options": [
                        {"text": "Paris", "is_correct": True},
                        {"text": "Lyon", "is_correct": False},
                        {"text": "Nice", "is_correct": False},
                    ],
                },
                {"question_text": "Describe the Seine in one sentence.", "type": "text"},
                {"question_text": "Upload a map of France.", "type": "file_upload", "points": 5},
            ],
        }
        data.update(overrides)
        created = create_exam(repo, storage, ExamDraft.model_validate(data), None, clock())
        return repo.get_exam_by_code(created.exam_code)

    return _make_exam


@pytest.fixture
def client(db, storage, clock, llm):
    from examhost.main import app

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_llm_service] = lambda: llm
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
