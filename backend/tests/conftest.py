from datetime import timedelta
from pathlib import Path
import os

# Configure a throw-away database before the package reads its settings.
TEST_DB = Path(__file__).resolve().parent / "test_app.db"
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = f"sqlite:///{TEST_DB}"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["PERMISSION_SWEEP_INTERVAL_SECONDS"] = "0"
os.environ["ALLOW_DEV_CORS"] = "false"
os.environ["AUTH_RATE_LIMIT_PER_MIN"] = "10000"
if TEST_DB.exists():
    TEST_DB.unlink()

import pytest
from sqlmodel import Session, SQLModel

from learning_platform import models
from learning_platform.database import engine
from learning_platform.repositories import Repositories
from learning_platform.schemas import ClassroomCreate, DocumentCreate, PermissionCreate, StudentCreate
from learning_platform.services import ClassroomService, DocumentService, StudentService
from learning_platform.permissions import PermissionService


@pytest.fixture(scope="session", autouse=True)
def reset_db():
    """Ensure a fresh SQLite database for tests."""
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    yield
    engine.dispose()
    if TEST_DB.exists():
        TEST_DB.unlink()


class InMemoryRepository:
    """List-backed stand-in honouring the repository contract.

    Every call is recorded in `calls` so tests can assert that a failing
    operation never reached `save` or `remove`. Deletes made with
    `commit=False` are journaled so the bundle can roll them back.
    """

    def __init__(self, model, journal=None):
        self.model = model
        self.rows = []
        self.calls = []
        self.journal = {} if journal is None else journal

    def _stage(self, commit):
        if commit:
            self.journal.clear()
        else:
            self.journal.setdefault(id(self), (self, list(self.rows)))

    def _matches(self, row, criteria):
        return all(getattr(row, name) == value for name, value in criteria.items())

    def find(self, **criteria):
        self.calls.append("find")
        return [row for row in self.rows if self._matches(row, criteria)]

    def find_one(self, **criteria):
        self.calls.append("find_one")
        for row in self.rows:
            if self._matches(row, criteria):
                return row
        return None

    def get(self, entity_id):
        self.calls.append("get")
        return next((row for row in self.rows if row.id == entity_id), None)

    def create(self, **fields):
        self.calls.append("create")
        return self.model(**fields)

    def save(self, entity):
        self.calls.append("save")
        if hasattr(entity, "updated_at"):
            entity.updated_at = models.utcnow()
        if not any(row is entity for row in self.rows):
            self.rows.append(entity)
        return entity

    def remove(self, entity, commit=True):
        self.calls.append("remove")
        self._stage(commit)
        self.rows = [row for row in self.rows if row is not entity]

    def update(self, entity_id, **fields):
        self.calls.append("update")
        for row in self.rows:
            if row.id == entity_id:
                fields.setdefault("updated_at", models.utcnow())
                for name, value in fields.items():
                    setattr(row, name, value)

    def delete_where(self, *, commit=True, **criteria):
        self.calls.append("delete_where")
        if not criteria:
            raise ValueError("delete_where requires at least one criterion")
        self._stage(commit)
        kept = [row for row in self.rows if not self._matches(row, criteria)]
        removed = len(self.rows) - len(kept)
        self.rows = kept
        return removed


class InMemoryStudentRepository(InMemoryRepository):
    def find_by_email(self, email):
        return self.find_one(email=email)


class InMemoryDocumentRepository(InMemoryRepository):
    def increment(self, document_id, counter):
        self.calls.append("increment")
        for row in self.rows:
            if row.id == document_id:
                setattr(row, counter, getattr(row, counter) + 1)


class InMemoryPermissionRepository(InMemoryRepository):
    def deactivate_expired(self, now):
        self.calls.append("deactivate_expired")
        count = 0
        for row in self.rows:
            if row.expires_at is not None and row.expires_at < now and row.is_active:
                row.is_active = False
                row.updated_at = now
                count += 1
        return count


class InMemoryRepositories:
    """Drop-in replacement for `Repositories` without a database."""

    def __init__(self):
        self.journal = {}
        self.students = InMemoryStudentRepository(models.Student, self.journal)
        self.documents = InMemoryDocumentRepository(models.Document, self.journal)
        self.classrooms = InMemoryRepository(models.Classroom, self.journal)
        self.permissions = InMemoryPermissionRepository(models.Permission, self.journal)
        self.document_shares = InMemoryRepository(models.DocumentShare, self.journal)
        self.classroom_participants = InMemoryRepository(models.ClassroomParticipant, self.journal)
        self.classroom_resources = InMemoryRepository(models.ClassroomResource, self.journal)

    def all(self):
        return [
            self.students, self.documents, self.classrooms, self.permissions,
            self.document_shares, self.classroom_participants, self.classroom_resources,
        ]

    def reset_calls(self):
        for repo in self.all():
            repo.calls = []

    def rollback(self):
        for repo, rows in self.journal.values():
            repo.rows = rows
        self.journal.clear()


class Factory:
    """Create entities through the services so tests read like use cases."""

    def __init__(self, repos):
        self.repos = repos
        self._n = 0

    def student(self, email=None, **extra):
        self._n += 1
        data = {
            "email": email or f"student{self._n}@school.org",
            "password": "secret123",
            "first_name": "Avi",
            "last_name": "Cohen",
            "bar_mitzvah_parasha": "Bereshit",
        }
        data.update(extra)
        return StudentService(self.repos).create(StudentCreate(**data))

    def document(self, owner_id, **extra):
        data = {
            "title": "Notes",
            "file_url": "https://files.school.org/notes.pdf",
            "file_type": "application/pdf",
            "file_size": 2048,
            "owner_id": owner_id,
        }
        data.update(extra)
        return DocumentService(self.repos).create(DocumentCreate(**data))

    def classroom(self, instructor_id, **extra):
        data = {
            "name": "Torah reading",
            "start_time": extra.pop("start_time", _future(1)),
            "end_time": extra.pop("end_time", _future(1, hours=1)),
            "instructor_id": instructor_id,
        }
        data.update(extra)
        return ClassroomService(self.repos).create(ClassroomCreate(**data))

    def grant(self, student_id, level="read", **extra):
        data = {"student_id": student_id, "level": level}
        data.update(extra)
        return PermissionService(self.repos).create(PermissionCreate(**data))


def _future(days, hours=0):
    return models.utcnow() + timedelta(days=days, hours=hours)


@pytest.fixture
def repos():
    return InMemoryRepositories()


@pytest.fixture
def factory(repos):
    return Factory(repos)


@pytest.fixture
def db_repos():
    with Session(engine) as session:
        yield Repositories(session)
