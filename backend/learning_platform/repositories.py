"""Repository classes encapsulating database operations.

Each repository is small and focused on a single table. They all share the
persistence contract of `Repository`: equality lookups (`find`,
`find_one`, `get`), unsaved instances (`create`), single-entity writes
(`save`, `remove`, `update`) and bulk deletes (`delete_where`).
Repositories return SQLModel objects and commit where appropriate; a failed
commit is rolled back and re-raised as a platform error.
`remove` and `delete_where` accept `commit=False` to only flush, so a
service can run a multi-table cascade and commit it with its last write.

`Repositories` bundles one repository per table around a single session.
Services receive the bundle, which lets tests substitute an in-memory one.
"""

from typing import Generic, List, Optional, Type, TypeVar

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, SQLModel, select

from . import models
from .errors import ConflictError, InternalError

ModelT = TypeVar("ModelT", bound=SQLModel)


class Repository(Generic[ModelT]):
    """Generic CRUD operations for one SQLModel table."""
    model: Type[ModelT]

    def __init__(self, session: Session):
        self.session = session

    def _criteria(self, criteria: dict) -> list:
        return [getattr(self.model, name) == value for name, value in criteria.items()]

    def _commit(self, flush_only: bool = False) -> None:
        try:
            if flush_only:
                self.session.flush()
            else:
                self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError(f"{self.model.__name__} violates a uniqueness or reference constraint") from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise InternalError(f"could not persist {self.model.__name__}") from exc


    def find(self, **criteria) -> List[ModelT]:
        """Return every row whose columns equal the given values."""
        stmt = select(self.model)
        if criteria:
            stmt = stmt.where(*self._criteria(criteria))
        return list(self.session.exec(stmt).all())

    def find_one(self, **criteria) -> Optional[ModelT]:
        """Return the first matching row or `None`."""
        stmt = select(self.model).where(*self._criteria(criteria))
        return self.session.exec(stmt).first()

    def get(self, entity_id: str) -> Optional[ModelT]:
        """Get a row by primary key."""
        return self.session.get(self.model, entity_id)

    def create(self, **fields) -> ModelT:
        """Build an unsaved instance; call `save` to persist it."""
        return self.model(**fields)

    def save(self, entity: ModelT) -> ModelT:
        """Persist a new or modified instance and return the managed instance."""
        if hasattr(entity, "updated_at"):
            entity.updated_at = models.utcnow()
        self.session.add(entity)
        self._commit()
        self.session.refresh(entity)
        return entity

    def remove(self, entity: ModelT, commit: bool = True) -> None:
        self.session.delete(entity)
        self._commit(flush_only=not commit)

    def update(self, entity_id: str, **fields) -> None:
        """Apply a partial update by primary key without loading the row."""
        if hasattr(self.model, "updated_at"):
            fields.setdefault("updated_at", models.utcnow())
        stmt = update(self.model).where(self.model.id == entity_id).values(**fields)
        self.session.exec(stmt)
        self._commit()

    def delete_where(self, *, commit: bool = True, **criteria) -> int:
        """Delete every matching row in one statement and return the count."""
        if not criteria:
            raise ValueError("delete_where requires at least one criterion")
        stmt = delete(self.model).where(*self._criteria(criteria))
        try:
            result = self.session.exec(stmt)
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise InternalError(f"could not delete {self.model.__name__} rows") from exc
        self._commit(flush_only=not commit)
        return result.rowcount or 0


class StudentRepository(Repository[models.Student]):
    """CRUD operations for `Student` objects."""
    model = models.Student

    def find_by_email(self, email: str) -> Optional[models.Student]:
        """Return a `Student` by e-mail or `None` if not found."""
        return self.find_one(email=email)


class DocumentRepository(Repository[models.Document]):
    """CRUD operations and usage counters for `Document` records."""
    model = models.Document
    COUNTERS = ("view_count", "download_count")

    def increment(self, document_id: str, counter: str) -> None:
        """Atomically add one to `counter` (`view_count` or `download_count`)."""
        if counter not in self.COUNTERS:
            raise ValueError(f"unknown counter: {counter}")
        column = getattr(models.Document, counter)
        stmt = (
            update(models.Document)
            .where(models.Document.id == document_id)
            .values({counter: column + 1})
        )
        self.session.exec(stmt)
        self._commit()


class ClassroomRepository(Repository[models.Classroom]):
    model = models.Classroom


class PermissionRepository(Repository[models.Permission]):
    """Grant storage, including the bulk expiry sweep."""
    model = models.Permission

    def deactivate_expired(self, now) -> int:
        """Flip `is_active` off for active grants whose expiry is before `now`.

        Runs as one bounded UPDATE so it cannot race a concurrent grant
        update between a read and a write. Returns the affected row count.
        """
        Permission = models.Permission
        stmt = (
            update(Permission)
            .where(
                Permission.expires_at.is_not(None),
                Permission.expires_at < now,
                Permission.is_active == True,  # noqa: E712
            )
            .values(is_active=False, updated_at=now)
        )
        result = self.session.exec(stmt)
        self._commit()
        return result.rowcount or 0


class DocumentShareRepository(Repository[models.DocumentShare]):
    model = models.DocumentShare


class ClassroomParticipantRepository(Repository[models.ClassroomParticipant]):
    model = models.ClassroomParticipant


class ClassroomResourceRepository(Repository[models.ClassroomResource]):
    model = models.ClassroomResource


class Repositories:
    """One repository per table, all sharing `session`."""
    def __init__(self, session: Session):
        self.session = session
        self.students = StudentRepository(session)
        self.documents = DocumentRepository(session)
        self.classrooms = ClassroomRepository(session)
        self.permissions = PermissionRepository(session)
        self.document_shares = DocumentShareRepository(session)
        self.classroom_participants = ClassroomParticipantRepository(session)
        self.classroom_resources = ClassroomResourceRepository(session)

    def rollback(self) -> None:
        """Discard writes flushed but not yet committed."""
        self.session.rollback()
