"""Business logic services used by HTTP controllers.

This module holds small service classes that coordinate repositories.
Services are intentionally thin: they perform validation, execute domain
logic and persist entities via the `Repositories` bundle they are given.
They never swallow failures; every error leaves as one of the kinds in
`errors`.

Deletes cascade explicitly, dependents first:
- a document takes its grants, share rows and classroom-resource rows;
- a classroom takes its grants, participant rows and resource rows;
- a student takes the documents they own and the classrooms they instruct
  (each cascading as above), then their grants and remaining link rows.
A cascade only flushes until its last removal, which commits the whole
delete; any failure before that rolls every step back.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Tuple

import jwt
from passlib.context import CryptContext

from . import models
from .config import settings
from .errors import ConflictError, InternalError, NotFoundError, ValidationError
from .models import Role, Visibility
from .repositories import Repositories
from .schemas import (
    ClassroomCreate,
    ClassroomOut,
    ClassroomUpdate,
    DocumentCreate,
    DocumentOut,
    DocumentUpdate,
    StudentCreate,
    StudentOut,
    StudentUpdate,
)

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
logger = logging.getLogger("learning_platform.services")


def _single(saved, entity: str):
    """Guard against a persistence layer answering a single save with a batch."""
    if isinstance(saved, (list, tuple)):
        logger.warning("Unexpected batch response from save for %s", entity)
        raise InternalError("Internal server error")
    return saved


@contextmanager
def _atomic(repos: Repositories):
    """Discard the flushed part of a cascade if it fails before its final commit."""
    try:
        yield
    except Exception:
        repos.rollback()
        raise


def _merge(entity, changes: dict, required: Iterable[str] = ()):
    """Copy `changes` onto `entity`, refusing nulls for required columns."""
    for name in required:
        if name in changes and changes[name] is None:
            raise ValidationError(f"{name} cannot be null")
    for name, value in changes.items():
        setattr(entity, name, value)
    return entity


class StudentService:
    """Create, update, delete and list students."""
    def __init__(self, repos: Repositories):
        self.repos = repos

    def get_entity(self, student_id: str) -> models.Student:
        student = self.repos.students.find_one(id=student_id)
        if not student:
            logger.warning("Student not found: %s", student_id)
            raise NotFoundError("Student", student_id)
        return student

    def get(self, student_id: str) -> StudentOut:
        return StudentOut.from_model(self.get_entity(student_id))

    def create(self, request: StudentCreate) -> StudentOut:
        """Create a student with a hashed password.

        Fails with `ConflictError` before anything is saved when the e-mail
        is already registered.
        """
        email = str(request.email)
        logger.info("Creating new student: %s", email)
        if self.repos.students.find_by_email(email):
            logger.warning("Email already exists: %s", email)
            raise ConflictError("Email already exists")
        fields = request.model_dump(exclude={"password", "email"})
        student = self.repos.students.create(
            **fields,
            email=email,
            password_hash=PWD_CTX.hash(request.password),
            role=Role.STUDENT,
            is_verified=False,
        )
        logger.debug("Saving new student to repository")
        saved = _single(self.repos.students.save(student), "Student")
        logger.info("Student created successfully: %s", saved.id)
        return StudentOut.from_model(saved)

    def update(self, student_id: str, request: StudentUpdate) -> StudentOut:
        logger.info("Updating student: %s", student_id)
        student = self.get_entity(student_id)
        changes = request.model_dump(exclude_unset=True)
        if "email" in changes and changes["email"] is not None:
            changes["email"] = str(changes["email"])
            if changes["email"] != student.email and self.repos.students.find_by_email(changes["email"]):
                logger.warning("Email already exists: %s", changes["email"])
                raise ConflictError("Email already exists")
        password = changes.pop("password", None)
        _merge(student, changes, required=("email",))
        if password:
            student.password_hash = PWD_CTX.hash(password)
        logger.debug("Saving updated student to repository")
        saved = _single(self.repos.students.save(student), "Student")
        logger.info("Student updated successfully: %s", saved.id)
        return StudentOut.from_model(saved)

    def set_role(self, student_id: str, role: Role) -> StudentOut:
        student = self.get_entity(student_id)
        student.role = Role(role)
        saved = _single(self.repos.students.save(student), "Student")
        logger.info("Student %s role set to %s", saved.id, saved.role.value)
        return StudentOut.from_model(saved)

    def delete(self, student_id: str) -> None:
        logger.info("Deleting student: %s", student_id)
        student = self.get_entity(student_id)
        documents = DocumentService(self.repos)
        classrooms = ClassroomService(self.repos)
        with _atomic(self.repos):
            for document in self.repos.documents.find(owner_id=student_id):
                documents.cascade_delete(document, commit=False)
            for classroom in self.repos.classrooms.find(instructor_id=student_id):
                classrooms.cascade_delete(classroom, commit=False)
            self.repos.permissions.delete_where(student_id=student_id, commit=False)
            self.repos.document_shares.delete_where(student_id=student_id, commit=False)
            self.repos.classroom_participants.delete_where(student_id=student_id, commit=False)
            logger.debug("Removing student from repository")
            self.repos.students.remove(student)
        logger.info("Student deleted successfully: %s", student_id)

    def list(self) -> List[StudentOut]:
        logger.info("Fetching all students")
        students = self.repos.students.find()
        logger.debug("Found %d students", len(students))
        return [StudentOut.from_model(s) for s in students]


class AuthService:
    """Authentication related operations (register + authenticate)."""
    def __init__(self, repos: Repositories):
        self.repos = repos
        self.students = StudentService(repos)

    def register(self, request: StudentCreate) -> StudentOut:
        return self.students.create(request)

    def authenticate(self, email: str, password: str) -> Optional[Tuple[str, models.Student]]:
        """Verify credentials against the stored salted hash.

        Returns `(token, student)` on success or `None` if authentication
        fails; unknown e-mails and wrong passwords are indistinguishable.
        """
        student = self.repos.students.find_by_email(email)
        if not student:
            return None
        if not PWD_CTX.verify(password, student.password_hash):
            logger.info("Rejected login for %s", email)
            return None
        return self.issue_token(student), student

    def issue_token(self, student: models.Student) -> str:
        expire = datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRE_HOURS)
        payload = {
            "student_id": student.id,
            "email": student.email,
            "role": Role(student.role).value,
            "exp": int(expire.timestamp()),
        }
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


class DocumentService:
    """Documents, their shares and usage counters."""
    REQUIRED = ("title", "file_url", "file_type", "file_size", "visibility")

    def __init__(self, repos: Repositories):
        self.repos = repos

    def _check_size(self, file_size: int) -> None:
        if file_size is not None and file_size > settings.MAX_DOCUMENT_BYTES:
            raise ValidationError(f"fileSize exceeds the {settings.MAX_DOCUMENT_BYTES} byte limit")

    def get_entity(self, document_id: str) -> models.Document:
        document = self.repos.documents.find_one(id=document_id)
        if not document:
            logger.warning("Document not found: %s", document_id)
            raise NotFoundError("Document", document_id)
        return document

    def get(self, document_id: str) -> DocumentOut:
        logger.info("Fetching document: %s", document_id)
        return DocumentOut.from_model(self.get_entity(document_id))

    def create(self, request: DocumentCreate) -> DocumentOut:
        logger.info("Creating new document: %s (owner=%s)", request.title, request.owner_id)
        StudentService(self.repos).get_entity(request.owner_id)
        self._check_size(request.file_size)
        document = self.repos.documents.create(**request.model_dump())
        logger.debug("Saving new document to repository")
        saved = _single(self.repos.documents.save(document), "Document")
        logger.info("Document created successfully: %s", saved.id)
        return DocumentOut.from_model(saved)

    def update(self, document_id: str, request: DocumentUpdate) -> DocumentOut:
        logger.info("Updating document: %s", document_id)
        document = self.get_entity(document_id)
        changes = request.model_dump(exclude_unset=True)
        self._check_size(changes.get("file_size"))
        _merge(document, changes, required=self.REQUIRED)
        logger.debug("Saving updated document to repository")
        saved = _single(self.repos.documents.save(document), "Document")
        logger.info("Document updated successfully: %s", saved.id)
        return DocumentOut.from_model(saved)

    def delete(self, document_id: str) -> None:
        logger.info("Deleting document: %s", document_id)
        document = self.get_entity(document_id)
        with _atomic(self.repos):
            self.cascade_delete(document)
        logger.info("Document deleted successfully: %s", document_id)

    def cascade_delete(self, document: models.Document, commit: bool = True) -> None:
        """Delete `document` and its dependents; with `commit=False` the caller commits."""
        self.repos.permissions.delete_where(document_id=document.id, commit=False)
        self.repos.document_shares.delete_where(document_id=document.id, commit=False)
        self.repos.classroom_resources.delete_where(document_id=document.id, commit=False)
        logger.debug("Removing document %s from repository", document.id)
        self.repos.documents.remove(document, commit=commit)

    def list(self) -> List[DocumentOut]:
        logger.info("Fetching all documents")
        documents = self.repos.documents.find()
        logger.debug("Found %d documents", len(documents))
        return [DocumentOut.from_model(d) for d in documents]

    def list_by_owner(self, owner_id: str) -> List[DocumentOut]:
        StudentService(self.repos).get_entity(owner_id)
        return [DocumentOut.from_model(d) for d in self.repos.documents.find(owner_id=owner_id)]

    def list_public(self) -> List[DocumentOut]:
        documents = self.repos.documents.find(visibility=Visibility.PUBLIC)
        return [DocumentOut.from_model(d) for d in documents]

    def list_shared_with(self, student_id: str) -> List[DocumentOut]:
        StudentService(self.repos).get_entity(student_id)
        out = []
        for share in self.repos.document_shares.find(student_id=student_id):
            document = self.repos.documents.find_one(id=share.document_id)
            if document:
                out.append(DocumentOut.from_model(document))
        return out

    def is_shared_with(self, document_id: str, student_id: str) -> bool:
        return self.repos.document_shares.find_one(document_id=document_id, student_id=student_id) is not None

    def share(self, document_id: str, student_id: str) -> DocumentOut:
        """Share a document with a student; a private document becomes `shared`."""
        document = self.get_entity(document_id)
        StudentService(self.repos).get_entity(student_id)
        if self.is_shared_with(document_id, student_id):
            raise ConflictError("Document is already shared with this student")
        self.repos.document_shares.save(
            self.repos.document_shares.create(document_id=document_id, student_id=student_id)
        )
        if document.visibility == Visibility.PRIVATE:
            document.visibility = Visibility.SHARED
            document = _single(self.repos.documents.save(document), "Document")
        logger.info("Document %s shared with %s", document_id, student_id)
        return DocumentOut.from_model(document)

    def unshare(self, document_id: str, student_id: str) -> DocumentOut:
        """Remove a share; the last removed share turns `shared` back into `private`."""
        document = self.get_entity(document_id)
        share = self.repos.document_shares.find_one(document_id=document_id, student_id=student_id)
        if not share:
            raise NotFoundError("Document share", f"{document_id}/{student_id}")
        self.repos.document_shares.remove(share)
        if document.visibility == Visibility.SHARED and not self.repos.document_shares.find(document_id=document_id):
            document.visibility = Visibility.PRIVATE
            document = _single(self.repos.documents.save(document), "Document")
        logger.info("Document %s no longer shared with %s", document_id, student_id)
        return DocumentOut.from_model(document)

    def record_view(self, document_id: str) -> DocumentOut:
        return self._bump(document_id, "view_count")

    def record_download(self, document_id: str) -> DocumentOut:
        return self._bump(document_id, "download_count")

    def _bump(self, document_id: str, counter: str) -> DocumentOut:
        self.get_entity(document_id)
        self.repos.documents.increment(document_id, counter)
        return DocumentOut.from_model(self.get_entity(document_id))


class ClassroomService:
    """Classrooms, their participants and their resources."""
    REQUIRED = ("name", "start_time", "end_time", "status", "max_participants", "is_recorded")

    def __init__(self, repos: Repositories):
        self.repos = repos

    def get_entity(self, classroom_id: str) -> models.Classroom:
        classroom = self.repos.classrooms.find_one(id=classroom_id)
        if not classroom:
            logger.warning("Classroom not found: %s", classroom_id)
            raise NotFoundError("Classroom", classroom_id)
        return classroom

    def participant_count(self, classroom_id: str) -> int:
        return len(self.repos.classroom_participants.find(classroom_id=classroom_id))

    def is_participant(self, classroom_id: str, student_id: str) -> bool:
        link = self.repos.classroom_participants.find_one(classroom_id=classroom_id, student_id=student_id)
        return link is not None

    def _view(self, classroom: models.Classroom) -> ClassroomOut:
        return ClassroomOut.from_model(classroom, self.participant_count(classroom.id))

    def get(self, classroom_id: str) -> ClassroomOut:
        return self._view(self.get_entity(classroom_id))

    def create(self, request: ClassroomCreate) -> ClassroomOut:
        logger.info("Creating new classroom: %s (instructor=%s)", request.name, request.instructor_id)
        StudentService(self.repos).get_entity(request.instructor_id)
        fields = request.model_dump()
        fields["start_time"] = models.as_naive_utc(fields["start_time"])
        fields["end_time"] = models.as_naive_utc(fields["end_time"])
        classroom = self.repos.classrooms.create(**fields)
        logger.debug("Saving new classroom to repository")
        saved = _single(self.repos.classrooms.save(classroom), "Classroom")
        logger.info("Classroom created successfully: %s", saved.id)
        return self._view(saved)

    def update(self, classroom_id: str, request: ClassroomUpdate) -> ClassroomOut:
        logger.info("Updating classroom: %s", classroom_id)
        classroom = self.get_entity(classroom_id)
        changes = request.model_dump(exclude_unset=True)
        for key in ("start_time", "end_time"):
            if changes.get(key) is not None:
                changes[key] = models.as_naive_utc(changes[key])
        start = changes.get("start_time") or classroom.start_time
        end = changes.get("end_time") or classroom.end_time
        if models.as_naive_utc(start) >= models.as_naive_utc(end):
            raise ValidationError("startTime must be before endTime")
        _merge(classroom, changes, required=self.REQUIRED)
        logger.debug("Saving updated classroom to repository")
        saved = _single(self.repos.classrooms.save(classroom), "Classroom")
        logger.info("Classroom updated successfully: %s", saved.id)
        return self._view(saved)

    def delete(self, classroom_id: str) -> None:
        logger.info("Deleting classroom: %s", classroom_id)
        classroom = self.get_entity(classroom_id)
        with _atomic(self.repos):
            self.cascade_delete(classroom)
        logger.info("Classroom deleted successfully: %s", classroom_id)

    def cascade_delete(self, classroom: models.Classroom, commit: bool = True) -> None:
        """Delete `classroom` and its dependents; with `commit=False` the caller commits."""
        self.repos.permissions.delete_where(classroom_id=classroom.id, commit=False)
        self.repos.classroom_participants.delete_where(classroom_id=classroom.id, commit=False)
        self.repos.classroom_resources.delete_where(classroom_id=classroom.id, commit=False)
        logger.debug("Removing classroom %s from repository", classroom.id)
        self.repos.classrooms.remove(classroom, commit=commit)

    def list(self) -> List[ClassroomOut]:
        logger.info("Fetching all classrooms")
        classrooms = self.repos.classrooms.find()
        logger.debug("Found %d classrooms", len(classrooms))
        return [self._view(c) for c in classrooms]

    def list_by_instructor(self, instructor_id: str) -> List[ClassroomOut]:
        StudentService(self.repos).get_entity(instructor_id)
        return [self._view(c) for c in self.repos.classrooms.find(instructor_id=instructor_id)]

    def list_upcoming(self, student_id: str, now: Optional[datetime] = None) -> List[ClassroomOut]:
        """Scheduled classrooms the student attends that have not started yet."""
        StudentService(self.repos).get_entity(student_id)
        now = models.as_naive_utc(now) or models.utcnow()
        out = []
        for link in self.repos.classroom_participants.find(student_id=student_id):
            classroom = self.repos.classrooms.find_one(id=link.classroom_id)
            if (
                classroom
                and classroom.status == models.ClassroomStatus.SCHEDULED
                and models.as_naive_utc(classroom.start_time) > now
            ):
                out.append(self._view(classroom))
        out.sort(key=lambda c: c.start_time)
        return out

    def add_participant(self, classroom_id: str, student_id: str) -> ClassroomOut:
        classroom = self.get_entity(classroom_id)
        StudentService(self.repos).get_entity(student_id)
        if self.is_participant(classroom_id, student_id):
            raise ConflictError("Student already participates in this classroom")
        if classroom.is_full(self.participant_count(classroom_id)):
            logger.warning("Classroom %s is full", classroom_id)
            raise ConflictError("Classroom is full")
        self.repos.classroom_participants.save(
            self.repos.classroom_participants.create(classroom_id=classroom_id, student_id=student_id)
        )
        logger.info("Student %s joined classroom %s", student_id, classroom_id)
        return self._view(classroom)

    def remove_participant(self, classroom_id: str, student_id: str) -> ClassroomOut:
        classroom = self.get_entity(classroom_id)
        link = self.repos.classroom_participants.find_one(classroom_id=classroom_id, student_id=student_id)
        if not link:
            raise NotFoundError("Classroom participant", f"{classroom_id}/{student_id}")
        self.repos.classroom_participants.remove(link)
        logger.info("Student %s left classroom %s", student_id, classroom_id)
        return self._view(classroom)

    def list_participants(self, classroom_id: str) -> List[StudentOut]:
        self.get_entity(classroom_id)
        out = []
        for link in self.repos.classroom_participants.find(classroom_id=classroom_id):
            student = self.repos.students.find_one(id=link.student_id)
            if student:
                out.append(StudentOut.from_model(student))
        return out

    def add_resource(self, classroom_id: str, document_id: str) -> List[DocumentOut]:
        self.get_entity(classroom_id)
        DocumentService(self.repos).get_entity(document_id)
        if self.repos.classroom_resources.find_one(classroom_id=classroom_id, document_id=document_id):
            raise ConflictError("Document is already a resource of this classroom")
        self.repos.classroom_resources.save(
            self.repos.classroom_resources.create(classroom_id=classroom_id, document_id=document_id)
        )
        logger.info("Document %s attached to classroom %s", document_id, classroom_id)
        return self.list_resources(classroom_id)

    def remove_resource(self, classroom_id: str, document_id: str) -> List[DocumentOut]:
        self.get_entity(classroom_id)
        link = self.repos.classroom_resources.find_one(classroom_id=classroom_id, document_id=document_id)
        if not link:
            raise NotFoundError("Classroom resource", f"{classroom_id}/{document_id}")
        self.repos.classroom_resources.remove(link)
        return self.list_resources(classroom_id)

    def list_resources(self, classroom_id: str) -> List[DocumentOut]:
        self.get_entity(classroom_id)
        out = []
        for link in self.repos.classroom_resources.find(classroom_id=classroom_id):
            document = self.repos.documents.find_one(id=link.document_id)
            if document:
                out.append(DocumentOut.from_model(document))
        return out
