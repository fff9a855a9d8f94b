"""SQLModel data models.

This module defines the application's database tables using SQLModel.
Relations are plain foreign-key columns; the many-to-many relations
(document shares, classroom participants, classroom resources) are
independent link tables owned by neither side. Cascading deletes are
performed by the services, not by ORM relationship annotations.

All timestamps are stored as naive UTC. Every datetime column pins the
plain `DateTime` type so each sqlmodel release binds and loads the same
naive values; `utcnow` and `as_naive_utc` keep comparisons consistent.
"""

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import List, Optional

from sqlalchemy import Column, DateTime, JSON
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Role(str, Enum):
    STUDENT = "student"
    ADMIN = "admin"


class Visibility(str, Enum):
    PRIVATE = "private"
    PUBLIC = "public"
    SHARED = "shared"


class ClassroomStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PermissionLevel(str, Enum):
    """Capability levels, declared in increasing order of privilege."""
    READ = "read"
    WRITE = "write"
    SHARE = "share"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return list(PermissionLevel).index(self)

    def satisfies(self, required: "PermissionLevel") -> bool:
        """Return True if this level grants at least `required`."""
        return self.rank >= PermissionLevel(required).rank


class Student(SQLModel, table=True):
    """A registered student.

    Fields:
    - `email`: unique login name
    - `password_hash`: salted pbkdf2 hash (never store plaintext)
    - `role`: `student` or `admin`
    """
    id: str = Field(default_factory=new_id, primary_key=True)
    email: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    age: Optional[int] = None
    date_of_birth: Optional[date] = None
    hebrew_date_of_birth: Optional[str] = None
    bar_mitzvah_parasha: Optional[str] = None
    avatar_url: Optional[str] = None
    is_verified: bool = False
    role: Role = Field(default=Role.STUDENT)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)

    def bar_mitzvah_countdown(self, today: Optional[date] = None) -> Optional[int]:
        """Days left until the 13th birthday, 0 once it has passed.

        Returns `None` when no date of birth is recorded.
        """
        if not self.date_of_birth:
            return None
        today = today or utcnow().date()
        dob = self.date_of_birth
        try:
            target = dob.replace(year=dob.year + 13)
        except ValueError:
            # born on 29 February, celebrate on the 28th in common years
            target = dob.replace(year=dob.year + 13, day=28)
        return max((target - today).days, 0)


class Document(SQLModel, table=True):
    """A learning document owned by exactly one student.

    `view_count` and `download_count` only ever grow, and only through
    `DocumentRepository.increment`.
    """
    id: str = Field(default_factory=new_id, primary_key=True)
    title: str
    description: Optional[str] = None
    file_url: str
    file_type: str
    file_size: int
    tags: Optional[List[str]] = Field(default=None, sa_column=Column(JSON))
    visibility: Visibility = Field(default=Visibility.PRIVATE)
    owner_id: str = Field(foreign_key="student.id", index=True)
    download_count: int = 0
    view_count: int = 0
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class Classroom(SQLModel, table=True):
    """A scheduled session run by one instructor."""
    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    description: Optional[str] = None
    start_time: datetime = Field(sa_type=DateTime)
    end_time: datetime = Field(sa_type=DateTime)
    status: ClassroomStatus = Field(default=ClassroomStatus.SCHEDULED)
    max_participants: int = 10
    instructor_id: str = Field(foreign_key="student.id", index=True)
    meeting_link: Optional[str] = None
    is_recorded: bool = False
    recording_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)

    def is_full(self, participant_count: int) -> bool:
        return participant_count >= self.max_participants

    def is_active(self, now: Optional[datetime] = None) -> bool:
        """True while `now` lies within [start_time, end_time]."""
        now = as_naive_utc(now) or utcnow()
        return as_naive_utc(self.start_time) <= now <= as_naive_utc(self.end_time)


class Permission(SQLModel, table=True):
    """A grant of `level` on one document or one classroom to a student.

    A grant without `expires_at` never expires; otherwise it is valid only
    while `now < expires_at` and `is_active` is set.
    """
    id: str = Field(default_factory=new_id, primary_key=True)
    student_id: str = Field(foreign_key="student.id", index=True)
    document_id: Optional[str] = Field(default=None, foreign_key="document.id", index=True)
    classroom_id: Optional[str] = Field(default=None, foreign_key="classroom.id", index=True)
    level: PermissionLevel = Field(default=PermissionLevel.READ)
    is_active: bool = True
    expires_at: Optional[datetime] = Field(default=None, index=True, sa_type=DateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = as_naive_utc(now) or utcnow()
        return now >= as_naive_utc(self.expires_at)

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return bool(self.is_active) and not self.is_expired(now)


class DocumentShare(SQLModel, table=True):
    """Link row: `document_id` is shared with `student_id`."""
    document_id: str = Field(foreign_key="document.id", primary_key=True)
    student_id: str = Field(foreign_key="student.id", primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class ClassroomParticipant(SQLModel, table=True):
    """Link row: `student_id` attends `classroom_id`."""
    classroom_id: str = Field(foreign_key="classroom.id", primary_key=True)
    student_id: str = Field(foreign_key="student.id", primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class ClassroomResource(SQLModel, table=True):
    """Link row: `document_id` is a resource of `classroom_id`."""
    classroom_id: str = Field(foreign_key="classroom.id", primary_key=True)
    document_id: str = Field(foreign_key="document.id", primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
