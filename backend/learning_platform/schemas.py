"""Pydantic request/response schemas used by the API.

Schemas keep API input/output shapes stable and provide validation for
controller handlers and tests. Attributes are snake_case in Python and
camelCase on the wire (`firstName`, `ownerId`, ...); both spellings are
accepted on input. Views never include password hashes.
"""

import re
from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from . import models
from .models import ClassroomStatus, PermissionLevel, Role, Visibility

HEBREW_DATE_RE = re.compile(r"^[א-ת\s]+$")


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _columns(entity, exclude=()) -> dict:
    # getattr reloads attributes expired by a commit; model_dump would not
    return {name: getattr(entity, name) for name in type(entity).model_fields if name not in exclude}


def _check_min_length(value: Optional[str], minimum: int, label: str) -> Optional[str]:
    if value is None:
        return value
    value = value.strip()
    if len(value) < minimum:
        raise ValueError(f"{label} must be at least {minimum} characters long")
    return value


class StudentFields(ApiModel):
    """Validation shared by student create and update payloads."""

    @field_validator("first_name", "last_name", check_fields=False)
    @classmethod
    def _names(cls, value, info):
        label = "First name" if info.field_name == "first_name" else "Last name"
        return _check_min_length(value, 2, label)

    @field_validator("bar_mitzvah_parasha", check_fields=False)
    @classmethod
    def _parasha(cls, value):
        return _check_min_length(value, 3, "Bar mitzvah parasha")

    @field_validator("date_of_birth", check_fields=False)
    @classmethod
    def _dob_in_past(cls, value):
        if value is not None and value >= date.today():
            raise ValueError("Date of birth must be in the past")
        return value

    @field_validator("hebrew_date_of_birth", check_fields=False)
    @classmethod
    def _hebrew_date(cls, value):
        if value is not None and not HEBREW_DATE_RE.match(value):
            raise ValueError("Invalid Hebrew date format")
        return value


class StudentCreate(StudentFields):
    """Payload for student creation and registration."""
    email: EmailStr
    password: str = Field(min_length=6)
    first_name: str
    last_name: str
    bar_mitzvah_parasha: str
    age: Optional[int] = Field(default=None, ge=0)
    date_of_birth: Optional[date] = None
    hebrew_date_of_birth: Optional[str] = None
    avatar_url: Optional[str] = None


class StudentUpdate(StudentFields):
    """Partial student update; only supplied fields are validated and merged."""
    email: Optional[EmailStr] = None
    password: Optional[str] = Field(default=None, min_length=6)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    bar_mitzvah_parasha: Optional[str] = None
    age: Optional[int] = Field(default=None, ge=0)
    date_of_birth: Optional[date] = None
    hebrew_date_of_birth: Optional[str] = None
    avatar_url: Optional[str] = None


class RoleUpdate(ApiModel):
    role: Role


class StudentOut(ApiModel):
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    age: Optional[int] = None
    date_of_birth: Optional[date] = None
    hebrew_date_of_birth: Optional[str] = None
    bar_mitzvah_parasha: Optional[str] = None
    avatar_url: Optional[str] = None
    is_verified: bool
    role: Role
    bar_mitzvah_countdown: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, student: models.Student) -> "StudentOut":
        data = _columns(student, exclude=("password_hash",))
        data["bar_mitzvah_countdown"] = student.bar_mitzvah_countdown()
        return cls.model_validate(data)


class LoginIn(ApiModel):
    email: EmailStr
    password: str


class TokenOut(ApiModel):
    """Authentication response containing an access token."""
    access_token: str
    token_type: str = "bearer"
    student: StudentOut


class DocumentCreate(ApiModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    file_url: str = Field(min_length=1)
    file_type: str = Field(min_length=1)
    file_size: int = Field(ge=0)
    tags: Optional[List[str]] = None
    visibility: Visibility = Visibility.PRIVATE
    owner_id: str


class DocumentUpdate(ApiModel):
    """Partial document update. Usage counters cannot be set this way."""
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    file_url: Optional[str] = Field(default=None, min_length=1)
    file_type: Optional[str] = Field(default=None, min_length=1)
    file_size: Optional[int] = Field(default=None, ge=0)
    tags: Optional[List[str]] = None
    visibility: Optional[Visibility] = None


class DocumentOut(ApiModel):
    id: str
    title: str
    description: Optional[str] = None
    file_url: str
    file_type: str
    file_size: int
    tags: Optional[List[str]] = None
    visibility: Visibility
    download_count: int
    view_count: int
    owner_id: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, document: models.Document) -> "DocumentOut":
        return cls.model_validate(_columns(document))


class ClassroomCreate(ApiModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    start_time: datetime
    end_time: datetime
    status: ClassroomStatus = ClassroomStatus.SCHEDULED
    max_participants: int = Field(default=10, ge=1)
    instructor_id: str
    meeting_link: Optional[str] = None
    is_recorded: bool = False
    recording_url: Optional[str] = None

    @model_validator(mode="after")
    def _time_window(self):
        if models.as_naive_utc(self.start_time) >= models.as_naive_utc(self.end_time):
            raise ValueError("startTime must be before endTime")
        return self


class ClassroomUpdate(ApiModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    status: Optional[ClassroomStatus] = None
    max_participants: Optional[int] = Field(default=None, ge=1)
    meeting_link: Optional[str] = None
    is_recorded: Optional[bool] = None
    recording_url: Optional[str] = None


class ClassroomOut(ApiModel):
    id: str
    name: str
    description: Optional[str] = None
    start_time: datetime
    end_time: datetime
    status: ClassroomStatus
    max_participants: int
    instructor_id: str
    meeting_link: Optional[str] = None
    is_recorded: bool
    recording_url: Optional[str] = None
    participant_count: int = 0
    is_full: bool = False
    is_active: bool = False
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, classroom: models.Classroom, participant_count: int) -> "ClassroomOut":
        data = _columns(classroom)
        data["participant_count"] = participant_count
        data["is_full"] = classroom.is_full(participant_count)
        data["is_active"] = classroom.is_active()
        return cls.model_validate(data)


class PermissionCreate(ApiModel):
    level: PermissionLevel
    student_id: str
    document_id: Optional[str] = None
    classroom_id: Optional[str] = None
    is_active: bool = True
    expires_at: Optional[datetime] = None


class PermissionUpdate(ApiModel):
    """Partial grant update; an explicit `expiresAt: null` clears the expiry."""
    level: Optional[PermissionLevel] = None
    is_active: Optional[bool] = None
    expires_at: Optional[datetime] = None


class PermissionOut(ApiModel):
    id: str
    level: PermissionLevel
    is_active: bool
    expires_at: Optional[datetime] = None
    student_id: str
    document_id: Optional[str] = None
    classroom_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, permission: models.Permission) -> "PermissionOut":
        return cls.model_validate(_columns(permission))


class AccessCheckOut(ApiModel):
    student_id: str
    level: PermissionLevel
    document_id: Optional[str] = None
    classroom_id: Optional[str] = None
    allowed: bool


class SweepOut(ApiModel):
    deactivated: int


class ErrorOut(BaseModel):
    kind: str
    message: str
