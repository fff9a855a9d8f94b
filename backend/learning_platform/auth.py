"""Authentication helpers and FastAPI security dependency.

This module provides utilities to decode JWT tokens and a FastAPI
dependency `get_current_student` that validates the bearer token and
returns the corresponding `Student` model instance from the database.

Token verification raises `AuthenticationError`, which the application
renders as a 401 response.
"""

from fastapi import Depends, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt
from sqlmodel import Session
from .config import settings
from .database import get_session
from .errors import AuthenticationError
from . import models, repositories

bearer_scheme = HTTPBearer(auto_error=False)


def decode_token(token: str) -> dict:
    """Decode and verify a JWT token.

    Returns the decoded payload on success or raises `AuthenticationError`
    on failure.
    """
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError('token expired')
    except jwt.InvalidTokenError:
        raise AuthenticationError('invalid token')


def get_current_student(
    credentials: HTTPAuthorizationCredentials = Security(bearer_scheme),
    db: Session = Depends(get_session),
) -> models.Student:
    """FastAPI dependency that returns the authenticated student.

    The function extracts the bearer token from the request, decodes it
    and looks the student up, raising `AuthenticationError` for any
    authentication issue (missing header, bad token, deleted student).
    """
    if credentials is None:
        raise AuthenticationError('not authenticated')
    payload = decode_token(credentials.credentials)
    student_id = payload.get('student_id')
    if not student_id:
        raise AuthenticationError('invalid token payload')
    student = repositories.StudentRepository(db).get(student_id)
    if not student:
        raise AuthenticationError('student not found')
    return student
