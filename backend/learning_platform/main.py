"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the student learning platform.
Controllers are intentionally thin: they resolve the acting student and the
target resource, ask the `AccessPolicy`, then delegate to a service and
return its view. Errors raised anywhere below are rendered as
``{"kind": ..., "message": ...}`` with the status code of the error kind.

Endpoint groups (all under /api):
- /auth: register, login, me
- /students: CRUD, role, owned/shared documents, classrooms, grants
- /documents: CRUD, public listing, download, shares
- /classrooms: CRUD, participants, resources
- /permissions: CRUD, revoke, sweep, check
"""

from typing import List, Optional

from fastapi import FastAPI, Depends, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import Session
import json
import logging
import time
import uuid

from .config import settings
from .database import engine, create_db_and_tables, get_session
from .auth import get_current_student
from .errors import AuthenticationError, PlatformError, RateLimitedError
from .models import PermissionLevel, Student
from .permissions import AccessPolicy, PermissionEvaluator, PermissionService
from .repositories import Repositories
from .services import AuthService, ClassroomService, DocumentService, StudentService
from .schemas import (
    AccessCheckOut,
    ClassroomCreate,
    ClassroomOut,
    ClassroomUpdate,
    DocumentCreate,
    DocumentOut,
    DocumentUpdate,
    ErrorOut,
    LoginIn,
    PermissionCreate,
    PermissionOut,
    PermissionUpdate,
    RoleUpdate,
    StudentCreate,
    StudentOut,
    StudentUpdate,
    SweepOut,
    TokenOut,
)
from .utils.permission_sweeper import PermissionSweeper
from .utils.rate_limit import LoginThrottle

app = FastAPI(title="Student Learning Platform API")
logger = logging.getLogger("learning_platform.api")
if not logger.handlers:
    logging.basicConfig(level=settings.LOG_LEVEL)

if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()
sweeper = PermissionSweeper(lambda: Session(engine), settings.PERMISSION_SWEEP_INTERVAL_SECONDS)
auth_throttle = LoginThrottle()

ERROR_RESPONSES = {
    400: {"model": ErrorOut},
    401: {"model": ErrorOut},
    403: {"model": ErrorOut},
    404: {"model": ErrorOut},
    409: {"model": ErrorOut},
    429: {"model": ErrorOut},
}


@app.on_event("startup")
def start_sweeper() -> None:
    sweeper.start()


@app.on_event("shutdown")
def stop_sweeper() -> None:
    sweeper.stop()


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    response = await call_next(request)
    response.headers["X-Request-ID"] = req_id
    if request.url.path.startswith("/api"):
        logger.info(
            "request_done %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "status_code": response.status_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000.0, 2),
                },
                ensure_ascii=True,
            ),
        )
    return response


@app.exception_handler(PlatformError)
async def platform_error_handler(request: Request, exc: PlatformError):
    if exc.status_code >= 500:
        logger.error("request_failed %s %s: %s", request.method, request.url.path, exc.message)
    headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimitedError) else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        where = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        problems.append(f"{where}: {err.get('msg')}" if where else str(err.get("msg")))
    return JSONResponse(status_code=400, content={"kind": "ValidationError", "message": "; ".join(problems)})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("request_failed %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"kind": "InternalError", "message": "Internal server error"})


def get_repos(db: Session = Depends(get_session)) -> Repositories:
    return Repositories(db)


def get_policy(repos: Repositories = Depends(get_repos)) -> AccessPolicy:
    return AccessPolicy(repos, owner_bypass=settings.OWNER_BYPASS)


def _no_content() -> Response:
    return Response(status_code=204)


def enforce_auth_rate_limit(request: Request) -> None:
    key = f"{request.client.host if request.client else 'unknown'}:{request.url.path}"
    allowed, retry_after = auth_throttle.hit(key, settings.AUTH_RATE_LIMIT_PER_MIN, 60)
    if not allowed:
        logger.warning("auth_throttled %s", key)
        raise RateLimitedError(retry_after)


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {
        "status": "ok",
        "sweeper_running": sweeper.running,
        "sweeper_last_count": sweeper.last_count,
        "sweeper_last_error": sweeper.last_error,
    }


# --- auth -----------------------------------------------------------------

@app.post('/api/auth/register', response_model=StudentOut, status_code=201, responses=ERROR_RESPONSES, dependencies=[Depends(enforce_auth_rate_limit)])
def register(payload: StudentCreate, repos: Repositories = Depends(get_repos)):
    """Register a new student. The password is stored as a salted hash."""
    return AuthService(repos).register(payload)


@app.post('/api/auth/login', response_model=TokenOut, responses=ERROR_RESPONSES, dependencies=[Depends(enforce_auth_rate_limit)])
def login(payload: LoginIn, repos: Repositories = Depends(get_repos)):
    """Authenticate a student and return a bearer token.

    The token carries `student_id`, `email` and `role` and is signed with
    the configured JWT secret.
    """
    result = AuthService(repos).authenticate(str(payload.email), payload.password)
    if not result:
        raise AuthenticationError('invalid credentials')
    token, student = result
    return TokenOut(access_token=token, student=StudentOut.from_model(student))


@app.get('/api/auth/me', response_model=StudentOut, responses=ERROR_RESPONSES)
def me(actor: Student = Depends(get_current_student)):
    return StudentOut.from_model(actor)


# --- students -------------------------------------------------------------

@app.get('/api/students', response_model=List[StudentOut])
def list_students(repos: Repositories = Depends(get_repos)):
    return StudentService(repos).list()


@app.post('/api/students', response_model=StudentOut, status_code=201, responses=ERROR_RESPONSES)
def create_student(payload: StudentCreate, repos: Repositories = Depends(get_repos)):
    """Create a student; duplicate e-mails answer 409."""
    return StudentService(repos).create(payload)


@app.get('/api/students/{student_id}', response_model=StudentOut, responses=ERROR_RESPONSES)
def get_student(student_id: str, repos: Repositories = Depends(get_repos)):
    return StudentService(repos).get(student_id)


@app.put('/api/students/{student_id}', response_model=StudentOut, responses=ERROR_RESPONSES)
def update_student(
    student_id: str,
    payload: StudentUpdate,
    repos: Repositories = Depends(get_repos),
    policy: AccessPolicy = Depends(get_policy),
    actor: Student = Depends(get_current_student),
):
    """Partially update a student. Students may only edit themselves unless admin."""
    svc = StudentService(repos)
    svc.get_entity(student_id)
    policy.authorize_self(actor, student_id)
    return svc.update(student_id, payload)


@app.delete('/api/students/{student_id}', status_code=204, responses=ERROR_RESPONSES)
def delete_student(
    student_id: str,
    repos: Repositories = Depends(get_repos),
    policy: AccessPolicy = Depends(get_policy),
    actor: Student = Depends(get_current_student),
):
    """Delete a student together with their documents, classrooms and grants."""
    svc = StudentService(repos)
    svc.get_entity(student_id)
    policy.authorize_self(actor, student_id)
    svc.delete(student_id)
    return _no_content()


@app.put('/api/students/{student_id}/role', response_model=StudentOut, responses=ERROR_RESPONSES)
def set_student_role(
    student_id: str,
    payload: RoleUpdate,
    repos: Repositories = Depends(get_repos),
    policy: AccessPolicy = Depends(get_policy),
    actor: Student = Depends(get_current_student),
):
    policy.require_admin(actor)
    return StudentService(repos).set_role(student_id, payload.role)


@app.get('/api/students/{student_id}/documents', response_model=List[DocumentOut], responses=ERROR_RESPONSES)
def list_owned_documents(student_id: str, repos: Repositories = Depends(get_repos)):
    return DocumentService(repos).list_by_owner(student_id)


@app.get('/api/students/{student_id}/shared-documents', response_model=List[DocumentOut], responses=ERROR_RESPONSES)
def list_shared_documents(student_id: str, repos: Repositories = Depends(get_repos)):
    return DocumentService(repos).list_shared_with(student_id)


@app.get('/api/students/{student_id}/classrooms', response_model=List[ClassroomOut], responses=ERROR_RESPONSES)
def list_instructed_classrooms(student_id: str, repos: Repositories = Depends(get_repos)):
    return ClassroomService(repos).list_by_instructor(student_id)


@app.get('/api/students/{student_id}/upcoming-classrooms', response_model=List[ClassroomOut], responses=ERROR_RESPONSES)
def list_upcoming_classrooms(student_id: str, repos: Repositories = Depends(get_repos)):
    return ClassroomService(repos).list_upcoming(student_id)


@app.get('/api/students/{student_id}/permissions', response_model=List[PermissionOut], responses=ERROR_RESPONSES)
def list_student_permissions(
    student_id: str,
    repos: Repositories = Depends(get_repos),
    policy: AccessPolicy = Depends(get_policy),
    actor: Student = Depends(get_current_student),
):
    policy.authorize_self(actor, student_id)
    return PermissionService(repos).list_for_student(student_id)


# --- documents ------------------------------------------------------------

@app.get('/api/documents', response_model=List[DocumentOut])
def list_documents(repos: Repositories = Depends(get_repos)):
    """List all documents (unfiltered; an empty store answers `[]`)."""
    return DocumentService(repos).list()


@app.get('/api/documents/public', response_model=List[DocumentOut])
def list_public_documents(repos: Repositories = Depends(get_repos)):
    return DocumentService(repos).list_public()


@app.get('/api/documents/{document_id}', response_model=DocumentOut, responses=ERROR_RESPONSES)
def get_document(
    document_id: str,
    repos: Repositories = Depends(get_repos),
    policy: AccessPolicy = Depends(get_policy),
    actor: Student = Depends(get_current_student),
):
    """Return a document the caller may read and count the view."""
    svc = DocumentService(repos)
    policy.authorize_document(actor, svc.get_entity(document_id), PermissionLevel.READ)
    return svc.record_view(document_id)


@app.post('/api/documents', response_model=DocumentOut, status_code=201, responses=ERROR_RESPONSES)
def create_document(
    payload: DocumentCreate,
    repos: Repositories = Depends(get_repos),
    policy: AccessPolicy = Depends(get_policy),
    actor: Student = Depends(get_current_student),
):
    """Create a document owned by `ownerId` (the caller, unless admin)."""
    policy.authorize_self(actor, payload.owner_id)
    return DocumentService(repos).create(payload)


@app.put('/api/documents/{document_id}', response_model=DocumentOut, responses=ERROR_RESPONSES)
def update_document(
    document_id: str,
    payload: DocumentUpdate,
    repos: Repositories = Depends(get_repos),
    policy: AccessPolicy = Depends(get_policy),
    actor: Student = Depends(get_current_student),
):
    svc = DocumentService(repos)
    policy.authorize_document(actor, svc.get_entity(document_id), PermissionLevel.WRITE)
    return svc.update(document_id, payload)


@app.delete('/api/documents/{document_id}', status_code=204, responses=ERROR_RESPONSES)
def delete_document(
    document_id: str,
    repos: Repositories = Depends(get_repos),
    policy: AccessPolicy = Depends(get_policy),
    actor: Student = Depends(get_current_student),
):
    svc = DocumentService(repos)
    policy.authorize_document(actor, svc.get_entity(document_id), PermissionLevel.ADMIN)
    svc.delete(document_id)
    return _no_content()


@app.post('/api/documents/{document_id}/download', response_model=DocumentOut, responses=ERROR_RESPONSES)
def download_document(
    document_id: str,
    repos: Repositories = Depends(get_repos),
    policy: AccessPolicy = Depends(get_policy),
    actor: Student = Depends(get_current_student),
):
    """Count a download and return the document (its `fileUrl` points at the file)."""
    svc = DocumentService(repos)
    policy.authorize_document(actor, svc.get_entity(document_id), PermissionLevel.READ)
    return svc.record_download(document_id)


@app.post('/api/documents/{document_id}/shares/{student_id}', response_model=DocumentOut, responses=ERROR_RESPONSES)
def share_document(
    document_id: str,
    student_id: str,
    repos: Repositories = Depends(get_repos),
    policy: AccessPolicy = Depends(get_policy),
    actor: Student = Depends(get_current_student),
):
    svc = DocumentService(repos)
    policy.authorize_document(actor, svc.get_entity(document_id), PermissionLevel.SHARE)
    return svc.share(document_id, student_id)


@app.delete('/api/documents/{document_id}/shares/{student_id}', response_model=DocumentOut, responses=ERROR_RESPONSES)
def unshare_document(
    document_id: str,
    student_id: str,
    repos: Repositories = Depends(get_repos),
    policy: AccessPolicy = Depends(get_policy),
    actor: Student = Depends(get_current_student),
):
    svc = DocumentService(repos)
    policy.authorize_document(actor, svc.get_entity(document_id), PermissionLevel.SHARE)
    return svc.unshare(document_id, student_id)


# --- classrooms -----------------------------------------------------------

@app.get('/api/classrooms', response_model=List[ClassroomOut])
def list_classrooms(repos: Repositories = Depends(get_repos)):
    return ClassroomService(repos).list()


@app.get('/api/classrooms/{classroom_id}', response_model=ClassroomOut, responses=ERROR_RESPONSES)
def get_classroom(classroom_id: str, repos: Repositories = Depends(get_repos)):
    return ClassroomService(repos).get(classroom_id)


@app.post('/api/classrooms', response_model=ClassroomOut, status_code=201, responses=ERROR_RESPONSES)
def create_classroom(
    payload: ClassroomCreate,
    repos: Repositories = Depends(get_repos),
    policy: AccessPolicy = Depends(get_policy),
    actor: Student = Depends(get_current_student),
):
    """Schedule a classroom instructed by `instructorId` (the caller, unless admin)."""
    policy.authorize_self(actor, payload.instructor_id)
    return ClassroomService(repos).create(payload)


@app.put('/api/classrooms/{classroom_id}', response_model=ClassroomOut, responses=ERROR_RESPONSES)
def update_classroom(
    classroom_id: str,
    payload: ClassroomUpdate,
    repos: Repositories = Depends(get_repos),
    policy: AccessPolicy = Depends(get_policy),
    actor: Student = Depends(get_current_student),
):
    svc = ClassroomService(repos)
    policy.authorize_classroom(actor, svc.get_entity(classroom_id), PermissionLevel.WRITE)
    return svc.update(classroom_id, payload)


@app.delete('/api/classrooms/{classroom_id}', status_code=204, responses=ERROR_RESPONSES)
def delete_classroom(
    classroom_id: str,
    repos: Repositories = Depends(get_repos),
    policy: AccessPolicy = Depends(get_policy),
    actor: Student = Depends(get_current_student),
):
    svc = ClassroomService(repos)
    policy.authorize_classroom(actor, svc.get_entity(classroom_id), PermissionLevel.ADMIN)
    svc.delete(classroom_id)
    return _no_content()


@app.get('/api/classrooms/{classroom_id}/participants', response_model=List[StudentOut], responses=ERROR_RESPONSES)
def list_participants(classroom_id: str, repos: Repositories = Depends(get_repos)):
    return ClassroomService(repos).list_participants(classroom_id)


@app.post('/api/classrooms/{classroom_id}/participants/{student_id}', response_model=ClassroomOut, responses=ERROR_RESPONSES)
def add_participant(
    classroom_id: str,
    student_id: str,
    repos: Repositories = Depends(get_repos),
    policy: AccessPolicy = Depends(get_policy),
    actor: Student = Depends(get_current_student),
):
    """Enrol a student. Students may enrol themselves; enrolling others needs `write`."""
    svc = ClassroomService(repos)
    classroom = svc.get_entity(classroom_id)
    if actor.id != student_id:
        policy.authorize_classroom(actor, classroom, PermissionLevel.WRITE)
    return svc.add_participant(classroom_id, student_id)


@app.delete('/api/classrooms/{classroom_id}/participants/{student_id}', response_model=ClassroomOut, responses=ERROR_RESPONSES)
def remove_participant(
    classroom_id: str,
    student_id: str,
    repos: Repositories = Depends(get_repos),
    policy: AccessPolicy = Depends(get_policy),
    actor: Student = Depends(get_current_student),
):
    svc = ClassroomService(repos)
    classroom = svc.get_entity(classroom_id)
    if actor.id != student_id:
        policy.authorize_classroom(actor, classroom, PermissionLevel.WRITE)
    return svc.remove_participant(classroom_id, student_id)


@app.get('/api/classrooms/{classroom_id}/resources', response_model=List[DocumentOut], responses=ERROR_RESPONSES)
def list_resources(
    classroom_id: str,
    repos: Repositories = Depends(get_repos),
    policy: AccessPolicy = Depends(get_policy),
    actor: Student = Depends(get_current_student),
):
    svc = ClassroomService(repos)
    policy.authorize_classroom(actor, svc.get_entity(classroom_id), PermissionLevel.READ)
    return svc.list_resources(classroom_id)


@app.post('/api/classrooms/{classroom_id}/resources/{document_id}', response_model=List[DocumentOut], responses=ERROR_RESPONSES)
def add_resource(
    classroom_id: str,
    document_id: str,
    repos: Repositories = Depends(get_repos),
    policy: AccessPolicy = Depends(get_policy),
    actor: Student = Depends(get_current_student),
):
    """Attach a document the caller can read to a classroom the caller can write."""
    svc = ClassroomService(repos)
    policy.authorize_classroom(actor, svc.get_entity(classroom_id), PermissionLevel.WRITE)
    policy.authorize_document(actor, DocumentService(repos).get_entity(document_id), PermissionLevel.READ)
    return svc.add_resource(classroom_id, document_id)


@app.delete('/api/classrooms/{classroom_id}/resources/{document_id}', response_model=List[DocumentOut], responses=ERROR_RESPONSES)
def remove_resource(
    classroom_id: str,
    document_id: str,
    repos: Repositories = Depends(get_repos),
    policy: AccessPolicy = Depends(get_policy),
    actor: Student = Depends(get_current_student),
):
    svc = ClassroomService(repos)
    policy.authorize_classroom(actor, svc.get_entity(classroom_id), PermissionLevel.WRITE)
    return svc.remove_resource(classroom_id, document_id)


# --- permissions ----------------------------------------------------------

@app.get('/api/permissions', response_model=List[PermissionOut])
def list_permissions(repos: Repositories = Depends(get_repos)):
    return PermissionService(repos).list()


@app.get('/api/permissions/check', response_model=AccessCheckOut, responses=ERROR_RESPONSES)
def check_permission(
    level: PermissionLevel,
    document_id: Optional[str] = Query(default=None, alias="documentId"),
    classroom_id: Optional[str] = Query(default=None, alias="classroomId"),
    repos: Repositories = Depends(get_repos),
    actor: Student = Depends(get_current_student),
):
    """Evaluate the caller's grants only (no owner or admin bypass)."""
    allowed = PermissionEvaluator(repos).is_allowed(
        actor.id, level, document_id=document_id, classroom_id=classroom_id
    )
    return AccessCheckOut(
        student_id=actor.id, level=level, document_id=document_id, classroom_id=classroom_id, allowed=allowed
    )


@app.post('/api/permissions/sweep', response_model=SweepOut, responses=ERROR_RESPONSES)
def sweep_permissions(
    repos: Repositories = Depends(get_repos),
    policy: AccessPolicy = Depends(get_policy),
    actor: Student = Depends(get_current_student),
):
    """Deactivate expired grants now instead of waiting for the background sweeper."""
    policy.require_admin(actor)
    return SweepOut(deactivated=PermissionService(repos).sweep_expired())


@app.get('/api/permissions/{permission_id}', response_model=PermissionOut, responses=ERROR_RESPONSES)
def get_permission(permission_id: str, repos: Repositories = Depends(get_repos)):
    return PermissionService(repos).get(permission_id)


@app.post('/api/permissions', response_model=PermissionOut, status_code=201, responses=ERROR_RESPONSES)
def create_permission(
    payload: PermissionCreate,
    repos: Repositories = Depends(get_repos),
    policy: AccessPolicy = Depends(get_policy),
    actor: Student = Depends(get_current_student),
):
    """Grant a level on one document or classroom; the caller needs `share` on it."""
    policy.authorize_grant_target(
        actor, document_id=payload.document_id, classroom_id=payload.classroom_id, levels=[payload.level]
    )
    return PermissionService(repos).create(payload)


def _authorize_existing_grant(
    permission_id: str, repos: Repositories, policy: AccessPolicy, actor: Student, new_level=None
):
    grant = PermissionService(repos).get_entity(permission_id)
    policy.authorize_grant_target(
        actor, document_id=grant.document_id, classroom_id=grant.classroom_id, levels=[grant.level, new_level]
    )


@app.put('/api/permissions/{permission_id}', response_model=PermissionOut, responses=ERROR_RESPONSES)
def update_permission(
    permission_id: str,
    payload: PermissionUpdate,
    repos: Repositories = Depends(get_repos),
    policy: AccessPolicy = Depends(get_policy),
    actor: Student = Depends(get_current_student),
):
    _authorize_existing_grant(permission_id, repos, policy, actor, new_level=payload.level)
    return PermissionService(repos).update(permission_id, payload)


@app.post('/api/permissions/{permission_id}/revoke', response_model=PermissionOut, responses=ERROR_RESPONSES)
def revoke_permission(
    permission_id: str,
    repos: Repositories = Depends(get_repos),
    policy: AccessPolicy = Depends(get_policy),
    actor: Student = Depends(get_current_student),
):
    """Deactivate a grant but keep it for the record."""
    _authorize_existing_grant(permission_id, repos, policy, actor)
    return PermissionService(repos).revoke(permission_id)


@app.delete('/api/permissions/{permission_id}', status_code=204, responses=ERROR_RESPONSES)
def delete_permission(
    permission_id: str,
    repos: Repositories = Depends(get_repos),
    policy: AccessPolicy = Depends(get_policy),
    actor: Student = Depends(get_current_student),
):
    """Remove a grant entirely."""
    _authorize_existing_grant(permission_id, repos, policy, actor)
    PermissionService(repos).delete(permission_id)
    return _no_content()
