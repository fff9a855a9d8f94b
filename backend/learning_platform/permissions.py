"""Grant evaluation, grant lifecycle and the HTTP access policy.

`PermissionEvaluator` is purely table driven: a student may act at a
required level on a document or classroom iff at least one of their grants
on that exact target is valid (active and not expired) and its level is at
least the required one under ``read < write < share < admin``. It has no
side effects and knows nothing about ownership.

`PermissionService` creates, updates, revokes, deletes and sweeps grants.

`AccessPolicy` is the caller policy used by the routes. It layers the
admin role, the optional owner/instructor bypass, public and shared
documents and classroom participation on top of the evaluator.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from . import models
from .errors import AccessDeniedError, ConflictError, NotFoundError, ValidationError
from .models import PermissionLevel, Role, Visibility
from .repositories import Repositories
from .schemas import PermissionCreate, PermissionOut, PermissionUpdate
from .services import ClassroomService, DocumentService, StudentService, _merge, _single

logger = logging.getLogger("learning_platform.permissions")


def _target(document_id: Optional[str], classroom_id: Optional[str]) -> Tuple[str, str]:
    """Return `(field, id)` for the single target, rejecting zero or two."""
    if bool(document_id) == bool(classroom_id):
        raise ValidationError("exactly one of documentId or classroomId is required")
    if document_id:
        return "document_id", document_id
    return "classroom_id", classroom_id


class PermissionEvaluator:
    """Decide allow/deny from the permission table alone."""
    def __init__(self, repos: Repositories):
        self.repos = repos

    def is_allowed(
        self,
        student_id: str,
        level: PermissionLevel,
        document_id: Optional[str] = None,
        classroom_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        field, target_id = _target(document_id, classroom_id)
        required = PermissionLevel(level)
        now = models.as_naive_utc(now) or models.utcnow()
        grants = self.repos.permissions.find(student_id=student_id, **{field: target_id})
        allowed = any(g.is_valid(now) and PermissionLevel(g.level).satisfies(required) for g in grants)
        logger.debug(
            "Access %s for student=%s level=%s %s=%s (%d grants)",
            "granted" if allowed else "denied", student_id, required.value, field, target_id, len(grants),
        )
        return allowed


class PermissionService:
    """Grant lifecycle: create, update, revoke, delete and sweep."""
    def __init__(self, repos: Repositories):
        self.repos = repos

    def get_entity(self, permission_id: str) -> models.Permission:
        permission = self.repos.permissions.find_one(id=permission_id)
        if not permission:
            logger.warning("Permission not found: %s", permission_id)
            raise NotFoundError("Permission", permission_id)
        return permission

    def get(self, permission_id: str) -> PermissionOut:
        return PermissionOut.from_model(self.get_entity(permission_id))

    def _reject_duplicate(self, candidate: models.Permission, exclude_id: Optional[str] = None) -> None:
        """Refuse a valid grant when the same subject already holds a valid one
        with the same level on the same target."""
        if not candidate.is_valid():
            return
        field, target_id = _target(candidate.document_id, candidate.classroom_id)
        twins = self.repos.permissions.find(
            student_id=candidate.student_id, level=candidate.level, **{field: target_id}
        )
        if any(t.id != exclude_id and t.is_valid() for t in twins):
            logger.warning("Duplicate active grant for student %s on %s", candidate.student_id, target_id)
            raise ConflictError("An identical active permission already exists")

    def create(self, request: PermissionCreate) -> PermissionOut:
        """Create a grant on exactly one document or classroom.

        The subject and the target must exist. An identical valid grant
        (same subject, target and level) is rejected with `ConflictError`.
        """
        logger.info("Creating new permission: level=%s student=%s", request.level.value, request.student_id)
        if not request.student_id:
            raise ValidationError("studentId is required")
        field, target_id = _target(request.document_id, request.classroom_id)
        StudentService(self.repos).get_entity(request.student_id)
        if field == "document_id":
            DocumentService(self.repos).get_entity(target_id)
        else:
            ClassroomService(self.repos).get_entity(target_id)
        permission = self.repos.permissions.create(
            student_id=request.student_id,
            level=request.level,
            is_active=request.is_active,
            expires_at=models.as_naive_utc(request.expires_at),
            **{field: target_id},
        )
        self._reject_duplicate(permission)
        logger.debug("Saving new permission to repository")
        saved = _single(self.repos.permissions.save(permission), "Permission")
        logger.info("Permission created successfully: %s", saved.id)
        return PermissionOut.from_model(saved)

    def update(self, permission_id: str, request: PermissionUpdate) -> PermissionOut:
        """Apply a partial update; the result must not duplicate another valid grant."""
        logger.info("Updating permission: %s", permission_id)
        permission = self.get_entity(permission_id)
        changes = request.model_dump(exclude_unset=True)
        if "expires_at" in changes:
            changes["expires_at"] = models.as_naive_utc(changes["expires_at"])
        candidate = self.repos.permissions.create(
            student_id=permission.student_id,
            document_id=permission.document_id,
            classroom_id=permission.classroom_id,
            level=permission.level,
            is_active=permission.is_active,
            expires_at=permission.expires_at,
        )
        _merge(candidate, changes, required=("level", "is_active"))
        self._reject_duplicate(candidate, exclude_id=permission.id)
        _merge(permission, changes)
        logger.debug("Saving updated permission to repository")
        saved = _single(self.repos.permissions.save(permission), "Permission")
        logger.info("Permission updated successfully: %s", saved.id)
        return PermissionOut.from_model(saved)

    def revoke(self, permission_id: str) -> PermissionOut:
        """Deactivate a grant while keeping it on record."""
        logger.info("Revoking permission: %s", permission_id)
        self.get_entity(permission_id)
        self.repos.permissions.update(permission_id, is_active=False)
        return PermissionOut.from_model(self.get_entity(permission_id))

    def delete(self, permission_id: str) -> None:
        logger.info("Deleting permission: %s", permission_id)
        permission = self.get_entity(permission_id)
        logger.debug("Removing permission from repository")
        self.repos.permissions.remove(permission)
        logger.info("Permission deleted successfully: %s", permission_id)

    def list(self) -> List[PermissionOut]:
        logger.info("Fetching all permissions")
        permissions = self.repos.permissions.find()
        logger.debug("Found %d permissions", len(permissions))
        return [PermissionOut.from_model(p) for p in permissions]

    def list_for_student(self, student_id: str) -> List[PermissionOut]:
        StudentService(self.repos).get_entity(student_id)
        return [PermissionOut.from_model(p) for p in self.repos.permissions.find(student_id=student_id)]

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Deactivate every active grant whose expiry has passed.

        Idempotent: a second run right after the first changes nothing and
        returns 0.
        """
        now = models.as_naive_utc(now) or models.utcnow()
        count = self.repos.permissions.deactivate_expired(now)
        logger.info("Permission sweep deactivated %d expired grant(s)", count)
        return count


class AccessPolicy:
    """Gate route actions on documents, classrooms, grants and students.

    Order of rules: admin role, owner/instructor bypass (when enabled),
    read access through public visibility, shares or participation, and
    finally the permission table.
    """
    def __init__(self, repos: Repositories, owner_bypass: bool = True):
        self.repos = repos
        self.owner_bypass = owner_bypass
        self.evaluator = PermissionEvaluator(repos)

    @staticmethod
    def is_admin(actor: models.Student) -> bool:
        return Role(actor.role) == Role.ADMIN

    def _deny(self, actor: models.Student, level: PermissionLevel, what: str):
        logger.info("Access denied: student=%s level=%s on %s", actor.id, PermissionLevel(level).value, what)
        raise AccessDeniedError(f"{PermissionLevel(level).value} access to this {what} is not allowed")

    def can_document(self, actor: models.Student, document: models.Document, level: PermissionLevel) -> bool:
        level = PermissionLevel(level)
        if self.is_admin(actor):
            return True
        if self.owner_bypass and document.owner_id == actor.id:
            return True
        if level == PermissionLevel.READ:
            if Visibility(document.visibility) == Visibility.PUBLIC:
                return True
            if DocumentService(self.repos).is_shared_with(document.id, actor.id):
                return True
        return self.evaluator.is_allowed(actor.id, level, document_id=document.id)

    def can_classroom(self, actor: models.Student, classroom: models.Classroom, level: PermissionLevel) -> bool:
        level = PermissionLevel(level)
        if self.is_admin(actor):
            return True
        if self.owner_bypass and classroom.instructor_id == actor.id:
            return True
        if level == PermissionLevel.READ and ClassroomService(self.repos).is_participant(classroom.id, actor.id):
            return True
        return self.evaluator.is_allowed(actor.id, level, classroom_id=classroom.id)

    def authorize_document(self, actor: models.Student, document: models.Document, level: PermissionLevel) -> None:
        if not self.can_document(actor, document, level):
            self._deny(actor, level, "document")

    def authorize_classroom(self, actor: models.Student, classroom: models.Classroom, level: PermissionLevel) -> None:
        if not self.can_classroom(actor, classroom, level):
            self._deny(actor, level, "classroom")

    def authorize_grant_target(
        self,
        actor: models.Student,
        document_id: Optional[str] = None,
        classroom_id: Optional[str] = None,
        levels: Iterable[Optional[PermissionLevel]] = (),
    ) -> None:
        """Managing grants on a target requires `share` on it and at least
        every level in `levels`, the ones being granted or taken away."""
        field, target_id = _target(document_id, classroom_id)
        required = max(
            [PermissionLevel.SHARE, *(PermissionLevel(level) for level in levels if level is not None)],
            key=lambda level: level.rank,
        )
        if field == "document_id":
            document = DocumentService(self.repos).get_entity(target_id)
            self.authorize_document(actor, document, required)
        else:
            classroom = ClassroomService(self.repos).get_entity(target_id)
            self.authorize_classroom(actor, classroom, required)

    def authorize_self(self, actor: models.Student, student_id: str) -> None:
        """Students manage their own record; admins manage everyone's."""
        if actor.id != student_id and not self.is_admin(actor):
            raise AccessDeniedError("students may only manage their own record")

    def require_admin(self, actor: models.Student) -> None:
        if not self.is_admin(actor):
            raise AccessDeniedError("admin role required")
