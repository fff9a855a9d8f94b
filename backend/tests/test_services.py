from datetime import date, timedelta

import pydantic
import pytest

from learning_platform import models
from learning_platform.errors import ConflictError, InternalError, NotFoundError, ValidationError
from learning_platform.models import ClassroomStatus, PermissionLevel, Visibility
from learning_platform.schemas import (
    ClassroomUpdate,
    DocumentUpdate,
    PermissionUpdate,
    StudentCreate,
    StudentUpdate,
)
from learning_platform.services import (
    PWD_CTX,
    AuthService,
    ClassroomService,
    DocumentService,
    StudentService,
)
from learning_platform.permissions import PermissionService


def _writes(repos):
    return [call for repo in repos.all() for call in repo.calls if call in ("save", "remove", "update", "delete_where")]


# --- students ---------------------------------------------------------------

def test_student_create_hashes_password_and_hides_it(repos, factory):
    view = factory.student(email="a@x.com")
    stored = repos.students.rows[0]
    assert stored.password_hash != "secret123"
    assert PWD_CTX.verify("secret123", stored.password_hash)
    assert "password_hash" not in view.model_dump()
    assert view.role == models.Role.STUDENT
    assert view.is_verified is False


def test_duplicate_email_conflicts_without_saving(repos, factory):
    factory.student(email="a@x.com")
    repos.reset_calls()
    with pytest.raises(ConflictError):
        factory.student(email="a@x.com")
    assert "save" not in repos.students.calls
    assert len(repos.students.rows) == 1


def test_update_rechecks_email_uniqueness(repos, factory):
    factory.student(email="a@x.com")
    b = factory.student(email="b@x.com")
    with pytest.raises(ConflictError):
        StudentService(repos).update(b.id, StudentUpdate(email="a@x.com"))
    # keeping one's own address is fine
    out = StudentService(repos).update(b.id, StudentUpdate(email="b@x.com", first_name="Dan"))
    assert out.first_name == "Dan"


def test_update_password_rehashes(repos, factory):
    a = factory.student(email="a@x.com")
    StudentService(repos).update(a.id, StudentUpdate(password="another1"))
    assert AuthService(repos).authenticate("a@x.com", "another1") is not None
    assert AuthService(repos).authenticate("a@x.com", "secret123") is None


@pytest.mark.parametrize("entity", ["student", "document", "classroom", "permission"])
def test_unknown_id_update_and_delete_raise_not_found(repos, entity):
    services = {
        "student": (StudentService(repos), StudentUpdate(first_name="Dan")),
        "document": (DocumentService(repos), DocumentUpdate(title="x")),
        "classroom": (ClassroomService(repos), ClassroomUpdate(name="x")),
        "permission": (PermissionService(repos), PermissionUpdate(is_active=False)),
    }
    svc, patch = services[entity]
    with pytest.raises(NotFoundError):
        svc.update("missing", patch)
    with pytest.raises(NotFoundError):
        svc.delete("missing")
    assert _writes(repos) == []


def test_not_found_error_carries_kind_and_message():
    err = NotFoundError("Document", "abc")
    assert err.to_dict() == {"kind": "NotFoundError", "message": "Document not found"}
    assert err.status_code == 404


def test_student_list_returns_all(repos, factory):
    factory.student()
    factory.student()
    assert len(StudentService(repos).list()) == 2


def test_student_delete_cascades(repos, factory):
    a = factory.student(email="a@x.com")
    b = factory.student(email="b@x.com")
    doc = factory.document(a.id)
    other_doc = factory.document(b.id)
    room = factory.classroom(a.id)
    ClassroomService(repos).add_participant(room.id, b.id)
    ClassroomService(repos).add_resource(room.id, other_doc.id)
    DocumentService(repos).share(doc.id, b.id)
    DocumentService(repos).share(other_doc.id, a.id)
    factory.grant(b.id, document_id=doc.id)
    factory.grant(a.id, document_id=other_doc.id)

    StudentService(repos).delete(a.id)

    assert [d.id for d in DocumentService(repos).list()] == [other_doc.id]
    assert ClassroomService(repos).list() == []
    assert repos.permissions.rows == []
    assert repos.document_shares.rows == []
    assert repos.classroom_participants.rows == []
    assert repos.classroom_resources.rows == []
    assert [s.id for s in StudentService(repos).list()] == [b.id]


def test_student_delete_rolls_back_when_the_last_step_fails(repos, factory, monkeypatch):
    a = factory.student(email="a@x.com")
    b = factory.student(email="b@x.com")
    doc = factory.document(a.id)
    room = factory.classroom(a.id)
    ClassroomService(repos).add_participant(room.id, b.id)
    DocumentService(repos).share(doc.id, b.id)
    factory.grant(b.id, document_id=doc.id)

    def fail(entity, commit=True):
        raise InternalError("could not persist Student")

    monkeypatch.setattr(repos.students, "remove", fail)
    with pytest.raises(InternalError):
        StudentService(repos).delete(a.id)

    assert [d.id for d in DocumentService(repos).list()] == [doc.id]
    assert [c.id for c in ClassroomService(repos).list()] == [room.id]
    assert len(repos.permissions.rows) == 1
    assert len(repos.document_shares.rows) == 1
    assert len(repos.classroom_participants.rows) == 1


def test_set_role(repos, factory):
    a = factory.student()
    assert StudentService(repos).set_role(a.id, models.Role.ADMIN).role == models.Role.ADMIN


@pytest.mark.parametrize(
    "field,value",
    [
        ("first_name", "A"),
        ("last_name", "B"),
        ("bar_mitzvah_parasha", "No"),
        ("hebrew_date_of_birth", "5 Nisan"),
        ("email", "not-an-email"),
        ("password", "123"),
        ("age", -1),
    ],
)
def test_student_create_validation(field, value):
    data = {
        "email": "a@x.com",
        "password": "secret123",
        "first_name": "Avi",
        "last_name": "Cohen",
        "bar_mitzvah_parasha": "Bereshit",
        field: value,
    }
    with pytest.raises(pydantic.ValidationError):
        StudentCreate(**data)


def test_student_date_of_birth_must_be_in_the_past():
    with pytest.raises(pydantic.ValidationError):
        StudentUpdate(date_of_birth=date.today())
    assert StudentUpdate(date_of_birth=date.today() - timedelta(days=1)).date_of_birth is not None


def test_student_accepts_hebrew_date_and_camel_case():
    payload = StudentCreate.model_validate({
        "email": "a@x.com",
        "password": "secret123",
        "firstName": "Avi",
        "lastName": "Cohen",
        "barMitzvahParasha": "Noach",
        "hebrewDateOfBirth": "ה ניסן תשעב",
    })
    assert payload.first_name == "Avi"


def test_auth_token_roundtrip(repos, factory):
    from learning_platform.auth import decode_token

    factory.student(email="a@x.com")
    token, student = AuthService(repos).authenticate("a@x.com", "secret123")
    payload = decode_token(token)
    assert payload["student_id"] == student.id
    assert payload["role"] == "student"
    assert AuthService(repos).authenticate("nobody@x.com", "secret123") is None


# --- documents --------------------------------------------------------------

def test_document_list_on_empty_store_is_empty_list(repos):
    assert DocumentService(repos).list() == []


def test_document_create_requires_existing_owner(repos):
    from learning_platform.schemas import DocumentCreate

    request = DocumentCreate(title="t", file_url="u", file_type="pdf", file_size=1, owner_id="ghost")
    with pytest.raises(NotFoundError):
        DocumentService(repos).create(request)
    assert repos.documents.rows == []


def test_document_defaults_and_size_limit(repos, factory, monkeypatch):
    a = factory.student()
    doc = factory.document(a.id)
    assert doc.visibility == Visibility.PRIVATE
    assert doc.view_count == 0 and doc.download_count == 0
    from learning_platform.config import settings
    monkeypatch.setattr(settings, "MAX_DOCUMENT_BYTES", 100)
    with pytest.raises(ValidationError):
        factory.document(a.id, file_size=101)
    with pytest.raises(ValidationError):
        DocumentService(repos).update(doc.id, DocumentUpdate(file_size=500))


def test_document_update_rejects_null_required_field(repos, factory):
    a = factory.student()
    doc = factory.document(a.id)
    with pytest.raises(ValidationError):
        DocumentService(repos).update(doc.id, DocumentUpdate(title=None))
    out = DocumentService(repos).update(doc.id, DocumentUpdate(tags=["torah", "notes"]))
    assert out.tags == ["torah", "notes"]


def test_counters_only_increase_via_explicit_operations(repos, factory):
    a = factory.student()
    doc = factory.document(a.id)
    svc = DocumentService(repos)
    svc.record_view(doc.id)
    svc.record_view(doc.id)
    out = svc.record_download(doc.id)
    assert (out.view_count, out.download_count) == (2, 1)
    assert "view_count" not in DocumentUpdate.model_fields
    assert "download_count" not in DocumentUpdate.model_fields
    with pytest.raises(NotFoundError):
        svc.record_view("missing")


def test_share_and_unshare_manage_visibility(repos, factory):
    a = factory.student()
    b = factory.student()
    doc = factory.document(a.id)
    svc = DocumentService(repos)
    assert svc.share(doc.id, b.id).visibility == Visibility.SHARED
    assert [d.id for d in svc.list_shared_with(b.id)] == [doc.id]
    with pytest.raises(ConflictError):
        svc.share(doc.id, b.id)
    assert svc.unshare(doc.id, b.id).visibility == Visibility.PRIVATE
    with pytest.raises(NotFoundError):
        svc.unshare(doc.id, b.id)


def test_public_and_owner_listings(repos, factory):
    a = factory.student()
    b = factory.student()
    public = factory.document(a.id, visibility=Visibility.PUBLIC)
    factory.document(a.id)
    factory.document(b.id)
    svc = DocumentService(repos)
    assert [d.id for d in svc.list_public()] == [public.id]
    assert len(svc.list_by_owner(a.id)) == 2
    with pytest.raises(NotFoundError):
        svc.list_by_owner("ghost")


def test_document_delete_cascades_grants_shares_and_resources(repos, factory):
    a = factory.student()
    b = factory.student()
    doc = factory.document(a.id)
    room = factory.classroom(a.id)
    DocumentService(repos).share(doc.id, b.id)
    ClassroomService(repos).add_resource(room.id, doc.id)
    factory.grant(b.id, document_id=doc.id)
    DocumentService(repos).delete(doc.id)
    assert repos.documents.rows == []
    assert repos.permissions.rows == []
    assert repos.document_shares.rows == []
    assert ClassroomService(repos).list_resources(room.id) == []


# --- classrooms -------------------------------------------------------------

def test_classroom_time_window_enforced(repos, factory):
    a = factory.student()
    now = models.utcnow()
    with pytest.raises(pydantic.ValidationError):
        factory.classroom(a.id, start_time=now + timedelta(hours=2), end_time=now + timedelta(hours=1))
    room = factory.classroom(a.id)
    with pytest.raises(ValidationError):
        ClassroomService(repos).update(room.id, ClassroomUpdate(end_time=room.start_time - timedelta(minutes=1)))


def test_classroom_defaults_and_view(repos, factory):
    a = factory.student()
    room = factory.classroom(a.id)
    assert room.status == ClassroomStatus.SCHEDULED
    assert room.max_participants == 10
    assert room.participant_count == 0
    assert room.is_full is False
    assert room.is_active is False


def test_participants_capacity_and_duplicates(repos, factory):
    a = factory.student()
    b = factory.student()
    c = factory.student()
    room = factory.classroom(a.id, max_participants=1)
    svc = ClassroomService(repos)
    out = svc.add_participant(room.id, b.id)
    assert out.participant_count == 1 and out.is_full
    with pytest.raises(ConflictError):
        svc.add_participant(room.id, b.id)
    with pytest.raises(ConflictError):
        svc.add_participant(room.id, c.id)
    with pytest.raises(NotFoundError):
        svc.add_participant(room.id, "ghost")
    assert [s.id for s in svc.list_participants(room.id)] == [b.id]
    assert svc.remove_participant(room.id, b.id).participant_count == 0
    with pytest.raises(NotFoundError):
        svc.remove_participant(room.id, b.id)


def test_resources(repos, factory):
    a = factory.student()
    doc = factory.document(a.id)
    room = factory.classroom(a.id)
    svc = ClassroomService(repos)
    assert [d.id for d in svc.add_resource(room.id, doc.id)] == [doc.id]
    with pytest.raises(ConflictError):
        svc.add_resource(room.id, doc.id)
    assert svc.remove_resource(room.id, doc.id) == []
    with pytest.raises(NotFoundError):
        svc.add_resource(room.id, "ghost")


def test_upcoming_and_instructor_listings(repos, factory):
    a = factory.student()
    b = factory.student()
    now = models.utcnow()
    later = factory.classroom(a.id, start_time=now + timedelta(days=3), end_time=now + timedelta(days=3, hours=1))
    sooner = factory.classroom(a.id, start_time=now + timedelta(days=1), end_time=now + timedelta(days=1, hours=1))
    past = factory.classroom(a.id, start_time=now - timedelta(days=1), end_time=now - timedelta(hours=23))
    cancelled = factory.classroom(a.id, status=ClassroomStatus.CANCELLED)
    svc = ClassroomService(repos)
    for room in (later, sooner, past, cancelled):
        svc.add_participant(room.id, b.id)
    assert [c.id for c in svc.list_upcoming(b.id)] == [sooner.id, later.id]
    assert len(svc.list_by_instructor(a.id)) == 4
    assert svc.list_by_instructor(b.id) == []


def test_classroom_delete_cascades(repos, factory):
    a = factory.student()
    b = factory.student()
    doc = factory.document(a.id)
    room = factory.classroom(a.id)
    svc = ClassroomService(repos)
    svc.add_participant(room.id, b.id)
    svc.add_resource(room.id, doc.id)
    factory.grant(b.id, classroom_id=room.id)
    svc.delete(room.id)
    assert repos.classrooms.rows == []
    assert repos.permissions.rows == []
    assert repos.classroom_participants.rows == []
    assert repos.classroom_resources.rows == []
    # the document itself survives
    assert len(repos.documents.rows) == 1
