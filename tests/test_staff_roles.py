import pytest

from gigops.errors import ValidationError
from gigops.models.models import StaffRole
from gigops.services.staff_roles import resolve_role


def test_creates_role_on_first_use(db):
    role_id = resolve_role(db, "Stage Manager")
    db.commit()
    assert db.query(StaffRole).filter(StaffRole.id == role_id).one().name == "Stage Manager"


def test_same_name_resolves_to_same_id(db):
    first = resolve_role(db, "Rigger")
    second = resolve_role(db, "  Rigger ")
    db.commit()
    assert first == second
    assert db.query(StaffRole).filter(StaffRole.name == "Rigger").count() == 1


def test_lookup_is_exact_match(db):
    assert resolve_role(db, "Monitor Engineer") != resolve_role(db, "monitor engineer")


def test_existing_row_from_another_session_is_reused(db, session_factory):
    other = session_factory()
    try:
        existing = resolve_role(other, "FOH Engineer")
        other.commit()
    finally:
        other.close()
    assert resolve_role(db, "FOH Engineer") == existing


@pytest.mark.parametrize("name", ["", "   ", None])
def test_blank_name_rejected(db, name):
    with pytest.raises(ValidationError):
        resolve_role(db, name)
