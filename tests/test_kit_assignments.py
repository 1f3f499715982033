import uuid
from datetime import datetime, timezone

import pytest

from gigops.errors import AccessDenied, ConflictDetected, NotFound, ValidationError
from gigops.models.models import AuditLog, Gig, GigKitAssignment
from gigops.services.kit_assignments import assign_kit_to_gig, list_gig_kits, remove_kit_from_gig
from gigops.services.reconcile import GigChanges, reconcile_gig


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def booked(db, world, make_gig):
    gig = make_gig(title="Festival day 1", start=utc(2025, 7, 15, 14, 0), end=utc(2025, 7, 15, 23, 0))
    assign_kit_to_gig(db, world.identities["admin"], gig.id, world.kits["K1"], world.production, notes=" FOH ")
    return gig


def test_assignment_is_recorded_and_audited(db, world, booked):
    rows = list_gig_kits(db, world.identities["viewer"], booked.id)
    assert [(r.kit_id, r.organization_id, r.notes) for r in rows] == [(world.kits["K1"], world.production, "FOH")]
    assert rows[0].assigned_by == world.users["admin"]
    entry = db.query(AuditLog).filter(AuditLog.action == "ASSIGN").one()
    assert entry.entity_id == rows[0].id
    assert entry.context["kit_id"] == str(world.kits["K1"])


def test_overlapping_booking_is_rejected(db, world, booked, make_gig):
    late = make_gig(title="Afterparty", start=utc(2025, 7, 15, 22, 0), end=utc(2025, 7, 16, 3, 0))
    with pytest.raises(ConflictDetected) as exc:
        assign_kit_to_gig(db, world.identities["admin"], late.id, world.kits["K1"], world.production)
    assert [c.gig_id for c in exc.value.conflicts] == [booked.id]
    assert exc.value.to_dict()["conflicts"][0]["title"] == "Festival day 1"
    assert db.query(GigKitAssignment).filter(GigKitAssignment.gig_id == late.id).count() == 0


def test_disjoint_kit_can_share_the_window(db, world, booked, make_gig):
    other = make_gig(title="Same night", start=utc(2025, 7, 15, 14, 0), end=utc(2025, 7, 15, 23, 0))
    assignment = assign_kit_to_gig(db, world.identities["manager"], other.id, world.kits["K2"], world.production)
    assert assignment.gig_id == other.id


def test_same_kit_twice_is_rejected(db, world, booked):
    with pytest.raises(ValidationError):
        assign_kit_to_gig(db, world.identities["admin"], booked.id, world.kits["K1"], world.production)


def test_assigning_requires_manage_on_gig_and_org(db, world, booked, make_gig):
    gig = make_gig(title="Another", start=utc(2025, 8, 1, 10), end=utc(2025, 8, 1, 12))
    with pytest.raises(AccessDenied):
        assign_kit_to_gig(db, world.identities["viewer"], gig.id, world.kits["K2"], world.production)
    # Admin of the gig's organization but not of the assigning organization
    with pytest.raises(AccessDenied):
        assign_kit_to_gig(db, world.identities["admin"], gig.id, world.kits["K2"], world.rentals)


def test_missing_kit_is_not_found(db, world, booked):
    with pytest.raises(NotFound):
        assign_kit_to_gig(db, world.identities["admin"], booked.id, uuid.uuid4(), world.production)


def test_remove_assignment(db, world, booked):
    assignment = list_gig_kits(db, world.identities["admin"], booked.id)[0]
    assignment_id = assignment.id
    with pytest.raises(AccessDenied):
        remove_kit_from_gig(db, world.identities["staff"], assignment_id)
    remove_kit_from_gig(db, world.identities["manager"], assignment_id)
    assert db.get(GigKitAssignment, assignment_id) is None
    assert db.query(AuditLog).filter(AuditLog.action == "UNASSIGN", AuditLog.entity_id == assignment_id).count() == 1


def test_remove_checks_gig_ownership(db, world, booked, make_gig):
    other = make_gig(title="Unrelated")
    assignment_id = list_gig_kits(db, world.identities["admin"], booked.id)[0].id
    with pytest.raises(NotFound):
        remove_kit_from_gig(db, world.identities["admin"], assignment_id, gig_id=other.id)


def test_moving_a_gig_onto_a_booked_window_is_rejected(db, world, booked, make_gig):
    early = make_gig(title="Warm-up", start=utc(2025, 7, 14, 10, 0), end=utc(2025, 7, 14, 12, 0))
    assign_kit_to_gig(db, world.identities["admin"], early.id, world.kits["K1"], world.production)

    with pytest.raises(ConflictDetected):
        reconcile_gig(
            db,
            world.identities["admin"],
            early.id,
            [],
            [],
            changes=GigChanges(start=utc(2025, 7, 15, 12, 0), end=utc(2025, 7, 15, 15, 0)),
        )
    db.expire_all()
    assert db.get(Gig, early.id).start.replace(tzinfo=None) == datetime(2025, 7, 14, 10, 0)
