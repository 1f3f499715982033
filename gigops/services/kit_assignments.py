"""
Kit assignment writer.
Attaching a kit to a gig re-checks equipment availability inside the same
transaction that inserts the assignment, so two editors cannot book the same
asset into overlapping gigs between the check and the write.
"""
import uuid
from typing import List, Optional

import structlog
from sqlalchemy.orm import Session

from ..auth.security import ActingIdentity
from ..db import unit_of_work
from ..errors import ConflictDetected, NotFound, ValidationError
from ..models.models import Gig, GigKitAssignment, Kit
from .audit import create_audit_log
from .kit_conflicts import find_kit_conflicts, lock_kit_assets
from .permissions import Capability, authorize, authorize_organization
from .time_rules import ensure_utc

logger = structlog.get_logger(__name__)


def assign_kit_to_gig(
    db: Session,
    identity: Optional[ActingIdentity],
    gig_id: uuid.UUID,
    kit_id: uuid.UUID,
    organization_id: uuid.UUID,
    notes: Optional[str] = None,
) -> GigKitAssignment:
    """
    Assign a kit to a gig on behalf of ``organization_id``.

    Raises ConflictDetected (with the reports) when any asset of the kit is
    already booked by another gig overlapping this gig's window.
    """
    with unit_of_work(db):
        decision = authorize(db, identity, gig_id, Capability.MANAGE)
        authorize_organization(db, identity, organization_id, Capability.MANAGE)

        gig = db.query(Gig).filter(Gig.id == gig_id).with_for_update().first()
        if gig is None:
            raise NotFound("Gig not found")
        if not db.query(Kit.id).filter(Kit.id == kit_id).first():
            raise NotFound("Kit not found")
        already = (
            db.query(GigKitAssignment.id)
            .filter(GigKitAssignment.gig_id == gig_id, GigKitAssignment.kit_id == kit_id)
            .first()
        )
        if already:
            raise ValidationError("Kit is already assigned to this gig")

        lock_kit_assets(db, [kit_id])
        conflicts = find_kit_conflicts(db, kit_id, gig_id, ensure_utc(gig.start), ensure_utc(gig.end))
        if conflicts:
            logger.warning(
                "kit_assignment_rejected",
                gig_id=str(gig_id),
                kit_id=str(kit_id),
                conflicting_gig_ids=[str(c.gig_id) for c in conflicts],
            )
            raise ConflictDetected("Kit has assets already booked in an overlapping gig", conflicts)

        assignment = GigKitAssignment(
            gig_id=gig_id,
            kit_id=kit_id,
            organization_id=organization_id,
            notes=(notes or "").strip() or None,
            assigned_by=decision.user_id,
        )
        db.add(assignment)
        db.flush()
        create_audit_log(
            db,
            entity_type="gig_kit_assignment",
            entity_id=assignment.id,
            action="ASSIGN",
            actor_id=decision.user_id,
            source="api",
            context={"gig_id": gig_id, "kit_id": kit_id, "organization_id": organization_id},
        )
        logger.info("kit_assigned", gig_id=str(gig_id), kit_id=str(kit_id), assignment_id=str(assignment.id))

    db.refresh(assignment)
    return assignment


def remove_kit_from_gig(
    db: Session,
    identity: Optional[ActingIdentity],
    assignment_id: uuid.UUID,
    gig_id: Optional[uuid.UUID] = None,
) -> None:
    """Remove a kit assignment. When ``gig_id`` is given the assignment must belong to that gig."""
    with unit_of_work(db):
        assignment = db.query(GigKitAssignment).filter(GigKitAssignment.id == assignment_id).first()
        if assignment is None or (gig_id is not None and assignment.gig_id != gig_id):
            raise NotFound("Kit assignment not found")
        decision = authorize(db, identity, assignment.gig_id, Capability.MANAGE)
        context = {"gig_id": assignment.gig_id, "kit_id": assignment.kit_id}
        db.delete(assignment)
        create_audit_log(
            db,
            entity_type="gig_kit_assignment",
            entity_id=assignment_id,
            action="UNASSIGN",
            actor_id=decision.user_id,
            source="api",
            context=context,
        )
    logger.info("kit_unassigned", assignment_id=str(assignment_id), **{k: str(v) for k, v in context.items()})


def list_gig_kits(db: Session, identity: Optional[ActingIdentity], gig_id: uuid.UUID) -> List[GigKitAssignment]:
    authorize(db, identity, gig_id, Capability.READ)
    return (
        db.query(GigKitAssignment)
        .filter(GigKitAssignment.gig_id == gig_id)
        .order_by(GigKitAssignment.assigned_at)
        .all()
    )
