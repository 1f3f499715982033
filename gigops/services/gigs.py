"""
Gig lifecycle: create, read, list and delete.
Updates go through reconcile.reconcile_gig.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..auth.security import ActingIdentity, require_identity
from ..db import unit_of_work
from ..errors import AccessDenied, NotFound, ValidationError
from ..models.models import Gig, GigParticipant, GigStatus, GigStatusHistory
from .audit import create_audit_log
from .hierarchy import validate_parent
from .permissions import Capability, authorize, authorize_organization, managed_organizations
from .reconcile import (
    Desired,
    ParticipantFields,
    ReconcileStats,
    StaffSlotFields,
    Lookups,
    clean_text,
    dedupe_tags,
    gig_snapshot,
    apply_participants,
    apply_staff_slots,
)
from .time_rules import to_utc, validate_timezone, validate_window

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class NewGig:
    title: str
    start: datetime
    end: datetime
    timezone: str
    status: str = GigStatus.DateHold.value
    tags: List[str] = field(default_factory=list)
    notes: Optional[str] = None
    amount_paid: Optional[Decimal] = None
    parent_gig_id: Optional[uuid.UUID] = None


def create_gig(
    db: Session,
    identity: Optional[ActingIdentity],
    data: NewGig,
    participants: Sequence[Desired[ParticipantFields]],
    staff_slots: Sequence[Desired[StaffSlotFields]] = (),
) -> Gig:
    """
    Create a gig together with its participants, staff slots and assignments
    in one transaction.

    The acting user must be Admin or Manager of at least one participating
    organization, otherwise nobody could edit the gig afterwards.
    """
    identity = require_identity(identity)
    with unit_of_work(db):
        title = clean_text(data.title)
        if not title:
            raise ValidationError("Title is required")
        tz = validate_timezone(data.timezone)
        start, end = to_utc(data.start, tz), to_utc(data.end, tz)
        validate_window(start, end)
        try:
            status = GigStatus(data.status or GigStatus.DateHold.value).value
        except ValueError:
            raise ValidationError(f"Unknown gig status: {data.status}")
        if data.amount_paid is not None and data.amount_paid < 0:
            raise ValidationError("Amount paid cannot be negative")

        if not participants:
            raise ValidationError("At least one participating organization is required")
        org_ids = [p.fields.organization_id for p in participants if p.fields.organization_id]
        if not managed_organizations(db, identity, org_ids):
            raise AccessDenied("Access denied - only Admins and Managers of a participating organization can create gigs")

        if data.parent_gig_id is not None:
            authorize(db, identity, data.parent_gig_id, Capability.MANAGE)
        depth = validate_parent(db, None, data.parent_gig_id)

        gig = Gig(
            title=title,
            start=start,
            end=end,
            timezone=tz,
            status=status,
            tags=dedupe_tags(data.tags),
            notes=clean_text(data.notes),
            amount_paid=data.amount_paid,
            parent_gig_id=data.parent_gig_id,
            hierarchy_depth=depth,
            created_by=identity.user_id,
            updated_by=identity.user_id,
        )
        db.add(gig)
        db.flush()
        db.add(GigStatusHistory(gig_id=gig.id, from_status=None, to_status=status, changed_by=identity.user_id))

        stats = ReconcileStats()
        lookups = Lookups(db)
        apply_participants(db, gig, participants, stats, lookups)
        apply_staff_slots(db, gig, staff_slots, stats, lookups)

        create_audit_log(
            db,
            entity_type="gig",
            entity_id=gig.id,
            action="CREATE",
            actor_id=identity.user_id,
            source="api",
            changes_json={"after": gig_snapshot(gig), **stats.to_dict()},
        )
        gig_id = gig.id
        logger.info("gig_created", gig_id=str(gig_id), **dict(stats.counts))

    db.refresh(gig)
    return gig


def get_gig(db: Session, identity: Optional[ActingIdentity], gig_id: uuid.UUID) -> Gig:
    authorize(db, identity, gig_id, Capability.READ)
    gig = db.query(Gig).filter(Gig.id == gig_id).first()
    if gig is None:
        raise NotFound("Gig not found")
    return gig


def delete_gig(db: Session, identity: Optional[ActingIdentity], gig_id: uuid.UUID) -> None:
    """
    Delete a gig and everything it owns: participants, staff slots and their
    assignments, status history, kit assignments and child gigs. Kits and
    assets are never touched.
    """
    with unit_of_work(db):
        decision = authorize(db, identity, gig_id, Capability.DELETE)
        gig = db.query(Gig).filter(Gig.id == gig_id).with_for_update().first()
        if gig is None:
            raise NotFound("Gig not found")
        snapshot = gig_snapshot(gig)
        db.delete(gig)
        create_audit_log(
            db,
            entity_type="gig",
            entity_id=gig_id,
            action="DELETE",
            actor_id=decision.user_id,
            source="api",
            changes_json={"before": snapshot},
        )
    logger.info("gig_deleted", gig_id=str(gig_id))


def list_gigs_for_organization(
    db: Session,
    identity: Optional[ActingIdentity],
    organization_id: uuid.UUID,
) -> List[Gig]:
    """Gigs the organization participates in, latest start first. Any member may list them."""
    authorize_organization(db, identity, organization_id, Capability.READ)
    participating = select(GigParticipant.gig_id).where(GigParticipant.organization_id == organization_id)
    return db.query(Gig).filter(Gig.id.in_(participating)).order_by(Gig.start.desc()).all()
