"""
Gig reconciliation engine.

Brings a gig's nested collections (participants, staff slots and the
assignments of each slot) in line with a client-submitted desired state,
touching only the rows that differ. Every desired item is either
``New(fields)`` or ``Existing(id, fields)``; at each level:

1. load the persisted rows for the parent
2. Existing items whose id is persisted are kept; everything else is new
3. persisted rows not kept are deleted (slots take their assignments along)
4. kept rows get their fields updated
5. new rows are inserted (slot roles resolved through the role catalog)

Empty-collection policy per level:

- participants: empty means "no information", existing participants stay
- staff slots: empty means "no slots wanted", every slot is deleted
- assignments of a slot: empty means "no information", they stay

The whole call is one unit of work; a failure anywhere leaves the gig as it
was before the call.
"""
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Generic, List, Optional, Sequence, Tuple, TypeVar, Union

import structlog
from sqlalchemy.orm import Session

from ..auth.security import ActingIdentity
from ..config import settings
from ..db import unit_of_work
from ..errors import ConflictDetected, NotFound, StaleReference, ValidationError, WriteConflict
from ..models.models import (
    AssignmentStatus,
    Gig,
    GigKitAssignment,
    GigParticipant,
    GigStaffAssignment,
    GigStaffSlot,
    GigStatus,
    GigStatusHistory,
    Organization,
    OrganizationType,
    User,
    utcnow,
)
from .audit import compute_diff, create_audit_log
from .hierarchy import refresh_descendant_depths, validate_parent
from .kit_conflicts import find_kit_conflicts, lock_kit_assets
from .permissions import Capability, authorize
from .staff_roles import resolve_role
from .time_rules import ensure_utc, to_utc, validate_timezone, validate_window

logger = structlog.get_logger(__name__)

F = TypeVar("F")


@dataclass(frozen=True)
class New(Generic[F]):
    fields: F


@dataclass(frozen=True)
class Existing(Generic[F]):
    id: uuid.UUID
    fields: F


Desired = Union[New[F], Existing[F]]


@dataclass(frozen=True)
class ParticipantFields:
    organization_id: Optional[uuid.UUID]
    role: Optional[str]
    notes: Optional[str] = None


@dataclass(frozen=True)
class AssignmentFields:
    user_id: Optional[uuid.UUID]
    status: str = AssignmentStatus.Requested.value
    rate: Optional[Decimal] = None
    fee: Optional[Decimal] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class StaffSlotFields:
    role: Optional[str]
    organization_id: Optional[uuid.UUID] = None
    required_count: int = 1
    notes: Optional[str] = None
    assignments: Tuple[Desired[AssignmentFields], ...] = ()


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


@dataclass(frozen=True)
class GigChanges:
    """Header fields to change alongside the nested collections. UNSET leaves a field alone."""
    title: Any = UNSET
    start: Any = UNSET
    end: Any = UNSET
    timezone: Any = UNSET
    status: Any = UNSET
    tags: Any = UNSET
    notes: Any = UNSET
    amount_paid: Any = UNSET
    parent_gig_id: Any = UNSET

    def provided(self) -> Dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not UNSET}


@dataclass
class ReconcileStats:
    counts: Counter = field(default_factory=Counter)
    gig_changes: Dict[str, Any] = field(default_factory=dict)

    def bump(self, level: str, action: str, n: int = 1) -> None:
        if n:
            self.counts[f"{level}_{action}"] += n

    @property
    def changed(self) -> bool:
        return bool(self.gig_changes) or any(self.counts.values())

    def to_dict(self) -> dict:
        data: Dict[str, Any] = dict(self.counts)
        if self.gig_changes:
            data["gig"] = self.gig_changes
        return data


class Lookups:
    """Per-call cache of referenced organizations and users."""

    def __init__(self, db: Session):
        self.db = db
        self._orgs: Dict[uuid.UUID, bool] = {}
        self._users: Dict[uuid.UUID, bool] = {}

    def require_organization(self, org_id: uuid.UUID) -> None:
        if org_id not in self._orgs:
            self._orgs[org_id] = self.db.query(Organization.id).filter(Organization.id == org_id).first() is not None
        if not self._orgs[org_id]:
            raise NotFound(f"Organization {org_id} not found")

    def require_user(self, user_id: uuid.UUID) -> None:
        if user_id not in self._users:
            self._users[user_id] = self.db.query(User.id).filter(User.id == user_id).first() is not None
        if not self._users[user_id]:
            raise NotFound(f"User {user_id} not found")


# ---------- helpers ----------

def apply_fields(obj: Any, values: Dict[str, Any]) -> bool:
    changed = False
    for key, value in values.items():
        if getattr(obj, key) != value:
            setattr(obj, key, value)
            changed = True
    return changed


def partition_desired(
    desired: Sequence[Desired[F]],
    persisted: Dict[uuid.UUID, Any],
    kind: str,
) -> Tuple[Dict[uuid.UUID, F], List[F]]:
    """Split desired items into (kept id -> fields, new fields)."""
    keep: Dict[uuid.UUID, F] = {}
    new_items: List[F] = []
    for item in desired:
        if isinstance(item, Existing):
            if item.id in keep:
                raise ValidationError(f"Duplicate {kind} id {item.id}")
            if item.id in persisted:
                keep[item.id] = item.fields
                continue
            if settings.strict_references:
                raise StaleReference(f"{kind.capitalize()} {item.id} no longer exists")
            logger.warning("stale_reference_inserted", kind=kind, id=str(item.id))
        elif not isinstance(item, New):
            raise TypeError(f"Expected New or Existing, got {type(item).__name__}")
        new_items.append(item.fields)
    return keep, new_items


def clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def dedupe_tags(tags: Optional[Sequence[str]]) -> List[str]:
    seen: List[str] = []
    for tag in tags or []:
        tag = (tag or "").strip()
        if tag and tag not in seen:
            seen.append(tag)
    return seen


# ---------- participants ----------

def _participant_values(fields: ParticipantFields, lookups: Lookups) -> Dict[str, Any]:
    if not fields.organization_id:
        raise ValidationError("Participant organization is required")
    if not fields.role:
        raise ValidationError("Participant role is required")
    try:
        role = OrganizationType(fields.role).value
    except ValueError:
        raise ValidationError(f"Unknown participant role: {fields.role}")
    lookups.require_organization(fields.organization_id)
    return {"organization_id": fields.organization_id, "role": role, "notes": clean_text(fields.notes)}


def apply_participants(
    db: Session,
    gig: Gig,
    desired: Sequence[Desired[ParticipantFields]],
    stats: ReconcileStats,
    lookups: Lookups,
) -> None:
    if not desired:
        return
    persisted = {p.id: p for p in db.query(GigParticipant).filter(GigParticipant.gig_id == gig.id)}
    keep, new_items = partition_desired(desired, persisted, "participant")

    kept_values = {pid: _participant_values(fields, lookups) for pid, fields in keep.items()}
    new_values = [_participant_values(fields, lookups) for fields in new_items]
    keys = Counter((v["organization_id"], v["role"]) for v in list(kept_values.values()) + new_values)
    dupes = [k for k, n in keys.items() if n > 1]
    if dupes:
        raise ValidationError("Organization listed twice in the same participant role")

    to_delete = [pid for pid in persisted if pid not in keep]
    for pid in to_delete:
        db.delete(persisted[pid])
    stats.bump("participants", "deleted", len(to_delete))
    db.flush()

    # Kept rows may trade (organization, role) pairs among themselves. Park the
    # movers on a per-row placeholder role so no single UPDATE hits uq_gig_participant.
    moving = [
        pid for pid, values in kept_values.items()
        if (persisted[pid].organization_id, persisted[pid].role) != (values["organization_id"], values["role"])
    ]
    if len(moving) > 1:
        for pid in moving:
            persisted[pid].role = f"~{pid}"
        db.flush()

    for pid, values in kept_values.items():
        if apply_fields(persisted[pid], values):
            stats.bump("participants", "updated")
    db.flush()

    for values in new_values:
        db.add(GigParticipant(gig_id=gig.id, **values))
    stats.bump("participants", "inserted", len(new_values))
    db.flush()


# ---------- assignments ----------

def _assignment_values(fields: AssignmentFields, current: Optional[GigStaffAssignment], lookups: Lookups) -> Dict[str, Any]:
    if not fields.user_id:
        raise ValidationError("Assignment user is required")
    lookups.require_user(fields.user_id)
    try:
        status = AssignmentStatus(fields.status or AssignmentStatus.Requested.value).value
    except ValueError:
        raise ValidationError(f"Unknown assignment status: {fields.status}")
    for label, amount in (("rate", fields.rate), ("fee", fields.fee)):
        if amount is not None and amount < 0:
            raise ValidationError(f"Assignment {label} cannot be negative")

    values = {
        "user_id": fields.user_id,
        "status": status,
        "rate": fields.rate,
        "fee": fields.fee,
        "notes": clean_text(fields.notes),
    }
    if status == AssignmentStatus.Confirmed.value:
        if current is None or current.confirmed_at is None:
            values["confirmed_at"] = utcnow()
    elif current is not None and current.confirmed_at is not None:
        values["confirmed_at"] = None
    return values


def apply_assignments(
    db: Session,
    slot: GigStaffSlot,
    desired: Sequence[Desired[AssignmentFields]],
    stats: ReconcileStats,
    lookups: Lookups,
) -> None:
    if not desired:
        return
    persisted = {a.id: a for a in db.query(GigStaffAssignment).filter(GigStaffAssignment.slot_id == slot.id)}
    keep, new_items = partition_desired(desired, persisted, "assignment")

    to_delete = [aid for aid in persisted if aid not in keep]
    for aid in to_delete:
        db.delete(persisted[aid])
    stats.bump("assignments", "deleted", len(to_delete))

    for aid, fields in keep.items():
        current = persisted[aid]
        if apply_fields(current, _assignment_values(fields, current, lookups)):
            stats.bump("assignments", "updated")

    for fields in new_items:
        db.add(GigStaffAssignment(slot_id=slot.id, **_assignment_values(fields, None, lookups)))
    stats.bump("assignments", "inserted", len(new_items))
    db.flush()


# ---------- staff slots ----------

def _slot_values(db: Session, fields: StaffSlotFields, current: Optional[GigStaffSlot], lookups: Lookups) -> Dict[str, Any]:
    if fields.required_count is None or fields.required_count < 1:
        raise ValidationError("Staff slot required_count must be at least 1")
    org_id = fields.organization_id or (current.organization_id if current is not None else None)
    if not org_id:
        raise ValidationError("Staff slot organization is required")
    lookups.require_organization(org_id)
    return {
        "organization_id": org_id,
        "staff_role_id": resolve_role(db, fields.role),
        "required_count": fields.required_count,
        "notes": clean_text(fields.notes),
    }


def apply_staff_slots(
    db: Session,
    gig: Gig,
    desired: Sequence[Desired[StaffSlotFields]],
    stats: ReconcileStats,
    lookups: Lookups,
) -> None:
    persisted = {s.id: s for s in db.query(GigStaffSlot).filter(GigStaffSlot.gig_id == gig.id)}
    keep, new_items = partition_desired(desired or [], persisted, "staff slot")

    # Deleting a slot cascades to its assignments
    to_delete = [sid for sid in persisted if sid not in keep]
    for sid in to_delete:
        db.delete(persisted[sid])
    stats.bump("staff_slots", "deleted", len(to_delete))
    db.flush()

    for sid, fields in keep.items():
        slot = persisted[sid]
        if apply_fields(slot, _slot_values(db, fields, slot, lookups)):
            slot.updated_at = utcnow()
            stats.bump("staff_slots", "updated")
        apply_assignments(db, slot, fields.assignments, stats, lookups)

    for fields in new_items:
        slot = GigStaffSlot(gig_id=gig.id, **_slot_values(db, fields, None, lookups))
        db.add(slot)
        db.flush()
        stats.bump("staff_slots", "inserted")
        apply_assignments(db, slot, fields.assignments, stats, lookups)


# ---------- gig header ----------

def _check_kits_still_free(db: Session, gig: Gig, start: datetime, end: datetime) -> None:
    """Moving a gig that already holds kits must not double-book their assets."""
    kit_ids = [row.kit_id for row in db.query(GigKitAssignment.kit_id).filter(GigKitAssignment.gig_id == gig.id)]
    lock_kit_assets(db, kit_ids)
    conflicts = []
    for kit_id in kit_ids:
        conflicts.extend(find_kit_conflicts(db, kit_id, gig.id, start, end))
    if conflicts:
        raise ConflictDetected("Gig's kits are already booked in the new window", conflicts)


def apply_gig_changes(
    db: Session,
    identity: ActingIdentity,
    gig: Gig,
    changes: GigChanges,
    stats: ReconcileStats,
) -> None:
    values = changes.provided()
    if not values:
        return

    if "title" in values:
        title = clean_text(values["title"])
        if not title:
            raise ValidationError("Title is required")
        values["title"] = title

    tz = gig.timezone
    if "timezone" in values:
        tz = values["timezone"] = validate_timezone(values["timezone"])

    start = to_utc(values["start"], tz) if values.get("start") is not None else ensure_utc(gig.start)
    end = to_utc(values["end"], tz) if values.get("end") is not None else ensure_utc(gig.end)
    validate_window(start, end)
    window_moved = start != ensure_utc(gig.start) or end != ensure_utc(gig.end)
    values.pop("start", None)
    values.pop("end", None)

    if "status" in values:
        try:
            values["status"] = GigStatus(values["status"]).value
        except ValueError:
            raise ValidationError(f"Unknown gig status: {values['status']}")
    if "tags" in values:
        values["tags"] = dedupe_tags(values["tags"])
    if "notes" in values:
        values["notes"] = clean_text(values["notes"])
    if "amount_paid" in values and values["amount_paid"] is not None and values["amount_paid"] < 0:
        raise ValidationError("Amount paid cannot be negative")

    before = gig_snapshot(gig)

    if window_moved:
        _check_kits_still_free(db, gig, start, end)
        gig.start = start
        gig.end = end

    parent_moved = "parent_gig_id" in values and values["parent_gig_id"] != gig.parent_gig_id
    if parent_moved:
        parent_id = values["parent_gig_id"]
        if parent_id is not None:
            authorize(db, identity, parent_id, Capability.MANAGE)
        gig.hierarchy_depth = validate_parent(db, gig.id, parent_id)
    values.pop("parent_gig_id", None)

    old_status = gig.status
    apply_fields(gig, values)
    if parent_moved:
        gig.parent_gig_id = changes.parent_gig_id

    diff = compute_diff(before, gig_snapshot(gig))
    if diff:
        # Stamp now so the row goes out in the same UPDATE as the header changes
        _touch(gig, identity.user_id)
    if parent_moved:
        db.flush()
        refresh_descendant_depths(db, gig)

    if gig.status != old_status:
        db.add(GigStatusHistory(gig_id=gig.id, from_status=old_status, to_status=gig.status, changed_by=identity.user_id))

    stats.gig_changes.update(diff)


def _touch(gig: Gig, user_id: uuid.UUID) -> None:
    gig.updated_by = user_id
    gig.updated_at = utcnow()


def gig_snapshot(gig: Gig) -> Dict[str, Any]:
    return {
        "title": gig.title,
        "start": ensure_utc(gig.start).isoformat() if gig.start else None,
        "end": ensure_utc(gig.end).isoformat() if gig.end else None,
        "timezone": gig.timezone,
        "status": gig.status,
        "tags": list(gig.tags or []),
        "notes": gig.notes,
        "amount_paid": str(gig.amount_paid) if gig.amount_paid is not None else None,
        "parent_gig_id": str(gig.parent_gig_id) if gig.parent_gig_id else None,
        "hierarchy_depth": gig.hierarchy_depth,
    }


# ---------- entry point ----------

def reconcile_gig(
    db: Session,
    identity: Optional[ActingIdentity],
    gig_id: uuid.UUID,
    participants: Sequence[Desired[ParticipantFields]],
    staff_slots: Sequence[Desired[StaffSlotFields]],
    *,
    expected_version: Optional[int] = None,
    changes: Optional[GigChanges] = None,
) -> Gig:
    """
    Reconcile a gig's participants, staff slots and assignments against the
    desired state, atomically.

    ``expected_version`` is the gig version the caller last read; a mismatch
    raises WriteConflict so concurrent editors never overwrite each other
    blindly. A call that changes nothing writes nothing; any other call
    raises the version by exactly one.
    """
    with unit_of_work(db):
        decision = authorize(db, identity, gig_id, Capability.MANAGE)
        gig = db.query(Gig).filter(Gig.id == gig_id).with_for_update().first()
        if gig is None:
            raise NotFound("Gig not found")
        if expected_version is not None and gig.version != expected_version:
            raise WriteConflict(
                f"Gig was modified by someone else (version {gig.version}, expected {expected_version}); reload and retry"
            )

        stats = ReconcileStats()
        lookups = Lookups(db)
        if changes is not None:
            apply_gig_changes(db, identity, gig, changes, stats)
        apply_participants(db, gig, participants, stats, lookups)
        apply_staff_slots(db, gig, staff_slots, stats, lookups)

        if stats.changed:
            if not stats.gig_changes:
                # Only nested rows changed; the gig row has not been written yet
                _touch(gig, decision.user_id)
            db.flush()
            create_audit_log(
                db,
                entity_type="gig",
                entity_id=gig.id,
                action="UPDATE",
                actor_id=decision.user_id,
                source="api",
                changes_json=stats.to_dict(),
                context={"version": gig.version},
            )
            logger.info("gig_reconciled", gig_id=str(gig.id), version=gig.version, **dict(stats.counts))
        else:
            logger.info("gig_reconcile_noop", gig_id=str(gig.id), version=gig.version)

    # Collections were edited through the session, not the relationships
    db.refresh(gig)
    return gig
