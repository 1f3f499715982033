"""
Kit management: create, read, edit, duplicate and delete kits.

A kit's contents are edited with the same id-based diff as a gig's nested
collections (see reconcile). Changing the contents of a kit that is already
booked on gigs re-runs conflict detection for each of those gigs inside the
same transaction, so adding an asset cannot double-book it.
"""
import uuid
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy.orm import Session

from ..auth.security import ActingIdentity
from ..db import unit_of_work
from ..errors import ConflictDetected, NotFound, ValidationError
from ..models.models import Asset, Gig, GigKitAssignment, Kit, KitAsset, utcnow
from .audit import compute_diff, create_audit_log
from .kit_conflicts import find_kit_conflicts, lock_kit_assets
from .permissions import Capability, authorize_kit_read, authorize_organization
from .reconcile import (
    UNSET,
    Desired,
    ReconcileStats,
    apply_fields,
    clean_text,
    dedupe_tags,
    partition_desired,
)
from .time_rules import ensure_utc

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class KitAssetFields:
    asset_id: Optional[uuid.UUID]
    quantity: int = 1
    notes: Optional[str] = None


@dataclass(frozen=True)
class NewKit:
    organization_id: uuid.UUID
    name: str
    category: Optional[str] = None
    description: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    tag_number: Optional[str] = None
    rental_value: Optional[Decimal] = None


@dataclass(frozen=True)
class KitChanges:
    """Kit header fields to change. UNSET leaves a field alone."""
    name: Any = UNSET
    category: Any = UNSET
    description: Any = UNSET
    tags: Any = UNSET
    tag_number: Any = UNSET
    rental_value: Any = UNSET

    def provided(self) -> Dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not UNSET}


def kit_snapshot(kit: Kit) -> Dict[str, Any]:
    return {
        "name": kit.name,
        "category": kit.category,
        "description": kit.description,
        "tags": list(kit.tags or []),
        "tag_number": kit.tag_number,
        "rental_value": str(kit.rental_value) if kit.rental_value is not None else None,
    }


def _header_values(values: Dict[str, Any]) -> Dict[str, Any]:
    if "name" in values:
        name = clean_text(values["name"])
        if not name:
            raise ValidationError("Kit name is required")
        values["name"] = name
    for key in ("category", "description", "tag_number"):
        if key in values:
            values[key] = clean_text(values[key])
    if "tags" in values:
        values["tags"] = dedupe_tags(values["tags"])
    if values.get("rental_value") is not None and values["rental_value"] < 0:
        raise ValidationError("Rental value cannot be negative")
    return values


def _kit_asset_values(db: Session, kit: Kit, fields: KitAssetFields) -> Dict[str, Any]:
    if not fields.asset_id:
        raise ValidationError("Kit asset is required")
    if fields.quantity is None or fields.quantity < 1:
        raise ValidationError("Kit asset quantity must be at least 1")
    asset = db.query(Asset.id, Asset.organization_id).filter(Asset.id == fields.asset_id).first()
    if asset is None:
        raise NotFound(f"Asset {fields.asset_id} not found")
    if asset.organization_id != kit.organization_id:
        raise ValidationError("Kits can only hold assets of their own organization")
    return {"asset_id": fields.asset_id, "quantity": fields.quantity, "notes": clean_text(fields.notes)}


def apply_kit_assets(
    db: Session,
    kit: Kit,
    desired: Sequence[Desired[KitAssetFields]],
    stats: ReconcileStats,
) -> None:
    """Diff a kit's contents against ``desired``. An empty list empties the kit."""
    persisted = {ka.id: ka for ka in db.query(KitAsset).filter(KitAsset.kit_id == kit.id)}
    keep, new_items = partition_desired(desired, persisted, "kit asset")

    kept_values = {kid: _kit_asset_values(db, kit, fields) for kid, fields in keep.items()}
    new_values = [_kit_asset_values(db, kit, fields) for fields in new_items]
    counts = Counter(v["asset_id"] for v in list(kept_values.values()) + new_values)
    if any(n > 1 for n in counts.values()):
        raise ValidationError("Asset listed twice in the same kit")

    to_delete = [kid for kid in persisted if kid not in keep]
    for kid in to_delete:
        db.delete(persisted[kid])
    stats.bump("kit_assets", "deleted", len(to_delete))
    db.flush()

    # Kept rows trading assets among themselves would trip uq_kit_asset one
    # UPDATE at a time; take them out first and put them back under their ids.
    moving = [kid for kid, values in kept_values.items() if persisted[kid].asset_id != values["asset_id"]]
    if len(moving) > 1:
        created = {kid: persisted[kid].created_at for kid in moving}
        for kid in moving:
            db.delete(persisted.pop(kid))
        db.flush()
        for kid in moving:
            db.add(KitAsset(id=kid, kit_id=kit.id, created_at=created[kid], **kept_values.pop(kid)))
        stats.bump("kit_assets", "updated", len(moving))

    for kid, values in kept_values.items():
        if apply_fields(persisted[kid], values):
            stats.bump("kit_assets", "updated")

    for values in new_values:
        db.add(KitAsset(kit_id=kit.id, **values))
    stats.bump("kit_assets", "inserted", len(new_values))
    db.flush()


def _recheck_bookings(db: Session, kit: Kit) -> None:
    """Every gig already holding this kit must still be free of double-bookings."""
    gigs = (
        db.query(Gig)
        .join(GigKitAssignment, GigKitAssignment.gig_id == Gig.id)
        .filter(GigKitAssignment.kit_id == kit.id)
        .order_by(Gig.id)
        .with_for_update(of=Gig)
        .all()
    )
    if not gigs:
        return
    lock_kit_assets(db, [kit.id])
    conflicts = []
    for gig in gigs:
        conflicts.extend(find_kit_conflicts(db, kit.id, gig.id, ensure_utc(gig.start), ensure_utc(gig.end)))
    if conflicts:
        logger.warning(
            "kit_update_rejected",
            kit_id=str(kit.id),
            conflicting_gig_ids=sorted({str(c.gig_id) for c in conflicts}),
        )
        raise ConflictDetected("Kit is booked on gigs where its new assets are already in use", conflicts)


def _load_kit(db: Session, kit_id: uuid.UUID, lock: bool = False) -> Kit:
    query = db.query(Kit).filter(Kit.id == kit_id)
    if lock:
        query = query.with_for_update()
    kit = query.first()
    if kit is None:
        raise NotFound("Kit not found")
    return kit


def create_kit(
    db: Session,
    identity: Optional[ActingIdentity],
    data: NewKit,
    assets: Sequence[Desired[KitAssetFields]] = (),
) -> Kit:
    """Create a kit and its contents in one transaction. Admins and Managers of the owning organization only."""
    with unit_of_work(db):
        decision = authorize_organization(db, identity, data.organization_id, Capability.MANAGE)
        values = _header_values({
            "name": data.name,
            "category": data.category,
            "description": data.description,
            "tags": data.tags,
            "tag_number": data.tag_number,
            "rental_value": data.rental_value,
        })
        kit = Kit(
            organization_id=data.organization_id,
            created_by=decision.user_id,
            updated_by=decision.user_id,
            **values,
        )
        db.add(kit)
        db.flush()
        stats = ReconcileStats()
        apply_kit_assets(db, kit, assets, stats)
        create_audit_log(
            db,
            entity_type="kit",
            entity_id=kit.id,
            action="CREATE",
            actor_id=decision.user_id,
            source="api",
            changes_json={"after": kit_snapshot(kit), **stats.to_dict()},
            context={"organization_id": data.organization_id},
        )
        logger.info("kit_created", kit_id=str(kit.id), **dict(stats.counts))

    db.refresh(kit)
    return kit


def get_kit(db: Session, identity: Optional[ActingIdentity], kit_id: uuid.UUID) -> Kit:
    authorize_kit_read(db, identity, kit_id)
    return _load_kit(db, kit_id)


def list_kits(db: Session, identity: Optional[ActingIdentity], organization_id: uuid.UUID) -> List[Kit]:
    authorize_organization(db, identity, organization_id, Capability.READ)
    return db.query(Kit).filter(Kit.organization_id == organization_id).order_by(Kit.name).all()


def update_kit(
    db: Session,
    identity: Optional[ActingIdentity],
    kit_id: uuid.UUID,
    assets: Optional[Sequence[Desired[KitAssetFields]]] = None,
    changes: Optional[KitChanges] = None,
) -> Kit:
    """
    Edit a kit's header and, when ``assets`` is given, its contents.

    ``assets=None`` leaves the contents alone; an empty list empties the kit.
    Raises ConflictDetected when the new contents would double-book an asset
    on any gig the kit is already assigned to.
    """
    with unit_of_work(db):
        kit = _load_kit(db, kit_id, lock=True)
        decision = authorize_organization(db, identity, kit.organization_id, Capability.MANAGE)

        before = kit_snapshot(kit)
        if changes is not None:
            apply_fields(kit, _header_values(changes.provided()))
        diff = compute_diff(before, kit_snapshot(kit))

        stats = ReconcileStats()
        if assets is not None:
            apply_kit_assets(db, kit, assets, stats)
            if stats.counts["kit_assets_inserted"] or stats.counts["kit_assets_updated"]:
                _recheck_bookings(db, kit)

        if diff or stats.changed:
            kit.updated_by = decision.user_id
            kit.updated_at = utcnow()
            create_audit_log(
                db,
                entity_type="kit",
                entity_id=kit.id,
                action="UPDATE",
                actor_id=decision.user_id,
                source="api",
                changes_json={**stats.to_dict(), **({"kit": diff} if diff else {})},
            )
            logger.info("kit_updated", kit_id=str(kit.id), **dict(stats.counts))

    db.refresh(kit)
    return kit


def duplicate_kit(
    db: Session,
    identity: Optional[ActingIdentity],
    kit_id: uuid.UUID,
    name: Optional[str] = None,
) -> Kit:
    """Copy a kit and its contents under a new name. The copy is not booked anywhere."""
    with unit_of_work(db):
        source = _load_kit(db, kit_id)
        decision = authorize_organization(db, identity, source.organization_id, Capability.MANAGE)
        copy = Kit(
            organization_id=source.organization_id,
            name=clean_text(name) or f"{source.name} (Copy)",
            category=source.category,
            description=source.description,
            tags=list(source.tags or []),
            created_by=decision.user_id,
            updated_by=decision.user_id,
        )
        db.add(copy)
        db.flush()
        for item in db.query(KitAsset).filter(KitAsset.kit_id == source.id):
            db.add(KitAsset(kit_id=copy.id, asset_id=item.asset_id, quantity=item.quantity, notes=item.notes))
        create_audit_log(
            db,
            entity_type="kit",
            entity_id=copy.id,
            action="CREATE",
            actor_id=decision.user_id,
            source="api",
            changes_json={"after": kit_snapshot(copy)},
            context={"duplicated_from": source.id},
        )
        logger.info("kit_duplicated", kit_id=str(copy.id), source_kit_id=str(source.id))

    db.refresh(copy)
    return copy


def delete_kit(db: Session, identity: Optional[ActingIdentity], kit_id: uuid.UUID) -> None:
    """Delete a kit, its contents and its gig bookings. Assets are never touched. Admins only."""
    with unit_of_work(db):
        kit = _load_kit(db, kit_id, lock=True)
        decision = authorize_organization(db, identity, kit.organization_id, Capability.DELETE)
        booked_on = [row.gig_id for row in db.query(GigKitAssignment.gig_id).filter(GigKitAssignment.kit_id == kit_id)]
        snapshot = kit_snapshot(kit)
        db.delete(kit)
        create_audit_log(
            db,
            entity_type="kit",
            entity_id=kit_id,
            action="DELETE",
            actor_id=decision.user_id,
            source="api",
            changes_json={"before": snapshot},
            context={"gig_ids": booked_on},
        )
    logger.info("kit_deleted", kit_id=str(kit_id), released_gigs=len(booked_on))
