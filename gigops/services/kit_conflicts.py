"""
Equipment conflict detection service.
Reports every other gig whose window overlaps a candidate window and whose
assigned kits share at least one asset with the kit being checked.

This is a read-only report. Writers that can create a double-booking
(assigning a kit, moving a gig, changing a kit's contents) call
lock_kit_assets first and re-run it inside their own transaction.
"""
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, Iterable, List, Optional, Set

import structlog
from sqlalchemy import and_
from sqlalchemy.orm import Session

from ..errors import NotFound
from ..models.models import Asset, Gig, GigKitAssignment, Kit, KitAsset
from .time_rules import ensure_utc, overlap_conditions, resolve_boundary, to_utc, validate_window

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ConflictReport:
    gig_id: uuid.UUID
    title: str
    start: datetime
    end: datetime
    conflicting_asset_ids: FrozenSet[uuid.UUID]

    def to_dict(self) -> dict:
        return {
            "gig_id": str(self.gig_id),
            "title": self.title,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "conflicting_asset_ids": sorted(str(a) for a in self.conflicting_asset_ids),
        }


def kit_asset_ids(db: Session, kit_id: uuid.UUID) -> Set[uuid.UUID]:
    return {row.asset_id for row in db.query(KitAsset.asset_id).filter(KitAsset.kit_id == kit_id)}


def asset_lock_query(db: Session, kit_ids: Iterable[uuid.UUID]):
    # Id order so two writers locking overlapping kits cannot deadlock
    return (
        db.query(Asset.id)
        .join(KitAsset, KitAsset.asset_id == Asset.id)
        .filter(KitAsset.kit_id.in_(list(kit_ids)))
        .order_by(Asset.id)
        .with_for_update(of=Asset)
    )


def lock_kit_assets(db: Session, kit_ids: Iterable[uuid.UUID]) -> None:
    """
    Row-lock every asset in the given kits until the transaction ends.

    Any writer about to check and then create an asset booking takes these
    locks first, so a second writer touching the same assets waits for the
    first to commit and then sees its rows. No-op on SQLite.
    """
    kit_ids = list(kit_ids)
    if kit_ids:
        asset_lock_query(db, kit_ids).all()


def find_kit_conflicts(
    db: Session,
    kit_id: uuid.UUID,
    exclude_gig_id: Optional[uuid.UUID],
    start: datetime,
    end: datetime,
    *,
    boundary: Optional[str] = None,
) -> List[ConflictReport]:
    """
    Find gigs that would double-book an asset of ``kit_id`` during [start, end).

    Args:
        db: Database session
        kit_id: Kit being assigned
        exclude_gig_id: Gig the kit is being assigned to (never reported against itself)
        start: Candidate window start
        end: Candidate window end
        boundary: inclusive|exclusive, defaults to settings.kit_conflict_boundary

    Returns:
        One ConflictReport per conflicting gig, in no particular order.
        An empty list means no conflict.
    """
    if not db.query(Kit.id).filter(Kit.id == kit_id).first():
        raise NotFound("Kit not found")
    validate_window(start, end)
    boundary = resolve_boundary(boundary)
    start, end = to_utc(start), to_utc(end)

    wanted = kit_asset_ids(db, kit_id)
    if not wanted:
        return []

    query = (
        db.query(Gig.id, Gig.title, Gig.start, Gig.end, KitAsset.asset_id)
        .join(GigKitAssignment, GigKitAssignment.gig_id == Gig.id)
        .join(KitAsset, KitAsset.kit_id == GigKitAssignment.kit_id)
        .filter(and_(*overlap_conditions(Gig.start, Gig.end, start, end, boundary)))
    )
    if exclude_gig_id is not None:
        query = query.filter(Gig.id != exclude_gig_id)

    gigs: Dict[uuid.UUID, tuple] = {}
    gig_assets: Dict[uuid.UUID, Set[uuid.UUID]] = defaultdict(set)
    for row in query.all():
        gigs[row.id] = (row.title, ensure_utc(row.start), ensure_utc(row.end))
        gig_assets[row.id].add(row.asset_id)

    conflicts = []
    for gig_id, used in gig_assets.items():
        shared = used & wanted
        if shared:
            title, gig_start, gig_end = gigs[gig_id]
            conflicts.append(
                ConflictReport(
                    gig_id=gig_id,
                    title=title,
                    start=gig_start,
                    end=gig_end,
                    conflicting_asset_ids=frozenset(shared),
                )
            )

    if conflicts:
        logger.info(
            "kit_conflicts_found",
            kit_id=str(kit_id),
            exclude_gig_id=str(exclude_gig_id) if exclude_gig_id else None,
            boundary=boundary,
            gig_ids=[str(c.gig_id) for c in conflicts],
        )
    return conflicts
