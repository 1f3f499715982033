import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from ..auth.security import ActingIdentity, get_acting_identity
from ..db import get_db
from ..schemas.kits import (
    ConflictReportResponse,
    KitConflictsResponse,
    KitCreate,
    KitDuplicateRequest,
    KitResponse,
    KitUpdate,
)
from ..services.kit_conflicts import find_kit_conflicts
from ..services.kits import create_kit, delete_kit, duplicate_kit, get_kit, list_kits, update_kit
from ..services.permissions import authorize_kit_read


router = APIRouter(prefix="/kits", tags=["kits"])


@router.get("", response_model=List[KitResponse])
def list_for_organization(
    organization_id: uuid.UUID = Query(...),
    db: Session = Depends(get_db),
    identity: Optional[ActingIdentity] = Depends(get_acting_identity),
):
    return [KitResponse.model_validate(k) for k in list_kits(db, identity, organization_id)]


@router.post("", response_model=KitResponse, status_code=201)
def create(
    payload: KitCreate,
    db: Session = Depends(get_db),
    identity: Optional[ActingIdentity] = Depends(get_acting_identity),
):
    kit = create_kit(db, identity, payload.to_new_kit(), [a.to_desired() for a in payload.assets])
    return KitResponse.model_validate(kit)


@router.get("/{kit_id}", response_model=KitResponse)
def read(
    kit_id: uuid.UUID,
    db: Session = Depends(get_db),
    identity: Optional[ActingIdentity] = Depends(get_acting_identity),
):
    return KitResponse.model_validate(get_kit(db, identity, kit_id))


@router.put("/{kit_id}", response_model=KitResponse)
def update(
    kit_id: uuid.UUID,
    payload: KitUpdate,
    db: Session = Depends(get_db),
    identity: Optional[ActingIdentity] = Depends(get_acting_identity),
):
    kit = update_kit(db, identity, kit_id, assets=payload.to_desired_assets(), changes=payload.to_changes())
    return KitResponse.model_validate(kit)


@router.post("/{kit_id}/duplicate", response_model=KitResponse, status_code=201)
def duplicate(
    kit_id: uuid.UUID,
    payload: KitDuplicateRequest,
    db: Session = Depends(get_db),
    identity: Optional[ActingIdentity] = Depends(get_acting_identity),
):
    return KitResponse.model_validate(duplicate_kit(db, identity, kit_id, payload.name))


@router.delete("/{kit_id}", status_code=204)
def delete(
    kit_id: uuid.UUID,
    db: Session = Depends(get_db),
    identity: Optional[ActingIdentity] = Depends(get_acting_identity),
):
    delete_kit(db, identity, kit_id)
    return Response(status_code=204)


@router.get("/{kit_id}/conflicts", response_model=KitConflictsResponse)
def kit_conflicts(
    kit_id: uuid.UUID,
    start: datetime = Query(...),
    end: datetime = Query(...),
    exclude_gig_id: Optional[uuid.UUID] = Query(None),
    db: Session = Depends(get_db),
    identity: Optional[ActingIdentity] = Depends(get_acting_identity),
):
    """Would booking this kit over [start, end) double-book any of its assets?"""
    authorize_kit_read(db, identity, kit_id, exclude_gig_id)
    conflicts = find_kit_conflicts(db, kit_id, exclude_gig_id, start, end)
    return KitConflictsResponse(
        kit_id=kit_id,
        has_conflicts=bool(conflicts),
        conflicts=[ConflictReportResponse.from_report(c) for c in conflicts],
    )
