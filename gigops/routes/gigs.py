import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from ..auth.security import ActingIdentity, get_acting_identity
from ..db import get_db
from ..schemas.gigs import GigCreate, GigResponse, GigUpdate
from ..schemas.kits import KitAssignRequest, KitAssignmentResponse
from ..services.gigs import create_gig, delete_gig, get_gig, list_gigs_for_organization
from ..services.kit_assignments import assign_kit_to_gig, list_gig_kits, remove_kit_from_gig
from ..services.reconcile import reconcile_gig


router = APIRouter(prefix="/gigs", tags=["gigs"])


@router.get("", response_model=List[GigResponse])
def list_for_organization(
    organization_id: uuid.UUID = Query(...),
    db: Session = Depends(get_db),
    identity: Optional[ActingIdentity] = Depends(get_acting_identity),
):
    return [GigResponse.model_validate(g) for g in list_gigs_for_organization(db, identity, organization_id)]


@router.post("", response_model=GigResponse, status_code=201)
def create(
    payload: GigCreate,
    db: Session = Depends(get_db),
    identity: Optional[ActingIdentity] = Depends(get_acting_identity),
):
    gig = create_gig(
        db,
        identity,
        payload.to_new_gig(),
        participants=[p.to_desired() for p in payload.participants],
        staff_slots=[s.to_desired() for s in payload.staff_slots],
    )
    return GigResponse.model_validate(gig)


@router.get("/{gig_id}", response_model=GigResponse)
def read(
    gig_id: uuid.UUID,
    db: Session = Depends(get_db),
    identity: Optional[ActingIdentity] = Depends(get_acting_identity),
):
    return GigResponse.model_validate(get_gig(db, identity, gig_id))


@router.put("/{gig_id}", response_model=GigResponse)
def update(
    gig_id: uuid.UUID,
    payload: GigUpdate,
    db: Session = Depends(get_db),
    identity: Optional[ActingIdentity] = Depends(get_acting_identity),
):
    gig = reconcile_gig(
        db,
        identity,
        gig_id,
        participants=[p.to_desired() for p in payload.participants],
        staff_slots=[s.to_desired() for s in payload.staff_slots],
        expected_version=payload.version,
        changes=payload.to_changes(),
    )
    return GigResponse.model_validate(gig)


@router.delete("/{gig_id}", status_code=204)
def delete(
    gig_id: uuid.UUID,
    db: Session = Depends(get_db),
    identity: Optional[ActingIdentity] = Depends(get_acting_identity),
):
    delete_gig(db, identity, gig_id)
    return Response(status_code=204)


# ---------- kits on a gig ----------

@router.get("/{gig_id}/kits", response_model=List[KitAssignmentResponse])
def list_kits(
    gig_id: uuid.UUID,
    db: Session = Depends(get_db),
    identity: Optional[ActingIdentity] = Depends(get_acting_identity),
):
    return [KitAssignmentResponse.model_validate(a) for a in list_gig_kits(db, identity, gig_id)]


@router.post("/{gig_id}/kits", response_model=KitAssignmentResponse, status_code=201)
def assign_kit(
    gig_id: uuid.UUID,
    payload: KitAssignRequest,
    db: Session = Depends(get_db),
    identity: Optional[ActingIdentity] = Depends(get_acting_identity),
):
    assignment = assign_kit_to_gig(db, identity, gig_id, payload.kit_id, payload.organization_id, payload.notes)
    return KitAssignmentResponse.model_validate(assignment)


@router.delete("/{gig_id}/kits/{assignment_id}", status_code=204)
def unassign_kit(
    gig_id: uuid.UUID,
    assignment_id: uuid.UUID,
    db: Session = Depends(get_db),
    identity: Optional[ActingIdentity] = Depends(get_acting_identity),
):
    remove_kit_from_gig(db, identity, assignment_id, gig_id=gig_id)
    return Response(status_code=204)
