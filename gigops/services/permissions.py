"""
Access control gate for gig operations.

A user acts on a gig through their memberships in the organizations that
participate in it:

- READ: any membership (Admin, Manager, Staff or Viewer)
- MANAGE: Admin or Manager
- DELETE: Admin

A gig with no participants grants nothing to anyone.
"""
import enum
import uuid
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..auth.security import ActingIdentity, require_identity
from ..errors import AccessDenied, GigOpsError, NotFound
from ..models.models import Gig, GigParticipant, Kit, MemberRole, Organization, OrganizationMember


class Capability(str, enum.Enum):
    READ = "read"
    MANAGE = "manage"
    DELETE = "delete"


ROLES_FOR_CAPABILITY = {
    Capability.READ: frozenset(r.value for r in MemberRole),
    Capability.MANAGE: frozenset({MemberRole.Admin.value, MemberRole.Manager.value}),
    Capability.DELETE: frozenset({MemberRole.Admin.value}),
}


@dataclass(frozen=True)
class AuthDecision:
    user_id: uuid.UUID
    capability: Capability
    gig_id: Optional[uuid.UUID] = None
    # (organization_id, role) pairs that granted the capability
    memberships: Tuple[Tuple[uuid.UUID, str], ...] = ()
    organization_ids: FrozenSet[uuid.UUID] = field(default_factory=frozenset)

    @property
    def allowed(self) -> bool:
        return bool(self.memberships)


def _memberships(db: Session, user_id: uuid.UUID, org_ids: List[uuid.UUID]) -> List[OrganizationMember]:
    if not org_ids:
        return []
    return (
        db.query(OrganizationMember)
        .filter(OrganizationMember.user_id == user_id, OrganizationMember.organization_id.in_(org_ids))
        .all()
    )


def _decide(
    user_id: uuid.UUID,
    capability: Capability,
    memberships: List[OrganizationMember],
    gig_id: Optional[uuid.UUID] = None,
) -> AuthDecision:
    allowed_roles = ROLES_FOR_CAPABILITY[capability]
    granting = tuple(
        (m.organization_id, m.role) for m in memberships if m.role in allowed_roles
    )
    return AuthDecision(
        user_id=user_id,
        capability=capability,
        gig_id=gig_id,
        memberships=granting,
        organization_ids=frozenset(org_id for org_id, _ in granting),
    )


def authorize(
    db: Session,
    identity: Optional[ActingIdentity],
    gig_id: uuid.UUID,
    capability: Capability = Capability.MANAGE,
) -> AuthDecision:
    """
    Decide whether the acting user holds ``capability`` on the gig.

    Raises NotAuthenticated without an identity, NotFound when the gig does
    not exist and AccessDenied when no membership qualifies. Never writes.
    """
    identity = require_identity(identity)
    exists = db.query(Gig.id).filter(Gig.id == gig_id).first()
    if not exists:
        raise NotFound("Gig not found")

    org_ids = [
        row.organization_id
        for row in db.query(GigParticipant.organization_id).filter(GigParticipant.gig_id == gig_id).distinct()
    ]
    if not org_ids:
        raise AccessDenied("Access denied - no participants found")

    memberships = _memberships(db, identity.user_id, org_ids)
    if not memberships:
        raise AccessDenied("Access denied - not a member of participating organizations")

    decision = _decide(identity.user_id, capability, memberships, gig_id=gig_id)
    if not decision.allowed:
        if capability == Capability.DELETE:
            raise AccessDenied("Access denied - only Admins can delete gigs")
        raise AccessDenied("Access denied - only Admins and Managers can update gigs")
    return decision


def is_authorized(
    db: Session,
    identity: Optional[ActingIdentity],
    gig_id: uuid.UUID,
    capability: Capability = Capability.MANAGE,
) -> bool:
    try:
        authorize(db, identity, gig_id, capability)
    except GigOpsError:
        return False
    return True


def authorize_organization(
    db: Session,
    identity: Optional[ActingIdentity],
    organization_id: uuid.UUID,
    capability: Capability = Capability.MANAGE,
) -> AuthDecision:
    """Same role rule as authorize(), applied to a single organization."""
    identity = require_identity(identity)
    org = db.query(Organization.id).filter(Organization.id == organization_id).first()
    if not org:
        raise NotFound("Organization not found")
    memberships = _memberships(db, identity.user_id, [organization_id])
    decision = _decide(identity.user_id, capability, memberships)
    if not decision.allowed:
        raise AccessDenied("Access denied - insufficient role in organization")
    return decision


def managed_organizations(db: Session, identity: Optional[ActingIdentity], org_ids: List[uuid.UUID]) -> FrozenSet[uuid.UUID]:
    """Organizations among ``org_ids`` where the user is Admin or Manager."""
    identity = require_identity(identity)
    decision = _decide(identity.user_id, Capability.MANAGE, _memberships(db, identity.user_id, list(org_ids)))
    return decision.organization_ids


def authorize_kit_read(
    db: Session,
    identity: Optional[ActingIdentity],
    kit_id: uuid.UUID,
    gig_id: Optional[uuid.UUID] = None,
) -> AuthDecision:
    """
    Read access for kit availability queries.

    Any membership in the kit's owning organization is enough, as is READ on
    the gig the kit is being checked for.
    """
    identity = require_identity(identity)
    kit = db.query(Kit.id, Kit.organization_id).filter(Kit.id == kit_id).first()
    if not kit:
        raise NotFound("Kit not found")
    decision = _decide(identity.user_id, Capability.READ, _memberships(db, identity.user_id, [kit.organization_id]))
    if decision.allowed:
        return decision
    if gig_id is not None:
        return authorize(db, identity, gig_id, Capability.READ)
    raise AccessDenied("Access denied - not a member of the kit's organization")
