import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Boolean,
    ForeignKey,
    Integer,
    Numeric,
    JSON,
    UniqueConstraint,
    Text,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class OrganizationType(str, enum.Enum):
    Production = "Production"
    Sound = "Sound"
    Lighting = "Lighting"
    Staging = "Staging"
    Rentals = "Rentals"
    Venue = "Venue"
    Act = "Act"
    Agency = "Agency"


class MemberRole(str, enum.Enum):
    Admin = "Admin"
    Manager = "Manager"
    Staff = "Staff"
    Viewer = "Viewer"


class GigStatus(str, enum.Enum):
    DateHold = "DateHold"
    Proposed = "Proposed"
    Booked = "Booked"
    Completed = "Completed"
    Cancelled = "Cancelled"
    Settled = "Settled"


class AssignmentStatus(str, enum.Enum):
    Requested = "Requested"
    Confirmed = "Confirmed"
    Rejected = "Rejected"
    Declined = "Declined"
    Cancelled = "Cancelled"


# ---------- Collaborator tables (owned by the accounts/organizations services) ----------

class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(100))
    last_name: Mapped[Optional[str]] = mapped_column(String(100))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    memberships = relationship("OrganizationMember", back_populates="user", cascade="all, delete-orphan")


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)  # OrganizationType
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    members = relationship("OrganizationMember", back_populates="organization", cascade="all, delete-orphan")


class OrganizationMember(Base):
    __tablename__ = "organization_members"

    id: Mapped[uuid.UUID] = uuid_pk()
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False)  # Admin|Manager|Staff|Viewer
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    organization = relationship("Organization", back_populates="members")
    user = relationship("User", back_populates="memberships")

    __table_args__ = (
        UniqueConstraint("organization_id", "user_id", name="uq_org_member"),
    )


# ---------- Gigs ----------

class Gig(Base):
    """Scheduled event with a time window, staffing and equipment needs"""
    __tablename__ = "gigs"

    id: Mapped[uuid.UUID] = uuid_pk()
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=GigStatus.DateHold.value)
    tags: Mapped[list] = mapped_column(JSON, default=list)
    start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)  # UTC
    end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)  # UTC, exclusive
    timezone: Mapped[str] = mapped_column(String(64), nullable=False)  # Display only
    amount_paid: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    parent_gig_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("gigs.id", ondelete="CASCADE"), index=True)
    hierarchy_depth: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    updated_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    participants = relationship("GigParticipant", back_populates="gig", cascade="all, delete-orphan")
    staff_slots = relationship("GigStaffSlot", back_populates="gig", cascade="all, delete-orphan", order_by="GigStaffSlot.created_at")
    kit_assignments = relationship("GigKitAssignment", back_populates="gig", cascade="all, delete-orphan")
    status_history = relationship("GigStatusHistory", back_populates="gig", cascade="all, delete-orphan", order_by="GigStatusHistory.changed_at")
    children = relationship("Gig", back_populates="parent", cascade="all, delete-orphan")
    parent = relationship("Gig", back_populates="children", remote_side=[id])

    __mapper_args__ = {"version_id_col": version}

    # Indexes for conflict checking
    __table_args__ = (
        Index("idx_gigs_window", "start", "end"),
    )


class GigStatusHistory(Base):
    __tablename__ = "gig_status_history"

    id: Mapped[uuid.UUID] = uuid_pk()
    gig_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("gigs.id", ondelete="CASCADE"), nullable=False, index=True)
    from_status: Mapped[Optional[str]] = mapped_column(String(20))
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    changed_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)

    gig = relationship("Gig", back_populates="status_history")


class GigParticipant(Base):
    """Organization attached to a gig in a named capacity (Venue, Act, ...)"""
    __tablename__ = "gig_participants"

    id: Mapped[uuid.UUID] = uuid_pk()
    gig_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("gigs.id", ondelete="CASCADE"), nullable=False, index=True)
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(50), nullable=False)  # OrganizationType
    notes: Mapped[Optional[str]] = mapped_column(Text)

    gig = relationship("Gig", back_populates="participants")
    organization = relationship("Organization")

    __table_args__ = (
        UniqueConstraint("gig_id", "organization_id", "role", name="uq_gig_participant"),
    )


class StaffRole(Base):
    """Global catalog of staff roles, shared across organizations"""
    __tablename__ = "staff_roles"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class GigStaffSlot(Base):
    """N people of role R needed from organization O for a gig"""
    __tablename__ = "gig_staff_slots"

    id: Mapped[uuid.UUID] = uuid_pk()
    gig_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("gigs.id", ondelete="CASCADE"), nullable=False, index=True)
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    staff_role_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("staff_roles.id", ondelete="RESTRICT"), nullable=False, index=True)
    required_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    gig = relationship("Gig", back_populates="staff_slots")
    staff_role = relationship("StaffRole")
    assignments = relationship("GigStaffAssignment", back_populates="slot", cascade="all, delete-orphan", order_by="GigStaffAssignment.assigned_at")


class GigStaffAssignment(Base):
    """A person's (candidate or confirmed) fulfillment of a staff slot"""
    __tablename__ = "gig_staff_assignments"

    id: Mapped[uuid.UUID] = uuid_pk()
    slot_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("gig_staff_slots.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=AssignmentStatus.Requested.value)
    rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))
    fee: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    slot = relationship("GigStaffSlot", back_populates="assignments")


# ---------- Equipment ----------

class Asset(Base):
    """Physical, rentable item owned by an organization"""
    __tablename__ = "assets"

    id: Mapped[uuid.UUID] = uuid_pk()
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(100), index=True)
    manufacturer_model: Mapped[Optional[str]] = mapped_column(String(255))
    serial_number: Mapped[Optional[str]] = mapped_column(String(255))
    replacement_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Kit(Base):
    """Named, reusable bundle of assets deployed together"""
    __tablename__ = "kits"

    id: Mapped[uuid.UUID] = uuid_pk()
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(100), index=True)
    description: Mapped[Optional[str]] = mapped_column(Text)
    tags: Mapped[list] = mapped_column(JSON, default=list)
    tag_number: Mapped[Optional[str]] = mapped_column(String(100))
    rental_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    updated_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    kit_assets = relationship("KitAsset", back_populates="kit", cascade="all, delete-orphan")
    gig_assignments = relationship("GigKitAssignment", back_populates="kit", cascade="all, delete-orphan")


class KitAsset(Base):
    __tablename__ = "kit_assets"

    id: Mapped[uuid.UUID] = uuid_pk()
    kit_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("kits.id", ondelete="CASCADE"), nullable=False, index=True)
    asset_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("assets.id", ondelete="CASCADE"), nullable=False, index=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    kit = relationship("Kit", back_populates="kit_assets")
    asset = relationship("Asset")

    __table_args__ = (
        UniqueConstraint("kit_id", "asset_id", name="uq_kit_asset"),
    )


class GigKitAssignment(Base):
    """Association of a kit with a gig; deleting either side removes only this row"""
    __tablename__ = "gig_kit_assignments"

    id: Mapped[uuid.UUID] = uuid_pk()
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    gig_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("gigs.id", ondelete="CASCADE"), nullable=False, index=True)
    kit_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("kits.id", ondelete="CASCADE"), nullable=False, index=True)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    assigned_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    gig = relationship("Gig", back_populates="kit_assignments")
    kit = relationship("Kit", back_populates="gig_assignments")

    __table_args__ = (
        UniqueConstraint("gig_id", "kit_id", name="uq_gig_kit"),
    )


class AuditLog(Base):
    """Append-only audit log for gig and kit assignment changes"""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # gig|gig_kit_assignment|kit
    entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # CREATE|UPDATE|DELETE|ASSIGN|UNASSIGN
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)
    source: Mapped[Optional[str]] = mapped_column(String(50))  # api|system
    changes_json: Mapped[Optional[dict]] = mapped_column(JSON)  # Before/after diff
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    context: Mapped[Optional[dict]] = mapped_column(JSON)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 over canonical JSON

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_actor", "actor_id", "timestamp_utc"),
    )
