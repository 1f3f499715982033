import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, field_validator, model_validator

from ..config import settings
from ..services.gigs import NewGig
from ..services.reconcile import (
    AssignmentFields,
    Existing,
    GigChanges,
    New,
    ParticipantFields,
    StaffSlotFields,
)
from ..services.time_rules import ensure_utc


# ---------- desired state (input) ----------
# An item with an id updates that row; an item without one is inserted.

class ParticipantIn(BaseModel):
    id: Optional[uuid.UUID] = None
    organization_id: uuid.UUID
    role: str  # OrganizationType
    notes: Optional[str] = None

    def to_desired(self):
        fields = ParticipantFields(organization_id=self.organization_id, role=self.role, notes=self.notes)
        return Existing(self.id, fields) if self.id else New(fields)


class AssignmentIn(BaseModel):
    id: Optional[uuid.UUID] = None
    user_id: uuid.UUID
    status: str = "Requested"
    rate: Optional[Decimal] = None
    fee: Optional[Decimal] = None
    notes: Optional[str] = None

    def to_desired(self):
        fields = AssignmentFields(
            user_id=self.user_id,
            status=self.status,
            rate=self.rate,
            fee=self.fee,
            notes=self.notes,
        )
        return Existing(self.id, fields) if self.id else New(fields)


class StaffSlotIn(BaseModel):
    id: Optional[uuid.UUID] = None
    role: str
    organization_id: Optional[uuid.UUID] = None
    required_count: int = 1
    notes: Optional[str] = None
    # Omitted or empty leaves the slot's current assignments alone
    assignments: List[AssignmentIn] = []

    def to_desired(self):
        fields = StaffSlotFields(
            role=self.role,
            organization_id=self.organization_id,
            required_count=self.required_count,
            notes=self.notes,
            assignments=tuple(a.to_desired() for a in self.assignments),
        )
        return Existing(self.id, fields) if self.id else New(fields)


class GigCreate(BaseModel):
    title: str
    start: datetime
    end: datetime
    timezone: str = settings.tz_default
    status: str = "DateHold"
    tags: List[str] = []
    notes: Optional[str] = None
    amount_paid: Optional[Decimal] = None
    parent_gig_id: Optional[uuid.UUID] = None
    participants: List[ParticipantIn]
    staff_slots: List[StaffSlotIn] = []

    def to_new_gig(self) -> NewGig:
        return NewGig(
            title=self.title,
            start=self.start,
            end=self.end,
            timezone=self.timezone,
            status=self.status,
            tags=list(self.tags),
            notes=self.notes,
            amount_paid=self.amount_paid,
            parent_gig_id=self.parent_gig_id,
        )


GIG_HEADER_FIELDS = ("title", "start", "end", "timezone", "status", "tags", "notes", "amount_paid", "parent_gig_id")


class GigUpdate(BaseModel):
    """
    Full desired state of a gig. Header fields that are omitted stay as they
    are; an omitted or empty participant list leaves participants alone; an
    omitted or empty staff slot list removes every slot.
    """
    version: Optional[int] = None
    title: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    timezone: Optional[str] = None
    status: Optional[str] = None
    tags: Optional[List[str]] = None
    notes: Optional[str] = None
    amount_paid: Optional[Decimal] = None
    parent_gig_id: Optional[uuid.UUID] = None
    participants: List[ParticipantIn] = []
    staff_slots: List[StaffSlotIn] = []

    def to_changes(self) -> GigChanges:
        provided = {name: getattr(self, name) for name in GIG_HEADER_FIELDS if name in self.model_fields_set}
        return GigChanges(**provided)


# ---------- responses ----------

class ParticipantResponse(BaseModel):
    id: uuid.UUID
    organization_id: uuid.UUID
    role: str
    notes: Optional[str] = None

    class Config:
        from_attributes = True


class AssignmentResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    status: str
    rate: Optional[Decimal] = None
    fee: Optional[Decimal] = None
    notes: Optional[str] = None
    assigned_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class StaffSlotResponse(BaseModel):
    id: uuid.UUID
    organization_id: uuid.UUID
    staff_role_id: uuid.UUID
    role: str
    required_count: int
    notes: Optional[str] = None
    assignments: List[AssignmentResponse] = []

    class Config:
        from_attributes = True

    @model_validator(mode="before")
    @classmethod
    def _role_name(cls, data: Any) -> Any:
        # ORM slots carry the catalog row, not the name
        if isinstance(data, dict):
            return data
        return {
            "id": data.id,
            "organization_id": data.organization_id,
            "staff_role_id": data.staff_role_id,
            "role": data.staff_role.name,
            "required_count": data.required_count,
            "notes": data.notes,
            "assignments": list(data.assignments),
        }


class GigResponse(BaseModel):
    id: uuid.UUID
    title: str
    status: str
    tags: List[str] = []
    start: datetime
    end: datetime
    timezone: str
    amount_paid: Optional[Decimal] = None
    notes: Optional[str] = None
    parent_gig_id: Optional[uuid.UUID] = None
    hierarchy_depth: int
    version: int
    created_by: uuid.UUID
    updated_by: uuid.UUID
    participants: List[ParticipantResponse] = []
    staff_slots: List[StaffSlotResponse] = []

    class Config:
        from_attributes = True

    @field_validator("start", "end")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @field_validator("tags", mode="before")
    @classmethod
    def _tags(cls, v):
        return v or []
