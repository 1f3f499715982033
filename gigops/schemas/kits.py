import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel

from ..services.kit_conflicts import ConflictReport
from ..services.kits import KitAssetFields, KitChanges, NewKit
from ..services.reconcile import Existing, New


# ---------- kit contents ----------

class KitAssetIn(BaseModel):
    id: Optional[uuid.UUID] = None
    asset_id: uuid.UUID
    quantity: int = 1
    notes: Optional[str] = None

    def to_desired(self):
        fields = KitAssetFields(asset_id=self.asset_id, quantity=self.quantity, notes=self.notes)
        return Existing(self.id, fields) if self.id else New(fields)


class KitCreate(BaseModel):
    organization_id: uuid.UUID
    name: str
    category: Optional[str] = None
    description: Optional[str] = None
    tags: List[str] = []
    tag_number: Optional[str] = None
    rental_value: Optional[Decimal] = None
    assets: List[KitAssetIn] = []

    def to_new_kit(self) -> NewKit:
        return NewKit(
            organization_id=self.organization_id,
            name=self.name,
            category=self.category,
            description=self.description,
            tags=list(self.tags),
            tag_number=self.tag_number,
            rental_value=self.rental_value,
        )


KIT_HEADER_FIELDS = ("name", "category", "description", "tags", "tag_number", "rental_value")


class KitUpdate(BaseModel):
    """Omitted header fields stay as they are. Omitted assets leave the contents alone; [] empties the kit."""
    name: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    tags: Optional[List[str]] = None
    tag_number: Optional[str] = None
    rental_value: Optional[Decimal] = None
    assets: Optional[List[KitAssetIn]] = None

    def to_changes(self) -> KitChanges:
        return KitChanges(**{name: getattr(self, name) for name in KIT_HEADER_FIELDS if name in self.model_fields_set})

    def to_desired_assets(self):
        if self.assets is None:
            return None
        return [a.to_desired() for a in self.assets]


class KitDuplicateRequest(BaseModel):
    name: Optional[str] = None


class KitAssetResponse(BaseModel):
    id: uuid.UUID
    asset_id: uuid.UUID
    quantity: int
    notes: Optional[str] = None

    class Config:
        from_attributes = True


class KitResponse(BaseModel):
    id: uuid.UUID
    organization_id: uuid.UUID
    name: str
    category: Optional[str] = None
    description: Optional[str] = None
    tags: List[str] = []
    tag_number: Optional[str] = None
    rental_value: Optional[Decimal] = None
    kit_assets: List[KitAssetResponse] = []

    class Config:
        from_attributes = True


# ---------- kits on gigs ----------

class KitAssignRequest(BaseModel):
    kit_id: uuid.UUID
    organization_id: uuid.UUID
    notes: Optional[str] = None


class KitAssignmentResponse(BaseModel):
    id: uuid.UUID
    gig_id: uuid.UUID
    kit_id: uuid.UUID
    organization_id: uuid.UUID
    notes: Optional[str] = None
    assigned_by: uuid.UUID
    assigned_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ConflictReportResponse(BaseModel):
    gig_id: uuid.UUID
    title: str
    start: datetime
    end: datetime
    conflicting_asset_ids: List[uuid.UUID]

    @classmethod
    def from_report(cls, report: ConflictReport) -> "ConflictReportResponse":
        return cls(
            gig_id=report.gig_id,
            title=report.title,
            start=report.start,
            end=report.end,
            conflicting_asset_ids=sorted(report.conflicting_asset_ids, key=str),
        )


class KitConflictsResponse(BaseModel):
    kit_id: uuid.UUID
    has_conflicts: bool
    conflicts: List[ConflictReportResponse]
