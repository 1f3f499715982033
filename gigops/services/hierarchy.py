from __future__ import annotations

import uuid
from typing import List, Optional, Set
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import NotFound, ValidationError
from ..models.models import Gig


def get_ancestor_chain(gig_id: uuid.UUID, db: Session, max_depth: Optional[int] = None) -> List[uuid.UUID]:
    """
    Return parent gig ids from the direct parent up to the root.

    Raises ValidationError if the stored chain loops back on itself or runs
    deeper than the configured limit.
    """
    if max_depth is None:
        max_depth = settings.max_gig_hierarchy_depth
    chain: List[uuid.UUID] = []
    visited: Set[uuid.UUID] = {gig_id}
    current = db.query(Gig.id, Gig.parent_gig_id).filter(Gig.id == gig_id).first()
    while current and current.parent_gig_id:
        parent_id = current.parent_gig_id
        if parent_id in visited:
            raise ValidationError("Gig hierarchy contains a cycle")
        if len(chain) >= max_depth:
            raise ValidationError(f"Gig hierarchy deeper than {max_depth} levels")
        chain.append(parent_id)
        visited.add(parent_id)
        current = db.query(Gig.id, Gig.parent_gig_id).filter(Gig.id == parent_id).first()
    return chain


def validate_parent(db: Session, gig_id: Optional[uuid.UUID], parent_id: Optional[uuid.UUID]) -> int:
    """
    Check that ``parent_id`` can become the parent of ``gig_id`` and return
    the hierarchy depth the gig must store (0 for a root gig).

    ``gig_id`` is None for a gig that is being created.
    """
    if parent_id is None:
        return 0
    if gig_id is not None and parent_id == gig_id:
        raise ValidationError("A gig cannot be its own parent")
    parent = db.query(Gig.id).filter(Gig.id == parent_id).first()
    if not parent:
        raise NotFound("Parent gig not found")

    ancestors = get_ancestor_chain(parent_id, db)
    if gig_id is not None and gig_id in ancestors:
        raise ValidationError("Gig hierarchy contains a cycle")

    depth = len(ancestors) + 1
    if depth > settings.max_gig_hierarchy_depth:
        raise ValidationError(f"Gig hierarchy deeper than {settings.max_gig_hierarchy_depth} levels")
    return depth


def refresh_descendant_depths(db: Session, gig: Gig) -> None:
    """After a gig moves in the tree, re-derive the stored depth of everything below it."""
    stack = [(gig.id, gig.hierarchy_depth)]
    seen: Set[uuid.UUID] = set()
    while stack:
        current_id, depth = stack.pop()
        if current_id in seen:
            raise ValidationError("Gig hierarchy contains a cycle")
        seen.add(current_id)
        for child in db.query(Gig).filter(Gig.parent_gig_id == current_id).all():
            if depth + 1 > settings.max_gig_hierarchy_depth:
                raise ValidationError(f"Gig hierarchy deeper than {settings.max_gig_hierarchy_depth} levels")
            if child.hierarchy_depth != depth + 1:
                child.hierarchy_depth = depth + 1
            stack.append((child.id, depth + 1))
