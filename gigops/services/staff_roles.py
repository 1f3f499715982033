"""
Staff role catalog: free-text role names to stable ids.

The catalog is global, so two editors can introduce the same new role at the
same moment. Creation is an upsert against the unique ``name`` constraint,
never select-then-insert.
"""
import uuid

import structlog
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..errors import ValidationError
from ..models.models import StaffRole

logger = structlog.get_logger(__name__)

_UPSERT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def resolve_role(db: Session, name: str) -> uuid.UUID:
    """Return the id of the staff role called ``name``, creating it on first use."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("Staff role is required")

    dialect = db.get_bind().dialect.name
    insert_fn = _UPSERT_INSERTS.get(dialect)
    if insert_fn is not None:
        stmt = insert_fn(StaffRole).values(name=name).on_conflict_do_nothing(index_elements=["name"])
        result = db.execute(stmt)
        if result.rowcount:
            logger.info("staff_role_created", name=name)
    else:
        _insert_with_savepoint(db, name)

    return db.execute(select(StaffRole.id).where(StaffRole.name == name)).scalar_one()


def _insert_with_savepoint(db: Session, name: str) -> None:
    # Dialects without ON CONFLICT: a losing concurrent insert only rolls back the savepoint.
    if db.execute(select(StaffRole.id).where(StaffRole.name == name)).first():
        return
    try:
        with db.begin_nested():
            db.add(StaffRole(name=name))
        logger.info("staff_role_created", name=name)
    except IntegrityError:
        logger.info("staff_role_create_raced", name=name)
