"""
Audit trail for gig, kit and kit assignment changes.

Rows are append-only and carry a SHA256 over their canonical JSON plus a
secret, so later edits to a row can be detected. Entries join the caller's
unit of work: a rolled back change leaves no audit row behind.
"""
import hashlib
import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import AuditLog, utcnow
from .time_rules import ensure_utc


def _integrity_hash(
    secret: str,
    entity_type: str,
    entity_id: uuid.UUID,
    action: str,
    actor_id: Optional[uuid.UUID],
    source: Optional[str],
    timestamp_utc: datetime,
    changes: Optional[Dict],
    context: Optional[Dict],
) -> str:
    canonical = {
        "entity_type": entity_type,
        "entity_id": str(entity_id),
        "action": action,
        "actor_id": str(actor_id) if actor_id else None,
        "source": source,
        "timestamp_utc": ensure_utc(timestamp_utc).isoformat(),
        "changes": changes,
        "context": context,
    }
    canonical = {k: v for k, v in canonical.items() if v is not None}
    payload = json.dumps(canonical, sort_keys=True, default=str)
    return hashlib.sha256(f"{payload}:{secret}".encode()).hexdigest()


def create_audit_log(
    db: Session,
    entity_type: str,
    entity_id: uuid.UUID,
    action: str,
    actor_id: Optional[uuid.UUID] = None,
    source: Optional[str] = None,
    changes_json: Optional[Dict] = None,
    context: Optional[Dict] = None,
    integrity_secret: Optional[str] = None,
) -> AuditLog:
    """
    Add an audit log entry to the current transaction.

    Args:
        db: Database session
        entity_type: gig|gig_kit_assignment|kit
        entity_id: Entity ID
        action: CREATE|UPDATE|DELETE|ASSIGN|UNASSIGN
        actor_id: User ID who performed the action
        source: api|system
        changes_json: Before/after diff or reconcile summary
        context: Additional context (gig_id, kit_id, ...)
        integrity_secret: Secret for integrity hash (defaults to JWT_SECRET)
    """
    source = source or "system"
    timestamp_utc = utcnow()
    changes_json = _jsonable(changes_json)
    context = _jsonable(context)
    secret = settings.jwt_secret if integrity_secret is None else integrity_secret

    audit_log = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=actor_id,
        source=source,
        changes_json=changes_json,
        timestamp_utc=timestamp_utc,
        context=context,
        integrity_hash=_integrity_hash(
            secret, entity_type, entity_id, action, actor_id, source, timestamp_utc, changes_json, context
        ) if secret else None,
    )
    db.add(audit_log)
    return audit_log


def verify_audit_log(entry: AuditLog, integrity_secret: Optional[str] = None) -> bool:
    """True if the stored hash still matches the row's content."""
    secret = settings.jwt_secret if integrity_secret is None else integrity_secret
    if not entry.integrity_hash or not secret:
        return False
    expected = _integrity_hash(
        secret,
        entry.entity_type,
        entry.entity_id,
        entry.action,
        entry.actor_id,
        entry.source,
        entry.timestamp_utc,
        entry.changes_json,
        entry.context,
    )
    return expected == entry.integrity_hash


def audit_trail(db: Session, entity_id: uuid.UUID) -> List[AuditLog]:
    """Entries for one gig or kit assignment, oldest first."""
    return (
        db.query(AuditLog)
        .filter(AuditLog.entity_id == entity_id)
        .order_by(AuditLog.timestamp_utc)
        .all()
    )


def compute_diff(before: Dict, after: Dict) -> Dict:
    """Changed keys only, as {key: {"before": ..., "after": ...}}."""
    diff = {}
    for key in set(before.keys()) | set(after.keys()):
        if before.get(key) != after.get(key):
            diff[key] = {"before": before.get(key), "after": after.get(key)}
    return diff


def _jsonable(value: Any) -> Any:
    # JSON columns need plain types; uuids, datetimes and decimals become strings
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))
