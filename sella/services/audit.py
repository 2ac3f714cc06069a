from typing import Optional

from sqlalchemy.orm import Session

from sella.models.audit_log import AuditLog


def add_audit(
    db: Session,
    entity: str,
    entity_id,
    action: str,
    diff: Optional[dict] = None,
    actor_id=None,
    actor_role: Optional[str] = None,
) -> AuditLog:
    """Stage an audit row on the session; the caller commits."""
    row = AuditLog(
        actor_id=str(actor_id) if actor_id is not None else None,
        actor_role=actor_role,
        entity=entity,
        entity_id=str(entity_id),
        action=action,
        diff=diff,
    )
    db.add(row)
    return row
