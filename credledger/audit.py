"""Audit trail of completed document and role operations."""

import logging
from datetime import datetime, timedelta

from .errors import ValidationError
from .models import AuditEvent, db
from .repositories import paginate

logger = logging.getLogger(__name__)

EVENT_TYPES = (
    "document_upload",
    "document_download",
    "document_access_grant",
    "document_access_revoke",
    "document_transfer",
    "document_deactivate",
    "user_role_change",
    "suspicious_activity",
)


class AuditTrail:
    def record(self, event_type, actor=None, resource_id=None, resource_type="document",
               result="success", ip_address=None, **details) -> AuditEvent:
        if event_type not in EVENT_TYPES:
            raise ValidationError(f"Unknown audit event type: {event_type}")
        event = AuditEvent(
            event_type=event_type,
            actor=actor.address if actor is not None else None,
            actor_role=actor.role if actor is not None else None,
            resource_type=resource_type,
            resource_id=resource_id,
            result=result,
            ip_address=ip_address,
            details=details or None,
        )
        db.session.add(event)
        db.session.commit()
        logger.info("audit %s actor=%s resource=%s", event_type, event.actor, resource_id)
        return event

    def query(self, event_type=None, actor=None, resource_id=None, result=None,
              start=None, end=None, page=1, per_page=50):
        query = db.select(AuditEvent)
        if event_type:
            query = query.filter(AuditEvent.event_type == event_type)
        if actor:
            query = query.filter(AuditEvent.actor == actor.lower())
        if resource_id:
            query = query.filter(AuditEvent.resource_id == resource_id.lower())
        if result:
            query = query.filter(AuditEvent.result == result)
        if start:
            query = query.filter(AuditEvent.timestamp >= start)
        if end:
            query = query.filter(AuditEvent.timestamp <= end)
        return paginate(query.order_by(AuditEvent.id.asc()), page, per_page)

    def prune(self, retention_days=2555) -> int:
        cutoff = datetime.utcnow() - timedelta(days=retention_days)
        deleted = db.session.execute(db.delete(AuditEvent).where(AuditEvent.timestamp < cutoff)).rowcount
        db.session.commit()
        return deleted or 0
