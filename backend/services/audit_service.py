"""
Audit Logging Service
Records who did what to which record, after the change has committed.
"""
import logging
from typing import Optional
from datetime import datetime, timezone
from pymongo.errors import PyMongoError

from database import db
from models import to_document
from models.audit import AuditLog, AuditAction, AuditModule

logger = logging.getLogger(__name__)


class AuditService:
    """Service class for creating audit logs."""

    @staticmethod
    async def log(
        action: AuditAction,
        module: AuditModule,
        user: Optional[dict] = None,
        record_id: Optional[str] = None,
        record_type: Optional[str] = None,
        description: Optional[str] = None,
        old_values: Optional[dict] = None,
        new_values: Optional[dict] = None,
        metadata: Optional[dict] = None,
        timestamp: Optional[datetime] = None
    ) -> Optional[str]:
        """
        Create an audit log entry.

        Args:
            action: The action being performed
            module: The module where action occurred
            user: Acting user dict (from get_current_user), or {"id": ...}
            record_id: ID of the affected record
            record_type: Type of record (e.g., "blood_unit", "obligation")
            description: Human-readable description
            old_values: Previous values (for updates)
            new_values: New values (for creates/updates)
            metadata: Additional metadata
            timestamp: Override the entry time (callers running on an injected clock)

        Returns:
            ID of created audit log, or None when the store rejected it.
            The audited change has already committed, so a failed audit
            write is logged rather than raised.
        """
        audit_log = AuditLog(
            user_id=user.get("id") if user else None,
            user_type=user.get("role") if user else None,
            action=action,
            module=module,
            record_id=record_id,
            record_type=record_type,
            description=description,
            old_values=AuditService._clean_sensitive_data(old_values),
            new_values=AuditService._clean_sensitive_data(new_values),
            metadata=metadata,
            timestamp=timestamp or datetime.now(timezone.utc)
        )

        try:
            await db.audit_logs.insert_one(to_document(audit_log))
        except PyMongoError as exc:
            logger.error(f"Audit entry {action.value} for {record_type} {record_id} not stored: {exc}")
            return None

        return audit_log.id

    @staticmethod
    def _clean_sensitive_data(data: Optional[dict]) -> Optional[dict]:
        """Remove sensitive fields from audit data."""
        if not data:
            return None

        sensitive_fields = {"pickup_code", "otp", "otp_code", "token", "secret"}

        cleaned = {}
        for key, value in data.items():
            if key.lower() in sensitive_fields:
                cleaned[key] = "[REDACTED]"
            elif isinstance(value, dict):
                cleaned[key] = AuditService._clean_sensitive_data(value)
            else:
                cleaned[key] = value

        return cleaned


async def audit_update(module: AuditModule, action: AuditAction, user: dict, record_id: str, record_type: str,
                       old_values: dict, new_values: dict, description: Optional[str] = None, **kwargs):
    """Log a state transition."""
    return await AuditService.log(
        action, module, user,
        record_id=record_id, record_type=record_type,
        old_values=old_values, new_values=new_values,
        description=description or f"{action.value.replace('_', ' ').title()} {record_type} {record_id}",
        **kwargs
    )


async def audit_create(module: AuditModule, user: dict, record_id: str, record_type: str, new_values: dict, **kwargs):
    """Log a CREATE action."""
    return await AuditService.log(
        AuditAction.CREATE, module, user,
        record_id=record_id, record_type=record_type,
        new_values=new_values,
        description=f"Created {record_type} {record_id}",
        **kwargs
    )
