import logging
from datetime import datetime, timezone
from typing import Optional, Any, Dict

from sqlalchemy.orm import Session

from telemed import models

logger = logging.getLogger(__name__)


class ComplianceLogger:
    """Writes audit events into the AuditLog table inside the caller's session.

    The entry joins the caller's transaction, so it is committed together with
    the mutation it describes and disappears with it on rollback.
    """

    STANDARD_ACTIONS = {a.value for a in models.AuditAction}

    @classmethod
    def normalize_action(cls, action: str) -> models.AuditAction:
        """Reduce a free-form event name (e.g. 'create_appointment') to the AuditAction enum."""
        action_upper = (action or '').upper()
        if action_upper in cls.STANDARD_ACTIONS:
            return models.AuditAction(action_upper)

        # Pattern-based reductions to standard enum values
        if 'LOGIN' in action_upper:
            return models.AuditAction.LOGIN
        if 'LOGOUT' in action_upper:
            return models.AuditAction.LOGOUT
        if 'DENIED' in action_upper:
            return models.AuditAction.ACCESS_DENIED
        if 'PAYMENT' in action_upper:
            return models.AuditAction.PAYMENT
        if action_upper.endswith('_CREATE') or action_upper.startswith('CREATE_'):
            return models.AuditAction.CREATE
        if action_upper.endswith('_DELETE') or action_upper.startswith('DELETE_'):
            return models.AuditAction.DELETE
        if (action_upper.endswith('_UPDATE') or action_upper.startswith('UPDATE_')
                or 'CANCEL' in action_upper or 'EXPIRE' in action_upper
                or 'BOOK' in action_upper or 'CONFIRM' in action_upper):
            # Mutations that are not strictly create/delete fall back to UPDATE
            return models.AuditAction.UPDATE
        return models.AuditAction.READ

    def log_event(
        self,
        db: Optional[Session],
        user_id: Optional[int],
        action: str,
        category: str,
        details: Optional[str] = None,
        severity: str = 'INFO',
        resource_type: Optional[str] = None,
        resource_id: Optional[int] = None,
        username: Optional[str] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
    ) -> Optional[models.AuditLog]:
        """Adds an AuditLog row to `db`. The caller owns the commit."""
        if db is None:
            logger.info(f"[audit:{severity}] {action} {resource_type}:{resource_id} by {user_id} - {details}")
            return None

        db_log = models.AuditLog(
            user_id=user_id,
            username=username if username else (str(user_id) if user_id else 'System'),
            action=self.normalize_action(action),
            event=action,
            category=category or 'GENERAL',
            severity=severity or 'INFO',
            resource_type=resource_type,
            resource_id=resource_id,
            details=details,
            old_values=old_values,
            new_values=new_values,
            timestamp=datetime.now(timezone.utc),
        )
        db.add(db_log)
        return db_log


# Singleton instance for global import
compliance_logger = ComplianceLogger()
