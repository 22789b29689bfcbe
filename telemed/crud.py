# telemed/crud.py - Generic persistence helpers shared by the services
from sqlalchemy.orm import Session, joinedload
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from datetime import datetime, timedelta, date, timezone
from decimal import Decimal
from typing import Optional, List, Dict, Any, Callable, Iterable, Tuple, Union
import logging

from fastapi.encoders import jsonable_encoder

from . import models, schemas
from .compliance_logger import compliance_logger
from .database import SessionLocal
from .exceptions import CRUDError, NotFoundError, VersionConflictError
from .realtime import ChangeFeed, ChangeEvent, Subscription, change_feed, record_change

logger = logging.getLogger(__name__)

Filter = Tuple[str, str, Any]

_OPERATORS: Dict[str, Callable[[Any, Any], Any]] = {
    "eq": lambda col, v: col == v,
    "neq": lambda col, v: col != v,
    "gt": lambda col, v: col > v,
    "gte": lambda col, v: col >= v,
    "lt": lambda col, v: col < v,
    "lte": lambda col, v: col <= v,
    "in": lambda col, v: col.in_(list(v)),
    "like": lambda col, v: col.like(v),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _columns(model) -> set:
    return set(model.__table__.columns.keys())


def _column(model, name: str):
    if name not in _columns(model):
        raise CRUDError(f"Unknown field '{name}' for {model.__tablename__}")
    return getattr(model, name)


def _snapshot(values: Dict[str, Any]) -> Dict[str, Any]:
    """JSON-safe copy of a value dict for the audit trail."""
    return jsonable_encoder(values, custom_encoder={Decimal: str})


def _row_values(obj, keys: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    keys = keys if keys is not None else _columns(type(obj))
    return {k: getattr(obj, k) for k in keys}


# ==================== GENERIC DOCUMENT OPERATIONS ====================

def create_document(
    db: Session,
    model,
    data: Dict[str, Any],
    user_id: Optional[int] = None,
    audit_action: Optional[str] = None,
    category: str = "GENERAL",
    commit: bool = True,
):
    """Insert a row, stamping created_at/updated_at/created_by where the table has them."""
    values = dict(data)
    cols = _columns(model)
    now = _utcnow()
    if "created_at" in cols and values.get("created_at") is None:
        values["created_at"] = now
    if "updated_at" in cols and values.get("updated_at") is None:
        values["updated_at"] = now
    if "created_by" in cols and user_id is not None and values.get("created_by") is None:
        values["created_by"] = user_id

    db_obj = model(**values)
    try:
        db.add(db_obj)
        db.flush()
        record_change(db, model.__tablename__, "INSERT", db_obj.id)
        if audit_action:
            compliance_logger.log_event(
                db=db,
                user_id=user_id,
                action=audit_action,
                category=category,
                resource_type=model.__name__,
                resource_id=db_obj.id,
                details=f"{model.__name__} {db_obj.id} created",
                new_values=_snapshot(values),
            )
        if commit:
            db.commit()
            db.refresh(db_obj)
        logger.info(f"Created {model.__tablename__} {db_obj.id}")
        return db_obj
    except IntegrityError as e:
        db.rollback()
        logger.error(f"Integrity error creating {model.__tablename__}: {e}")
        raise CRUDError(f"Could not create {model.__tablename__} due to a database integrity issue.") from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error creating {model.__tablename__}: {e}")
        raise CRUDError(f"A database error occurred while creating {model.__tablename__}.") from e


def read_document(
    db: Session,
    model,
    document_id: int,
    user_id: Optional[int] = None,
    audit_access: bool = False,
    for_update: bool = False,
):
    """Fetch one row by id. Raises NotFoundError when absent."""
    try:
        query = db.query(model).filter(model.id == document_id)
        if for_update:
            query = query.with_for_update()
        db_obj = query.first()
    except SQLAlchemyError as e:
        logger.error(f"Database error reading {model.__tablename__} {document_id}: {e}")
        raise CRUDError(f"A database error occurred while reading {model.__tablename__}.") from e

    if db_obj is None:
        raise NotFoundError(f"{model.__name__} {document_id} not found")

    if audit_access:
        compliance_logger.log_event(
            db=db,
            user_id=user_id,
            action="READ",
            category="DATA_ACCESS",
            resource_type=model.__name__,
            resource_id=document_id,
            details=f"Accessed {model.__name__}:{document_id}",
        )
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to save access log for {model.__name__} {document_id}: {e}")
    return db_obj


def update_document(
    db: Session,
    model,
    document_id: int,
    updates: Dict[str, Any],
    user_id: Optional[int] = None,
    audit_action: Optional[str] = None,
    category: str = "GENERAL",
    expected_version: Optional[int] = None,
    commit: bool = True,
):
    """Apply `updates` to one row.

    With `expected_version` the write is a single
    ``UPDATE ... WHERE id = :id AND version = :expected`` that also bumps the
    version; if no row matches, VersionConflictError is raised.
    """
    values = dict(updates)
    cols = _columns(model)
    if "updated_at" in cols:
        values["updated_at"] = _utcnow()
    if "last_modified_by" in cols and user_id is not None:
        values["last_modified_by"] = user_id

    try:
        db_obj = db.get(model, document_id)
        if db_obj is None:
            raise NotFoundError(f"{model.__name__} {document_id} not found")
        old_values = _row_values(db_obj, [k for k in values if k in cols])

        if expected_version is not None:
            values.setdefault("version", expected_version + 1)
            matched = (
                db.query(model)
                .filter(model.id == document_id, model.version == expected_version)
                .update(values, synchronize_session="fetch")
            )
            if matched == 0:
                raise VersionConflictError(
                    f"{model.__name__} {document_id} was modified concurrently (expected version {expected_version})"
                )
            db.flush()
            db.refresh(db_obj)
        else:
            for key, value in values.items():
                setattr(db_obj, key, value)
            db.flush()

        record_change(db, model.__tablename__, "UPDATE", document_id)
        if audit_action:
            compliance_logger.log_event(
                db=db,
                user_id=user_id,
                action=audit_action,
                category=category,
                resource_type=model.__name__,
                resource_id=document_id,
                details=f"{model.__name__} {document_id} updated",
                old_values=_snapshot(old_values),
                new_values=_snapshot(values),
            )
        if commit:
            db.commit()
            db.refresh(db_obj)
        return db_obj
    except IntegrityError as e:
        db.rollback()
        logger.error(f"Integrity error updating {model.__tablename__} {document_id}: {e}")
        raise CRUDError(f"Could not update {model.__tablename__} due to a database integrity issue.") from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error updating {model.__tablename__} {document_id}: {e}")
        raise CRUDError(f"A database error occurred while updating {model.__tablename__}.") from e


def delete_document(
    db: Session,
    model,
    document_id: int,
    user_id: Optional[int] = None,
    audit_action: Optional[str] = None,
    category: str = "GENERAL",
) -> bool:
    """Physically delete one row. Appointments are soft-cancelled instead."""
    try:
        db_obj = db.get(model, document_id)
        if db_obj is None:
            raise NotFoundError(f"{model.__name__} {document_id} not found")
        old_values = _row_values(db_obj)
        db.delete(db_obj)
        db.flush()
        record_change(db, model.__tablename__, "DELETE", document_id)
        if audit_action:
            compliance_logger.log_event(
                db=db,
                user_id=user_id,
                action=audit_action,
                category=category,
                resource_type=model.__name__,
                resource_id=document_id,
                details=f"{model.__name__} {document_id} deleted",
                old_values=_snapshot(old_values),
            )
        db.commit()
        return True
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error deleting {model.__tablename__} {document_id}: {e}")
        raise CRUDError(f"A database error occurred while deleting {model.__tablename__}.") from e


def _normalize_filters(filters: Optional[Union[Dict[str, Any], List[Filter]]]) -> List[Filter]:
    if not filters:
        return []
    if isinstance(filters, dict):
        return [(field, "eq", value) for field, value in filters.items()]
    return list(filters)


def query_documents(
    db: Session,
    model,
    filters: Optional[Union[Dict[str, Any], List[Filter]]] = None,
    order_by: Optional[Union[str, List[str]]] = None,
    limit: Optional[int] = None,
    offset: int = 0,
) -> schemas.PaginationResult:
    """Filtered, ordered, paginated read.

    `filters` is either ``{field: value}`` (equality) or a list of
    ``(field, operator, value)`` with operators eq, neq, gt, gte, lt, lte, in, like.
    `order_by` entries prefixed with ``-`` sort descending.
    """
    query = db.query(model)
    for field, op, value in _normalize_filters(filters):
        if op not in _OPERATORS:
            raise CRUDError(f"Unsupported filter operator '{op}'")
        query = query.filter(_OPERATORS[op](_column(model, field), value))

    if order_by:
        for entry in ([order_by] if isinstance(order_by, str) else order_by):
            column = _column(model, entry.lstrip("-"))
            query = query.order_by(column.desc() if entry.startswith("-") else column.asc())

    try:
        total = query.count()
        if offset:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)
        data = query.all()
    except SQLAlchemyError as e:
        logger.error(f"Database error querying {model.__tablename__}: {e}")
        raise CRUDError(f"A database error occurred while querying {model.__tablename__}.") from e

    return schemas.PaginationResult(
        data=data,
        count=len(data),
        total=total,
        has_more=offset + len(data) < total,
    )


def subscribe_to_table(
    model,
    callback: Callable[[List[Any]], None],
    filters: Optional[Union[Dict[str, Any], List[Filter]]] = None,
    order_by: Optional[Union[str, List[str]]] = None,
    session_factory: Callable[[], Session] = SessionLocal,
    feed: Optional[ChangeFeed] = None,
) -> Subscription:
    """Push the full filtered result set now and again after every committed change of the table."""
    feed = feed or change_feed

    def refetch(change: Optional[ChangeEvent] = None) -> None:
        db = session_factory()
        try:
            rows = query_documents(db, model, filters=filters, order_by=order_by).data
        except CRUDError as e:
            logger.error(f"Refetch of {model.__tablename__} failed: {e}")
            return
        finally:
            db.close()
        callback(rows)

    refetch()
    return feed.subscribe(model.__tablename__, refetch)


# ==================== USERS ====================

def get_user(db: Session, user_id: int) -> Optional[models.User]:
    try:
        return db.query(models.User).filter(models.User.id == user_id).first()
    except SQLAlchemyError as e:
        logger.error(f"Database error fetching user {user_id}: {e}")
        raise CRUDError(f"Database error: {str(e)}")


def get_user_by_email(db: Session, email: str) -> Optional[models.User]:
    try:
        return db.query(models.User).filter(models.User.email == email.strip().lower()).first()
    except SQLAlchemyError as e:
        logger.error(f"Database error fetching user by email: {e}")
        raise CRUDError(f"Database error: {str(e)}")


# ==================== AUDIT LOG ====================

def log_audit_action(
    db: Session,
    user_id: Optional[int],
    action: str,
    resource_type: Optional[str] = None,
    resource_id: Optional[int] = None,
    details: Optional[str] = None,
    severity: str = "INFO",
    category: str = "GENERAL",
    commit: bool = True,
) -> None:
    """Standalone audit entry for events that are not tied to a CRUD write."""
    compliance_logger.log_event(
        db=db,
        user_id=user_id,
        action=action,
        category=category,
        details=details,
        severity=severity,
        resource_type=resource_type,
        resource_id=resource_id,
    )
    if commit and db is not None:
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            # Losing an audit row must not fail the operation that triggered it
            logger.error(f"Error creating audit log: {e}")


def get_audit_logs(
    db: Session,
    skip: int = 0,
    limit: int = 100,
    user_id: Optional[int] = None,
    category: Optional[str] = None,
    severity: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[int] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> List[models.AuditLog]:
    """Retrieve audit logs with filtering."""
    try:
        query = db.query(models.AuditLog).options(joinedload(models.AuditLog.user))

        if user_id:
            query = query.filter(models.AuditLog.user_id == user_id)
        if category:
            query = query.filter(models.AuditLog.category == category)
        if severity:
            query = query.filter(models.AuditLog.severity == severity)
        if resource_type:
            query = query.filter(models.AuditLog.resource_type == resource_type)
        if resource_id:
            query = query.filter(models.AuditLog.resource_id == resource_id)
        if start_date:
            query = query.filter(models.AuditLog.timestamp >= start_date)
        if end_date:
            # Add one day to end_date to include the entire day
            query = query.filter(models.AuditLog.timestamp < (end_date + timedelta(days=1)))

        return query.order_by(models.AuditLog.timestamp.desc(), models.AuditLog.id.desc()).offset(skip).limit(limit).all()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching audit logs: {e}")
        raise CRUDError("A database error occurred while fetching audit logs.")
