"""Shared order record access: locked reads and compare-and-swap writes."""
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .errors import NotFoundError
from .models import OrderRecord, utcnow


def load_record(db: Session, record_id: str, required=True):
    record = db.execute(
        select(OrderRecord)
        .where(OrderRecord.id == record_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if record is None and required:
        raise NotFoundError(f"Order record {record_id} not found")
    return record


def compare_and_set(db: Session, record_id: str, conditions, values) -> bool:
    """UPDATE the record only if every condition still holds.

    Returns False when no row matched, i.e. a concurrent writer changed the
    record after it was read. ``updated_at`` is stamped automatically.
    """
    values = dict(values)
    values.setdefault("updated_at", utcnow())
    stmt = update(OrderRecord).where(OrderRecord.id == record_id)
    for condition in conditions:
        stmt = stmt.where(condition)
    result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
    return result.rowcount == 1


def history_entry(status, actor, when=None) -> dict:
    return {
        "status": status,
        "timestamp": (when or utcnow()).isoformat(),
        "actor": actor,
    }


def appended_history(record: OrderRecord, entry: dict) -> list:
    # Always a new list: the JSON column is only persisted on reassignment.
    return list(record.progress_history or []) + [entry]
