"""
"At most one active record per owner" enforcement shared by both registries.
"""

from typing import Optional, Type, TypeVar, Union

from sqlmodel import Session, select
from sqlmodel.sql.expression import Select

from ..errors import NotFound
from ..models.store import IndexingConfig, TargetConnection
from ..models.types import utcnow

Record = TypeVar("Record", bound=Union[TargetConnection, IndexingConfig])


def owner_rows_for_update(model: Type[Record], owner_id: int) -> Select:
    """Every row the owner has, locked in id order."""
    return select(model).where(model.owner_id == owner_id).order_by(model.id).with_for_update()


def load_owned(session: Session, model: Type[Record], owner_id: int, record_id: int, lock: bool = False) -> Record:
    """Fetch a record scoped to its owner or raise NotFound.

    With ``lock`` every row of the owner is locked, not just the one returned,
    so writers touching the same owner always take their locks in one order.
    """
    if lock:
        rows = session.exec(owner_rows_for_update(model, owner_id)).all()
        record = next((row for row in rows if row.id == record_id), None)
    else:
        record = session.exec(
            select(model).where(model.id == record_id, model.owner_id == owner_id)
        ).first()
    if record is None:
        raise NotFound(f"{model.__name__} {record_id} not found", {"id": record_id})
    return record


def find_active(session: Session, model: Type[Record], owner_id: int) -> Optional[Record]:
    return session.exec(
        select(model).where(model.owner_id == owner_id, model.is_active == True)  # noqa: E712
        .order_by(model.updated_at.desc())
    ).first()


def activate_exclusively(session: Session, model: Type[Record], owner_id: int, record_id: int) -> Record:
    """Mark one record active and every sibling inactive inside the caller's transaction.

    All of the owner's rows are locked before any is changed, so two concurrent
    activations for the same owner serialize on PostgreSQL. The caller commits.
    """
    rows = session.exec(owner_rows_for_update(model, owner_id)).all()
    record = next((row for row in rows if row.id == record_id), None)
    if record is None:
        raise NotFound(f"{model.__name__} {record_id} not found", {"id": record_id})

    now = utcnow()
    for row in rows:
        if row.id != record_id and row.is_active:
            row.is_active = False
            row.updated_at = now
            session.add(row)
    record.is_active = True
    record.updated_at = now
    session.add(record)
    return record
