# Overview: Service-layer concurrency primitives; row locks and conditional status flips.

from __future__ import annotations

from ..extensions import db
from ..models import Table


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def transition_table_status(table_id: int, from_status: str, to_status: str) -> bool:
    """
    Atomic conditional status flip: UPDATE ... WHERE id = ? AND status = ?.

    Returns False if another request changed the table first. Does not commit;
    the caller owns the transaction.
    """
    updated = db.session.query(Table).filter(
        Table.id == table_id,
        Table.status == from_status,
    ).update({"status": to_status}, synchronize_session="fetch")
    return updated == 1
