from __future__ import annotations
from typing import Iterable, Sequence
from sqlalchemy.orm import Session
from erp_sync.infrastructure.db import dialect_name


def _insert_for(session: Session):
    name = dialect_name(session)
    if name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"upsert not supported on dialect {name}")
    return insert


def upsert_rows(
    session: Session,
    model,
    rows: Sequence[dict],
    conflict_columns: Iterable[str],
    update_columns: Iterable[str] | None = None,
) -> int:
    """Insert ``rows`` in one statement, updating on conflict with the natural key.

    Rows must share the same keys. Columns named in ``conflict_columns`` (and
    ``created_at``) are never overwritten.
    """
    if not rows:
        return 0
    conflict = list(conflict_columns)
    insert = _insert_for(session)
    stmt = insert(model.__table__).values(list(rows))
    if update_columns is None:
        update_columns = [k for k in rows[0].keys() if k not in conflict and k not in ("id", "created_at")]
    stmt = stmt.on_conflict_do_update(
        index_elements=conflict,
        set_={c: stmt.excluded[c] for c in update_columns},
    )
    session.execute(stmt)
    return len(rows)
