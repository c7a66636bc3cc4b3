from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, List, Optional, Union

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine, RowMapping
from sqlalchemy.sql.expression import TextClause

Bind = Union[Engine, Connection]
Sql = Union[str, TextClause]


def get_engine(db_url: str = "") -> Engine:
    """
    A postgres:// URL points at the hosted forum database.
    Empty -> local SQLite for dev.
    """
    db_url = (db_url or "").strip()
    if not db_url:
        db_url = "sqlite:///statafix.db"
    return create_engine(db_url, pool_pre_ping=True)


def is_sqlite(engine: Engine) -> bool:
    return engine.dialect.name == "sqlite"


@contextmanager
def transaction(engine: Engine) -> Iterator[Connection]:
    with engine.begin() as conn:
        yield conn


def _stmt(sql: Sql) -> TextClause:
    # pre-built clauses carry their own bindparams (e.g. expanding IN lists)
    return text(sql) if isinstance(sql, str) else sql


@contextmanager
def _connect(bind: Bind) -> Iterator[Connection]:
    # a Connection means we're already inside transaction(); don't commit here
    if isinstance(bind, Connection):
        yield bind
    else:
        with bind.begin() as conn:
            yield conn


def exec_sql(bind: Bind, sql: Sql, params: Optional[dict] = None) -> int:
    with _connect(bind) as conn:
        res = conn.execute(_stmt(sql), params or {})
        return res.rowcount


def fetch_all(bind: Bind, sql: Sql, params: Optional[dict] = None) -> List[RowMapping]:
    with _connect(bind) as conn:
        res = conn.execute(_stmt(sql), params or {})
        return [r._mapping for r in res.fetchall()]


def fetch_one(bind: Bind, sql: Sql, params: Optional[dict] = None) -> Optional[RowMapping]:
    rows = fetch_all(bind, sql, params)
    return rows[0] if rows else None
