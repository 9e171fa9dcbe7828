from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings


def build_engine(database_url: str, busy_timeout_ms: Optional[int] = None) -> Engine:
    """Engine for the ledger store.

    SQLite connections get WAL, enforced foreign keys and a busy timeout, so
    plan writers on the same file wait for the database lock in turn.
    """
    if not database_url.startswith("sqlite"):
        return create_engine(database_url)
    if busy_timeout_ms is None:
        busy_timeout_ms = get_settings().db_busy_timeout_ms

    eng = create_engine(database_url, connect_args={"check_same_thread": False})

    @event.listens_for(eng, "connect")
    def _on_connect(dbapi_conn, record):
        enable_sqlite_pragmas(dbapi_conn, record, busy_timeout_ms)

    return eng


def enable_sqlite_pragmas(dbapi_conn, _record, busy_timeout_ms: int = 5000):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)};")
    cursor.close()


engine = build_engine(get_settings().database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
