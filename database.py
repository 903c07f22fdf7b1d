from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def build_engine(url: str, **engine_kwargs) -> Engine:
    connect_args: dict[str, object] = {}
    if _is_sqlite(url):
        connect_args["check_same_thread"] = False
    eng = create_engine(url, connect_args=connect_args, **engine_kwargs)
    if _is_sqlite(url):
        event.listen(eng, "connect", _configure_sqlite)
    return eng


def _unicode_lower(value):
    return value.lower() if value is not None else None


def _configure_sqlite(dbapi_conn, _record):
    # Built-in lower() folds ASCII only; category names and search text are not.
    dbapi_conn.create_function("lower", 1, _unicode_lower, deterministic=True)
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


engine = build_engine(get_settings().database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    """Unit of work: everything done through the session commits or rolls back together."""
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
