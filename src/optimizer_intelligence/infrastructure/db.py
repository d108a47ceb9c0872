from __future__ import annotations
from contextlib import contextmanager
from typing import Callable, Iterator
from sqlalchemy import create_engine, text
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import sessionmaker, DeclarativeBase, Session
from optimizer_intelligence.config import get_settings
from optimizer_intelligence.errors import StorageUnavailableError


class Base(DeclarativeBase):
    pass


def _dsn() -> str:
    s = get_settings()
    if s.database_url:
        return s.database_url
    if s.supabase_project_ref and s.supabase_db_password:
        host = f"db.{s.supabase_project_ref}.supabase.co"
        return f"postgresql+psycopg2://{s.supabase_db_user}:{s.supabase_db_password}@{host}:5432/{s.supabase_db_name}?sslmode=require"
    return f"sqlite:///{s.sqlite_path}"


def make_engine(url: str):
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


engine = make_engine(_dsn())
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def override_engine(e):  # test helper
    global engine, SessionLocal
    engine = e
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def new_session() -> Session:
    """Open a session on whatever engine is current (honours ``override_engine``)."""
    return SessionLocal()


@contextmanager
def session_scope(factory: Callable[[], Session] | None = None) -> Iterator[Session]:
    """Commit-or-rollback unit of work; connectivity failures surface as StorageUnavailableError."""
    session = (factory or new_session)()
    try:
        yield session
        session.commit()
    except (OperationalError, InterfaceError) as exc:
        session.rollback()
        raise StorageUnavailableError(f"durable store unreachable: {exc.__class__.__name__}") from exc
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def healthcheck() -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            return True
    except (OperationalError, InterfaceError):
        return False


def dispose():
    engine.dispose()
