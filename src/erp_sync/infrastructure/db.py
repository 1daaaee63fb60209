from __future__ import annotations
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase, Session
from erp_sync.config import get_settings


class Base(DeclarativeBase):
    pass


def _dsn() -> str:
    return get_settings().database_url


_engine: Engine | None = None
_sessionmaker: sessionmaker | None = None


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = create_engine(_dsn(), pool_pre_ping=True)
    return _engine


def SessionLocal() -> Session:
    """Open a session on the process engine (created lazily from DATABASE_URL)."""
    global _sessionmaker
    if _sessionmaker is None:
        _sessionmaker = sessionmaker(bind=get_engine(), autoflush=False, expire_on_commit=False)
    return _sessionmaker()


def make_session_factory(e: Engine) -> sessionmaker:
    return sessionmaker(bind=e, autoflush=False, expire_on_commit=False)


def dialect_name(session: Session) -> str:
    return session.get_bind().dialect.name


def healthcheck(session_factory=None) -> bool:
    if session_factory is not None:
        with session_factory() as s:
            s.execute(text("SELECT 1"))
            return True
    with get_engine().connect() as conn:
        conn.execute(text("SELECT 1"))
        return True
