from sqlalchemy import create_engine, Column, String, DateTime, JSON, Index
from sqlalchemy.engine import Engine, URL, make_url
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator
import logging
import os
import re
import threading
import uuid

from .config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()

TENANT_SLUG_RE = re.compile(r"^[A-Za-z0-9_-]+$")

# Company slug -> engine / session factory, created lazily on first use
_engines: Dict[str, Engine] = {}
_session_factories: Dict[str, sessionmaker] = {}
_lock = threading.Lock()


class DynamicRecord(Base):
    """Row of a dynamic table (prospects, students, ...) with a free-form data payload"""
    __tablename__ = "records"

    id = Column(String, primary_key=True, default=lambda: uuid.uuid4().hex)
    table_slug = Column(String, nullable=False, index=True)
    c_name = Column(String, nullable=False)
    data = Column(JSON, nullable=False, default=dict)
    created_by = Column(String, nullable=False)
    updated_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_records_table_slug_c_name", "table_slug", "c_name"),
        Index("ix_records_c_name_created_at", "c_name", "created_at"),
    )


def validate_tenant_slug(c_name: str) -> str:
    """Company slugs end up in database names, only allow safe characters"""
    if not c_name or not TENANT_SLUG_RE.match(c_name):
        raise ValueError(f"Invalid company slug: {c_name!r}")
    return c_name


def _is_sqlite_memory(url: URL) -> bool:
    return url.drivername.startswith("sqlite") and url.database in (None, "", ":memory:")


def build_tenant_url(c_name: str) -> URL:
    """Swap the database name of DATABASE_URL for the company slug"""
    validate_tenant_slug(c_name)
    url = make_url(settings.database_url)

    if url.drivername.startswith("sqlite"):
        if _is_sqlite_memory(url):
            return url
        directory = os.path.dirname(url.database)
        return url.set(database=os.path.join(directory, f"{c_name}.db"))

    return url.set(database=c_name)


def _create_engine(url: URL) -> Engine:
    if url.drivername.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if _is_sqlite_memory(url):
            # One connection shared by every session so the in-memory data survives
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=settings.debug, **kwargs)

    return create_engine(
        url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
        pool_pre_ping=True,
        echo=settings.debug
    )


def get_tenant_engine(c_name: str) -> Engine:
    """Get (or lazily create) the engine of a company database"""
    validate_tenant_slug(c_name)

    with _lock:
        engine = _engines.get(c_name)
        if engine is not None:
            return engine

        url = build_tenant_url(c_name)
        engine = _create_engine(url)
        Base.metadata.create_all(bind=engine)

        _engines[c_name] = engine
        _session_factories[c_name] = sessionmaker(autoflush=False, bind=engine)
        logger.info(f"🔌 Connected tenant database for {c_name} ({url.render_as_string(hide_password=True)})")
        return engine


@contextmanager
def tenant_session(c_name: str) -> Iterator[Session]:
    """Database session bound to a company database"""
    get_tenant_engine(c_name)
    db = _session_factories[c_name]()
    try:
        yield db
    finally:
        db.close()


def dispose_tenant_engines() -> None:
    """Close every pooled connection and forget the cached engines"""
    with _lock:
        for c_name, engine in _engines.items():
            engine.dispose()
            logger.debug(f"Disposed tenant engine for {c_name}")
        _engines.clear()
        _session_factories.clear()
