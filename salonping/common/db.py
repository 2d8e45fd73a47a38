"""Database bootstrap helpers shared by the messaging engine."""

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from salonping.common.config import settings


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in local runs and tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass


def make_engine(dsn: str) -> Engine:
    """Create an engine; SQLite gets a shared connection usable across threads."""

    if dsn.startswith("sqlite"):
        return create_engine(
            dsn,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(dsn, pool_pre_ping=True)


def make_session_factory(bind: Engine) -> sessionmaker:
    # `expire_on_commit=False` keeps ORM objects readable after commit in handlers.
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)


def init_db(bind: Engine) -> None:
    """Create all tables for local runs; production schemas come from alembic."""

    # Register every model module with Base.metadata before create_all.
    from salonping.services.messaging import models as _messaging_models  # noqa: F401
    from salonping.services.reminders import models as _reminder_models  # noqa: F401

    Base.metadata.create_all(bind=bind)


# Single SQLAlchemy engine per process.
engine = make_engine(settings.postgres_dsn)
SessionLocal = make_session_factory(engine)
