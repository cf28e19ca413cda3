from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .tables import Base, CouponPolicyRevisionRow

logger = logging.getLogger(__name__)


def normalize_database_url(url: str) -> str:
    # Hosted Postgres often hands out postgres://; SQLAlchemy expects postgresql://
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def get_engine(url: str) -> Engine:
    if not url:
        raise RuntimeError("DATABASE_URL is not set")
    url = normalize_database_url(url)

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection per in-memory database
            kwargs["poolclass"] = StaticPool
        return create_engine(url, future=True, **kwargs)

    return create_engine(url, pool_pre_ping=True, future=True)


def get_sessionmaker(engine: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
        future=True,
    )


@contextmanager
def db_session(session_factory: sessionmaker) -> Generator[Session, None, None]:
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine, checkfirst=True)
    with engine.begin() as conn:
        if conn.execute(select(CouponPolicyRevisionRow.id)).first() is None:
            conn.execute(insert(CouponPolicyRevisionRow).values(id=1, revision=0))
    logger.info("Coupon tables ready on %s", engine.url.render_as_string(hide_password=True))
