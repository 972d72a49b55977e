from __future__ import annotations

import logging
from collections.abc import Generator, Iterator
from contextlib import contextmanager
from functools import lru_cache

from sqlalchemy import Engine, create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from app.context import reset_tenant_id, set_tenant_id
from app.core.config import get_settings


logger = logging.getLogger("app.db")

TENANT_INFO_KEY = "tenant_id"


class Base(DeclarativeBase):
    pass


@lru_cache
def get_engine() -> Engine:
    return create_engine(get_settings().database_url, pool_pre_ping=True)


SessionLocal = sessionmaker(autocommit=False, autoflush=False)


def get_db() -> Generator[Session, None, None]:
    session = SessionLocal(bind=get_engine())
    try:
        yield session
    finally:
        session.close()


def _supports_session_settings(session: Session) -> bool:
    return session.get_bind().dialect.name == "postgresql"


def current_tenant(session: Session) -> str | None:
    return session.info.get(TENANT_INFO_KEY)


def set_tenant_context(session: Session, tenant_id: str) -> None:
    """Scope the session to one tenant for row-level-security policies.

    PostgreSQL receives a transaction-local ``set_config`` call that the RLS
    policies read back through ``current_setting``; every dialect tracks the
    active tenant in ``session.info``. Calling it twice with the same tenant is
    harmless.
    """

    if _supports_session_settings(session):
        session.execute(
            text("SELECT set_config(:name, :value, true)"),
            {"name": get_settings().tenant_setting_name, "value": tenant_id},
        )
    session.info[TENANT_INFO_KEY] = tenant_id


def clear_tenant_context(session: Session) -> None:
    if session.info.get(TENANT_INFO_KEY) is None:
        return

    try:
        if _supports_session_settings(session):
            session.execute(
                text("SELECT set_config(:name, '', true)"),
                {"name": get_settings().tenant_setting_name},
            )
    except SQLAlchemyError as exc:
        # set_config is transaction-local, so discarding the transaction clears it too.
        logger.warning("tenant_context.clear_failed", extra={"error": str(exc)[:500]})
        session.rollback()
    finally:
        session.info.pop(TENANT_INFO_KEY, None)


@contextmanager
def tenant_scope(session: Session, tenant_id: str) -> Iterator[Session]:
    set_tenant_context(session, tenant_id)
    token = set_tenant_id(tenant_id)
    try:
        yield session
    finally:
        reset_tenant_id(token)
        clear_tenant_context(session)
