"""
Инициализация базы данных и сессий SQLAlchemy.

Назначение:
- Создание engine (лениво, при первом обращении)
- Контекстный менеджер для сессий
- Единая точка доступа к БД для fallback-очереди задач
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from functools import lru_cache

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from streamix_sync.common.config import get_settings


# =============================================================================
# ENGINE / SESSION FACTORY
# =============================================================================
@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_engine(
        get_settings().postgres_dsn,
        pool_pre_ping=True,
    )


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker[Session]:
    return sessionmaker(
        bind=get_engine(),
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


# =============================================================================
# CONTEXT MANAGER
# =============================================================================
@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Iterator[Session]:
    """
    Транзакция на блок: commit при успехе, rollback при исключении.
    """
    session: Session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def db_session() -> Iterator[Session]:
    """
    Контекстный менеджер для работы с БД.

    Использование:
        with db_session() as session:
            session.add(...)
    """
    with session_scope(get_session_factory()) as session:
        yield session
