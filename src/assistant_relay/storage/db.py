"""
Инициализация базы данных и сессий SQLAlchemy.

Назначение:
- Создание engine по DSN из Settings
- Контекстный менеджер для сессий
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base


# =============================================================================
# ENGINE / SESSION FACTORY
# =============================================================================
def create_db_engine(dsn: str) -> Engine:
    if not dsn.startswith("sqlite"):
        return create_engine(dsn, pool_pre_ping=True)

    # sqlite: запросы идут из threadpool FastAPI
    kwargs: dict = {"connect_args": {"check_same_thread": False}}
    if dsn in {"sqlite://", "sqlite:///:memory:"}:
        kwargs["poolclass"] = StaticPool
    return create_engine(dsn, **kwargs)


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


def init_db(engine: Engine) -> None:
    """
    Автосоздание таблиц (identity store маленький, миграции не нужны).
    """
    Base.metadata.create_all(engine)


# =============================================================================
# CONTEXT MANAGER
# =============================================================================
@contextmanager
def db_session(factory: sessionmaker[Session]) -> Iterator[Session]:
    """
    Контекстный менеджер для работы с БД.

    Использование:
        with db_session(factory) as session:
            session.add(...)
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
