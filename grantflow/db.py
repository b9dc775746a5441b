from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Iterator

from sqlalchemy import create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from grantflow.models import Base, ScoringConfiguration
from grantflow.settings import get_settings

log = logging.getLogger(__name__)

_lock = threading.Lock()
_ENGINES: dict[str, Engine] = {}
_SESSIONS: dict[str, sessionmaker[Session]] = {}


def _is_memory_url(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:")


def get_engine(db_url: str | None = None) -> Engine:
    target_url = db_url or get_settings().database_url
    with _lock:
        if target_url not in _ENGINES:
            kwargs: dict = {}
            if target_url.startswith("sqlite"):
                kwargs["connect_args"] = {"check_same_thread": False}
                if _is_memory_url(target_url):
                    # One shared connection, otherwise every session sees an empty database.
                    kwargs["poolclass"] = StaticPool
            _ENGINES[target_url] = create_engine(target_url, **kwargs)
        return _ENGINES[target_url]


def get_session_factory(db_url: str | None = None) -> sessionmaker[Session]:
    target_url = db_url or get_settings().database_url
    engine = get_engine(target_url)
    with _lock:
        if target_url not in _SESSIONS:
            _SESSIONS[target_url] = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        return _SESSIONS[target_url]


def init_db(db_url: str | None = None, *, seed: bool = True) -> Engine:
    """Create tables and seed the default scoring configuration if none exists."""
    settings = get_settings()
    if db_url is None and settings.uses_default_database:
        settings.ensure_directories()
        Path(settings.database_path).parent.mkdir(parents=True, exist_ok=True)
    engine = get_engine(db_url)
    Base.metadata.create_all(engine)
    if seed:
        _seed_default_configuration(engine)
    return engine


def _seed_default_configuration(engine: Engine) -> None:
    from grantflow.configuration import seed_default_configuration

    with Session(engine, autoflush=False, expire_on_commit=False) as session:
        if session.execute(select(ScoringConfiguration.id).limit(1)).first() is not None:
            return
        config = seed_default_configuration(session)
        session.commit()
        log.info("Seeded default scoring configuration %s (id=%s)", config.name, config.id)


def dispose_engines() -> None:
    with _lock:
        for engine in _ENGINES.values():
            engine.dispose()
        _ENGINES.clear()
        _SESSIONS.clear()


@contextmanager
def session_scope(db_url: str | None = None) -> Iterator[Session]:
    """Context manager providing a transactional session scope.

    Usage (CLI commands, scripts, etc.)::

        with session_scope() as session:
            ...
    """
    session = get_session_factory(db_url)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def session_generator(db_url: str | None = None) -> Generator[Session, None, None]:
    """Generator-based session suitable for FastAPI ``Depends()``.

    Operations commit for themselves; this only guarantees cleanup.
    """
    session = get_session_factory(db_url)()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
