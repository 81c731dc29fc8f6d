from __future__ import annotations

import json
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from trendr.models import Base
from trendr.utils import slugify

log = logging.getLogger(__name__)

_lock = threading.Lock()
_engine = None
_SessionLocal = None

DATA_DIR = Path(__file__).parent / "data"


def default_db_path() -> Path:
    env_path = os.environ.get("TRENDR_DB_PATH")
    return Path(env_path) if env_path else DATA_DIR / "trendr.db"


def init_db(db_path: str | Path | None = None) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        if db_path is None:
            db_path = default_db_path()
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite:///{db_path}"
        _engine = create_engine(url, connect_args={"check_same_thread": False})
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        _seed_default_topics(_engine)
        log.info("Database initialized at %s", db_path)


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (MCP server, scheduler, scripts)::

        with session_scope() as session:
            ...
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def session_generator() -> Generator[Session, None, None]:
    """Generator-based session suitable for FastAPI ``Depends()``."""
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _seed_default_topics(engine) -> None:
    """Seed the default taxonomy if the topics table is empty."""
    with engine.connect() as conn:
        count = conn.execute(text("SELECT COUNT(*) FROM topics")).scalar()
        if count > 0:
            return
    from trendr.services import DEFAULT_TOPICS
    with engine.begin() as conn:
        for name, keywords in DEFAULT_TOPICS:
            conn.execute(text(
                "INSERT INTO topics (name, slug, aliases_json, keywords_json) "
                "VALUES (:name, :slug, '[]', :keywords)"
            ), {"name": name, "slug": slugify(name), "keywords": json.dumps(keywords)})
    log.info("Seeded %d default topics", len(DEFAULT_TOPICS))
