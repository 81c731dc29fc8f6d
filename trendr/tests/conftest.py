from __future__ import annotations

import itertools
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from trendr.engine import ingest_content
from trendr.models import Base, Topic
from trendr.schemas import ContentIn, CreatorIn

# Fixed clock for detector and lifecycle tests
NOW = datetime(2026, 3, 1, 12, 0, 0)

TOPICS = (
    ("crypto", "Cryptocurrency"),
    ("watches", "Watches & Luxury"),
    ("stocks", "Stocks & Investing"),
    ("ai", "Artificial Intelligence"),
    ("gaming", "Gaming"),
    ("travel", "Travel"),
    ("fashion", "Fashion"),
)


# ---------------------------------------------------------------------------
# Fixtures: SQLite database
# ---------------------------------------------------------------------------

@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(session_factory):
    sess = session_factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def topics(session: Session) -> dict[str, int]:
    """A small taxonomy keyed by slug."""
    rows = {slug: Topic(name=name, slug=slug) for slug, name in TOPICS}
    session.add_all(rows.values())
    session.commit()
    return {slug: t.id for slug, t in rows.items()}


@pytest.fixture()
def post(session: Session):
    """Ingest one synthetic post tagged with *topic_ids*, published *days_ago* before NOW."""
    counter = itertools.count(1)

    def _post(topic_ids, days_ago: float = 0, creator: str | None = None, confidence: float = 1.0):
        n = next(counter)
        content = ContentIn(
            platform="reddit",
            platform_id=f"t3_{n}",
            text_content=f"synthetic post {n}",
            creator=CreatorIn(platform_id=creator, username=creator) if creator else None,
            published_at=NOW - timedelta(days=days_ago),
        )
        return ingest_content(session, content, [(tid, confidence) for tid in topic_ids])

    return _post
