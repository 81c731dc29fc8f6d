"""Topic co-occurrence graph, stored relationally.

Edges are undirected and canonical: the lower topic id is always ``topic_a_id``,
so one row exists per unordered pair. Each edge keeps a cumulative frequency and
the latest time the pair was seen; a per-day bucket table records the same
increments so detectors can window the history without mutating it.
"""
from __future__ import annotations

import logging
from datetime import datetime
from itertools import combinations
from typing import Iterable, NamedTuple

from sqlalchemy import func, or_, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from trendr.models import CooccurrenceBucket, TopicCooccurrence
from trendr.utils import as_naive_utc

log = logging.getLogger(__name__)

MAX_TRAVERSAL_DEPTH = 2


class RelatedTopic(NamedTuple):
    topic_id: int
    depth: int
    weight: int


def canonical_pair(a: int, b: int) -> tuple[int, int]:
    if a == b:
        raise ValueError(f"A co-occurrence edge needs two distinct topics, got {a} twice")
    return (a, b) if a < b else (b, a)


def record_cooccurrence(session: Session, topic_ids: Iterable[int], observed_at: datetime) -> int:
    """Upsert one edge per unordered pair of *topic_ids*. Returns the number of pairs.

    Each upsert is a single ``INSERT ... ON CONFLICT DO UPDATE`` so concurrent
    ingestion never loses an increment. ``last_seen`` only moves forward.
    Caller must commit.
    """
    ids = sorted(set(topic_ids))
    if len(ids) < 2:
        return 0
    observed_at = as_naive_utc(observed_at)
    day = observed_at.date()
    pairs = list(combinations(ids, 2))
    for a, b in pairs:
        edge = sqlite_insert(TopicCooccurrence).values(
            topic_a_id=a, topic_b_id=b, frequency=1, last_seen=observed_at,
        )
        edge = edge.on_conflict_do_update(
            index_elements=["topic_a_id", "topic_b_id"],
            set_={
                "frequency": TopicCooccurrence.frequency + 1,
                "last_seen": func.max(TopicCooccurrence.last_seen, edge.excluded.last_seen),
            },
        )
        session.execute(edge)

        bucket = sqlite_insert(CooccurrenceBucket).values(
            topic_a_id=a, topic_b_id=b, day=day, frequency=1,
        )
        bucket = bucket.on_conflict_do_update(
            index_elements=["topic_a_id", "topic_b_id", "day"],
            set_={"frequency": CooccurrenceBucket.frequency + 1},
        )
        session.execute(bucket)
    return len(pairs)


def get_edge(session: Session, a: int, b: int) -> TopicCooccurrence | None:
    """Look up the edge between *a* and *b* in either order."""
    a, b = canonical_pair(a, b)
    return session.get(TopicCooccurrence, (a, b), populate_existing=True)


def _neighbors(session: Session, frontier: set[int]) -> list[tuple[int, int, int]]:
    """Return ``(source, neighbor, frequency)`` for every edge touching *frontier*."""
    rows = session.execute(
        select(TopicCooccurrence.topic_a_id, TopicCooccurrence.topic_b_id, TopicCooccurrence.frequency)
        .where(or_(
            TopicCooccurrence.topic_a_id.in_(frontier),
            TopicCooccurrence.topic_b_id.in_(frontier),
        ))
    ).all()
    out: list[tuple[int, int, int]] = []
    for a, b, freq in rows:
        if a in frontier:
            out.append((a, b, freq))
        if b in frontier:
            out.append((b, a, freq))
    return out


def get_related_topics(session: Session, topic_id: int, max_depth: int = 2) -> list[RelatedTopic]:
    """Depth-limited BFS from *topic_id*.

    Every reachable topic is reported once, at its shortest hop distance, with
    the frequency of the heaviest edge that reached it at that depth. Results
    are ordered by depth ascending, then weight descending.
    """
    max_depth = max(1, min(max_depth, MAX_TRAVERSAL_DEPTH))
    visited = {topic_id}
    frontier = {topic_id}
    found: list[RelatedTopic] = []

    for depth in range(1, max_depth + 1):
        if not frontier:
            break
        best: dict[int, int] = {}
        for _, neighbor, weight in _neighbors(session, frontier):
            if neighbor in visited:
                continue
            if weight > best.get(neighbor, 0):
                best[neighbor] = weight
        visited.update(best)
        found.extend(RelatedTopic(t, depth, w) for t, w in best.items())
        frontier = set(best)

    found.sort(key=lambda r: (r.depth, -r.weight, r.topic_id))
    return found
