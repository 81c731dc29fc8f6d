"""Flow inference engine: content ingestion and the detection cycle.

Ingestion runs once per collected item and updates the co-occurrence graph and
creator history. The detection cycle runs on demand or on a timer, reads the
accumulated history, and appends accepted flows and alerts in one transaction.
"""
from __future__ import annotations

import logging
import threading
from contextlib import closing
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, Iterable

from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from trendr.config import ConfigurationError, EngineConfig
from trendr.detectors import detect_edge_decline, run_detectors
from trendr.graph import record_cooccurrence
from trendr.lifecycle import create_alerts, persist_flows
from trendr.models import Content, ContentTopic, Creator, CreatorTopicHistory, Flow, Topic
from trendr.schemas import ContentIn, CreatorIn, IngestResult
from trendr.scorer import fuse_signals
from trendr.utils import as_naive_utc, clamp, utcnow

log = logging.getLogger(__name__)


class DetectionError(Exception):
    """A detection cycle failed. The message is safe to show to end users."""


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


def period_bounds(day: date, bucket_days: int) -> tuple[date, date]:
    """Fixed, epoch-aligned bucket containing *day*."""
    start = date.fromordinal(day.toordinal() - (day.toordinal() - 1) % bucket_days)
    return start, start + timedelta(days=bucket_days - 1)


def _get_or_create_creator(session: Session, platform: str, data: CreatorIn) -> Creator:
    creator = session.execute(
        select(Creator).where(Creator.platform == platform, Creator.platform_id == data.platform_id)
    ).scalars().first()
    if creator is None:
        creator = Creator(
            platform=platform, platform_id=data.platform_id,
            username=data.username or data.platform_id,
            display_name=data.display_name or "",
            follower_count=data.follower_count,
        )
        session.add(creator)
        session.flush()
    elif data.follower_count is not None:
        creator.follower_count = data.follower_count
    return creator


def _normalize_tags(session: Session, topic_tags: Iterable[Any]) -> tuple[list[tuple[int, float]], list[int]]:
    """Keep tags for known topics, one per topic (highest confidence), clamped to [0, 1]."""
    best: dict[int, float] = {}
    for tag in topic_tags:
        topic_id, confidence = (tag.topic_id, tag.confidence) if hasattr(tag, "topic_id") else tag
        confidence = clamp(float(confidence))
        if confidence > best.get(topic_id, -1.0):
            best[topic_id] = confidence
    if not best:
        return [], []
    known = set(session.execute(select(Topic.id).where(Topic.id.in_(best))).scalars().all())
    skipped = sorted(set(best) - known)
    if skipped:
        log.warning("Ignoring tags for unknown topic ids: %s", skipped)
    tags = sorted(((t, c) for t, c in best.items() if t in known), key=lambda tc: (-tc[1], tc[0]))
    return tags, skipped


def _bump_history(session: Session, creator_id: int, topic_id: int, day: date, config: EngineConfig) -> None:
    start, end = period_bounds(day, config.history_bucket_days)
    stmt = sqlite_insert(CreatorTopicHistory).values(
        creator_id=creator_id, topic_id=topic_id, content_count=1,
        period_start=start, period_end=end,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["creator_id", "topic_id", "period_start"],
        set_={"content_count": CreatorTopicHistory.content_count + 1},
    )
    session.execute(stmt)


def ingest_content(
    session: Session,
    content: ContentIn,
    topic_tags: Iterable[Any],
    config: EngineConfig | None = None,
) -> IngestResult:
    """Store one collected item with its extracted topics (caller must commit).

    *topic_tags* holds ``(topic_id, confidence)`` pairs or objects with those
    attributes. Items already stored (same platform + platform id) only get
    their engagement counters refreshed; graph and history are not counted twice.
    """
    config = config or EngineConfig()
    existing = session.execute(
        select(Content).where(Content.platform == content.platform, Content.platform_id == content.platform_id)
    ).scalars().first()
    if existing is not None:
        existing.engagement_likes = content.engagement_likes
        existing.engagement_comments = content.engagement_comments
        existing.engagement_shares = content.engagement_shares
        if content.engagement_views is not None:
            existing.engagement_views = content.engagement_views
        return IngestResult(content_id=existing.id, created=False)

    creator = _get_or_create_creator(session, content.platform, content.creator) if content.creator else None
    published_at = as_naive_utc(content.published_at) if content.published_at else utcnow()
    row = Content(
        platform=content.platform,
        platform_id=content.platform_id,
        creator_id=creator.id if creator else None,
        content_type=content.content_type,
        text_content=content.text_content,
        engagement_likes=content.engagement_likes,
        engagement_comments=content.engagement_comments,
        engagement_shares=content.engagement_shares,
        engagement_views=content.engagement_views,
        published_at=published_at,
    )
    session.add(row)
    session.flush()

    tags, skipped = _normalize_tags(session, topic_tags)
    for topic_id, confidence in tags:
        session.merge(ContentTopic(content_id=row.id, topic_id=topic_id, confidence=confidence))

    capped = [topic_id for topic_id, _ in tags[: config.max_topics_per_item]]
    pairs = record_cooccurrence(session, capped, published_at)
    if creator is not None:
        for topic_id in capped:
            _bump_history(session, creator.id, topic_id, published_at.date(), config)

    return IngestResult(
        content_id=row.id, created=True, topics_linked=len(tags),
        pairs_recorded=pairs, skipped_topic_ids=skipped,
    )


# ---------------------------------------------------------------------------
# Detection cycle
# ---------------------------------------------------------------------------


@dataclass
class CycleSummary:
    started_at: datetime
    signals: int = 0
    candidates_accepted: int = 0
    declining_edges: int = 0
    flows: int = 0
    alerts: int = 0


class RunState:
    """In-flight guard and last-run bookkeeping for one engine.

    A trigger that arrives while a cycle is running is dropped, not queued.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.is_running = False
        self.last_run_at: datetime | None = None
        self.last_error: str | None = None
        self.last_summary: CycleSummary | None = None
        self.skipped_runs = 0

    def try_begin(self) -> bool:
        if not self._lock.acquire(blocking=False):
            self.skipped_runs += 1
            return False
        self.is_running = True
        return True

    def finish(self, finished_at: datetime, summary: CycleSummary | None = None, error: str | None = None) -> None:
        self.last_run_at = finished_at
        self.last_error = error
        if summary is not None:
            self.last_summary = summary
        self.is_running = False
        self._lock.release()

    def snapshot(self) -> dict[str, Any]:
        summary = self.last_summary
        return {
            "is_running": self.is_running,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_error": self.last_error,
            "last_flow_count": summary.flows if summary else 0,
            "last_alert_count": summary.alerts if summary else 0,
            "skipped_runs": self.skipped_runs,
        }


class FlowEngine:
    """Runs detection cycles against a session factory.

    The session factory must produce sessions with ``expire_on_commit=False``
    so returned flows stay readable after the cycle's session closes.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        config: EngineConfig | None = None,
        state: RunState | None = None,
    ):
        self._session_factory = session_factory
        self.config = config or EngineConfig()
        self.state = state or RunState()

    def ingest(self, content: ContentIn, topic_tags: Iterable[Any]) -> IngestResult:
        with closing(self._session_factory()) as session:
            try:
                result = ingest_content(session, content, topic_tags, self.config)
                session.commit()
            except Exception:
                session.rollback()
                raise
        return result

    def run_detection_cycle(self, now: datetime | None = None) -> list[Flow]:
        """Run one detect -> fuse -> persist pass and return the newly stored flows.

        Returns an empty list without doing anything when another cycle is in
        flight. Raises DetectionError (with a user-safe message) if the cycle
        fails; nothing from a failed cycle is committed.
        """
        if not self.state.try_begin():
            log.info("Detection cycle already in progress, dropping trigger")
            return []

        now = as_naive_utc(now) if now else utcnow()
        summary = CycleSummary(started_at=now)
        try:
            flows = self._run_cycle(now, summary)
        except ConfigurationError as exc:
            message = f"detection failed at {now.isoformat()}: configuration error: {exc}"
            log.error(message)
            self.state.finish(utcnow(), error=message)
            raise DetectionError(message) from exc
        except SQLAlchemyError as exc:
            message = f"detection failed at {now.isoformat()}: storage error"
            log.exception("Detection cycle storage failure")
            self.state.finish(utcnow(), error=message)
            raise DetectionError(message) from exc
        except Exception as exc:
            message = f"detection failed at {now.isoformat()}: unexpected error"
            log.exception("Detection cycle failed")
            self.state.finish(utcnow(), error=message)
            raise DetectionError(message) from exc

        self.state.finish(utcnow(), summary=summary)
        return flows

    def _run_cycle(self, now: datetime, summary: CycleSummary) -> list[Flow]:
        self.config.validate()
        with closing(self._session_factory()) as session:
            try:
                names = {tid: name for tid, name in session.execute(select(Topic.id, Topic.name)).all()}
                if not names:
                    raise ConfigurationError("topic taxonomy is empty")

                result = run_detectors(session, now, self.config)
                declining = detect_edge_decline(session, now, self.config)
                accepted = fuse_signals(result, self.config, known_topic_ids=set(names))
                flows = persist_flows(session, accepted, now, self.config, names=names)
                alerts = create_alerts(session, flows, now, self.config, names=names)
                session.commit()
            except Exception:
                session.rollback()
                raise

        summary.signals = len(result)
        summary.declining_edges = len(declining)
        summary.candidates_accepted = len(accepted)
        summary.flows = len(flows)
        summary.alerts = len(alerts)
        log.info(
            "Detection cycle at %s: %d pivots, %d edges (%d declining), %d bridges -> %d flows, %d alerts",
            now.isoformat(), len(result.pivots), len(result.edges), len(declining), len(result.motivations),
            len(flows), len(alerts),
        )
        return flows
