"""Shared business logic for the Trendr API and MCP server."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Iterable

from sqlalchemy import delete, func, or_, select
from sqlalchemy.orm import Session

from trendr.config import EngineConfig
from trendr.graph import get_related_topics
from trendr.lifecycle import flow_signals, flow_state, get_active_flows
from trendr.models import (
    Alert, Content, ContentTopic, Creator, Flow, Topic, TopicCooccurrence, TopicMotivation,
)
from trendr.utils import as_naive_utc, clamp, json_parse, slugify, utcnow

log = logging.getLogger(__name__)


class TopicConflictError(ValueError):
    """A topic with the same name or slug already exists."""


# ---------------------------------------------------------------------------
# Default taxonomy
# ---------------------------------------------------------------------------

DEFAULT_TOPICS: list[tuple[str, list[str]]] = [
    ("Cryptocurrency", ["bitcoin", "btc", "ethereum", "eth", "crypto", "blockchain", "defi",
                        "nft", "altcoin", "hodl", "wallet", "mining"]),
    ("Stocks & Investing", ["stock", "invest", "dividend", "portfolio", "etf", "nasdaq", "sp500",
                            "s&p", "trading", "bull", "bear", "market"]),
    ("Real Estate", ["real estate", "property", "mortgage", "rental", "landlord", "housing",
                     "reit", "flip", "airbnb"]),
    ("Side Hustles", ["side hustle", "passive income", "freelance", "gig", "dropshipping",
                      "affiliate", "monetize", "income stream"]),
    ("Watches & Luxury", ["rolex", "watch", "omega", "patek", "audemars", "luxury", "timepiece",
                          "horology", "collector"]),
    ("Artificial Intelligence", ["ai", "artificial intelligence", "machine learning", "chatgpt",
                                 "llm", "openai", "claude", "automation", "neural"]),
    ("Gaming", ["gaming", "gamer", "esports", "twitch", "steam", "playstation", "xbox",
                "nintendo", "pc gaming"]),
    ("Fitness & Health", ["fitness", "gym", "workout", "health", "nutrition", "diet", "protein",
                          "muscle", "cardio", "weight loss"]),
    ("Personal Finance", ["budget", "savings", "debt", "fire", "retire", "financial",
                          "money management", "credit", "loan"]),
    ("Entrepreneurship", ["startup", "entrepreneur", "business", "founder", "saas", "bootstrap",
                          "venture", "scale", "mvp"]),
    ("Career & Jobs", ["career", "job", "resume", "interview", "salary", "remote work", "wfh",
                       "promotion", "linkedin"]),
    ("Fashion", ["fashion", "style", "outfit", "designer", "clothing", "streetwear", "sneaker",
                 "brand"]),
    ("Cars & Automotive", ["car", "automotive", "tesla", "ev", "electric vehicle", "supercar",
                           "jdm", "modified"]),
    ("Travel", ["travel", "vacation", "flight", "hotel", "destination", "backpack", "nomad",
                "explore"]),
    ("Content Creation", ["youtube", "content creator", "influencer", "subscriber", "viral",
                          "algorithm", "monetization", "sponsor"]),
]

# Labels produced by the motivation classifier
MOTIVATION_LABELS = (
    "wealth_accumulation", "status_signaling", "community_belonging", "identity_expression",
    "knowledge_expertise", "entertainment_escapism", "security_stability",
)

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def topic_names(session: Session) -> dict[int, str]:
    return {tid: name for tid, name in session.execute(select(Topic.id, Topic.name)).all()}


def topic_summary(topic: Topic, content_count: int = 0) -> dict:
    return {
        "id": topic.id, "name": topic.name, "slug": topic.slug,
        "parent_topic_id": topic.parent_topic_id,
        "aliases": json_parse(topic.aliases_json, []),
        "keywords": json_parse(topic.keywords_json, []),
        "content_count": content_count,
    }


def flow_summary(flow: Flow, names: dict[int, str], now: datetime | None = None) -> dict:
    return {
        "id": flow.id,
        "from_topic_id": flow.from_topic_id,
        "from_topic": names.get(flow.from_topic_id, f"#{flow.from_topic_id}"),
        "to_topic_id": flow.to_topic_id,
        "to_topic": names.get(flow.to_topic_id, f"#{flow.to_topic_id}"),
        "strength": flow.strength,
        "confidence": flow.confidence,
        "signals": flow_signals(flow),
        "motivation_link": flow.motivation_link,
        "detected_at": _iso(flow.detected_at),
        "valid_until": _iso(flow.valid_until),
        "state": flow_state(flow, now),
    }


def alert_summary(alert: Alert, names: dict[int, str]) -> dict:
    return {
        "id": alert.id, "alert_type": alert.alert_type,
        "topic_id": alert.topic_id,
        "topic": names.get(alert.topic_id) if alert.topic_id is not None else None,
        "flow_id": alert.flow_id, "message": alert.message,
        "read": bool(alert.read), "created_at": _iso(alert.created_at),
    }


def content_summary(content: Content, names: dict[int, str]) -> dict:
    return {
        "id": content.id, "platform": content.platform, "platform_id": content.platform_id,
        "content_type": content.content_type, "text_content": content.text_content,
        "creator": content.creator.username if content.creator else None,
        "engagement_likes": content.engagement_likes,
        "engagement_comments": content.engagement_comments,
        "engagement_shares": content.engagement_shares,
        "engagement_views": content.engagement_views,
        "published_at": _iso(content.published_at),
        "topics": {names.get(ct.topic_id, f"#{ct.topic_id}"): ct.confidence for ct in content.topics},
    }


# ---------------------------------------------------------------------------
# Taxonomy
# ---------------------------------------------------------------------------


def _content_counts(session: Session) -> dict[int, int]:
    rows = session.execute(
        select(ContentTopic.topic_id, func.count(ContentTopic.content_id)).group_by(ContentTopic.topic_id)
    ).all()
    return dict(rows)


def list_topics(session: Session, limit: int = 50, offset: int = 0) -> list[dict]:
    """Topics ordered by how much content is tagged with them."""
    counts = _content_counts(session)
    topics = session.execute(select(Topic)).scalars().all()
    ordered = sorted(topics, key=lambda t: (-counts.get(t.id, 0), t.name.casefold()))
    return [topic_summary(t, counts.get(t.id, 0)) for t in ordered[offset:offset + limit]]


def search_topics(session: Session, query: str, limit: int = 20) -> list[dict]:
    """Substring match on name, slug and aliases (case-insensitive)."""
    q = query.strip()
    if not q:
        return []
    pattern = f"%{q}%"
    topics = session.execute(
        select(Topic)
        .where(or_(Topic.name.ilike(pattern), Topic.slug.ilike(pattern), Topic.aliases_json.ilike(pattern)))
        .order_by(Topic.name)
        .limit(limit)
    ).scalars().all()
    counts = _content_counts(session)
    return [topic_summary(t, counts.get(t.id, 0)) for t in topics]


def get_topic_by_slug(session: Session, slug: str) -> Topic | None:
    return session.execute(select(Topic).where(Topic.slug == slug)).scalars().first()


def _check_acyclic(session: Session, topic_id: int | None, parent_id: int) -> None:
    seen: set[int] = set()
    current: int | None = parent_id
    while current is not None:
        if current == topic_id or current in seen:
            raise ValueError(f"Topic {parent_id} cannot be the parent of topic {topic_id}: cycle")
        seen.add(current)
        parent = session.get(Topic, current)
        if parent is None:
            raise ValueError(f"Parent topic {current} does not exist")
        current = parent.parent_topic_id


def create_topic(
    session: Session,
    name: str,
    parent_topic_id: int | None = None,
    aliases: Iterable[str] = (),
    keywords: Iterable[str] = (),
) -> Topic:
    """Add a topic to the taxonomy (caller must commit). Raises ValueError on conflicts."""
    name = name.strip()
    slug = slugify(name)
    if not slug:
        raise ValueError("Topic name must contain at least one letter or digit")
    clash = session.execute(
        select(Topic).where(or_(Topic.name == name, Topic.slug == slug))
    ).scalars().first()
    if clash is not None:
        raise TopicConflictError(f"Topic '{clash.name}' already exists")
    if parent_topic_id is not None:
        _check_acyclic(session, None, parent_topic_id)
    topic = Topic(
        name=name, slug=slug, parent_topic_id=parent_topic_id,
        aliases_json=json.dumps([a.strip() for a in aliases if a.strip()]),
        keywords_json=json.dumps([k.strip().lower() for k in keywords if k.strip()]),
    )
    session.add(topic)
    session.flush()
    log.info("Created topic %s (%s)", topic.name, topic.slug)
    return topic


def set_topic_parent(session: Session, topic: Topic, parent_topic_id: int | None) -> Topic:
    """Re-parent a topic, refusing any change that would create a cycle (caller must commit)."""
    if parent_topic_id is not None:
        _check_acyclic(session, topic.id, parent_topic_id)
    topic.parent_topic_id = parent_topic_id
    return topic


def topic_detail(session: Session, topic: Topic, config: EngineConfig | None = None) -> dict:
    config = config or EngineConfig()
    names = topic_names(session)
    count = session.execute(
        select(func.count()).select_from(ContentTopic).where(ContentTopic.topic_id == topic.id)
    ).scalar_one()
    related = get_related_topics(session, topic.id, config.related_max_depth)
    active = [
        f for f in get_active_flows(session)
        if topic.id in (f.from_topic_id, f.to_topic_id)
    ]
    return {
        **topic_summary(topic, count),
        "motivations": get_topic_motivation_scores(session, topic.id),
        "related": [
            {"topic_id": r.topic_id, "name": names.get(r.topic_id, f"#{r.topic_id}"),
             "depth": r.depth, "weight": r.weight}
            for r in related
        ],
        "active_flows": len(active),
    }


# ---------------------------------------------------------------------------
# Motivation scores
# ---------------------------------------------------------------------------


def get_topic_motivation_scores(session: Session, topic_id: int) -> dict[str, float]:
    rows = session.execute(
        select(TopicMotivation.motivation, TopicMotivation.score)
        .where(TopicMotivation.topic_id == topic_id)
        .order_by(TopicMotivation.score.desc(), TopicMotivation.motivation)
    ).all()
    return {label: score for label, score in rows}


def set_topic_motivation_scores(session: Session, topic_id: int, scores: dict[str, float]) -> dict[str, float]:
    """Replace a topic's motivation scores with *scores*, clamped to [0, 1] (caller must commit).

    Scores are an overwrite, never an accumulation: labels missing from
    *scores* are removed.
    """
    cleaned: dict[str, float] = {}
    for label, score in scores.items():
        label = label.strip()
        if not label:
            raise ValueError("Motivation label must not be blank")
        cleaned[label] = clamp(float(score))
    unknown = sorted(set(cleaned) - set(MOTIVATION_LABELS))
    if unknown:
        log.info("Storing non-standard motivation labels for topic %d: %s", topic_id, unknown)

    now = utcnow()
    session.execute(delete(TopicMotivation).where(TopicMotivation.topic_id == topic_id))
    for label, score in cleaned.items():
        session.add(TopicMotivation(topic_id=topic_id, motivation=label, score=score, updated_at=now))
    session.flush()
    return get_topic_motivation_scores(session, topic_id)


# ---------------------------------------------------------------------------
# Content
# ---------------------------------------------------------------------------


def list_content(session: Session, limit: int = 50, offset: int = 0) -> list[dict]:
    names = topic_names(session)
    rows = session.execute(
        select(Content).order_by(Content.collected_at.desc(), Content.id.desc()).limit(limit).offset(offset)
    ).scalars().all()
    return [content_summary(c, names) for c in rows]


def content_by_topic(session: Session, topic_id: int, limit: int = 20) -> list[dict]:
    names = topic_names(session)
    rows = session.execute(
        select(Content)
        .join(ContentTopic, ContentTopic.content_id == Content.id)
        .where(ContentTopic.topic_id == topic_id)
        .order_by(Content.collected_at.desc(), Content.id.desc())
        .limit(limit)
    ).scalars().all()
    return [content_summary(c, names) for c in rows]


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------


def compute_stats(session: Session, now: datetime | None = None) -> dict[str, Any]:
    now = as_naive_utc(now) if now else utcnow()

    def count(model) -> int:
        return session.execute(select(func.count()).select_from(model)).scalar_one()

    by_platform = dict(session.execute(
        select(Content.platform, func.count(Content.id)).group_by(Content.platform)
    ).all())
    last_week = session.execute(
        select(func.count(Content.id)).where(Content.collected_at > now - timedelta(days=7))
    ).scalar_one()
    top = session.execute(
        select(Topic.name, func.count(ContentTopic.content_id).label("n"))
        .join(ContentTopic, ContentTopic.topic_id == Topic.id)
        .group_by(Topic.id)
        .order_by(func.count(ContentTopic.content_id).desc(), Topic.name)
        .limit(10)
    ).all()
    unread = session.execute(
        select(func.count(Alert.id)).where(Alert.read.is_(False))
    ).scalar_one()
    return {
        "topics": count(Topic),
        "content": count(Content),
        "creators": count(Creator),
        "edges": count(TopicCooccurrence),
        "active_flows": len(get_active_flows(session, now=now)),
        "unread_alerts": unread,
        "content_last_7_days": last_week,
        "by_platform": by_platform,
        "top_topics": [{"name": name, "count": n} for name, n in top],
    }
