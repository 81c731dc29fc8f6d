from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    Boolean, CheckConstraint, Date, DateTime, Float, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Taxonomy
# ---------------------------------------------------------------------------


class Topic(Base):
    __tablename__ = "topics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    slug: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    parent_topic_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("topics.id"), nullable=True)
    aliases_json: Mapped[str] = mapped_column(Text, default="[]")
    keywords_json: Mapped[str] = mapped_column(Text, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    parent: Mapped[Topic | None] = relationship("Topic", remote_side="Topic.id")
    motivations: Mapped[list[TopicMotivation]] = relationship(
        "TopicMotivation", back_populates="topic", cascade="all, delete-orphan",
    )


class TopicMotivation(Base):
    __tablename__ = "topic_motivations"

    topic_id: Mapped[int] = mapped_column(Integer, ForeignKey("topics.id"), primary_key=True)
    motivation: Mapped[str] = mapped_column(String(100), primary_key=True)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    topic: Mapped[Topic] = relationship("Topic", back_populates="motivations")


# ---------------------------------------------------------------------------
# Collected content
# ---------------------------------------------------------------------------


class Creator(Base):
    __tablename__ = "creators"
    __table_args__ = (UniqueConstraint("platform", "platform_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    platform: Mapped[str] = mapped_column(String(30), nullable=False)
    platform_id: Mapped[str] = mapped_column(String(200), nullable=False)
    username: Mapped[str] = mapped_column(String(200), nullable=False)
    display_name: Mapped[str] = mapped_column(String(300), default="")
    follower_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())


class Content(Base):
    __tablename__ = "content"
    __table_args__ = (
        UniqueConstraint("platform", "platform_id"),
        Index("idx_content_platform", "platform", "published_at"),
        Index("idx_content_creator", "creator_id", "published_at"),
        Index("idx_content_collected", "collected_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    platform: Mapped[str] = mapped_column(String(30), nullable=False)
    platform_id: Mapped[str] = mapped_column(String(200), nullable=False)
    creator_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("creators.id"), nullable=True)
    content_type: Mapped[str] = mapped_column(String(20), nullable=False)  # video | post | thread | comment
    text_content: Mapped[str] = mapped_column(Text, default="")
    engagement_likes: Mapped[int] = mapped_column(Integer, default=0)
    engagement_comments: Mapped[int] = mapped_column(Integer, default=0)
    engagement_shares: Mapped[int] = mapped_column(Integer, default=0)
    engagement_views: Mapped[int | None] = mapped_column(Integer, nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    collected_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    creator: Mapped[Creator | None] = relationship("Creator")
    topics: Mapped[list[ContentTopic]] = relationship(
        "ContentTopic", back_populates="content", cascade="all, delete-orphan",
    )


class ContentTopic(Base):
    __tablename__ = "content_topics"
    __table_args__ = (Index("idx_content_topics_topic", "topic_id"),)

    content_id: Mapped[int] = mapped_column(Integer, ForeignKey("content.id"), primary_key=True)
    topic_id: Mapped[int] = mapped_column(Integer, ForeignKey("topics.id"), primary_key=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)

    content: Mapped[Content] = relationship("Content", back_populates="topics")


# ---------------------------------------------------------------------------
# Graph and history
# ---------------------------------------------------------------------------


class TopicCooccurrence(Base):
    __tablename__ = "topic_cooccurrences"
    __table_args__ = (
        CheckConstraint("topic_a_id < topic_b_id", name="ck_cooccurrence_canonical"),
        Index("idx_cooccurrences_b", "topic_b_id"),
        Index("idx_cooccurrences_recent", "last_seen"),
    )

    topic_a_id: Mapped[int] = mapped_column(Integer, ForeignKey("topics.id"), primary_key=True)
    topic_b_id: Mapped[int] = mapped_column(Integer, ForeignKey("topics.id"), primary_key=True)
    frequency: Mapped[int] = mapped_column(Integer, default=1)
    last_seen: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class CooccurrenceBucket(Base):
    """Joint appearances of a canonical topic pair on one UTC day."""

    __tablename__ = "topic_cooccurrence_daily"
    __table_args__ = (Index("idx_cooccurrence_daily_day", "day"),)

    topic_a_id: Mapped[int] = mapped_column(Integer, ForeignKey("topics.id"), primary_key=True)
    topic_b_id: Mapped[int] = mapped_column(Integer, ForeignKey("topics.id"), primary_key=True)
    day: Mapped[date] = mapped_column(Date, primary_key=True)
    frequency: Mapped[int] = mapped_column(Integer, default=1)


class CreatorTopicHistory(Base):
    __tablename__ = "creator_topic_history"
    __table_args__ = (
        UniqueConstraint("creator_id", "topic_id", "period_start"),
        Index("idx_creator_history", "creator_id", "period_start"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    creator_id: Mapped[int] = mapped_column(Integer, ForeignKey("creators.id"), nullable=False)
    topic_id: Mapped[int] = mapped_column(Integer, ForeignKey("topics.id"), nullable=False)
    content_count: Mapped[int] = mapped_column(Integer, default=1)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)


# ---------------------------------------------------------------------------
# Engine output
# ---------------------------------------------------------------------------


class Flow(Base):
    __tablename__ = "flows"
    __table_args__ = (
        Index("idx_flows_detected", "detected_at"),
        Index("idx_flows_valid_until", "valid_until"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    from_topic_id: Mapped[int] = mapped_column(Integer, ForeignKey("topics.id"), nullable=False)
    to_topic_id: Mapped[int] = mapped_column(Integer, ForeignKey("topics.id"), nullable=False)
    strength: Mapped[float] = mapped_column(Float, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    signals_json: Mapped[str] = mapped_column(Text, default="[]")
    motivation_link: Mapped[str | None] = mapped_column(String(100), nullable=True)
    detected_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    valid_until: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    from_topic: Mapped[Topic] = relationship("Topic", foreign_keys=[from_topic_id])
    to_topic: Mapped[Topic] = relationship("Topic", foreign_keys=[to_topic_id])


class Alert(Base):
    __tablename__ = "alerts"
    __table_args__ = (
        Index("idx_alerts_created", "created_at"),
        Index("idx_alerts_dedup", "topic_id", "alert_type", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    alert_type: Mapped[str] = mapped_column(String(30), nullable=False)  # flow_detected | creator_pivot
    topic_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("topics.id"), nullable=True)
    flow_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("flows.id"), nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
