"""Pydantic request/response schemas for the Trendr API."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, field_validator

Platform = Literal["youtube", "x", "reddit"]
ContentType = Literal["video", "post", "thread", "comment"]


# ---------------------------------------------------------------------------
# Topics
# ---------------------------------------------------------------------------


class TopicOut(BaseModel):
    id: int
    name: str
    slug: str
    parent_topic_id: int | None = None
    aliases: list[str] = []
    keywords: list[str] = []
    content_count: int = 0


class RelatedTopicOut(BaseModel):
    topic_id: int
    name: str
    depth: int
    weight: int


class TopicDetail(TopicOut):
    motivations: dict[str, float] = {}
    related: list[RelatedTopicOut] = []
    active_flows: int = 0


class TopicCreate(BaseModel):
    name: str
    parent_topic_id: int | None = None
    aliases: list[str] = []
    keywords: list[str] = []

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v


class MotivationScoresIn(BaseModel):
    scores: dict[str, float]


# ---------------------------------------------------------------------------
# Content
# ---------------------------------------------------------------------------


class CreatorIn(BaseModel):
    platform_id: str
    username: str = ""
    display_name: str = ""
    follower_count: int | None = None


class TopicTagIn(BaseModel):
    topic_id: int
    confidence: float = 1.0


class ContentIn(BaseModel):
    platform: Platform
    platform_id: str
    content_type: ContentType = "post"
    text_content: str = ""
    creator: CreatorIn | None = None
    engagement_likes: int = 0
    engagement_comments: int = 0
    engagement_shares: int = 0
    engagement_views: int | None = None
    published_at: datetime | None = None


class IngestRequest(BaseModel):
    content: ContentIn
    topics: list[TopicTagIn] = []


class IngestResult(BaseModel):
    content_id: int
    created: bool
    topics_linked: int = 0
    pairs_recorded: int = 0
    skipped_topic_ids: list[int] = []


class ContentOut(BaseModel):
    id: int
    platform: str
    platform_id: str
    content_type: str
    text_content: str
    creator: str | None = None
    engagement_likes: int = 0
    engagement_comments: int = 0
    engagement_shares: int = 0
    engagement_views: int | None = None
    published_at: str | None = None
    topics: dict[str, float] = {}


class ImportResult(BaseModel):
    rows_read: int
    imported: int
    duplicates_updated: int
    skipped_rows: int
    unknown_topics: list[str] = []


# ---------------------------------------------------------------------------
# Flows, alerts, detection
# ---------------------------------------------------------------------------


class SignalOut(BaseModel):
    type: str
    weight: float
    evidence: str


class FlowOut(BaseModel):
    id: int
    from_topic_id: int
    from_topic: str
    to_topic_id: int
    to_topic: str
    strength: float
    confidence: float
    signals: list[SignalOut] = []
    motivation_link: str | None = None
    detected_at: str
    valid_until: str
    state: str


class AlertOut(BaseModel):
    id: int
    alert_type: str
    topic_id: int | None = None
    topic: str | None = None
    flow_id: int | None = None
    message: str
    read: bool
    created_at: str


class DetectionStatusOut(BaseModel):
    is_running: bool
    last_run_at: str | None = None
    last_error: str | None = None
    last_flow_count: int = 0
    last_alert_count: int = 0
    skipped_runs: int = 0


class DetectionRunOut(BaseModel):
    started: bool
    flows: list[FlowOut] = []
    status: DetectionStatusOut


class StatsOut(BaseModel):
    topics: int
    content: int
    creators: int
    edges: int
    active_flows: int
    unread_alerts: int
    content_last_7_days: int = 0
    by_platform: dict[str, int] = {}
    top_topics: list[dict[str, Any]] = []

