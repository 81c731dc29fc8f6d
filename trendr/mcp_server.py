from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP
from sqlalchemy import select

from trendr import services
from trendr.config import EngineConfig
from trendr.db import get_session, init_db, session_scope
from trendr.engine import DetectionError, FlowEngine
from trendr.graph import get_related_topics as graph_related_topics
from trendr.lifecycle import get_active_flows, get_unread_alerts
from trendr.lifecycle import mark_alert_read as lifecycle_mark_alert_read
from trendr.models import Topic

log = logging.getLogger(__name__)

_engine: FlowEngine | None = None


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def trendr_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Trendr",
    instructions=(
        "Trendr infers how audience attention moves between topics on social platforms. "
        "Start with get_stats() for an overview, then list_active_flows() to see where "
        "attention is heading, and get_related_topics(topic_id) to explore the topic graph. "
        "run_detection() runs a fresh detection cycle over the collected history."
    ),
    lifespan=trendr_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_or_error(session, model, entity_id, label="Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if not obj:
        return None, {"error": f"{label} {entity_id} not found"}
    return obj, None


def _flow_engine() -> FlowEngine:
    global _engine
    if _engine is None:
        _engine = FlowEngine(get_session, EngineConfig.from_env())
    return _engine


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("trendr://overview")
def trendr_overview() -> str:
    """Overview of Trendr: data model, signals, and workflow."""
    return json.dumps({
        "system": "Trendr: Attention Flow Inference",
        "description": (
            "Trendr collects topic-tagged content from YouTube, X and Reddit, keeps a "
            "co-occurrence graph of topics, and fuses weak signals into confidence-scored "
            "flows that describe audience attention migrating from one topic to another."
        ),
        "data_model": {
            "topic": "Node in the taxonomy (e.g. Cryptocurrency, Watches & Luxury).",
            "flow": "Directed topic pair with strength, confidence, evidence signals and a 30-day validity window.",
            "alert": "Notification for a high-confidence flow or a sharp creator pivot, deduplicated per topic per 24h.",
        },
        "signals": {
            "creator_pivot": "Creators whose recent output moved from one topic to another.",
            "co_occurrence": "Topic pairs appearing together noticeably more often this week than in the prior weeks.",
            "motivation_match": "Both topics share the same dominant audience motivation.",
        },
        "workflow": [
            "1. get_stats() to see data volume and active flows.",
            "2. list_active_flows() to browse current flows, strongest first.",
            "3. get_related_topics(topic_id) to explore neighbors in the topic graph.",
            "4. list_unread_alerts() and mark_alert_read(alert_id) to triage alerts.",
            "5. run_detection() to refresh flows from the latest history.",
        ],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
def get_stats() -> dict:
    """Get summary statistics: topics, content, creators, graph edges, flows, and alerts."""
    with session_scope() as session:
        return services.compute_stats(session)


@mcp.tool()
def list_topics(search: str | None = None, limit: int = 50) -> list[dict]:
    """List taxonomy topics by content volume, or search them by name, slug, or alias."""
    with session_scope() as session:
        limit = max(1, min(limit, 500))
        if search:
            return services.search_topics(session, search, limit=limit)
        return services.list_topics(session, limit=limit)


@mcp.tool()
def list_active_flows(min_confidence: float | None = None) -> list[dict]:
    """List flows that are still inside their validity window, most confident first.

    Args:
        min_confidence: Only return flows at or above this confidence (0-1).
    """
    with session_scope() as session:
        names = services.topic_names(session)
        return [services.flow_summary(f, names) for f in get_active_flows(session, min_confidence)]


@mcp.tool()
def get_related_topics(topic_id: int, max_depth: int = 2) -> dict:
    """Topics connected to topic_id through co-occurrence edges, up to 2 hops away."""
    with session_scope() as session:
        topic, err = _get_or_error(session, Topic, topic_id, "Topic")
        if err:
            return err
        names = services.topic_names(session)
        return {
            "topic_id": topic.id, "topic": topic.name,
            "related": [
                {"topic_id": r.topic_id, "name": names.get(r.topic_id, f"#{r.topic_id}"),
                 "depth": r.depth, "weight": r.weight}
                for r in graph_related_topics(session, topic_id, max_depth)
            ],
        }


@mcp.tool()
def list_unread_alerts() -> list[dict]:
    """List alerts that have not been marked read, newest first."""
    with session_scope() as session:
        names = services.topic_names(session)
        return [services.alert_summary(a, names) for a in get_unread_alerts(session)]


@mcp.tool()
def mark_alert_read(alert_id: int) -> dict:
    """Mark a single alert as read."""
    with session_scope() as session:
        if not lifecycle_mark_alert_read(session, alert_id):
            return {"error": f"Alert {alert_id} not found"}
        session.commit()
        return {"ok": True, "alert_id": alert_id}


@mcp.tool()
def run_detection() -> dict:
    """Run one detection cycle now. Skipped if a cycle is already running."""
    engine = _flow_engine()
    skipped_before = engine.state.skipped_runs
    try:
        flows = engine.run_detection_cycle()
    except DetectionError as exc:
        return {"error": str(exc)}
    with session_scope() as session:
        names = services.topic_names(session)
    return {
        "started": engine.state.skipped_runs == skipped_before,
        "flows": [services.flow_summary(f, names) for f in flows],
        "status": engine.state.snapshot(),
    }


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Trendr MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
