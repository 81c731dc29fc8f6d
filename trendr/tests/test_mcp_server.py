"""Tests for the MCP tools, called directly against a temporary database."""
from __future__ import annotations

import json

import pytest

from trendr import mcp_server
from trendr.config import EngineConfig
from trendr.db import get_session, init_db, session_scope
from trendr.engine import FlowEngine, ingest_content
from trendr.schemas import ContentIn
from trendr.services import get_topic_by_slug, set_topic_motivation_scores
from trendr.utils import utcnow


@pytest.fixture()
def mcp_db(tmp_path, monkeypatch):
    monkeypatch.setenv("TRENDR_DB_PATH", str(tmp_path / "mcp.db"))
    monkeypatch.setattr(mcp_server, "_engine", None)
    init_db()
    with session_scope() as session:
        ids = {slug: get_topic_by_slug(session, slug).id for slug in ("cryptocurrency", "watches-luxury")}
    return ids


def _seed_flow(ids):
    with session_scope() as session:
        for n in range(4):
            ingest_content(
                session,
                ContentIn(platform="youtube", platform_id=f"v{n}", content_type="video", published_at=utcnow()),
                [(ids["cryptocurrency"], 1.0), (ids["watches-luxury"], 1.0)],
            )
        session.commit()
    for topic_id in ids.values():
        with session_scope() as session:
            set_topic_motivation_scores(session, topic_id, {"wealth_accumulation": 0.8})
            session.commit()


class TestMcpTools:
    def test_overview_is_json(self):
        overview = json.loads(mcp_server.trendr_overview())
        assert set(overview["signals"]) == {"creator_pivot", "co_occurrence", "motivation_match"}

    def test_stats_on_seeded_taxonomy(self, mcp_db):
        stats = mcp_server.get_stats()
        assert stats["topics"] == 15
        assert stats["content"] == 0

    def test_list_and_search_topics(self, mcp_db):
        assert len(mcp_server.list_topics(limit=5)) == 5
        assert [t["slug"] for t in mcp_server.list_topics(search="crypto")] == ["cryptocurrency"]

    def test_related_topics(self, mcp_db):
        _seed_flow(mcp_db)
        result = mcp_server.get_related_topics(mcp_db["cryptocurrency"])
        assert result["topic"] == "Cryptocurrency"
        assert [r["name"] for r in result["related"]] == ["Watches & Luxury"]
        assert "error" in mcp_server.get_related_topics(99999)

    def test_detection_flows_and_alerts(self, mcp_db):
        _seed_flow(mcp_db)
        run = mcp_server.run_detection()
        assert run["started"] is True
        assert len(run["flows"]) == 2

        flows = mcp_server.list_active_flows()
        assert len(flows) == 2
        assert mcp_server.list_active_flows(min_confidence=0.9) == []

        alerts = mcp_server.list_unread_alerts()
        assert len(alerts) == 2
        assert mcp_server.mark_alert_read(alerts[0]["id"]) == {"ok": True, "alert_id": alerts[0]["id"]}
        assert len(mcp_server.list_unread_alerts()) == 1
        assert "error" in mcp_server.mark_alert_read(99999)

    def test_detection_failure_reported(self, mcp_db, monkeypatch):
        broken = FlowEngine(get_session, EngineConfig(flow_min_confidence=1.5))
        monkeypatch.setattr(mcp_server, "_engine", broken)
        result = mcp_server.run_detection()
        assert "configuration error" in result["error"]

    def test_engine_config_from_environment(self, mcp_db, monkeypatch):
        monkeypatch.setenv("TRENDR_FLOW_MIN_CONFIDENCE", "0.7")
        _seed_flow(mcp_db)
        assert mcp_server.run_detection()["flows"] == []
