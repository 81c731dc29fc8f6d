"""Integration tests for FastAPI endpoints.

Uses TestClient against a temporary SQLite file so detection cycles, which run
in a worker thread, see the same data as the request sessions.
"""
from __future__ import annotations

import io
from datetime import UTC, datetime

import openpyxl
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from trendr import services
from trendr.engine import FlowEngine
from trendr.models import Base
from trendr.scheduler import DetectionScheduler
from trendr.utils import slugify


@pytest.fixture()
def test_db(tmp_path):
    """Create a temporary SQLite database file for testing."""
    engine = create_engine(f"sqlite:///{tmp_path / 'api.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine, TestSession


@pytest.fixture()
def client(test_db, tmp_path, monkeypatch):
    """FastAPI TestClient wired to the temporary database with the timer disabled."""
    engine, TestSession = test_db
    monkeypatch.setenv("TRENDR_DB_PATH", str(tmp_path / "lifespan.db"))
    monkeypatch.setenv("TRENDR_DETECTION_INTERVAL_MINUTES", "0")
    from trendr.app import app, db_session, detection_scheduler

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    scheduler = DetectionScheduler(FlowEngine(TestSession), interval_minutes=0)
    app.dependency_overrides[db_session] = override_db_session
    app.dependency_overrides[detection_scheduler] = lambda: scheduler
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c, TestSession
    app.dependency_overrides.clear()


@pytest.fixture()
def seeded_client(client):
    """Client with a small taxonomy pre-seeded."""
    c, TestSession = client
    session = TestSession()
    ids = {}
    for name in ("Cryptocurrency", "Watches & Luxury", "Gaming"):
        ids[slugify(name)] = services.create_topic(session, name).id
    session.commit()
    session.close()
    return c, TestSession, ids


def _post(c, platform_id, topic_ids, creator=None):
    body = {
        "content": {
            "platform": "reddit",
            "platform_id": platform_id,
            "text_content": f"post {platform_id}",
            "published_at": datetime.now(UTC).isoformat(),
        },
        "topics": [{"topic_id": tid, "confidence": 0.9} for tid in topic_ids],
    }
    if creator:
        body["content"]["creator"] = {"platform_id": creator, "username": creator}
    return c.post("/api/content", json=body)


class TestTopicEndpoints:
    def test_list_topics(self, seeded_client):
        c, _, _ = seeded_client
        resp = c.get("/api/topics")
        assert resp.status_code == 200
        assert {t["slug"] for t in resp.json()} == {"cryptocurrency", "watches-luxury", "gaming"}

    def test_search_topics(self, seeded_client):
        c, _, ids = seeded_client
        resp = c.get("/api/topics/search", params={"q": "watch"})
        assert resp.status_code == 200
        assert [t["id"] for t in resp.json()] == [ids["watches-luxury"]]

    def test_create_topic(self, seeded_client):
        c, _, ids = seeded_client
        resp = c.post("/api/topics", json={
            "name": "Bitcoin ETFs", "parent_topic_id": ids["cryptocurrency"], "aliases": ["spot etf"],
        })
        assert resp.status_code == 201
        data = resp.json()
        assert data["slug"] == "bitcoin-etfs"
        assert data["parent_topic_id"] == ids["cryptocurrency"]

    def test_create_topic_conflict(self, seeded_client):
        c, _, _ = seeded_client
        assert c.post("/api/topics", json={"name": "gaming"}).status_code == 409

    def test_create_topic_invalid(self, seeded_client):
        c, _, _ = seeded_client
        assert c.post("/api/topics", json={"name": "   "}).status_code == 422
        assert c.post("/api/topics", json={"name": "???"}).status_code == 400
        assert c.post("/api/topics", json={"name": "Orphan", "parent_topic_id": 999}).status_code == 400

    def test_get_topic_detail(self, seeded_client):
        c, _, ids = seeded_client
        resp = c.get(f"/api/topics/{ids['gaming']}")
        assert resp.status_code == 200
        data = resp.json()
        assert data["name"] == "Gaming"
        assert data["motivations"] == {}
        assert data["related"] == []

    def test_get_topic_not_found(self, seeded_client):
        c, _, _ = seeded_client
        assert c.get("/api/topics/99999").status_code == 404

    def test_reparent_rejects_cycle(self, seeded_client):
        c, _, ids = seeded_client
        child = c.post("/api/topics", json={"name": "Altcoins", "parent_topic_id": ids["cryptocurrency"]}).json()
        resp = c.put(f"/api/topics/{ids['cryptocurrency']}/parent", json={"parent_topic_id": child["id"]})
        assert resp.status_code == 400
        resp = c.put(f"/api/topics/{child['id']}/parent", json={"parent_topic_id": None})
        assert resp.status_code == 200
        assert resp.json()["parent_topic_id"] is None

    def test_motivations_overwrite(self, seeded_client):
        c, _, ids = seeded_client
        url = f"/api/topics/{ids['gaming']}/motivations"
        c.put(url, json={"scores": {"entertainment_escapism": 0.9, "community_belonging": 0.4}})
        resp = c.put(url, json={"scores": {"community_belonging": 1.5}})
        assert resp.status_code == 200
        assert resp.json() == {"community_belonging": 1.0}
        assert c.get(url).json() == {"community_belonging": 1.0}

    def test_motivations_unknown_topic(self, seeded_client):
        c, _, _ = seeded_client
        assert c.put("/api/topics/99999/motivations", json={"scores": {}}).status_code == 404


class TestContentEndpoints:
    def test_ingest_and_list(self, seeded_client):
        c, _, ids = seeded_client
        resp = _post(c, "t3_1", [ids["cryptocurrency"], ids["watches-luxury"], 424242], creator="alice")
        assert resp.status_code == 200
        data = resp.json()
        assert data["created"] is True
        assert data["pairs_recorded"] == 1
        assert data["skipped_topic_ids"] == [424242]

        again = _post(c, "t3_1", [ids["cryptocurrency"], ids["watches-luxury"]]).json()
        assert again["created"] is False
        assert again["content_id"] == data["content_id"]

        listed = c.get("/api/content").json()
        assert len(listed) == 1
        assert listed[0]["creator"] == "alice"
        by_topic = c.get(f"/api/topics/{ids['watches-luxury']}/content").json()
        assert [x["platform_id"] for x in by_topic] == ["t3_1"]

    def test_ingest_rejects_unknown_platform(self, seeded_client):
        c, _, _ = seeded_client
        resp = c.post("/api/content", json={"content": {"platform": "myspace", "platform_id": "1"}, "topics": []})
        assert resp.status_code == 422

    def test_related_topics(self, seeded_client):
        c, _, ids = seeded_client
        _post(c, "t3_1", [ids["cryptocurrency"], ids["watches-luxury"]])
        _post(c, "t3_2", [ids["watches-luxury"], ids["gaming"]])
        resp = c.get(f"/api/topics/{ids['cryptocurrency']}/related")
        assert resp.status_code == 200
        assert [(r["name"], r["depth"]) for r in resp.json()] == [("Watches & Luxury", 1), ("Gaming", 2)]
        shallow = c.get(f"/api/topics/{ids['cryptocurrency']}/related", params={"max_depth": 1}).json()
        assert len(shallow) == 1
        assert c.get(f"/api/topics/{ids['cryptocurrency']}/related", params={"max_depth": 3}).status_code == 422


class TestImportEndpoint:
    def test_import_xlsx(self, seeded_client):
        c, _, _ = seeded_client
        wb = openpyxl.Workbook()
        ws = wb.active
        ws.title = "Content"
        ws.append(["Platform", "Platform ID", "Creator", "Type", "Text", "Published", "Likes", "Comments", "Topics"])
        ws.append(["reddit", "t3_x", "alice", "post", "hi", None, 1, 0, "cryptocurrency;watches-luxury:0.7"])
        buf = io.BytesIO()
        wb.save(buf)
        resp = c.post("/api/import", files={"file": ("content.xlsx", buf.getvalue(), "application/octet-stream")})
        assert resp.status_code == 200
        assert resp.json()["imported"] == 1
        assert c.get("/api/stats").json()["edges"] == 1

    def test_import_rejects_other_formats(self, seeded_client):
        c, _, _ = seeded_client
        resp = c.post("/api/import", files={"file": ("content.csv", b"a,b", "text/csv")})
        assert resp.status_code == 400


class TestDetectionEndpoints:
    def _seed_signals(self, c, ids):
        for n in range(4):
            _post(c, f"t3_{n}", [ids["cryptocurrency"], ids["watches-luxury"]])
        for key in ("cryptocurrency", "watches-luxury"):
            c.put(f"/api/topics/{ids[key]}/motivations", json={"scores": {"wealth_accumulation": 0.8}})

    def test_status_before_any_run(self, seeded_client):
        c, _, _ = seeded_client
        resp = c.get("/api/detect/status")
        assert resp.status_code == 200
        assert resp.json() == {
            "is_running": False, "last_run_at": None, "last_error": None,
            "last_flow_count": 0, "last_alert_count": 0, "skipped_runs": 0,
        }

    def test_detect_flows_and_alerts(self, seeded_client):
        c, _, ids = seeded_client
        self._seed_signals(c, ids)

        resp = c.post("/api/detect")
        assert resp.status_code == 200
        run = resp.json()
        assert run["started"] is True
        assert len(run["flows"]) == 2
        assert all(f["confidence"] == pytest.approx(0.66) for f in run["flows"])
        assert all(f["motivation_link"] == "wealth_accumulation" for f in run["flows"])
        assert {s["type"] for s in run["flows"][0]["signals"]} == {"co_occurrence", "motivation_match"}
        assert run["status"]["last_flow_count"] == 2
        assert run["status"]["last_alert_count"] == 2

        flows = c.get("/api/flows").json()
        assert len(flows) == 2
        assert all(f["state"] == "active" for f in flows)
        assert c.get("/api/flows", params={"min_confidence": 0.7}).json() == []

        alerts = c.get("/api/alerts").json()
        assert {a["alert_type"] for a in alerts} == {"flow_detected"}
        assert {a["topic_id"] for a in alerts} == {ids["cryptocurrency"], ids["watches-luxury"]}

        assert c.post(f"/api/alerts/{alerts[0]['id']}/read").json() == {"ok": True}
        assert len(c.get("/api/alerts", params={"unread_only": True}).json()) == 1

        stats = c.get("/api/stats").json()
        assert stats["active_flows"] == 2
        assert stats["unread_alerts"] == 1
        assert stats["content"] == 4

        # Second run appends flows; alerts stay deduplicated
        c.post("/api/detect")
        assert len(c.get("/api/flows").json()) == 4
        assert len(c.get("/api/alerts").json()) == 2

    def test_detect_with_nothing_to_find(self, seeded_client):
        c, _, _ = seeded_client
        run = c.post("/api/detect").json()
        assert run["started"] is True
        assert run["flows"] == []

    def test_detect_failure_is_500(self, client):
        c, _ = client
        resp = c.post("/api/detect")
        assert resp.status_code == 500
        assert "configuration error" in resp.json()["detail"]
        assert c.get("/api/detect/status").json()["last_error"].startswith("detection failed at")

    def test_mark_missing_alert(self, seeded_client):
        c, _, _ = seeded_client
        assert c.post("/api/alerts/99999/read").status_code == 404


class TestStatsEndpoint:
    def test_empty_stats(self, seeded_client):
        c, _, _ = seeded_client
        resp = c.get("/api/stats")
        assert resp.status_code == 200
        data = resp.json()
        assert data["topics"] == 3
        assert data["content"] == 0
        assert data["by_platform"] == {}
