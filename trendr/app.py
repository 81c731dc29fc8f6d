from __future__ import annotations

import logging
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Generator

from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from trendr import services
from trendr.config import EngineConfig
from trendr.db import get_session, init_db, session_generator
from trendr.engine import DetectionError, FlowEngine, ingest_content
from trendr.graph import get_related_topics
from trendr.importer import import_xlsx
from trendr.lifecycle import get_active_flows, get_alerts, mark_alert_read
from trendr.models import Topic
from trendr.scheduler import DetectionScheduler
from trendr.schemas import (
    AlertOut,
    ContentOut,
    DetectionRunOut,
    DetectionStatusOut,
    FlowOut,
    ImportResult,
    IngestRequest,
    IngestResult,
    MotivationScoresIn,
    RelatedTopicOut,
    StatsOut,
    TopicCreate,
    TopicDetail,
    TopicOut,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    config = EngineConfig.from_env()
    scheduler = DetectionScheduler(FlowEngine(get_session, config))
    app.state.scheduler = scheduler
    scheduler.start()
    yield
    await scheduler.stop()


app = FastAPI(
    title="Trendr",
    version="0.1.0",
    description=(
        "Attention flow inference API. Ingest topic-tagged social content, "
        "run detection cycles, and browse the inferred flows between topics. "
        "All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Topics", "description": "Browse and extend the topic taxonomy."},
        {"name": "Content", "description": "Ingest and browse collected content."},
        {"name": "Import", "description": "Bulk import pre-tagged content from XLSX spreadsheets."},
        {"name": "Detection", "description": "Run and inspect flow detection cycles."},
        {"name": "Flows", "description": "Active attention flows and alerts."},
        {"name": "Stats", "description": "Aggregate statistics."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def detection_scheduler(request: Request) -> DetectionScheduler:
    return request.app.state.scheduler


def _get_or_404(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if not obj:
        raise HTTPException(404, f"{label} not found")
    return obj


# ---------------------------------------------------------------------------
# Routes: Topics (search before parameterized to avoid route shadowing)
# ---------------------------------------------------------------------------


class TopicParentUpdate(BaseModel):
    parent_topic_id: int | None = None


@app.get("/api/topics", response_model=list[TopicOut],
         tags=["Topics"], summary="List topics ordered by tagged content volume")
async def list_topics(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    session: Session = Depends(db_session),
):
    return services.list_topics(session, limit=limit, offset=offset)


@app.get("/api/topics/search", response_model=list[TopicOut],
         tags=["Topics"], summary="Search topics by name, slug, or alias")
async def search_topics(
    q: str = Query(..., min_length=1, description="Case-insensitive substring"),
    limit: int = Query(20, ge=1, le=100),
    session: Session = Depends(db_session),
):
    return services.search_topics(session, q, limit=limit)


@app.post("/api/topics", response_model=TopicOut, status_code=201,
          tags=["Topics"], summary="Add a topic to the taxonomy")
async def create_topic(body: TopicCreate, session: Session = Depends(db_session)):
    try:
        topic = services.create_topic(
            session, body.name, parent_topic_id=body.parent_topic_id,
            aliases=body.aliases, keywords=body.keywords,
        )
    except services.TopicConflictError as exc:
        raise HTTPException(409, str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    session.commit()
    return services.topic_summary(topic)


@app.get("/api/topics/{topic_id}", response_model=TopicDetail,
         tags=["Topics"], summary="Topic detail with motivations, related topics, and flow count")
async def get_topic(
    topic_id: int,
    session: Session = Depends(db_session),
    scheduler: DetectionScheduler = Depends(detection_scheduler),
):
    topic = _get_or_404(session, Topic, topic_id, "Topic")
    return services.topic_detail(session, topic, scheduler.engine.config)


@app.put("/api/topics/{topic_id}/parent", response_model=TopicOut,
         tags=["Topics"], summary="Re-parent a topic (cycles are rejected)")
async def set_topic_parent(topic_id: int, body: TopicParentUpdate, session: Session = Depends(db_session)):
    topic = _get_or_404(session, Topic, topic_id, "Topic")
    try:
        services.set_topic_parent(session, topic, body.parent_topic_id)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    session.commit()
    return services.topic_summary(topic)


@app.get("/api/topics/{topic_id}/motivations", response_model=dict[str, float],
         tags=["Topics"], summary="Motivation scores for a topic")
async def get_motivations(topic_id: int, session: Session = Depends(db_session)):
    _get_or_404(session, Topic, topic_id, "Topic")
    return services.get_topic_motivation_scores(session, topic_id)


@app.put("/api/topics/{topic_id}/motivations", response_model=dict[str, float],
         tags=["Topics"], summary="Replace a topic's motivation scores (values clamped to [0, 1])")
async def put_motivations(topic_id: int, body: MotivationScoresIn, session: Session = Depends(db_session)):
    _get_or_404(session, Topic, topic_id, "Topic")
    try:
        scores = services.set_topic_motivation_scores(session, topic_id, body.scores)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    session.commit()
    return scores


@app.get("/api/topics/{topic_id}/related", response_model=list[RelatedTopicOut],
         tags=["Topics"], summary="Topics reachable through co-occurrence edges (max 2 hops)")
async def related_topics(
    topic_id: int,
    max_depth: int = Query(2, ge=1, le=2),
    session: Session = Depends(db_session),
):
    _get_or_404(session, Topic, topic_id, "Topic")
    names = services.topic_names(session)
    return [
        {"topic_id": r.topic_id, "name": names.get(r.topic_id, f"#{r.topic_id}"),
         "depth": r.depth, "weight": r.weight}
        for r in get_related_topics(session, topic_id, max_depth)
    ]


@app.get("/api/topics/{topic_id}/content", response_model=list[ContentOut],
         tags=["Topics", "Content"], summary="Recent content tagged with a topic")
async def topic_content(
    topic_id: int,
    limit: int = Query(20, ge=1, le=200),
    session: Session = Depends(db_session),
):
    _get_or_404(session, Topic, topic_id, "Topic")
    return services.content_by_topic(session, topic_id, limit=limit)


# ---------------------------------------------------------------------------
# Routes: Content & Import
# ---------------------------------------------------------------------------


@app.post("/api/content", response_model=IngestResult,
          tags=["Content"], summary="Ingest one collected item with its extracted topics")
async def ingest(
    body: IngestRequest,
    session: Session = Depends(db_session),
    scheduler: DetectionScheduler = Depends(detection_scheduler),
):
    result = ingest_content(session, body.content, body.topics, scheduler.engine.config)
    session.commit()
    return result


@app.get("/api/content", response_model=list[ContentOut],
         tags=["Content"], summary="Most recently collected content")
async def list_content(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    session: Session = Depends(db_session),
):
    return services.list_content(session, limit=limit, offset=offset)


@app.post("/api/import", response_model=ImportResult,
          tags=["Import"], summary="Import pre-tagged content from an XLSX spreadsheet")
async def import_file(
    file: UploadFile = File(...),
    session: Session = Depends(db_session),
    scheduler: DetectionScheduler = Depends(detection_scheduler),
):
    if not file.filename or not file.filename.endswith(".xlsx"):
        raise HTTPException(400, "Only .xlsx files are supported")
    content = await file.read()
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(suffix=".xlsx", delete=False) as f:
            tmp_path = Path(f.name)
            f.write(content)
        return import_xlsx(tmp_path, session, scheduler.engine.config)
    finally:
        if tmp_path:
            tmp_path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Routes: Detection
# ---------------------------------------------------------------------------


@app.post("/api/detect", response_model=DetectionRunOut,
          tags=["Detection"], summary="Run one detection cycle now (dropped if one is in flight)")
async def run_detection(
    session: Session = Depends(db_session),
    scheduler: DetectionScheduler = Depends(detection_scheduler),
):
    skipped_before = scheduler.state.skipped_runs
    try:
        flows = await scheduler.trigger_now()
    except DetectionError as exc:
        raise HTTPException(500, str(exc)) from exc
    names = services.topic_names(session)
    return {
        "started": scheduler.state.skipped_runs == skipped_before,
        "flows": [services.flow_summary(f, names) for f in flows],
        "status": scheduler.state.snapshot(),
    }


@app.get("/api/detect/status", response_model=DetectionStatusOut,
         tags=["Detection"], summary="Whether a cycle is running and how the last one went")
async def detection_status(scheduler: DetectionScheduler = Depends(detection_scheduler)):
    return scheduler.state.snapshot()


# ---------------------------------------------------------------------------
# Routes: Flows & Alerts
# ---------------------------------------------------------------------------


@app.get("/api/flows", response_model=list[FlowOut],
         tags=["Flows"], summary="Active flows, most confident first")
async def list_flows(
    min_confidence: float | None = Query(None, ge=0.0, le=1.0),
    session: Session = Depends(db_session),
):
    names = services.topic_names(session)
    return [services.flow_summary(f, names) for f in get_active_flows(session, min_confidence)]


@app.get("/api/alerts", response_model=list[AlertOut],
         tags=["Flows"], summary="Recent alerts, newest first")
async def list_alerts(
    limit: int = Query(50, ge=1, le=500),
    unread_only: bool = Query(False),
    session: Session = Depends(db_session),
):
    names = services.topic_names(session)
    return [services.alert_summary(a, names) for a in get_alerts(session, limit, unread_only)]


@app.post("/api/alerts/{alert_id}/read", tags=["Flows"], summary="Mark an alert as read")
async def read_alert(alert_id: int, session: Session = Depends(db_session)):
    if not mark_alert_read(session, alert_id):
        raise HTTPException(404, "Alert not found")
    session.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Stats
# ---------------------------------------------------------------------------


@app.get("/api/stats", response_model=StatsOut,
         tags=["Stats"], summary="Get aggregate statistics")
async def get_stats(session: Session = Depends(db_session)):
    return services.compute_stats(session)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("trendr.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
