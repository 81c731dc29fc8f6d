"""Flow and alert lifecycle: append-only persistence, active views, deduplicated alerts.

A flow moves ``detected -> active -> expired`` purely by time: it is active
while ``now < valid_until``. Expired flows stay in the table and are filtered
out of current views. Re-detecting the same pair appends a new row.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from trendr.config import ALERT_CREATOR_PIVOT, ALERT_FLOW_DETECTED, CREATOR_PIVOT, EngineConfig
from trendr.models import Alert, Flow
from trendr.scorer import FlowCandidate, signal_payload, valid_until
from trendr.utils import as_naive_utc, json_parse, utcnow

log = logging.getLogger(__name__)

ACTIVE = "active"
EXPIRED = "expired"


# ---------------------------------------------------------------------------
# Flows
# ---------------------------------------------------------------------------


def persist_flows(
    session: Session,
    candidates: list[FlowCandidate],
    detected_at: datetime,
    config: EngineConfig,
    names: dict[int, str] | None = None,
) -> list[Flow]:
    """Append one Flow per accepted candidate (caller must commit)."""
    detected_at = as_naive_utc(detected_at)
    flows: list[Flow] = []
    for c in candidates:
        flow = Flow(
            from_topic_id=c.from_topic_id,
            to_topic_id=c.to_topic_id,
            strength=c.strength,
            confidence=c.confidence,
            signals_json=json.dumps([signal_payload(s, names) for s in c.signals]),
            motivation_link=c.motivation_link,
            detected_at=detected_at,
            valid_until=valid_until(detected_at, config),
        )
        session.add(flow)
        flows.append(flow)
    session.flush()
    return flows


def flow_signals(flow: Flow) -> list[dict[str, Any]]:
    return json_parse(flow.signals_json, [])


def flow_state(flow: Flow, now: datetime | None = None) -> str:
    now = as_naive_utc(now) if now else utcnow()
    return ACTIVE if now < flow.valid_until else EXPIRED


def get_active_flows(
    session: Session, min_confidence: float | None = None, now: datetime | None = None,
) -> list[Flow]:
    now = as_naive_utc(now) if now else utcnow()
    query = select(Flow).where(Flow.valid_until > now)
    if min_confidence is not None:
        query = query.where(Flow.confidence >= min_confidence)
    query = query.order_by(Flow.confidence.desc(), Flow.detected_at.desc(), Flow.id.desc())
    return list(session.execute(query).scalars().all())


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


def _max_pivot_weight(flow: Flow) -> float:
    return max(
        (float(s.get("weight", 0.0)) for s in flow_signals(flow) if s.get("type") == CREATOR_PIVOT),
        default=0.0,
    )


def alert_type_for(flow: Flow, config: EngineConfig) -> str | None:
    """Which alert a flow deserves, if any. A sharp creator pivot outranks plain confidence."""
    if _max_pivot_weight(flow) >= config.alert_pivot_weight:
        return ALERT_CREATOR_PIVOT
    if flow.confidence > config.alert_min_confidence:
        return ALERT_FLOW_DETECTED
    return None


def alert_message(flow: Flow, alert_type: str, names: dict[int, str] | None = None) -> str:
    names = names or {}
    src = names.get(flow.from_topic_id, f"topic #{flow.from_topic_id}")
    dst = names.get(flow.to_topic_id, f"topic #{flow.to_topic_id}")
    if alert_type == ALERT_CREATOR_PIVOT:
        return f"Creators are pivoting from {src} to {dst} (pivot strength {_max_pivot_weight(flow):.2f})"
    motive = f", shared motivation: {flow.motivation_link}" if flow.motivation_link else ""
    return f"Attention is flowing from {src} to {dst} (confidence {flow.confidence:.0%}{motive})"


def create_alerts(
    session: Session,
    flows: list[Flow],
    now: datetime,
    config: EngineConfig,
    names: dict[int, str] | None = None,
) -> list[Alert]:
    """Create at most one alert per (topic, alert type) per dedup window (caller must commit).

    The alert topic is the flow's destination. Alerts created earlier in the
    window, including ones from this same batch, suppress duplicates.
    """
    now = as_naive_utc(now)
    since = now - timedelta(hours=config.alert_dedup_hours)
    seen = {
        (topic_id, alert_type)
        for topic_id, alert_type in session.execute(
            select(Alert.topic_id, Alert.alert_type).where(Alert.created_at > since)
        ).all()
    }

    alerts: list[Alert] = []
    for flow in flows:
        kind = alert_type_for(flow, config)
        if kind is None:
            continue
        key = (flow.to_topic_id, kind)
        if key in seen:
            log.info("Suppressing duplicate %s alert for topic %d", kind, flow.to_topic_id)
            continue
        seen.add(key)
        alert = Alert(
            alert_type=kind,
            topic_id=flow.to_topic_id,
            flow_id=flow.id,
            message=alert_message(flow, kind, names),
            read=False,
            created_at=now,
        )
        session.add(alert)
        alerts.append(alert)
    session.flush()
    return alerts


def get_alerts(session: Session, limit: int = 50, unread_only: bool = False) -> list[Alert]:
    query = select(Alert)
    if unread_only:
        query = query.where(Alert.read.is_(False))
    query = query.order_by(Alert.created_at.desc(), Alert.id.desc()).limit(limit)
    return list(session.execute(query).scalars().all())


def get_unread_alerts(session: Session) -> list[Alert]:
    return list(session.execute(
        select(Alert).where(Alert.read.is_(False)).order_by(Alert.created_at.desc(), Alert.id.desc())
    ).scalars().all())


def mark_alert_read(session: Session, alert_id: int) -> bool:
    """Set the read flag (caller must commit). Returns False if the alert does not exist."""
    alert = session.get(Alert, alert_id)
    if alert is None:
        return False
    alert.read = True
    return True
