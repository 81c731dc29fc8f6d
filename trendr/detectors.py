"""Weak-signal detectors: creator pivots, strengthening edges, motivation bridges.

Each detector is read-only over persisted history and returns plain dataclasses.
Windows are measured in whole UTC days back from ``now``: a window of N days
covers ``days_ago`` 0 through N-1, and a baseline of M days covers the days
after the recent window up to ``days_ago`` M-1.

Architecture
------------
- **Creator pivots** compare each creator's per-topic content counts in a
  recent window against an older, disjoint historical window. Pivot signals
  carry direction (old topic -> new topic).
- **Edge strengthening** compares the daily co-occurrence buckets of every
  topic pair in a recent window against a baseline window. Undirected.
- **Motivation bridges** are only looked for among pairs the first two
  detectors already surfaced, and require both topics to share the same top
  motivation label above a floor. Undirected.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import ClassVar, Iterable

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from trendr.config import CO_OCCURRENCE, CREATOR_PIVOT, MOTIVATION_MATCH, EngineConfig
from trendr.graph import canonical_pair
from trendr.models import CooccurrenceBucket, CreatorTopicHistory, TopicMotivation
from trendr.utils import as_naive_utc

log = logging.getLogger(__name__)


def _name(names: dict[int, str] | None, topic_id: int) -> str:
    return (names or {}).get(topic_id, f"#{topic_id}")


# ---------------------------------------------------------------------------
# Signal types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PivotSignal:
    signal_type: ClassVar[str] = CREATOR_PIVOT

    creator_id: int
    from_topic_id: int
    to_topic_id: int
    weight: float
    new_count: int
    old_count: int

    @property
    def pair(self) -> tuple[int, int]:
        return canonical_pair(self.from_topic_id, self.to_topic_id)

    def evidence(self, names: dict[int, str] | None = None) -> str:
        return (
            f"creator {self.creator_id} moved from {_name(names, self.from_topic_id)} "
            f"({self.old_count} historical) to {_name(names, self.to_topic_id)} "
            f"({self.new_count} recent)"
        )


@dataclass(frozen=True)
class EdgeSignal:
    signal_type: ClassVar[str] = CO_OCCURRENCE

    topic_a_id: int
    topic_b_id: int
    weight: float
    recent: int
    baseline: int
    change_rate: float

    @property
    def pair(self) -> tuple[int, int]:
        return (self.topic_a_id, self.topic_b_id)

    def evidence(self, names: dict[int, str] | None = None) -> str:
        return (
            f"{_name(names, self.topic_a_id)} + {_name(names, self.topic_b_id)} co-occurred "
            f"{self.recent}x recently vs {self.baseline}x in baseline "
            f"(change {self.change_rate:+.2f})"
        )


@dataclass(frozen=True)
class MotivationSignal:
    signal_type: ClassVar[str] = MOTIVATION_MATCH

    topic_a_id: int
    topic_b_id: int
    label: str
    weight: float
    score_a: float
    score_b: float

    @property
    def pair(self) -> tuple[int, int]:
        return (self.topic_a_id, self.topic_b_id)

    def evidence(self, names: dict[int, str] | None = None) -> str:
        return (
            f"{_name(names, self.topic_a_id)} ({self.score_a:.2f}) and "
            f"{_name(names, self.topic_b_id)} ({self.score_b:.2f}) share top motivation {self.label}"
        )


Signal = PivotSignal | EdgeSignal | MotivationSignal


@dataclass
class DetectionResult:
    pivots: list[PivotSignal] = field(default_factory=list)
    edges: list[EdgeSignal] = field(default_factory=list)
    motivations: list[MotivationSignal] = field(default_factory=list)

    @property
    def implicated_pairs(self) -> set[tuple[int, int]]:
        return {s.pair for s in (*self.pivots, *self.edges)}

    def __len__(self) -> int:
        return len(self.pivots) + len(self.edges) + len(self.motivations)


def _window_start(today: date, days: int) -> date:
    """First day of a window of *days* days ending today (inclusive)."""
    return today - timedelta(days=days - 1)


# ---------------------------------------------------------------------------
# Creator pivots
# ---------------------------------------------------------------------------


def _creator_window_counts(
    session: Session, now: datetime, config: EngineConfig,
) -> tuple[dict[int, dict[int, int]], dict[int, dict[int, int]]]:
    today = as_naive_utc(now).date()
    recent_start = _window_start(today, config.pivot_recent_days)
    history_start = _window_start(today, config.pivot_history_days)
    window = case((CreatorTopicHistory.period_start >= recent_start, 1), else_=0)

    rows = session.execute(
        select(
            CreatorTopicHistory.creator_id,
            CreatorTopicHistory.topic_id,
            window.label("is_recent"),
            func.sum(CreatorTopicHistory.content_count),
        )
        .where(
            CreatorTopicHistory.period_start >= history_start,
            CreatorTopicHistory.period_start <= today,
        )
        .group_by(CreatorTopicHistory.creator_id, CreatorTopicHistory.topic_id, window)
    ).all()

    recent: dict[int, dict[int, int]] = defaultdict(dict)
    historical: dict[int, dict[int, int]] = defaultdict(dict)
    for creator_id, topic_id, is_recent, total in rows:
        target = recent if is_recent else historical
        target[creator_id][topic_id] = int(total or 0)
    return recent, historical


def pivot_weight(new_count: int, old_count: int, config: EngineConfig) -> float:
    cap = config.pivot_ratio_cap
    return min(new_count / max(old_count, 1), cap) / cap


def detect_creator_pivots(session: Session, now: datetime, config: EngineConfig) -> list[PivotSignal]:
    """Emit one signal per (creator, new topic, old topic) that meets the pivot rule.

    The new topic's recent count must exceed ``pivot_growth_factor`` times both
    its own historical count (zero if it had none) and the old topic's
    historical count. Creators without historical activity never pivot.
    """
    recent, historical = _creator_window_counts(session, now, config)
    factor = config.pivot_growth_factor
    signals: list[PivotSignal] = []

    for creator_id in sorted(historical):
        past = {t: c for t, c in historical[creator_id].items() if c > 0}
        if not past:
            continue
        for new_topic, new_count in sorted(recent.get(creator_id, {}).items()):
            if new_count <= factor * past.get(new_topic, 0):
                continue
            for old_topic, old_count in sorted(past.items()):
                if old_topic == new_topic or new_count <= factor * old_count:
                    continue
                signals.append(PivotSignal(
                    creator_id=creator_id,
                    from_topic_id=old_topic,
                    to_topic_id=new_topic,
                    weight=pivot_weight(new_count, old_count, config),
                    new_count=new_count,
                    old_count=old_count,
                ))

    log.debug("Creator pivot detector: %d signals", len(signals))
    return signals


# ---------------------------------------------------------------------------
# Edge strengthening
# ---------------------------------------------------------------------------


def edge_window_sums(session: Session, now: datetime, config: EngineConfig) -> dict[tuple[int, int], tuple[int, int]]:
    """Return ``{(a, b): (recent_sum, baseline_sum)}`` for pairs active in either window."""
    today = as_naive_utc(now).date()
    recent_start = _window_start(today, config.edge_recent_days)
    baseline_start = _window_start(today, config.edge_baseline_days)
    window = case((CooccurrenceBucket.day >= recent_start, 1), else_=0)

    rows = session.execute(
        select(
            CooccurrenceBucket.topic_a_id,
            CooccurrenceBucket.topic_b_id,
            window.label("is_recent"),
            func.sum(CooccurrenceBucket.frequency),
        )
        .where(CooccurrenceBucket.day >= baseline_start, CooccurrenceBucket.day <= today)
        .group_by(CooccurrenceBucket.topic_a_id, CooccurrenceBucket.topic_b_id, window)
    ).all()

    sums: dict[tuple[int, int], list[int]] = defaultdict(lambda: [0, 0])
    for a, b, is_recent, total in rows:
        sums[(a, b)][0 if is_recent else 1] += int(total or 0)
    return {pair: (r, b) for pair, (r, b) in sums.items()}


def change_rate(recent: int, baseline: int) -> float:
    return (recent - baseline) / max(baseline, 1)


def detect_edge_strengthening(session: Session, now: datetime, config: EngineConfig) -> list[EdgeSignal]:
    signals: list[EdgeSignal] = []
    for (a, b), (recent, baseline) in sorted(edge_window_sums(session, now, config).items()):
        if recent <= 0:
            continue
        rate = change_rate(recent, baseline)
        if rate <= config.edge_min_change_rate:
            continue
        cap = config.edge_change_cap
        signals.append(EdgeSignal(
            topic_a_id=a, topic_b_id=b,
            weight=min(rate, cap) / cap,
            recent=recent, baseline=baseline, change_rate=rate,
        ))
    log.debug("Edge strengthening detector: %d signals", len(signals))
    return signals


def detect_edge_decline(session: Session, now: datetime, config: EngineConfig) -> list[tuple[int, int, int]]:
    """Pairs that were active in the baseline but silent recently: ``(a, b, baseline_sum)``.

    Decline never produces a flow; this is exposed for inspection only.
    """
    return [
        (a, b, baseline)
        for (a, b), (recent, baseline) in sorted(edge_window_sums(session, now, config).items())
        if recent == 0 and baseline > 0
    ]


# ---------------------------------------------------------------------------
# Motivation bridges
# ---------------------------------------------------------------------------


def top_motivations(session: Session, topic_ids: Iterable[int]) -> dict[int, tuple[str, float]]:
    """Highest-scoring motivation label per topic; ties go to the alphabetically first label."""
    ids = set(topic_ids)
    if not ids:
        return {}
    rows = session.execute(
        select(TopicMotivation.topic_id, TopicMotivation.motivation, TopicMotivation.score)
        .where(TopicMotivation.topic_id.in_(ids))
    ).all()
    best: dict[int, tuple[str, float]] = {}
    for topic_id, label, score in sorted(rows, key=lambda r: (r[0], -r[2], r[1])):
        best.setdefault(topic_id, (label, score))
    return best


def find_motivation_bridges(
    session: Session, pairs: Iterable[tuple[int, int]], config: EngineConfig,
) -> list[MotivationSignal]:
    pairs = sorted({canonical_pair(a, b) for a, b in pairs})
    tops = top_motivations(session, {t for pair in pairs for t in pair})
    floor = config.motivation_floor
    signals: list[MotivationSignal] = []
    for a, b in pairs:
        if a not in tops or b not in tops:
            continue
        (label_a, score_a), (label_b, score_b) = tops[a], tops[b]
        if label_a != label_b or score_a <= floor or score_b <= floor:
            continue
        signals.append(MotivationSignal(
            topic_a_id=a, topic_b_id=b, label=label_a,
            weight=(score_a + score_b) / 2, score_a=score_a, score_b=score_b,
        ))
    log.debug("Motivation bridge finder: %d signals over %d pairs", len(signals), len(pairs))
    return signals


def run_detectors(session: Session, now: datetime, config: EngineConfig) -> DetectionResult:
    result = DetectionResult(
        pivots=detect_creator_pivots(session, now, config),
        edges=detect_edge_strengthening(session, now, config),
    )
    result.motivations = find_motivation_bridges(session, result.implicated_pairs, config)
    return result
