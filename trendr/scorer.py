"""Signal fusion: merge detector output into directed flow candidates and score them.

Architecture
------------
Every topic pair surfaced by a detector yields two directed candidates,
``a -> b`` and ``b -> a``. A direction receives:

- the **creator pivot** signals that point that way (old topic -> new topic),
- every **co-occurrence** and **motivation** signal for the pair, since those
  carry no direction of their own.

Scoring is deterministic and free of I/O:

- ``confidence`` = sum over every signal of ``signal_weight x class_weight``,
  multiplied by the multi-signal bonus (x1.2 for two classes, x1.3 for three,
  never both) and clamped to [0, 1]
- ``strength``   = the largest individual signal weight (magnitude, not certainty)
- a candidate becomes a flow only when ``confidence`` is strictly above
  ``flow_min_confidence``
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable

from trendr.config import EngineConfig
from trendr.detectors import DetectionResult, MotivationSignal, Signal
from trendr.utils import clamp

log = logging.getLogger(__name__)


@dataclass
class FlowCandidate:
    """A directed topic pair with the evidence gathered for it."""
    from_topic_id: int
    to_topic_id: int
    signals: list[Signal] = field(default_factory=list)
    confidence: float = 0.0
    strength: float = 0.0

    @property
    def signal_classes(self) -> set[str]:
        return {s.signal_type for s in self.signals}

    @property
    def motivation_link(self) -> str | None:
        bridges = [s for s in self.signals if isinstance(s, MotivationSignal)]
        if not bridges:
            return None
        return max(bridges, key=lambda s: s.weight).label


# ---------------------------------------------------------------------------
# Deterministic scoring
# ---------------------------------------------------------------------------


def multi_signal_bonus(class_count: int, config: EngineConfig) -> float:
    if class_count >= 3:
        return config.bonus_three_classes
    if class_count == 2:
        return config.bonus_two_classes
    return 1.0


def compute_confidence(signals: Iterable[Signal], config: EngineConfig) -> float:
    signals = list(signals)
    weights = config.class_weights
    raw = sum(s.weight * weights[s.signal_type] for s in signals)
    classes = {s.signal_type for s in signals}
    return clamp(raw * multi_signal_bonus(len(classes), config))


def compute_strength(signals: Iterable[Signal]) -> float:
    return clamp(max((s.weight for s in signals), default=0.0))


def is_accepted(confidence: float, config: EngineConfig) -> bool:
    return confidence > config.flow_min_confidence


def valid_until(detected_at: datetime, config: EngineConfig) -> datetime:
    return detected_at + timedelta(days=config.flow_validity_days)


def signal_payload(signal: Signal, names: dict[int, str] | None = None) -> dict[str, Any]:
    return {
        "type": signal.signal_type,
        "weight": signal.weight,
        "evidence": signal.evidence(names),
    }


# ---------------------------------------------------------------------------
# Candidate assembly
# ---------------------------------------------------------------------------


def build_candidates(result: DetectionResult) -> list[FlowCandidate]:
    """Group detector output into directed candidates (both directions per pair)."""
    directed: dict[tuple[int, int], list[Signal]] = defaultdict(list)
    undirected: dict[tuple[int, int], list[Signal]] = defaultdict(list)

    for pivot in result.pivots:
        directed[(pivot.from_topic_id, pivot.to_topic_id)].append(pivot)
    for s in (*result.edges, *result.motivations):
        undirected[s.pair].append(s)

    pairs = {tuple(sorted(key)) for key in directed} | set(undirected)
    candidates: list[FlowCandidate] = []
    for a, b in sorted(pairs):
        shared = undirected.get((a, b), [])
        for src, dst in ((a, b), (b, a)):
            signals = [*directed.get((src, dst), []), *shared]
            if signals:
                candidates.append(FlowCandidate(src, dst, signals))
    return candidates


def score_candidates(candidates: list[FlowCandidate], config: EngineConfig) -> list[FlowCandidate]:
    for c in candidates:
        c.confidence = compute_confidence(c.signals, config)
        c.strength = compute_strength(c.signals)
    return candidates


def fuse_signals(
    result: DetectionResult,
    config: EngineConfig,
    known_topic_ids: set[int] | None = None,
) -> list[FlowCandidate]:
    """Score every candidate and return the accepted ones, strongest first.

    Candidates that reference a topic outside *known_topic_ids* are skipped
    with a warning; candidates below the acceptance threshold are dropped
    silently.
    """
    accepted: list[FlowCandidate] = []
    for c in score_candidates(build_candidates(result), config):
        if known_topic_ids is not None and not {c.from_topic_id, c.to_topic_id} <= known_topic_ids:
            log.warning("Skipping flow candidate %d -> %d: unknown topic reference",
                        c.from_topic_id, c.to_topic_id)
            continue
        if not is_accepted(c.confidence, config):
            log.debug("Candidate %d -> %d below threshold (%.3f)",
                      c.from_topic_id, c.to_topic_id, c.confidence)
            continue
        accepted.append(c)
    accepted.sort(key=lambda c: (-c.confidence, -c.strength, c.from_topic_id, c.to_topic_id))
    return accepted
