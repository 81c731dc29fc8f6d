"""Engine configuration: every weight, threshold and window used by detection and fusion.

Values are plain dataclass fields so the scoring policy can be read in one place
and tested without a database. Each field can be overridden through an
environment variable named ``TRENDR_<FIELD_NAME>`` (e.g.
``TRENDR_FLOW_MIN_CONFIDENCE=0.45``).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace

log = logging.getLogger(__name__)

ENV_PREFIX = "TRENDR_"

# Signal classes, in the order they are reported
CREATOR_PIVOT = "creator_pivot"
CO_OCCURRENCE = "co_occurrence"
MOTIVATION_MATCH = "motivation_match"
SIGNAL_TYPES = (CREATOR_PIVOT, CO_OCCURRENCE, MOTIVATION_MATCH)

ALERT_FLOW_DETECTED = "flow_detected"
ALERT_CREATOR_PIVOT = "creator_pivot"


class ConfigurationError(Exception):
    """Missing or invalid engine configuration; the detection cycle cannot run."""


@dataclass(frozen=True)
class EngineConfig:
    # Ingestion
    max_topics_per_item: int = 5
    history_bucket_days: int = 1

    # Creator pivot detector
    pivot_recent_days: int = 30
    pivot_history_days: int = 120
    pivot_growth_factor: float = 1.5
    pivot_ratio_cap: float = 3.0

    # Edge strengthening detector
    edge_recent_days: int = 7
    edge_baseline_days: int = 30
    edge_min_change_rate: float = 0.5
    edge_change_cap: float = 2.0

    # Motivation bridge finder
    motivation_floor: float = 0.3

    # Fusion
    weight_creator_pivot: float = 0.4
    weight_co_occurrence: float = 0.35
    weight_motivation_match: float = 0.25
    bonus_two_classes: float = 1.2
    bonus_three_classes: float = 1.3
    flow_min_confidence: float = 0.4
    flow_validity_days: int = 30

    # Alerts
    alert_min_confidence: float = 0.6
    alert_pivot_weight: float = 0.8
    alert_dedup_hours: int = 24

    # Scheduling and queries
    detection_interval_minutes: int = 30
    related_max_depth: int = 2

    @property
    def class_weights(self) -> dict[str, float]:
        return {
            CREATOR_PIVOT: self.weight_creator_pivot,
            CO_OCCURRENCE: self.weight_co_occurrence,
            MOTIVATION_MATCH: self.weight_motivation_match,
        }

    def validate(self) -> EngineConfig:
        """Raise ConfigurationError if any value is out of range. Returns self."""
        problems: list[str] = []
        for name in (
            "max_topics_per_item", "history_bucket_days", "pivot_recent_days",
            "pivot_history_days", "edge_recent_days", "edge_baseline_days",
            "flow_validity_days", "alert_dedup_hours", "related_max_depth",
        ):
            if getattr(self, name) < 1:
                problems.append(f"{name} must be >= 1")
        if self.max_topics_per_item < 2:
            problems.append("max_topics_per_item must be >= 2 to form topic pairs")
        if self.pivot_history_days <= self.pivot_recent_days:
            problems.append("pivot_history_days must exceed pivot_recent_days")
        if self.edge_baseline_days <= self.edge_recent_days:
            problems.append("edge_baseline_days must exceed edge_recent_days")
        for name in (
            "motivation_floor", "weight_creator_pivot", "weight_co_occurrence",
            "weight_motivation_match", "flow_min_confidence", "alert_min_confidence",
            "alert_pivot_weight",
        ):
            if not 0.0 <= getattr(self, name) <= 1.0:
                problems.append(f"{name} must be within [0, 1]")
        if self.pivot_growth_factor <= 0 or self.pivot_ratio_cap <= 0 or self.edge_change_cap <= 0:
            problems.append("growth factor and caps must be positive")
        if not 1.0 <= self.bonus_two_classes <= self.bonus_three_classes:
            problems.append("bonuses must satisfy 1.0 <= bonus_two_classes <= bonus_three_classes")
        if self.detection_interval_minutes < 0:
            problems.append("detection_interval_minutes must be >= 0 (0 disables the timer)")
        if problems:
            raise ConfigurationError("; ".join(problems))
        return self

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> EngineConfig:
        """Build a config from defaults plus ``TRENDR_*`` overrides, then validate."""
        env = os.environ if environ is None else environ
        overrides: dict[str, int | float] = {}
        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw.strip() == "":
                continue
            caster = int if f.type in ("int", int) else float
            try:
                overrides[f.name] = caster(raw.strip())
            except ValueError as exc:
                raise ConfigurationError(f"{ENV_PREFIX}{f.name.upper()}={raw!r} is not a valid {caster.__name__}") from exc
        if overrides:
            log.info("Engine config overrides from environment: %s", sorted(overrides))
        return replace(cls(), **overrides).validate()
