from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

import numpy as np
import pandas as pd

from market_data.candles import frame_to_records

from .features import robust_scale
from .indicators import IndicatorResult
from .params import (
    DEFAULT_COOLING_DAYS,
    DEFAULT_SCORE_THRESHOLD,
    MIN_REFERENCE_POINTS,
    merge_crash_weights,
    parse_single_rule,
)
from .types import (
    DETECTION_MODES,
    FEATURE_SPECS,
    CrashEvent,
    CrashFeature,
    SingleRule,
    feature_values,
)

log = logging.getLogger(__name__)

SIGNAL_PREFIX = "signal_"
SIGNAL_COLUMNS = [f"{SIGNAL_PREFIX}{spec.feature.value}" for spec in FEATURE_SPECS]


@dataclass(frozen=True)
class CrashDetectionResult:
    scored_points: pd.DataFrame
    events: list[CrashEvent]
    ranking: list[CrashEvent]

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": len(self.events),
            "scored_points": scored_points_to_records(self.scored_points),
            "events": [event.to_dict() for event in self.events],
            "ranking": [event.to_dict() for event in self.ranking],
        }


def _log_event(event: str, **fields: object) -> None:
    payload = {"event": event, **fields}
    try:
        log.info("crash_detection %s", json.dumps(payload, default=str))
    except TypeError:
        log.info("crash_detection %s", payload)


def _points_frame(points: pd.DataFrame | IndicatorResult | Iterable[Mapping[str, Any]]) -> pd.DataFrame:
    if isinstance(points, IndicatorResult):
        frame = points.points.copy()
    elif isinstance(points, pd.DataFrame):
        frame = points.copy()
    else:
        frame = pd.DataFrame(list(points))
    if "date" in frame.columns:
        frame["date"] = pd.to_datetime(frame["date"]).dt.normalize()
    return frame.reset_index(drop=True)


def raw_feature_frame(points: pd.DataFrame) -> pd.DataFrame:
    """One float column per crash feature, NaN where the feature is missing."""
    columns = {}
    for spec in FEATURE_SPECS:
        values = feature_values(points, spec.feature)
        columns[spec.feature.value] = values.where(np.isfinite(values))
    return pd.DataFrame(columns, index=points.index)


def _signal_series(raw: pd.Series, discrete: bool, direction: str) -> pd.Series:
    if discrete:
        return (raw * 100.0).clip(lower=0.0, upper=100.0)
    reference = raw.dropna().to_numpy()
    if len(reference) < MIN_REFERENCE_POINTS:
        return pd.Series(np.nan, index=raw.index)
    scaled = robust_scale(raw.to_numpy(), reference, direction)  # type: ignore[arg-type]
    return pd.Series(scaled, index=raw.index).where(raw.notna())


def score_points(
    points: pd.DataFrame,
    weights: Mapping[CrashFeature, float],
    raw: pd.DataFrame | None = None,
) -> pd.DataFrame:
    """Attach per-feature signals (0-100) and the weighted ``crash_score``.

    Each continuous feature is scaled against its own full-series distribution.
    A point's score averages the signals it has, weighted by the positive
    finite weights; it stays NaN when nothing contributed.
    """
    raw = raw if raw is not None else raw_feature_frame(points)
    scored = points.copy()

    signals = pd.DataFrame(
        {
            f"{SIGNAL_PREFIX}{spec.feature.value}": _signal_series(
                raw[spec.feature.value], spec.discrete, spec.direction
            )
            for spec in FEATURE_SPECS
        },
        index=points.index,
    )

    w = np.array([float(weights.get(spec.feature, np.nan)) for spec in FEATURE_SPECS])
    usable = np.isfinite(w) & (w > 0)
    w_clean = np.where(usable, w, 0.0)

    values = signals.to_numpy(dtype=float)
    present = np.isfinite(values) & usable[np.newaxis, :]
    weighted_sum = np.where(present, values * w_clean, 0.0).sum(axis=1)
    weight_sum = np.where(present, w_clean, 0.0).sum(axis=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        score = np.where(weight_sum > 0, weighted_sum / weight_sum, np.nan)

    scored["crash_score"] = score
    for col in SIGNAL_COLUMNS:
        scored[col] = signals[col]
    return scored


def point_signals(row: Mapping[str, Any]) -> dict[CrashFeature, float]:
    out: dict[CrashFeature, float] = {}
    for spec in FEATURE_SPECS:
        value = row.get(f"{SIGNAL_PREFIX}{spec.feature.value}")
        if value is not None and not pd.isna(value):
            out[spec.feature] = float(value)
    return out


def _row_metrics(raw_row: Mapping[str, Any]) -> dict[CrashFeature, float]:
    out: dict[CrashFeature, float] = {}
    for spec in FEATURE_SPECS:
        value = raw_row.get(spec.feature.value)
        if value is not None and not pd.isna(value):
            out[spec.feature] = float(value)
    return out


def collapse_events(events: Sequence[CrashEvent], cooling_days: int) -> list[CrashEvent]:
    """Keep one event per cooling window, scanning left to right.

    A candidate within ``cooling_days`` of the last kept event replaces it only
    when its severity is strictly greater.
    """
    collapsed: list[CrashEvent] = []
    for current in events:
        if not collapsed or current.index - collapsed[-1].index > cooling_days:
            collapsed.append(current)
            continue
        if current.severity > collapsed[-1].severity:
            collapsed[-1] = current
    return collapsed


def rank_events(events: Sequence[CrashEvent]) -> list[CrashEvent]:
    """Severity descending; ties keep index order."""
    return sorted(events, key=lambda event: -event.severity)


def _validate_options(mode: str, threshold: Any, cooling_days: Any) -> tuple[float, int]:
    if mode not in DETECTION_MODES:
        raise ValueError(f"Unknown detection mode: {mode!r}")
    threshold_value = DEFAULT_SCORE_THRESHOLD if threshold is None else float(threshold)
    if not math.isfinite(threshold_value):
        raise ValueError(f"threshold must be finite, got {threshold!r}")
    cooling = DEFAULT_COOLING_DAYS if cooling_days is None else cooling_days
    if isinstance(cooling, bool) or int(cooling) != cooling or int(cooling) < 0:
        raise ValueError(f"cooling_days must be a non-negative integer, got {cooling_days!r}")
    return threshold_value, int(cooling)


def detect_crash_events(
    points: pd.DataFrame | IndicatorResult | Iterable[Mapping[str, Any]],
    *,
    mode: str = "score",
    threshold: float | None = None,
    cooling_days: int | None = None,
    symbol: str | None = None,
    single_rule: SingleRule | Mapping[str, Any] | None = None,
    weights: Mapping[Any, float] | None = None,
) -> CrashDetectionResult:
    """Score every point and return collapsed crash events plus their ranking.

    ``mode="score"`` qualifies points whose composite score reaches
    ``threshold``; ``mode="single"`` qualifies points whose raw feature value
    satisfies ``single_rule`` and uses the distance to the rule threshold
    (times 100) as severity.
    """
    threshold_value, cooling = _validate_options(mode, threshold, cooling_days)
    rule = parse_single_rule(single_rule)
    resolved_weights = merge_crash_weights(weights)

    frame = _points_frame(points)
    if frame.empty:
        return CrashDetectionResult(score_points(frame, resolved_weights), [], [])

    raw = raw_feature_frame(frame)
    scored = score_points(frame, resolved_weights, raw=raw)

    if mode == "score":
        score = scored["crash_score"]
        mask = score.notna() & (score >= threshold_value)
    else:
        rule_values = raw[rule.feature.value]
        mask = rule_values.notna() & rule_values.map(lambda v: False if pd.isna(v) else rule.matches(float(v)))
        mask = mask.astype(bool)

    candidates: list[CrashEvent] = []
    for idx in np.flatnonzero(mask.to_numpy()):
        row = scored.iloc[idx]
        crash_score = row["crash_score"]
        crash_score = None if pd.isna(crash_score) else float(crash_score)
        if mode == "score":
            severity = float(crash_score)  # type: ignore[arg-type]
        else:
            severity = abs(float(raw.iloc[idx][rule.feature.value]) - rule.value) * 100.0
        candidates.append(
            CrashEvent(
                index=int(idx),
                date=pd.Timestamp(row["date"]),
                crash_score=crash_score,
                severity=severity,
                signals=point_signals(row),
                metrics=_row_metrics(raw.iloc[idx]),
                symbol=symbol,
            )
        )

    events = collapse_events(candidates, cooling)
    ranking = rank_events(events)
    _log_event(
        "detect",
        symbol=symbol,
        mode=mode,
        points=len(frame),
        candidates=len(candidates),
        events=len(events),
        threshold=threshold_value if mode == "score" else rule.to_dict(),
        cooling_days=cooling,
    )
    return CrashDetectionResult(scored, events, ranking)


def scored_points_to_records(scored: pd.DataFrame) -> list[dict[str, Any]]:
    """Records with the ``signal_*`` columns folded into a ``signals`` mapping."""
    if scored is None or scored.empty:
        return []
    base_cols = [c for c in scored.columns if c not in SIGNAL_COLUMNS]
    records = frame_to_records(scored[base_cols])
    for record, (_, row) in zip(records, scored.iterrows()):
        record["signals"] = {k.value: v for k, v in point_signals(row).items()}
    return records


__all__ = [
    "CrashDetectionResult",
    "SIGNAL_COLUMNS",
    "collapse_events",
    "detect_crash_events",
    "point_signals",
    "rank_events",
    "raw_feature_frame",
    "score_points",
    "scored_points_to_records",
]
