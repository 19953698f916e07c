"""Hybrid feature-vector + price-path similarity between crash events."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from market_data.candles import frame_to_records, normalize_candles
from utils.numeric import clamp

from .indicators import IndicatorResult
from .types import CrashEvent, CrashFeature

log = logging.getLogger(__name__)

DEFAULT_TOP_N = 5
DEFAULT_PRE_DAYS = 10
DEFAULT_POST_DAYS = 50
COMPARE_LIMIT = 4

FEATURE_WEIGHT = 0.65
DTW_WEIGHT = 0.35
COSINE_WEIGHT = 0.6
EUCLIDEAN_WEIGHT = 0.4
PRICE_PATH = "price_path"

# Vector layout; the composite crash score is appended as the last dimension.
SIMILARITY_FEATURES: tuple[CrashFeature, ...] = (
    CrashFeature.DRAWDOWN_RATE,
    CrashFeature.DRAWDOWN_SPEED,
    CrashFeature.ATR_PCT,
    CrashFeature.VOLUME_SHOCK,
    CrashFeature.REGIME200,
    CrashFeature.GAP_DOWN_FREQ,
    CrashFeature.Z_SCORE,
    CrashFeature.RSI,
    CrashFeature.CRSI,
    CrashFeature.LOW52W,
    CrashFeature.BREADTH,
)


@dataclass(frozen=True)
class SimilarityReason:
    feature: str
    note: str

    def to_dict(self) -> dict[str, str]:
        return {"feature": self.feature, "note": self.note}


@dataclass(frozen=True)
class SimilarMatch:
    date: pd.Timestamp
    similarity_score: float
    combined_distance: float
    feature_distance: float
    dtw_distance: float
    reasons: list[SimilarityReason] = field(default_factory=list)
    metrics: dict[CrashFeature, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date.strftime("%Y-%m-%d"),
            "similarity_score": float(self.similarity_score),
            "combined_distance": float(self.combined_distance),
            "feature_distance": float(self.feature_distance),
            "dtw_distance": float(self.dtw_distance),
            "reasons": [r.to_dict() for r in self.reasons],
            "metrics": {k.value: float(v) for k, v in self.metrics.items()},
        }


@dataclass(frozen=True)
class SimilarityResult:
    target_date: pd.Timestamp
    matches: list[SimilarMatch] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_date": self.target_date.strftime("%Y-%m-%d"),
            "matches": [m.to_dict() for m in self.matches],
        }


def dtw_distance(series_a: Sequence[float], series_b: Sequence[float]) -> float:
    """Full-matrix DTW with absolute-difference cost, divided by ``len(a) + len(b)``.

    Returns ``inf`` when either series is empty.
    """
    a = np.asarray(series_a, dtype=float)
    b = np.asarray(series_b, dtype=float)
    n, m = len(a), len(b)
    if n == 0 or m == 0:
        return math.inf

    cost = np.abs(a[:, np.newaxis] - b[np.newaxis, :])
    dp = np.full((n + 1, m + 1), np.inf)
    dp[0, 0] = 0.0
    for i in range(1, n + 1):
        row_cost = cost[i - 1]
        prev = dp[i - 1]
        cur = dp[i]
        for j in range(1, m + 1):
            cur[j] = row_cost[j - 1] + min(prev[j], cur[j - 1], prev[j - 1])
    return float(dp[n, m] / (n + m))


def euclidean_distance(a: Sequence[float], b: Sequence[float]) -> float:
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.shape != vb.shape or va.size == 0:
        return math.inf
    return float(np.sqrt(np.sum((va - vb) ** 2)))


def cosine_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """``1 - cos(a, b)``; 1 when either vector is (numerically) zero."""
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.shape != vb.shape or va.size == 0:
        return math.inf
    norm_a = float(np.dot(va, va))
    norm_b = float(np.dot(vb, vb))
    if norm_a <= 1e-12 or norm_b <= 1e-12:
        return 1.0
    cosine = float(np.dot(va, vb)) / math.sqrt(norm_a * norm_b)
    return 1.0 - clamp(cosine, -1.0, 1.0)


def min_max_normalize(values: Sequence[float]) -> np.ndarray:
    arr = np.asarray(values, dtype=float)
    if arr.size == 0:
        return arr
    span = float(arr.max() - arr.min())
    if span <= 1e-12:
        return np.full(arr.shape, 0.5)
    return (arr - arr.min()) / span


def standardize(vectors: np.ndarray) -> np.ndarray:
    """Column-wise z-scores using the sample std; flat columns divide by 1."""
    matrix = np.asarray(vectors, dtype=float)
    if matrix.size == 0:
        return matrix
    means = matrix.mean(axis=0)
    ddof = 1 if len(matrix) > 1 else 0
    stds = matrix.std(axis=0, ddof=ddof)
    stds = np.where(stds <= 1e-9, 1.0, stds)
    return (matrix - means) / stds


def normalize_window(values: Sequence[float]) -> np.ndarray:
    """Rebase a close window so its first value is 100."""
    arr = np.asarray(values, dtype=float)
    if arr.size == 0:
        return arr
    base = arr[0] if arr[0] != 0 else 1.0
    return arr / base * 100.0


def pick_window(closes: np.ndarray, event_index: int, pre_days: int, post_days: int) -> np.ndarray:
    start = max(0, event_index - pre_days)
    end = min(len(closes) - 1, event_index + post_days)
    return normalize_window(closes[start : end + 1])


def feature_vector(event: CrashEvent) -> Optional[np.ndarray]:
    """The 11 raw metrics plus the crash score, or ``None`` if any metric is missing."""
    values: list[float] = []
    for feature in SIMILARITY_FEATURES:
        raw = event.metrics.get(feature)
        if raw is None or not math.isfinite(float(raw)):
            return None
        values.append(float(raw))
    values.append(float(event.crash_score) if event.crash_score is not None else 0.0)
    return np.asarray(values, dtype=float)


def top_reasons(target_vector: np.ndarray, candidate_vector: np.ndarray, dtw: float) -> list[SimilarityReason]:
    diffs = [
        (feature, abs(float(target_vector[idx]) - float(candidate_vector[idx])))
        for idx, feature in enumerate(SIMILARITY_FEATURES)
    ]
    diffs.sort(key=lambda item: item[1])
    reasons = [SimilarityReason(feature.value, f"{feature.value} difference is small") for feature, _ in diffs[:2]]
    reasons.append(SimilarityReason(PRICE_PATH, f"price path DTW distance={dtw:.4f}"))
    return reasons


def _as_day(value: Any) -> pd.Timestamp:
    return pd.Timestamp(str(value)[:10]) if isinstance(value, str) else pd.Timestamp(value).normalize()


def find_similar_events(
    candles: pd.DataFrame | Iterable[Mapping[str, Any]],
    events: Sequence[CrashEvent],
    target_date: Any,
    *,
    top_n: int = DEFAULT_TOP_N,
    pre_days: int = DEFAULT_PRE_DAYS,
    post_days: int = DEFAULT_POST_DAYS,
) -> SimilarityResult:
    """Rank ``events`` by similarity to the event dated ``target_date``.

    The target must be present in both ``events`` and ``candles``; otherwise,
    or when no candidate survives, the result has no matches.
    """
    if top_n < 0 or pre_days < 0 or post_days < 0:
        raise ValueError("top_n, pre_days and post_days must be non-negative")

    target_day = _as_day(target_date)
    empty = SimilarityResult(target_day, [])

    target_event = next((e for e in events if _as_day(e.date) == target_day), None)
    if target_event is None:
        return empty

    frame = normalize_candles(candles)
    closes = frame["close"].to_numpy(dtype=float) if not frame.empty else np.array([])
    candle_index = {day: pos for pos, day in enumerate(frame["date"])} if not frame.empty else {}

    # Later events win on duplicate dates
    vector_by_day: dict[pd.Timestamp, np.ndarray] = {}
    vector_days: list[pd.Timestamp] = []
    raw_vectors: list[np.ndarray] = []
    for event in events:
        vector = feature_vector(event)
        if vector is None:
            continue
        vector_days.append(_as_day(event.date))
        raw_vectors.append(vector)
    if raw_vectors:
        standardized = standardize(np.vstack(raw_vectors))
        for day, row in zip(vector_days, standardized):
            vector_by_day[day] = row

    target_vector = vector_by_day.get(target_day)
    target_idx = candle_index.get(target_day)
    if target_vector is None or target_idx is None:
        return empty

    target_window = pick_window(closes, target_idx, pre_days, post_days)
    dims = math.sqrt(len(target_vector))

    candidates: list[tuple[CrashEvent, np.ndarray, float, float]] = []
    for event in events:
        day = _as_day(event.date)
        if day == target_day:
            continue
        vector = vector_by_day.get(day)
        idx = candle_index.get(day)
        if vector is None or idx is None:
            continue
        window = pick_window(closes, idx, pre_days, post_days)
        feature_dist = COSINE_WEIGHT * cosine_distance(target_vector, vector) + EUCLIDEAN_WEIGHT * (
            euclidean_distance(target_vector, vector) / dims
        )
        dtw = dtw_distance(target_window, window)
        if not math.isfinite(dtw):
            continue
        candidates.append((event, vector, feature_dist, dtw))

    if not candidates:
        log.debug("find_similar_events: no candidates for %s", target_day.date())
        return empty

    feature_norm = min_max_normalize([c[2] for c in candidates])
    dtw_norm = min_max_normalize([c[3] for c in candidates])

    matches: list[SimilarMatch] = []
    for pos, (event, vector, feature_dist, dtw) in enumerate(candidates):
        combined = FEATURE_WEIGHT * float(feature_norm[pos]) + DTW_WEIGHT * float(dtw_norm[pos])
        matches.append(
            SimilarMatch(
                date=_as_day(event.date),
                similarity_score=clamp((1.0 - combined) * 100.0, 0.0, 100.0),
                combined_distance=combined,
                feature_distance=float(feature_dist),
                dtw_distance=float(dtw),
                reasons=top_reasons(target_vector, vector, dtw),
                metrics=dict(event.metrics),
            )
        )

    matches.sort(key=lambda m: -m.similarity_score)
    log.debug(
        "find_similar_events: target=%s candidates=%d top_n=%d",
        target_day.date(),
        len(matches),
        top_n,
    )
    return SimilarityResult(target_day, matches[:top_n])


@dataclass(frozen=True)
class EventWindow:
    """Candle window around one event, rebased to 100 at its first bar."""

    event: CrashEvent
    window: pd.DataFrame
    marker_index: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event.to_dict(),
            "marker_index": int(self.marker_index),
            "length": int(len(self.window)),
            "window": frame_to_records(self.window),
        }


def _indicator_lookup(points: pd.DataFrame | IndicatorResult | None) -> pd.DataFrame:
    if points is None:
        return pd.DataFrame(columns=["sma200", "rsi"], index=pd.DatetimeIndex([], name="date"))
    frame = points.points if isinstance(points, IndicatorResult) else pd.DataFrame(points)
    frame = frame.assign(date=pd.to_datetime(frame["date"]).dt.normalize())
    for col in ("sma200", "rsi"):
        if col not in frame.columns:
            frame[col] = np.nan
    return frame.drop_duplicates(subset=["date"], keep="last").set_index("date")[["sma200", "rsi"]]


def compare_event_windows(
    candles: pd.DataFrame | Iterable[Mapping[str, Any]],
    points: pd.DataFrame | IndicatorResult | None,
    events: Sequence[CrashEvent],
    dates: Optional[Sequence[Any]] = None,
    *,
    pre_days: int = DEFAULT_PRE_DAYS,
    post_days: int = DEFAULT_POST_DAYS,
    limit: int = COMPARE_LIMIT,
) -> list[EventWindow]:
    """Side-by-side windows for up to ``limit`` events.

    ``dates`` picks the events; dates without a matching event are ignored and
    when none match (or ``dates`` is omitted) the first ``limit`` of
    ``events`` are used, so pass the severity ranking to compare the worst
    ones. Each window spans ``pre_days`` before to ``post_days`` after the
    event, clipped to the candles, with ``close`` and ``sma200`` rebased to
    100 at the window's first close, the raw ``rsi`` and an ``offset`` column
    relative to the event bar. Windows shorter than two bars are skipped.
    """
    if pre_days < 0 or post_days < 0 or limit < 0:
        raise ValueError("pre_days, post_days and limit must be non-negative")

    by_day: dict[pd.Timestamp, CrashEvent] = {}
    for event in events:
        by_day.setdefault(_as_day(event.date), event)

    selected: list[pd.Timestamp] = []
    for raw in dates or []:
        day = _as_day(raw)
        if day in by_day and day not in selected:
            selected.append(day)
    if not selected:
        selected = list(dict.fromkeys(_as_day(e.date) for e in events))
    selected = selected[:limit]

    frame = normalize_candles(candles)
    if frame.empty or not selected:
        return []
    closes = frame["close"].to_numpy(dtype=float)
    candle_index = {day: pos for pos, day in enumerate(frame["date"])}
    indicators = _indicator_lookup(points).reindex(frame["date"])
    sma = indicators["sma200"].to_numpy(dtype=float)
    rsi = indicators["rsi"].to_numpy(dtype=float)

    windows: list[EventWindow] = []
    for day in selected:
        idx = candle_index.get(day)
        if idx is None:
            continue
        start = max(0, idx - pre_days)
        end = min(len(frame) - 1, idx + post_days)
        if end - start + 1 < 2:
            continue
        base = closes[start] if closes[start] != 0 else 1.0
        window = pd.DataFrame(
            {
                "date": frame["date"].iloc[start : end + 1].to_numpy(),
                "offset": np.arange(start - idx, end - idx + 1),
                "close": closes[start : end + 1] / base * 100.0,
                "sma200": sma[start : end + 1] / base * 100.0,
                "rsi": rsi[start : end + 1],
            }
        )
        windows.append(EventWindow(by_day[day], window, idx - start))
    return windows


__all__ = [
    "COMPARE_LIMIT",
    "EventWindow",
    "SIMILARITY_FEATURES",
    "SimilarMatch",
    "SimilarityReason",
    "SimilarityResult",
    "compare_event_windows",
    "cosine_distance",
    "dtw_distance",
    "euclidean_distance",
    "feature_vector",
    "find_similar_events",
    "min_max_normalize",
    "standardize",
]
