# crash_engine/types.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Optional

import pandas as pd

from utils.numeric import optional_float

Direction = Literal["high-is-bad", "low-is-bad"]
DetectionMode = Literal["score", "single"]
RuleOperator = Literal["<", "<=", ">", ">="]

RULE_OPERATORS: tuple[str, ...] = ("<", "<=", ">", ">=")
DETECTION_MODES: tuple[str, ...] = ("score", "single")


class CrashFeature(str, Enum):
    """Closed set of features that feed the crash score."""

    Z_SCORE = "z_score"
    RSI = "rsi"
    CRSI = "crsi"
    DRAWDOWN_RATE = "drawdown_rate"
    DRAWDOWN_SPEED = "drawdown_speed"
    ATR_PCT = "atr_pct"
    VOLUME_SHOCK = "volume_shock"
    REGIME200 = "regime200"
    GAP_DOWN_FREQ = "gap_down_freq"
    LOW52W = "low52w"
    BREADTH = "breadth"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class FeatureSpec:
    feature: CrashFeature
    column: str
    direction: Direction
    discrete: bool = False


# Order matters: it is the scoring order and the column order of signal frames.
FEATURE_SPECS: tuple[FeatureSpec, ...] = (
    FeatureSpec(CrashFeature.Z_SCORE, "z_score", "low-is-bad"),
    FeatureSpec(CrashFeature.RSI, "rsi", "low-is-bad"),
    FeatureSpec(CrashFeature.CRSI, "crsi", "low-is-bad"),
    FeatureSpec(CrashFeature.DRAWDOWN_RATE, "drawdown_rate", "low-is-bad"),
    FeatureSpec(CrashFeature.DRAWDOWN_SPEED, "drawdown_speed", "low-is-bad"),
    FeatureSpec(CrashFeature.ATR_PCT, "atr_pct", "high-is-bad"),
    FeatureSpec(CrashFeature.VOLUME_SHOCK, "volume_shock", "high-is-bad"),
    FeatureSpec(CrashFeature.REGIME200, "regime200", "high-is-bad", discrete=True),
    FeatureSpec(CrashFeature.GAP_DOWN_FREQ, "gap_down_freq", "high-is-bad"),
    FeatureSpec(CrashFeature.LOW52W, "is_52w_low", "high-is-bad", discrete=True),
    FeatureSpec(CrashFeature.BREADTH, "breadth", "low-is-bad"),
)

FEATURE_SPEC_BY_KEY: dict[CrashFeature, FeatureSpec] = {spec.feature: spec for spec in FEATURE_SPECS}


def feature_values(points: pd.DataFrame, feature: CrashFeature) -> pd.Series:
    """Raw float values of ``feature`` for every point (NaN where missing)."""
    spec = FEATURE_SPEC_BY_KEY[feature]
    if spec.column not in points.columns:
        return pd.Series(float("nan"), index=points.index, dtype=float)
    raw = points[spec.column]
    if feature is CrashFeature.LOW52W:
        flags = [float("nan") if pd.isna(v) else float(bool(v)) for v in raw]
        return pd.Series(flags, index=points.index, dtype=float)
    return pd.to_numeric(raw, errors="coerce").astype(float)


@dataclass(frozen=True)
class SingleRule:
    feature: CrashFeature
    operator: RuleOperator
    value: float

    def matches(self, raw: float) -> bool:
        if self.operator == "<":
            return raw < self.value
        if self.operator == "<=":
            return raw <= self.value
        if self.operator == ">":
            return raw > self.value
        return raw >= self.value

    def to_dict(self) -> dict[str, Any]:
        return {"feature": self.feature.value, "operator": self.operator, "value": self.value}


def _format_date(value: Any) -> str:
    return pd.Timestamp(value).strftime("%Y-%m-%d")


def _feature_dict(values: dict[CrashFeature, float]) -> dict[str, float]:
    return {feature.value: float(v) for feature, v in values.items()}


@dataclass(frozen=True)
class CrashEvent:
    """One retained (possibly collapsed) crash detection."""

    index: int
    date: pd.Timestamp
    crash_score: Optional[float]
    severity: float
    signals: dict[CrashFeature, float] = field(default_factory=dict)
    metrics: dict[CrashFeature, float] = field(default_factory=dict)
    symbol: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": int(self.index),
            "symbol": self.symbol,
            "date": _format_date(self.date),
            "crash_score": optional_float(self.crash_score),
            "severity": float(self.severity),
            "signals": _feature_dict(self.signals),
            "metrics": _feature_dict(self.metrics),
        }


__all__ = [
    "CrashEvent",
    "CrashFeature",
    "DETECTION_MODES",
    "DetectionMode",
    "Direction",
    "FEATURE_SPECS",
    "FEATURE_SPEC_BY_KEY",
    "FeatureSpec",
    "RULE_OPERATORS",
    "RuleOperator",
    "SingleRule",
    "feature_values",
]
