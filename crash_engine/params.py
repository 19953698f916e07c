"""Default parameters and partial-override merging for the crash engine."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field, fields, is_dataclass, replace
from typing import Any, Mapping

from .types import RULE_OPERATORS, CrashFeature, SingleRule

DEFAULT_SCORE_THRESHOLD = 70.0
DEFAULT_COOLING_DAYS = 10
MIN_REFERENCE_POINTS = 8

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")

FEATURE_ALIASES = {
    "zscore": CrashFeature.Z_SCORE,
    "drawdown": CrashFeature.DRAWDOWN_RATE,
    "atr_percent": CrashFeature.ATR_PCT,
    "is_52w_low": CrashFeature.LOW52W,
    "is52w_low": CrashFeature.LOW52W,
    "low_52w": CrashFeature.LOW52W,
    "regime_200": CrashFeature.REGIME200,
}


def normalize_key(key: Any) -> str:
    """``zScore`` / ``z-score`` / ``Z_SCORE`` -> ``z_score``."""
    text = str(key).strip().replace("-", "_")
    if "_" in text or text.isupper():
        return text.lower()
    return _CAMEL_BOUNDARY.sub("_", text).lower()


def parse_feature(value: Any) -> CrashFeature:
    if isinstance(value, CrashFeature):
        return value
    key = normalize_key(value)
    if key in FEATURE_ALIASES:
        return FEATURE_ALIASES[key]
    try:
        return CrashFeature(key)
    except ValueError:
        raise ValueError(f"Unknown crash feature: {value!r}") from None


def _positive_int(value: Any, *, name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a positive integer, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a positive integer, got {value!r}") from None
    if not math.isfinite(number) or number != int(number) or number <= 0:
        raise ValueError(f"{name} must be a positive integer, got {value!r}")
    return int(number)


def _finite_float(value: Any, *, name: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a finite number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a finite number, got {value!r}") from None
    if not math.isfinite(number):
        raise ValueError(f"{name} must be a finite number, got {value!r}")
    return number


@dataclass(frozen=True)
class ZScoreParams:
    window: int = 20


@dataclass(frozen=True)
class RsiParams:
    window: int = 14


@dataclass(frozen=True)
class CrsiParams:
    rsi_window: int = 3
    streak_window: int = 2
    rank_window: int = 100


@dataclass(frozen=True)
class DrawdownParams:
    lookback: int = 252


@dataclass(frozen=True)
class DrawdownSpeedParams:
    window1: int = 5
    window2: int = 10


@dataclass(frozen=True)
class AtrParams:
    window: int = 14


@dataclass(frozen=True)
class VolumeShockParams:
    window: int = 20


@dataclass(frozen=True)
class Ma200Params:
    window: int = 200
    slope_lookback: int = 5


@dataclass(frozen=True)
class GapDownParams:
    window: int = 20
    threshold_pct: float = -2.0


@dataclass(frozen=True)
class Low52wParams:
    window: int = 252


@dataclass(frozen=True)
class BreadthParams:
    window: int = 20


@dataclass(frozen=True)
class IndicatorParams:
    z_score: ZScoreParams = field(default_factory=ZScoreParams)
    rsi: RsiParams = field(default_factory=RsiParams)
    crsi: CrsiParams = field(default_factory=CrsiParams)
    drawdown: DrawdownParams = field(default_factory=DrawdownParams)
    drawdown_speed: DrawdownSpeedParams = field(default_factory=DrawdownSpeedParams)
    atr: AtrParams = field(default_factory=AtrParams)
    volume_shock: VolumeShockParams = field(default_factory=VolumeShockParams)
    ma200: Ma200Params = field(default_factory=Ma200Params)
    gap_down: GapDownParams = field(default_factory=GapDownParams)
    low52w: Low52wParams = field(default_factory=Low52wParams)
    breadth: BreadthParams = field(default_factory=BreadthParams)

    @property
    def max_lookback(self) -> int:
        """Longest trailing window needed before every feature can be non-null."""
        return max(
            self.z_score.window,
            self.rsi.window + 1,
            self.crsi.rank_window + 1,
            self.drawdown.lookback,
            self.drawdown_speed.window2,
            self.atr.window,
            self.volume_shock.window,
            self.ma200.window + self.ma200.slope_lookback,
            self.gap_down.window + 1,
            self.low52w.window,
            self.breadth.window + 1,
        )

    def to_dict(self) -> dict[str, dict[str, Any]]:
        return {
            f.name: {sub.name: getattr(getattr(self, f.name), sub.name) for sub in fields(getattr(self, f.name))}
            for f in fields(self)
        }


DEFAULT_INDICATOR_PARAMS = IndicatorParams()


def _normalized_mapping(raw: Any, *, name: str) -> dict[str, Any]:
    if raw is None:
        return {}
    if is_dataclass(raw) and not isinstance(raw, type):
        return {f.name: getattr(raw, f.name) for f in fields(raw)}
    if not isinstance(raw, Mapping):
        raise ValueError(f"{name} overrides must be a mapping, got {type(raw).__name__}")
    return {normalize_key(k): v for k, v in raw.items()}


def _merge_section(default: Any, raw: Any, *, name: str) -> Any:
    overrides = _normalized_mapping(raw, name=name)
    known = {f.name for f in fields(default)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ValueError(f"Unknown {name} parameter(s): {', '.join(unknown)}")

    changes: dict[str, Any] = {}
    for f in fields(default):
        value = overrides.get(f.name)
        if value is None:
            continue
        label = f"{name}.{f.name}"
        if isinstance(getattr(default, f.name), int):
            changes[f.name] = _positive_int(value, name=label)
        else:
            changes[f.name] = _finite_float(value, name=label)
    return replace(default, **changes)


def merge_indicator_params(partial: Mapping[str, Any] | IndicatorParams | None = None) -> IndicatorParams:
    """Overlay ``partial`` on the defaults one field at a time.

    Nested sections that are absent, or fields set to ``None``, keep their
    default values. camelCase keys are accepted.
    """
    if isinstance(partial, IndicatorParams):
        partial = partial.to_dict()
    overrides = _normalized_mapping(partial, name="indicator")
    known = {f.name for f in fields(DEFAULT_INDICATOR_PARAMS)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ValueError(f"Unknown indicator section(s): {', '.join(unknown)}")

    sections = {
        f.name: _merge_section(getattr(DEFAULT_INDICATOR_PARAMS, f.name), overrides.get(f.name), name=f.name)
        for f in fields(DEFAULT_INDICATOR_PARAMS)
    }
    return IndicatorParams(**sections)


DEFAULT_CRASH_WEIGHTS: dict[CrashFeature, float] = {
    CrashFeature.DRAWDOWN_RATE: 0.18,
    CrashFeature.DRAWDOWN_SPEED: 0.14,
    CrashFeature.ATR_PCT: 0.11,
    CrashFeature.VOLUME_SHOCK: 0.09,
    CrashFeature.REGIME200: 0.10,
    CrashFeature.GAP_DOWN_FREQ: 0.08,
    CrashFeature.Z_SCORE: 0.07,
    CrashFeature.RSI: 0.05,
    CrashFeature.CRSI: 0.05,
    CrashFeature.LOW52W: 0.05,
    CrashFeature.BREADTH: 0.08,
}


def merge_crash_weights(partial: Mapping[Any, Any] | None = None) -> dict[CrashFeature, float]:
    """Defaults overlaid with ``partial``.

    Non-finite or non-positive weights are kept as given; the scorer simply
    ignores them.
    """
    weights = dict(DEFAULT_CRASH_WEIGHTS)
    if not partial:
        return weights
    if not isinstance(partial, Mapping):
        raise ValueError(f"weights must be a mapping, got {type(partial).__name__}")
    for key, value in partial.items():
        feature = parse_feature(key)
        if value is None:
            continue
        if isinstance(value, bool):
            raise ValueError(f"weight for {feature.value} must be numeric, got {value!r}")
        try:
            weights[feature] = float(value)
        except (TypeError, ValueError):
            raise ValueError(f"weight for {feature.value} must be numeric, got {value!r}") from None
    return weights


DEFAULT_SINGLE_RULE = SingleRule(CrashFeature.DRAWDOWN_RATE, "<=", -0.15)


def parse_single_rule(raw: SingleRule | Mapping[str, Any] | None) -> SingleRule:
    if raw is None:
        return DEFAULT_SINGLE_RULE
    if isinstance(raw, SingleRule):
        return raw
    if not isinstance(raw, Mapping):
        raise ValueError(f"single rule must be a mapping, got {type(raw).__name__}")
    data = {normalize_key(k): v for k, v in raw.items()}
    feature = parse_feature(data.get("feature", DEFAULT_SINGLE_RULE.feature))
    operator = str(data.get("operator", DEFAULT_SINGLE_RULE.operator)).strip()
    if operator not in RULE_OPERATORS:
        raise ValueError(f"Unsupported rule operator: {operator!r}")
    value = _finite_float(data.get("value", data.get("threshold", DEFAULT_SINGLE_RULE.value)), name="rule.value")
    return SingleRule(feature, operator, value)  # type: ignore[arg-type]


__all__ = [
    "DEFAULT_COOLING_DAYS",
    "DEFAULT_CRASH_WEIGHTS",
    "DEFAULT_INDICATOR_PARAMS",
    "DEFAULT_SCORE_THRESHOLD",
    "DEFAULT_SINGLE_RULE",
    "IndicatorParams",
    "MIN_REFERENCE_POINTS",
    "merge_crash_weights",
    "merge_indicator_params",
    "normalize_key",
    "parse_feature",
    "parse_single_rule",
]
