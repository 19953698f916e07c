"""Backtest strategy templates and their parameters."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Literal, Mapping

from crash_engine.params import normalize_key

BacktestTemplateId = Literal["mean-rebound", "ma200-reclaim"]

MEAN_REBOUND = "mean-rebound"
MA200_RECLAIM = "ma200-reclaim"

TEMPLATES: dict[str, dict[str, str]] = {
    MEAN_REBOUND: {
        "name": "Mean rebound",
        "summary": "Buy the close after a high-score, oversold crash event",
    },
    MA200_RECLAIM: {
        "name": "200-day reclaim",
        "summary": "After a crash, follow the trend once price regains a rising 200-day average",
    },
}


def parse_template_id(value: Any) -> str:
    key = str(value or "").strip().lower().replace("_", "-")
    if key not in TEMPLATES:
        raise ValueError(f"Unknown backtest template: {value!r} (expected one of {', '.join(TEMPLATES)})")
    return key


@dataclass(frozen=True)
class BacktestParams:
    entry_threshold: float = 70.0
    rsi_max: float = 35.0
    take_profit_pct: float = 8.0
    stop_loss_pct: float = -5.0
    max_hold_days: int = 20
    arm_window_days: int = 90
    apply_costs: bool = False
    cost_pct: float = 0.05
    slippage_pct: float = 0.05

    @property
    def fee_rate(self) -> float:
        """Per-side cost fraction; zero unless costs are enabled."""
        if not self.apply_costs:
            return 0.0
        return (self.cost_pct + self.slippage_pct) / 100.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


DEFAULT_BACKTEST_PARAMS = BacktestParams()


def _coerce_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in {"1", "true", "yes", "on"}:
            return True
        if text in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"{name} must be a boolean, got {value!r}")


def merge_backtest_params(partial: Mapping[str, Any] | BacktestParams | None = None) -> BacktestParams:
    """Apply ``partial`` over the defaults field by field.

    Keys may be snake_case or camelCase; ``None`` keeps the default.
    """
    if partial is None:
        return DEFAULT_BACKTEST_PARAMS
    if isinstance(partial, BacktestParams):
        return partial
    if not isinstance(partial, Mapping):
        raise ValueError(f"backtest params must be a mapping, got {type(partial).__name__}")

    overrides = {normalize_key(k): v for k, v in partial.items()}
    known = {f.name for f in fields(BacktestParams)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ValueError(f"Unknown backtest parameter(s): {', '.join(unknown)}")

    changes: dict[str, Any] = {}
    for f in fields(BacktestParams):
        value = overrides.get(f.name)
        if value is None:
            continue
        default = getattr(DEFAULT_BACKTEST_PARAMS, f.name)
        if isinstance(default, bool):
            changes[f.name] = _coerce_bool(value, f.name)
            continue
        if isinstance(value, bool):
            raise ValueError(f"{f.name} must be numeric, got {value!r}")
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ValueError(f"{f.name} must be numeric, got {value!r}") from None
        if not math.isfinite(number):
            raise ValueError(f"{f.name} must be finite, got {value!r}")
        if isinstance(default, int):
            if number != int(number) or number < 0:
                raise ValueError(f"{f.name} must be a non-negative integer, got {value!r}")
            changes[f.name] = int(number)
        else:
            changes[f.name] = number
    return replace(DEFAULT_BACKTEST_PARAMS, **changes)


__all__ = [
    "BacktestParams",
    "BacktestTemplateId",
    "DEFAULT_BACKTEST_PARAMS",
    "MA200_RECLAIM",
    "MEAN_REBOUND",
    "TEMPLATES",
    "merge_backtest_params",
    "parse_template_id",
]
