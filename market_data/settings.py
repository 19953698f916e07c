"""Persisted partial overrides for indicator, detection and backtest settings."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Mapping, Optional, Union

from utils.io import data_dir, read_json, write_json

log = logging.getLogger(__name__)

SETTINGS_SECTIONS = ("indicator_params", "weights", "detection", "backtest")
DETECTION_KEYS = ("mode", "threshold", "cooling_days", "single_rule")

_SECTION_ALIASES = {
    "indicatorParams": "indicator_params",
    "indicators": "indicator_params",
    "crashWeights": "weights",
    "crash_weights": "weights",
    "backtestParams": "backtest",
    "backtest_params": "backtest",
}
_DETECTION_ALIASES = {"coolingDays": "cooling_days", "singleRule": "single_rule"}


def settings_path() -> Path:
    raw = os.getenv("CRASHSCOPE_SETTINGS")
    if raw:
        return Path(raw).expanduser()
    return data_dir() / "settings.json"


def empty_settings() -> dict[str, dict[str, Any]]:
    return {section: {} for section in SETTINGS_SECTIONS}


def normalize_settings(raw: Mapping[str, Any] | None) -> dict[str, dict[str, Any]]:
    """Keep the known sections; unknown top-level keys are dropped with a warning."""
    out = empty_settings()
    if not raw:
        return out
    if not isinstance(raw, Mapping):
        raise ValueError(f"settings must be a JSON object, got {type(raw).__name__}")
    for key, value in raw.items():
        section = _SECTION_ALIASES.get(key, key)
        if section not in out:
            log.warning("Ignoring unknown settings section %r", key)
            continue
        if value is None:
            continue
        if not isinstance(value, Mapping):
            raise ValueError(f"settings section {key!r} must be an object")
        if section == "detection":
            value = {_DETECTION_ALIASES.get(k, k): v for k, v in value.items()}
        out[section].update(value)
    return out


def load_settings(path: Optional[Union[str, Path]] = None) -> dict[str, dict[str, Any]]:
    p = Path(path) if path is not None else settings_path()
    raw = read_json(p)
    if raw is None:
        log.debug("load_settings: %s not found, using defaults", p)
        return empty_settings()
    return normalize_settings(raw)


def save_settings(settings: Mapping[str, Any], path: Optional[Union[str, Path]] = None) -> Path:
    p = Path(path) if path is not None else settings_path()
    payload = normalize_settings(settings)
    written = write_json(p, payload)
    log.info("save_settings: wrote %s", written)
    return written


__all__ = [
    "SETTINGS_SECTIONS",
    "empty_settings",
    "load_settings",
    "normalize_settings",
    "save_settings",
    "settings_path",
]
