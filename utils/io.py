from __future__ import annotations

import csv
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Union

import pandas as pd

# Determine repository root based on this file's location
REPO_ROOT = Path(__file__).resolve().parents[1]


def data_dir() -> Path:
    """Root for settings and exports; ``CRASHSCOPE_DATA_DIR`` overrides it."""
    raw = os.getenv("CRASHSCOPE_DATA_DIR")
    if raw:
        return Path(raw).expanduser()
    return REPO_ROOT / "data"


def _prepare_export_root(path: Path) -> Path:
    try:
        path.mkdir(parents=True, exist_ok=True)
        return path
    except (OSError, PermissionError):
        fallback = Path(tempfile.gettempdir()) / "crashscope_exports"
        fallback.mkdir(parents=True, exist_ok=True)
        return fallback


def read_json(path: Union[str, Path]) -> Any:
    """Read a JSON document; return ``None`` when the file does not exist."""
    p = Path(path)
    if not p.exists():
        return None
    with p.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def write_json(path: Union[str, Path], payload: Any) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_suffix(p.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, sort_keys=True, default=str)
    tmp.replace(p)
    return p


def write_csv(path: Union[str, Path], df: pd.DataFrame) -> None:
    """Write DataFrame to CSV with minimal quoting, creating directories as needed."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(p, index=False, quoting=csv.QUOTE_MINIMAL)


def export_frame(df: pd.DataFrame | None, base_name: str, suffix: str) -> str:
    """Write ``df`` to ``<data dir>/exports/<base>_<suffix>.csv`` and return the path."""
    root = _prepare_export_root(data_dir() / "exports")
    safe = base_name.replace("/", "_").replace("\\", "_").replace("^", "")
    path = root / f"{safe}_{suffix}.csv"
    write_csv(path, df if df is not None else pd.DataFrame())
    return str(path)


__all__ = ["REPO_ROOT", "data_dir", "read_json", "write_json", "write_csv", "export_frame"]
