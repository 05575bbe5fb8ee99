"""Output helper utilities.

The routines in this module provide thin wrappers around :mod:`pandas` and
:mod:`pyarrow` to serialise run results.  Parquet is used for the emitted
solution series, JSON for run summaries and CSV for the per-iteration step
trace.  All functions ensure that destination directories are created when
necessary.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable, Mapping

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

UNITS = {
    "time": "s",
    "dt": "s",
    "x": "m",
    "u": "dimensionless",
    "step_index": "count",
    "node_index": "count",
    "level": "count",
    "iteration": "count",
    "num_elements": "count",
}


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _with_units(table: pa.Table) -> pa.Table:
    units = {name: UNITS[name] for name in table.column_names if name in UNITS}
    metadata = dict(table.schema.metadata or {})
    metadata[b"units"] = json.dumps(units, sort_keys=True).encode("utf-8")
    return table.replace_schema_metadata(metadata)


def write_table(table: pa.Table, path: Path, *, compression: str = "snappy") -> None:
    """Write a ``pyarrow`` table to Parquet with a ``units`` metadata entry."""

    _ensure_parent(path)
    pq.write_table(_with_units(table), path, compression=compression)


def write_parquet(df: pd.DataFrame, path: Path, *, compression: str = "snappy") -> None:
    """Write a DataFrame to a Parquet file using ``pyarrow``."""

    write_table(pa.Table.from_pandas(df, preserve_index=False), path, compression=compression)


def write_summary(summary: Mapping[str, Any], path: Path) -> None:
    """Write a summary dictionary to ``summary.json``.

    The JSON file is formatted with a small indentation for human
    readability.
    """
    _ensure_parent(path)
    with path.open("w", encoding="utf-8") as fh:
        json.dump(summary, fh, indent=2, sort_keys=True, default=str)


def write_step_trace(rows: Iterable[Mapping[str, Any]] | pd.DataFrame, path: Path) -> None:
    """Serialise the per-iteration step trace as CSV."""

    df = rows if isinstance(rows, pd.DataFrame) else pd.DataFrame(list(rows))
    _ensure_parent(path)
    df.to_csv(path, index=False)


__all__ = ["UNITS", "write_table", "write_parquet", "write_summary", "write_step_trace"]
