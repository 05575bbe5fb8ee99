"""Output sinks receiving the solution at plot-interval boundaries."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Literal, Mapping, Optional

import numpy as np
import pyarrow as pa

from . import writer

logger = logging.getLogger(__name__)


class ColumnarBuffer:
    """Column-oriented record buffer for streaming-friendly output."""

    def __init__(self, columns: Iterable[str] | None = None) -> None:
        self._columns: Dict[str, List[Any]] = {}
        self._column_order: List[str] = []
        self._row_count = 0
        if columns:
            for name in columns:
                self._columns[name] = []
                self._column_order.append(name)

    @property
    def row_count(self) -> int:
        return self._row_count

    def __len__(self) -> int:
        return self._row_count

    def columns(self) -> List[str]:
        return list(self._column_order)

    def append_row(self, record: Mapping[str, Any]) -> None:
        for key in record:
            if key not in self._columns:
                self._columns[key] = [None] * self._row_count
                self._column_order.append(key)
        for name in self._column_order:
            self._columns[name].append(record.get(name))
        self._row_count += 1

    def extend_columns(self, block: Mapping[str, Iterable[Any]]) -> None:
        """Append equally long column slices in one go."""

        block = {key: list(values) for key, values in block.items()}
        lengths = {len(values) for values in block.values()}
        if len(lengths) > 1:
            raise ValueError("column slices must have equal length")
        n_rows = lengths.pop() if lengths else 0
        for key in block:
            if key not in self._columns:
                self._columns[key] = [None] * self._row_count
                self._column_order.append(key)
        for name in self._column_order:
            values = block.get(name)
            if values is None:
                self._columns[name].extend([None] * n_rows)
            else:
                self._columns[name].extend(values)
        self._row_count += n_rows

    def clear(self) -> None:
        for values in self._columns.values():
            values.clear()
        self._row_count = 0

    def to_table(self) -> pa.Table:
        return pa.Table.from_pydict({name: self._columns[name] for name in self._column_order})


class SeriesSink:
    """Collect emitted states in long format and write them on :meth:`close`.

    Each emitted state contributes one row per degree of freedom with the
    columns ``step_index``, ``time``, ``node_index``, ``u`` and, when a
    ``coordinates`` callback is given, ``x``.
    """

    def __init__(
        self,
        path: Path,
        *,
        coordinates: Optional[Callable[[], np.ndarray]] = None,
        fmt: Literal["parquet", "csv"] = "parquet",
    ) -> None:
        self.path = Path(path)
        self.coordinates = coordinates
        self.fmt = fmt
        self.buffer = ColumnarBuffer(["step_index", "time", "node_index", "x", "u"])
        self.emitted: List[tuple[int, float]] = []

    def emit(self, state: np.ndarray, step_index: int, time: float) -> None:
        values = np.asarray(state, dtype=float)
        n = values.size
        x = self.coordinates() if self.coordinates is not None else np.full(n, np.nan)
        self.buffer.extend_columns(
            {
                "step_index": [int(step_index)] * n,
                "time": [float(time)] * n,
                "node_index": range(n),
                "x": np.asarray(x, dtype=float).tolist(),
                "u": values.tolist(),
            }
        )
        self.emitted.append((int(step_index), float(time)))
        logger.debug("emitted output %d at t=%g (%d values)", step_index, time, n)

    def close(self) -> Optional[Path]:
        """Write buffered rows; return the written path or ``None`` if empty."""

        if self.buffer.row_count == 0:
            return None
        table = self.buffer.to_table()
        if self.fmt == "csv":
            writer.write_step_trace(table.to_pandas(), self.path)
        else:
            writer.write_table(table, self.path)
        self.buffer.clear()
        return self.path


__all__ = ["ColumnarBuffer", "SeriesSink"]
