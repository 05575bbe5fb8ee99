"""Fixed-capacity history of accepted solution snapshots."""

from __future__ import annotations

from typing import Callable, List

import numpy as np

from .errors import InvalidRankAccessError


class HistoryBuffer:
    """Ring of past solutions consumed by the time discretization.

    Rank ``0`` is the most recent snapshot.  The buffer owns its storage:
    values are copied in on :meth:`push` / :meth:`push_discard_oldest` and
    copied out on :meth:`restore_into`, so callers may keep mutating their
    own state vector.
    """

    def __init__(self, capacity: int = 1) -> None:
        if int(capacity) < 1:
            raise ValueError("HistoryBuffer capacity must be at least 1")
        self.capacity = int(capacity)
        self._snapshots: List[np.ndarray] = []
        self._times: List[float] = []

    def __len__(self) -> int:
        return len(self._snapshots)

    @property
    def is_full(self) -> bool:
        return len(self._snapshots) == self.capacity

    def push(self, snapshot: np.ndarray, time: float) -> None:
        """Add a new most-recent entry while the buffer is still filling."""

        if self.is_full:
            raise InvalidRankAccessError(
                f"history already holds {self.capacity} snapshots; use push_discard_oldest"
            )
        self._snapshots.insert(0, np.array(snapshot, dtype=float, copy=True))
        self._times.insert(0, float(time))

    def push_discard_oldest(self, snapshot: np.ndarray, time: float) -> None:
        """Overwrite the oldest slot with ``snapshot`` and rotate it to the front."""

        if not self.is_full:
            self.push(snapshot, time)
            return
        slot = self._snapshots.pop()
        self._times.pop()
        values = np.asarray(snapshot, dtype=float)
        if slot.shape == values.shape:
            np.copyto(slot, values)
        else:
            # mesh topology changed since this slot was written
            slot = np.array(values, copy=True)
        self._snapshots.insert(0, slot)
        self._times.insert(0, float(time))

    def _check_rank(self, rank: int) -> int:
        k = int(rank)
        if k < 0 or k >= len(self._snapshots):
            raise InvalidRankAccessError(
                f"history rank {rank} out of range (holding {len(self._snapshots)} of {self.capacity})"
            )
        return k

    def snapshot(self, rank: int) -> np.ndarray:
        return self._snapshots[self._check_rank(rank)]

    def time(self, rank: int) -> float:
        return self._times[self._check_rank(rank)]

    def latest(self) -> np.ndarray:
        return self.snapshot(0)

    def oldest(self) -> np.ndarray:
        return self.snapshot(len(self._snapshots) - 1)

    def restore_into(self, target: np.ndarray) -> np.ndarray:
        """Copy the latest snapshot into ``target``.

        Returns ``target`` when shapes agree, otherwise a fresh copy of the
        latest snapshot which the caller must adopt as its state.
        """

        latest = self.latest()
        if target is not None and target.shape == latest.shape:
            np.copyto(target, latest)
            return target
        return latest.copy()

    def remap(self, transfer: Callable[[np.ndarray], np.ndarray]) -> None:
        """Apply ``transfer`` to every snapshot (after a mesh topology change)."""

        self._snapshots = [np.array(transfer(snap), dtype=float, copy=True) for snap in self._snapshots]


__all__ = ["HistoryBuffer"]
