"""
Shared key-row tables with bounded staleness.

The dictionary lives in a table of independently addressable rows that
every worker thread of every client reads and increments. The contract:

- ``get(row_id)`` returns a copy of the row that may lag the global write
  frontier by at most ``staleness`` clock ticks of the slowest worker.
- ``batch_inc(row_id, updates)`` adds a delta to a row as one indivisible
  update. Rows are only ever incremented, never overwritten.
- ``clock()`` advances the calling worker's logical time by one tick.
- ``global_barrier()`` blocks until every registered worker arrives.

Workers obtain a :class:`WorkerSession` by registering with an explicit
``(client_id, thread_id)`` identity.

:class:`LocalTableGroup` implements the contract for workers living in one
process. It applies writes immediately, which is allowed since staleness is
only an upper bound, and blocks reads on the clocks of the other workers.
"""

from __future__ import annotations
import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, Mapping, Set, Tuple, Union

import numpy as np

from .errors import ColumnRangeError, ConfigError, NMFError

logger = logging.getLogger(__name__)

WorkerKey = Tuple[int, int]
RowUpdate = Union[np.ndarray, Mapping[int, float]]


class TableGroupAborted(NMFError):
    """Raised in waiting workers after another worker of the job failed."""


class TableHandle(ABC):
    """One worker's view of a shared table."""

    @property
    @abstractmethod
    def num_rows(self) -> int: ...

    @property
    @abstractmethod
    def row_width(self) -> int: ...

    @abstractmethod
    def get(self, row_id: int) -> np.ndarray:
        """Copy of the row, at most ``staleness`` ticks behind."""

    @abstractmethod
    def batch_inc(self, row_id: int, updates: RowUpdate) -> None:
        """Add a dense delta vector or a ``{col_id: delta}`` mapping."""

    def inc(self, row_id: int, col_id: int, delta: float) -> None:
        """Add ``delta`` to a single cell."""
        self.batch_inc(row_id, {col_id: delta})


class WorkerSession(ABC):
    """Registration of one worker thread with a table group."""

    def __init__(self, client_id: int, thread_id: int):
        self.client_id = client_id
        self.thread_id = thread_id

    @property
    def key(self) -> WorkerKey:
        return self.client_id, self.thread_id

    @abstractmethod
    def get_table(self, table_id: int) -> TableHandle: ...

    @abstractmethod
    def clock(self) -> None: ...

    @abstractmethod
    def global_barrier(self) -> None: ...

    @abstractmethod
    def deregister(self) -> None: ...

    @abstractmethod
    def abort(self) -> None:
        """Release every other worker of the job with ``TableGroupAborted``."""


class TableGroup(ABC):
    """Factory for tables and worker sessions."""

    @abstractmethod
    def create_table(self, table_id: int, num_rows: int, row_width: int,
                     staleness: int) -> None: ...

    @abstractmethod
    def register_thread(self, client_id: int, thread_id: int) -> WorkerSession: ...

    @abstractmethod
    def abort(self) -> None:
        """Release every waiting worker with ``TableGroupAborted``."""


class _LocalTable:
    def __init__(self, num_rows: int, row_width: int, staleness: int):
        self.data = np.zeros((num_rows, row_width), dtype=np.float32)
        self.staleness = staleness

    def check_row(self, row_id: int) -> None:
        if not 0 <= row_id < self.data.shape[0]:
            raise ColumnRangeError(row_id, self.data.shape[0], what="row")


class _LocalTableHandle(TableHandle):
    def __init__(self, group: "LocalTableGroup", session: "_LocalSession",
                 table: _LocalTable):
        self._group = group
        self._session = session
        self._table = table

    @property
    def num_rows(self) -> int:
        return self._table.data.shape[0]

    @property
    def row_width(self) -> int:
        return self._table.data.shape[1]

    def get(self, row_id: int) -> np.ndarray:
        self._table.check_row(row_id)
        return self._group._read(self._session.key, self._table, row_id)

    def batch_inc(self, row_id: int, updates: RowUpdate) -> None:
        self._table.check_row(row_id)
        width = self.row_width
        if isinstance(updates, Mapping):
            cols = np.fromiter(updates.keys(), dtype=np.int64, count=len(updates))
            vals = np.fromiter(updates.values(), dtype=np.float32, count=len(updates))
            if cols.size and (cols.min() < 0 or cols.max() >= width):
                bad = int(cols[(cols < 0) | (cols >= width)][0])
                raise ColumnRangeError(bad, width)
            self._group._add(self._table, row_id, vals, cols)
        else:
            delta = np.asarray(updates, dtype=np.float32)
            if delta.shape != (width,):
                raise ValueError(
                    f"update of shape {delta.shape} does not match row width {width}")
            self._group._add(self._table, row_id, delta, None)


class _LocalSession(WorkerSession):
    def __init__(self, group: "LocalTableGroup", client_id: int, thread_id: int):
        super().__init__(client_id, thread_id)
        self._group = group

    def get_table(self, table_id: int) -> TableHandle:
        return _LocalTableHandle(self._group, self, self._group._table(table_id))

    def clock(self) -> None:
        self._group._clock(self.key)

    def global_barrier(self) -> None:
        self._group._barrier_wait(self.key)

    def deregister(self) -> None:
        self._group._deregister(self.key)

    def abort(self) -> None:
        self._group.abort()


class LocalTableGroup(TableGroup):
    """
    In-process table group for ``num_workers`` worker threads.

    A read by a worker at clock ``c`` on a table with staleness ``s`` waits
    until every registered worker that is not parked at a barrier has reached
    clock ``c - s``. Workers parked at a barrier never hold readers back;
    once everyone arrives all clocks are aligned to the largest one.

    Parameters
    ----------
    num_workers : int
        Total number of worker threads of the job, over all clients. The
        barrier releases when this many workers have arrived.
    """

    def __init__(self, num_workers: int):
        if num_workers < 1:
            raise ConfigError(f"num_workers must be positive, got {num_workers}")
        self.num_workers = num_workers
        self._cond = threading.Condition()
        self._tables: Dict[int, _LocalTable] = {}
        self._clocks: Dict[WorkerKey, int] = {}
        self._parked: Set[WorkerKey] = set()
        self._aborted = False
        self._barrier = threading.Barrier(num_workers, action=self._align_clocks)

    # -- setup ---------------------------------------------------------

    def create_table(self, table_id: int, num_rows: int, row_width: int,
                     staleness: int) -> None:
        with self._cond:
            if table_id in self._tables:
                raise ConfigError(f"Table {table_id} already exists")
            self._tables[table_id] = _LocalTable(num_rows, row_width, staleness)
        logger.debug("Created table %d: %d rows x %d, staleness %d",
                     table_id, num_rows, row_width, staleness)

    def register_thread(self, client_id: int, thread_id: int) -> WorkerSession:
        key = (client_id, thread_id)
        with self._cond:
            if key in self._clocks:
                raise ConfigError(f"Worker {key} registered twice")
            if len(self._clocks) >= self.num_workers:
                raise ConfigError(
                    f"More than {self.num_workers} workers registered")
            self._clocks[key] = 0
        logger.info("client %d, thread %d registers!", client_id, thread_id)
        return _LocalSession(self, client_id, thread_id)

    def abort(self) -> None:
        with self._cond:
            self._aborted = True
            self._cond.notify_all()
        self._barrier.abort()

    # -- inspection ----------------------------------------------------

    def snapshot(self, table_id: int) -> np.ndarray:
        """Copy of a whole table, ignoring staleness."""
        with self._cond:
            return self._table(table_id).data.copy()

    def worker_clock(self, client_id: int, thread_id: int) -> int:
        with self._cond:
            return self._clocks[(client_id, thread_id)]

    # -- internals -----------------------------------------------------

    def _table(self, table_id: int) -> _LocalTable:
        try:
            return self._tables[table_id]
        except KeyError:
            raise ConfigError(f"Table {table_id} does not exist") from None

    def _min_active_clock(self) -> float:
        active = [c for k, c in self._clocks.items() if k not in self._parked]
        return min(active) if active else float("inf")

    def _read(self, key: WorkerKey, table: _LocalTable, row_id: int) -> np.ndarray:
        with self._cond:
            required = self._clocks[key] - table.staleness
            self._cond.wait_for(
                lambda: self._aborted or self._min_active_clock() >= required)
            if self._aborted:
                raise TableGroupAborted("table group aborted by a failed worker")
            return table.data[row_id].copy()

    def _add(self, table: _LocalTable, row_id: int, values: np.ndarray, cols) -> None:
        with self._cond:
            if cols is None:
                table.data[row_id] += values
            else:
                np.add.at(table.data[row_id], cols, values)

    def _clock(self, key: WorkerKey) -> None:
        with self._cond:
            self._clocks[key] += 1
            self._cond.notify_all()

    def _barrier_wait(self, key: WorkerKey) -> None:
        with self._cond:
            if self._aborted:
                raise TableGroupAborted("table group aborted by a failed worker")
            self._parked.add(key)
            self._cond.notify_all()
        try:
            self._barrier.wait()
        except threading.BrokenBarrierError:
            raise TableGroupAborted("barrier broken by a failed worker") from None

    def _align_clocks(self) -> None:
        with self._cond:
            latest = max(self._clocks.values(), default=0)
            for key in self._clocks:
                self._clocks[key] = latest
            self._parked.clear()
            self._cond.notify_all()

    def _deregister(self, key: WorkerKey) -> None:
        with self._cond:
            self._clocks.pop(key, None)
            self._parked.discard(key)
            self._cond.notify_all()
        logger.debug("client %d, thread %d deregistered", *key)
