"""
Client-local shard of the coefficient matrix S.

S is partitioned by column across clients and only the owning client's
worker threads touch a column, so it lives in process memory instead of the
shared table. Every column carries its own lock: reads copy a column as a
whole and increments replace it as a whole, so a reader never observes half
of an update.
"""

import numpy as np
from threading import Lock
from typing import Optional, Tuple

from .errors import ColumnRangeError
from .updates import absolute_to_increment


class CoefficientShard:
    """
    Thread-safe store of ``client_n`` coefficient columns.

    Parameters
    ----------
    dictionary_size : int
        Length of every column (number of dictionary atoms).
    client_n : int
        Number of columns owned by this client.
    init_low, init_high : float
        Columns start uniformly distributed in ``[init_low, init_high)``.
    rng : numpy.random.Generator, optional
        Generator used for initialization and for sampling when the caller
        does not pass its own.

    Examples
    --------
    >>> shard = CoefficientShard(3, 5, 0.0, 0.01, rng=np.random.default_rng(0))
    >>> j, col = shard.get_random_column()
    >>> shard.increment_column(j, np.ones(3, dtype=np.float32))
    >>> bool(np.allclose(shard.get_column(j), col + 1))
    True
    """

    def __init__(
        self,
        dictionary_size: int,
        client_n: int,
        init_low: float = 0.0,
        init_high: float = 0.01,
        rng: Optional[np.random.Generator] = None
    ):
        self.dictionary_size = int(dictionary_size)
        self.client_n = int(client_n)
        self.rng = rng if rng is not None else np.random.default_rng()

        self._columns = self.rng.uniform(
            init_low, init_high, size=(self.client_n, self.dictionary_size)
        ).astype(np.float32)
        self._locks = [Lock() for _ in range(self.client_n)]
        # Generator objects are not thread-safe.
        self._rng_lock = Lock()

    def __len__(self) -> int:
        return self.client_n

    def _check(self, j: int) -> None:
        if not 0 <= j < self.client_n:
            raise ColumnRangeError(j, self.client_n)

    def get_column(self, j: int) -> np.ndarray:
        """Copy of column ``j``."""
        self._check(j)
        with self._locks[j]:
            return self._columns[j].copy()

    def get_random_column(self, rng: Optional[np.random.Generator] = None
                          ) -> Tuple[int, np.ndarray]:
        """
        Uniformly sampled column.

        Parameters
        ----------
        rng : numpy.random.Generator, optional
            Caller-owned generator. Worker threads pass their own so that
            sampling never contends on the shard's generator.

        Returns
        -------
        j : int
            Local index of the sampled column.
        column : np.ndarray
            Copy of its current value.
        """
        if self.client_n == 0:
            raise ColumnRangeError(0, 0)
        if rng is None:
            with self._rng_lock:
                j = int(self.rng.integers(self.client_n))
        else:
            j = int(rng.integers(self.client_n))
        return j, self.get_column(j)

    def increment_column(self, j: int, delta: np.ndarray,
                         decay: float = 0.0) -> None:
        """Apply ``column[j] = column[j] * (1 - decay) + delta`` atomically."""
        self._check(j)
        delta = np.asarray(delta, dtype=np.float32)
        with self._locks[j]:
            if decay:
                self._columns[j] *= (1.0 - decay)
            self._columns[j] += delta

    def assign_column(self, j: int, target: np.ndarray) -> None:
        """Move column ``j`` to ``target`` through an additive correction."""
        self._check(j)
        with self._locks[j]:
            correction = absolute_to_increment(self._columns[j], target)
            self._columns[j] += correction

    def snapshot(self) -> np.ndarray:
        """``client_n x dictionary_size`` copy, one row per column of S."""
        out = np.empty_like(self._columns)
        for j in range(self.client_n):
            out[j] = self.get_column(j)
        return out
