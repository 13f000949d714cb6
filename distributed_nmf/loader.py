"""
Read-only column shard of the data matrix X.

Each client keeps only the columns it owns. The shard is loaded once and
never mutated, so worker threads share it without locking.
"""

import logging
from pathlib import Path
from typing import Optional, Union

import numpy as np

from .errors import ColumnRangeError, ConfigError
from .formats import MatrixFormat, read_matrix
from .partition import client_columns

logger = logging.getLogger(__name__)


class DataShardLoader:
    """
    Column shard of an ``m x n`` data matrix.

    Parameters
    ----------
    path : str or Path
        Matrix file, one matrix row per line (text) or row-major (binary).
    data_format : str or MatrixFormat
        ``"text"`` or ``"binary"``.
    rows : int
        Number of rows ``m``.
    cols : int
        Number of columns stored in the file: this client's column count for
        a pre-partitioned file, the full ``n`` for a monolithic one.
    client_id, num_clients : int, optional
        Given together, the file is monolithic and only the columns
        ``j`` with ``j % num_clients == client_id`` are kept, in increasing
        order of ``j``.
    """

    def __init__(
        self,
        path: Union[str, Path],
        data_format: Union[str, MatrixFormat],
        rows: int,
        cols: int,
        client_id: Optional[int] = None,
        num_clients: Optional[int] = None
    ):
        if (client_id is None) != (num_clients is None):
            raise ConfigError("client_id and num_clients must be given together")

        self.path = Path(path)
        self.data_format = MatrixFormat.parse(data_format)
        matrix = read_matrix(self.path, self.data_format, rows, cols)

        if client_id is not None:
            owned = list(client_columns(cols, client_id, num_clients))
            matrix = matrix[:, owned]

        # Columns are served far more often than rows; keep them contiguous.
        self._columns = np.ascontiguousarray(matrix.T)
        self._columns.setflags(write=False)
        self._m = rows
        logger.info("Loaded %d columns of %s (m = %d)", self.client_n, self.path, rows)

    @property
    def m(self) -> int:
        """Length of every column."""
        return self._m

    @property
    def client_n(self) -> int:
        """Number of columns in this shard."""
        return self._columns.shape[0]

    def __len__(self) -> int:
        return self.client_n

    def get_column(self, index: int) -> np.ndarray:
        """Copy of local column ``index``."""
        if not 0 <= index < self.client_n:
            raise ColumnRangeError(index, self.client_n)
        return self._columns[index].copy()

    def as_matrix(self) -> np.ndarray:
        """The whole shard as an ``m x client_n`` copy."""
        return self._columns.T.copy()
