"""
Column ownership across clients.

Column ``j`` of X and S belongs to client ``j % num_clients`` and sits at
local index ``j // num_clients`` inside that client's shard.
"""

from __future__ import annotations
import math
from typing import Tuple

from .errors import ColumnRangeError, ConfigError


def _check_clients(client_id: int, num_clients: int) -> None:
    if num_clients < 1:
        raise ConfigError(f"num_clients must be positive, got {num_clients}")
    if not 0 <= client_id < num_clients:
        raise ConfigError(
            f"client_id {client_id} out of range for {num_clients} clients")


def client_num_columns(n: int, client_id: int, num_clients: int) -> int:
    """Number of columns owned by ``client_id``."""
    _check_clients(client_id, num_clients)
    base, remainder = divmod(n, num_clients)
    return base + 1 if client_id < remainder else base


def max_client_columns(n: int, num_clients: int) -> int:
    """Column count of the largest shard."""
    return math.ceil(n / num_clients)


def owner_of(j: int, n: int, num_clients: int) -> Tuple[int, int]:
    """Map global column ``j`` to ``(client_id, local_index)``."""
    if not 0 <= j < n:
        raise ColumnRangeError(j, n)
    return j % num_clients, j // num_clients


def global_column(client_id: int, local_index: int, n: int,
                  num_clients: int) -> int:
    """Inverse of :func:`owner_of`."""
    size = client_num_columns(n, client_id, num_clients)
    if not 0 <= local_index < size:
        raise ColumnRangeError(local_index, size)
    return local_index * num_clients + client_id


def client_columns(n: int, client_id: int, num_clients: int) -> range:
    """Global column ids owned by ``client_id``, in local-index order."""
    _check_clients(client_id, num_clients)
    return range(client_id, n, num_clients)


def minibatches_per_epoch(client_n: int, num_worker_threads: int,
                          minibatch_size: int) -> int:
    """
    Minibatches one worker thread runs per epoch.

    The client's columns are split evenly over its worker threads (at least
    one column per thread) and consumed ``minibatch_size`` at a time.
    """
    columns_per_thread = max(client_n // num_worker_threads, 1)
    return math.ceil(columns_per_thread / minibatch_size)


def num_eval_slots(n: int, num_clients: int, num_worker_threads: int,
                   num_epochs: int, minibatch_size: int,
                   num_eval_minibatch: int) -> int:
    """
    Evaluation slots reserved per client in the loss table.

    Sized from the largest shard so that every client computes the same
    value and no worker's slot index ``t // num_eval_minibatch`` can fall
    outside the reserved rows.
    """
    per_epoch = minibatches_per_epoch(max_client_columns(n, num_clients),
                                      num_worker_threads, minibatch_size)
    total = num_epochs * per_epoch
    return max(1, math.ceil(total / num_eval_minibatch))
