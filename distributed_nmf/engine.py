"""
Distributed minibatch SGD for non-negative dictionary factorization.

Learns ``X ≈ B S`` with ``B ≥ 0``. Every client process owns a column shard
of X and S and runs several worker threads; all workers of all clients share
B through a bounded-staleness row table (table 0) and report evaluation
samples into an additive results table (table 1).

Each worker thread runs::

    INIT -> BARRIER -> EPOCH_LOOP -> BARRIER -> SAVE -> DONE

and inside EPOCH_LOOP, per minibatch::

    refresh cache -> [evaluate] -> S steps / accumulate B update
      -> publish B update -> clock -> project B -> clock

A wall-clock budget, checked at the top of every minibatch, sends a worker
straight to the closing barrier.
"""

import logging
import threading
import time
import warnings
from dataclasses import asdict, dataclass
from typing import List, Optional

import numpy as np

from .coefficients import CoefficientShard
from .config import EngineConfig, make_metadata
from .deterministic import (
    STREAM_COEFFICIENT_INIT, STREAM_DICTIONARY_INIT, STREAM_SAMPLING,
    get_reproducibility_info, make_rng,
)
from .formats import MatrixFormat
from .jsonlog import log
from .loader import DataShardLoader
from .persistence import (
    load_cached_coefficients, load_cached_dictionary, save_coefficients,
    save_dictionary, save_eval_logs, save_metadata,
)
from .tables import TableGroup, TableGroupAborted, TableHandle, WorkerSession
from .updates import (
    absolute_to_increment, coefficient_step, dictionary_step, nonnegative,
    projection_correction, reconstruction_error, step_size,
)

logger = logging.getLogger(__name__)

DICTIONARY_TABLE = 0
LOSS_TABLE = 1


@dataclass
class WorkerReport:
    """What one worker thread did."""
    client_id: int
    thread_id: int
    minibatches: int = 0
    epochs_completed: int = 0
    terminated_early: bool = False
    last_loss: Optional[float] = None


class NMFEngine:
    """
    Training engine of one client.

    Parameters
    ----------
    config : EngineConfig
        Immutable settings; ``config.client_id`` selects this client's shard.
    table_group : TableGroup
        Holds the dictionary table (id 0, ``dictionary_size`` rows of width
        ``m``) and the loss table (id 1, ``2 * num_clients *
        num_eval_per_client`` rows of width 1). See
        :func:`distributed_nmf.cluster.create_tables`.

    Examples
    --------
    >>> group = LocalTableGroup(cfg.num_workers_total)       # doctest: +SKIP
    >>> create_tables(group, cfg)                             # doctest: +SKIP
    >>> reports = NMFEngine(cfg, group).run()                 # doctest: +SKIP
    """

    def __init__(self, config: EngineConfig, table_group: TableGroup):
        self._init_time = time.monotonic()
        self.config = config
        self.table_group = table_group
        self.client_id = config.client_id
        self.dictionary_size = config.effective_dictionary_size
        self.output_format = MatrixFormat.parse(config.output_data_format)
        self.input_format = MatrixFormat.parse(config.input_data_format)

        client_n = config.client_n
        if client_n < config.num_worker_threads:
            warnings.warn(
                f"client {config.client_id} owns {client_n} columns for "
                f"{config.num_worker_threads} worker threads; workers will sample "
                f"overlapping columns",
                RuntimeWarning, stacklevel=2,
            )
        if config.is_partitioned:
            self.X = DataShardLoader(config.client_data_file, self.input_format,
                                     config.m, client_n)
        else:
            self.X = DataShardLoader(config.data_file, self.input_format,
                                     config.m, config.n,
                                     config.client_id, config.num_clients)

        self.S = CoefficientShard(
            self.dictionary_size, client_n, config.init_S_low, config.init_S_high,
            rng=make_rng(config.seed, config.client_id, 0, STREAM_COEFFICIENT_INIT),
        )
        self.num_eval_per_client = config.num_eval_per_client

    # -- small helpers -------------------------------------------------

    @property
    def m(self) -> int:
        return self.X.m

    def elapsed(self) -> float:
        """Seconds since the engine was constructed."""
        return time.monotonic() - self._init_time

    def time_budget_exceeded(self) -> bool:
        budget = self.config.maximum_running_time
        return budget > 0.0 and self.elapsed() > budget * 3600.0

    def loss_row(self, slot: int, client_id: Optional[int] = None) -> int:
        client = self.client_id if client_id is None else client_id
        return client * self.num_eval_per_client + slot

    def time_row(self, slot: int, client_id: Optional[int] = None) -> int:
        client = self.client_id if client_id is None else client_id
        return (self.config.num_clients + client) * self.num_eval_per_client + slot

    def _is_leader(self, thread_id: int) -> bool:
        return self.client_id == 0 and thread_id == 0

    # -- initialization ------------------------------------------------

    def init_random(self, thread_id: int, B_table: TableHandle) -> None:
        """Thread 0 adds uniform random values to every dictionary row."""
        if thread_id != 0:
            return
        cfg = self.config
        rng = make_rng(cfg.seed, self.client_id, thread_id, STREAM_DICTIONARY_INIT)
        for row_id in range(self.dictionary_size):
            row = rng.uniform(cfg.init_B_low, cfg.init_B_high, size=self.m)
            B_table.batch_inc(row_id, row.astype(np.float32))

    def load_cache(self, thread_id: int, B_table: TableHandle) -> None:
        """
        Resume from ``cache_path``.

        Thread 0 of client 0 moves every dictionary row to the cached value
        and thread 0 of every client moves its coefficient columns, both by
        adding ``cached - current`` so that whatever the row or column held
        before is replaced rather than added to.
        """
        if thread_id != 0:
            return
        cfg = self.config
        if self.client_id == 0:
            B_rows = load_cached_dictionary(cfg.cache_path, self.input_format,
                                            self.dictionary_size, self.m)
            for row_id in range(self.dictionary_size):
                B_table.batch_inc(
                    row_id, absolute_to_increment(B_table.get(row_id), B_rows[row_id]))
        S_cols = load_cached_coefficients(cfg.cache_path, self.input_format,
                                          self.client_id, self.S.client_n,
                                          self.dictionary_size)
        for j in range(self.S.client_n):
            self.S.assign_column(j, S_cols[j])
        logger.info("client %d loaded cache from %s", self.client_id, cfg.cache_path)

    # -- minibatch steps -----------------------------------------------

    def refresh_cache(self, B_table: TableHandle, cache: np.ndarray) -> None:
        """Copy every dictionary row into column ``row_id`` of ``cache``."""
        for row_id in range(self.dictionary_size):
            cache[:, row_id] = B_table.get(row_id)

    def evaluate(self, cache: np.ndarray, rng: np.random.Generator) -> float:
        """
        Mean squared reconstruction error over ``num_eval_samples`` random
        columns, measured against the projected local cache.

        The projection is applied to ``cache`` in place and stays local to
        this worker; the shared table is projected separately after each
        minibatch.
        """
        np.copyto(cache, nonnegative(cache))
        num_samples = self.config.num_eval_samples
        obj = 0.0
        for _ in range(num_samples):
            j, s = self.S.get_random_column(rng)
            obj += reconstruction_error(cache, self.X.get_column(j), s)
        return obj / num_samples

    def record_evaluation(self, loss_table: TableHandle, slot: int,
                          loss: float, seconds: float) -> None:
        threads = self.config.num_worker_threads
        loss_table.inc(self.loss_row(slot), 0, loss / threads)
        loss_table.inc(self.time_row(slot), 0, seconds / threads)

    def run_minibatch(self, cache: np.ndarray, update: np.ndarray,
                      step_B: float, step_S: float,
                      rng: np.random.Generator) -> float:
        """
        Update the coefficients of ``minibatch_size`` sampled columns and
        accumulate the dictionary update into ``update``.

        Returns the mean absolute coefficient increment per entry.
        """
        cfg = self.config
        update.fill(0.0)
        s_inc = 0.0
        for _ in range(cfg.minibatch_size):
            j, s = self.S.get_random_column(rng)
            x = self.X.get_column(j)
            for _ in range(cfg.num_iter_S_per_minibatch):
                delta = coefficient_step(cache, x, s, step_S)
                self.S.increment_column(j, delta)
                # later steps must see this one
                s = self.S.get_column(j)
                s_inc += float(np.abs(delta).sum())
            update += dictionary_step(cache, x, s, step_B)
        return s_inc / self.dictionary_size / cfg.minibatch_size

    def publish_update(self, B_table: TableHandle, update: np.ndarray) -> None:
        scale = np.float32(self.config.minibatch_size)
        for row_id in range(self.dictionary_size):
            B_table.batch_inc(row_id, update[:, row_id] / scale)

    def project_dictionary(self, B_table: TableHandle) -> None:
        """Add this worker's share of the non-negativity projection."""
        num_workers = self.config.num_workers_total
        for row_id in range(self.dictionary_size):
            row = B_table.get(row_id)
            B_table.batch_inc(row_id, projection_correction(row, num_workers))

    # -- persistence ---------------------------------------------------

    def save_results(self, thread_id: int, B_table: TableHandle,
                     loss_table: TableHandle) -> None:
        """
        Persist results. Call only after the closing global barrier.

        Thread 0 of client 0 writes the dictionary and the evaluation logs
        of all clients; thread 0 of every client writes its coefficients.
        """
        cfg = self.config
        out = cfg.output_path or "."
        if self._is_leader(thread_id):
            E, C = self.num_eval_per_client, cfg.num_clients
            loss = np.zeros((E, C))
            elapsed = np.zeros((E, C))
            for slot in range(E):
                for client in range(C):
                    loss[slot, client] = loss_table.get(self.loss_row(slot, client))[0]
                    elapsed[slot, client] = loss_table.get(self.time_row(slot, client))[0]
            save_eval_logs(out, loss, elapsed)
            B_rows = np.stack([nonnegative(B_table.get(row_id))
                               for row_id in range(self.dictionary_size)])
            save_dictionary(out, B_rows, self.output_format)
        if thread_id == 0:
            save_coefficients(out, self.S.snapshot(), self.output_format, self.client_id)

    def write_metadata(self, reports: List[WorkerReport]) -> None:
        cfg = self.config
        S_shapes = [(cfg.for_client(c).client_n, self.dictionary_size)
                    for c in range(cfg.num_clients)]
        meta = make_metadata(cfg, (self.dictionary_size, self.m), S_shapes,
                             {"workers": [asdict(r) for r in reports],
                              "elapsed_seconds": self.elapsed(),
                              "reproducibility": get_reproducibility_info()})
        save_metadata(cfg.output_path or ".", meta)

    # -- worker entry points -------------------------------------------

    def start(self, thread_id: int) -> WorkerReport:
        """Run worker ``thread_id`` of this client to completion."""
        try:
            session = self.table_group.register_thread(self.client_id, thread_id)
        except BaseException:
            # peers may already wait at the first barrier
            self.table_group.abort()
            raise
        try:
            report = self._work(session, thread_id)
        except BaseException:
            session.abort()
            raise
        session.deregister()
        return report

    def _work(self, session: WorkerSession, thread_id: int) -> WorkerReport:
        cfg = self.config
        B_table = session.get_table(DICTIONARY_TABLE)
        loss_table = session.get_table(LOSS_TABLE)
        rng = make_rng(cfg.seed, self.client_id, thread_id, STREAM_SAMPLING)
        report = WorkerReport(self.client_id, thread_id)

        if self._is_leader(thread_id):
            logger.info("starting to initialize B")
        if cfg.load_cache:
            self.load_cache(thread_id, B_table)
        elif self.client_id == 0:
            self.init_random(thread_id, B_table)
        if self._is_leader(thread_id):
            logger.info("matrix B initialization finished!")
        session.global_barrier()

        cache = np.zeros((self.m, self.dictionary_size), dtype=np.float32)
        update = np.zeros_like(cache)
        eval_start = time.monotonic()
        t = 0
        for _ in range(cfg.num_epochs):
            for _ in range(cfg.minibatches_per_epoch):
                if self.time_budget_exceeded():
                    logger.info("Maximum runtime limit activates, terminating now!")
                    report.terminated_early = True
                    break
                self.refresh_cache(B_table, cache)

                if t % cfg.num_eval_minibatch == 0:
                    seconds = time.monotonic() - eval_start
                    loss = self.evaluate(cache, rng)
                    slot = t // cfg.num_eval_minibatch
                    self.record_evaluation(loss_table, slot, loss, seconds)
                    report.last_loss = loss
                    logger.info("iter: %d, client %d, thread %d average loss: %g",
                                t, self.client_id, thread_id, loss)
                    log("eval", client=self.client_id, thread=thread_id,
                        iter=t, slot=slot, loss=loss, seconds=seconds)
                    eval_start = time.monotonic()

                step_B = step_size(cfg.init_step_size_B, cfg.step_size_offset_B,
                                   cfg.step_size_pow_B, t)
                step_S = step_size(cfg.init_step_size_S, cfg.step_size_offset_S,
                                   cfg.step_size_pow_S, t)
                t += 1
                report.minibatches = t

                s_inc = self.run_minibatch(cache, update, step_B, step_S, rng)
                logger.debug("client %d, thread %d, minibatch %d: mean |dS| %g",
                             self.client_id, thread_id, t, s_inc)
                self.publish_update(B_table, update)
                session.clock()
                self.project_dictionary(B_table)
                session.clock()
            if report.terminated_early:
                break
            report.epochs_completed += 1

        session.global_barrier()
        self.save_results(thread_id, B_table, loss_table)
        return report

    def run(self) -> List[WorkerReport]:
        """
        Run all ``num_worker_threads`` workers of this client and wait for
        them. The first worker failure is re-raised here.
        """
        n_threads = self.config.num_worker_threads
        reports: List[Optional[WorkerReport]] = [None] * n_threads
        errors: List[BaseException] = []

        def _target(thread_id: int) -> None:
            try:
                reports[thread_id] = self.start(thread_id)
            except BaseException as e:
                errors.append(e)

        threads = [
            threading.Thread(target=_target, args=(i,),
                             name=f"nmf-client{self.client_id}-thread{i}")
            for i in range(n_threads)
        ]
        for thr in threads:
            thr.start()
        for thr in threads:
            thr.join()

        if errors:
            primary = [e for e in errors if not isinstance(e, TableGroupAborted)]
            raise (primary or errors)[0]
        return reports
