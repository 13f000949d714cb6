"""
Table declaration and in-process jobs.

A job consists of ``num_clients`` engines that share one table group. In a
multi-host deployment each client runs in its own process; here every
client runs in the calling process against a :class:`LocalTableGroup`,
which is how the command line and the integration tests drive training.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import List, Optional

from .config import EngineConfig
from .deterministic import set_deterministic
from .engine import DICTIONARY_TABLE, LOSS_TABLE, NMFEngine, WorkerReport
from .tables import LocalTableGroup, TableGroup, TableGroupAborted

logger = logging.getLogger(__name__)


def create_tables(group: TableGroup, config: EngineConfig) -> None:
    """
    Declare the dictionary table and the loss table.

    The dictionary table holds one row of width ``m`` per atom. The loss
    table holds ``2 * num_clients * num_eval_per_client`` single-value rows:
    loss samples first, then elapsed times.
    """
    group.create_table(DICTIONARY_TABLE, config.effective_dictionary_size,
                       config.m, config.table_staleness)
    group.create_table(LOSS_TABLE, 2 * config.num_clients * config.num_eval_per_client,
                       1, config.loss_table_staleness)


@dataclass
class JobResult:
    engines: List[NMFEngine]
    reports: List[WorkerReport] = field(default_factory=list)
    group: Optional[LocalTableGroup] = None


def run_local_job(config: EngineConfig) -> JobResult:
    """
    Run every client of the job in this process and wait for completion.

    ``config.client_id`` is ignored; one engine is built per client id.
    The first failure of any worker is re-raised after all clients stop.
    ``METADATA.json`` is written once, holding the reports of every worker.
    """
    set_deterministic(config.seed)
    group = LocalTableGroup(config.num_workers_total)
    create_tables(group, config)
    engines = [NMFEngine(config.for_client(c), group) for c in range(config.num_clients)]
    logger.info("Data loaded! %d client(s) x %d thread(s)",
                config.num_clients, config.num_worker_threads)

    per_client: List[List[WorkerReport]] = [[] for _ in engines]
    errors: List[BaseException] = []

    def _client(idx: int) -> None:
        try:
            per_client[idx] = engines[idx].run()
        except BaseException as e:
            errors.append(e)

    threads = [threading.Thread(target=_client, args=(i,), name=f"nmf-client{i}")
               for i in range(len(engines))]
    for thr in threads:
        thr.start()
    for thr in threads:
        thr.join()

    if errors:
        primary = [e for e in errors if not isinstance(e, TableGroupAborted)]
        raise (primary or errors)[0]

    reports = [r for client_reports in per_client for r in client_reports]
    engines[0].write_metadata(reports)
    logger.info("NMF shut down!")
    return JobResult(engines=engines, reports=reports, group=group)
