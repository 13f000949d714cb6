from .__about__ import __version__

from .config import EngineConfig, load_config, make_metadata
from .errors import (
    NMFError, ConfigError, CacheMissingError, DataFormatError, ColumnRangeError,
    OutputError,
)
from .formats import MatrixFormat, read_matrix, write_matrix, write_eval_log, read_eval_log
from .loader import DataShardLoader
from .coefficients import CoefficientShard
from .tables import (
    TableGroup, WorkerSession, TableHandle, LocalTableGroup, TableGroupAborted
)
from .engine import NMFEngine, WorkerReport, DICTIONARY_TABLE, LOSS_TABLE
from .cluster import create_tables, run_local_job, JobResult

__all__ = [
    "__version__",

    # configuration
    "EngineConfig", "load_config", "make_metadata",

    # errors
    "NMFError", "ConfigError", "CacheMissingError", "DataFormatError", "ColumnRangeError",
    "OutputError",

    # file formats
    "MatrixFormat", "read_matrix", "write_matrix", "write_eval_log", "read_eval_log",

    # shards
    "DataShardLoader", "CoefficientShard",

    # shared tables
    "TableGroup", "WorkerSession", "TableHandle", "LocalTableGroup", "TableGroupAborted",

    # training
    "NMFEngine", "WorkerReport", "DICTIONARY_TABLE", "LOSS_TABLE",
    "create_tables", "run_local_job", "JobResult",
]
