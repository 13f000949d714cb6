"""
Result files and resume caches.

A finished (or time-boxed) run leaves in its output directory:

- ``B.<ext>``: the dictionary, ``dictionary_size`` rows of ``m`` values,
  projected to non-negative values;
- ``S.<ext>.<client_id>``: one file per client, one line per owned column
  of S holding ``dictionary_size`` values;
- ``loss.txt`` and ``time.txt``: evaluation logs, one row per evaluation
  slot and one column per client;
- ``METADATA.json``: shapes, configuration and per-worker reports.

``<ext>`` is ``txt`` or ``bin`` depending on the output format. A previous
output directory can be passed back as a cache directory to resume
training from its B and S files.
"""

import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Union

import numpy as np

from .errors import CacheMissingError, OutputError
from .formats import MatrixFormat, read_matrix, write_eval_log, write_matrix

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

LOSS_FILENAME = "loss.txt"
TIME_FILENAME = "time.txt"
METADATA_FILENAME = "METADATA.json"


@contextmanager
def _writing(path: PathLike):
    """Create the parent directory and report write failures as ``OutputError``."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        yield path
    except OSError as e:
        raise OutputError(f"Cannot write {path}: {e}") from e


def dictionary_path(directory: PathLike, fmt: Union[str, MatrixFormat]) -> Path:
    fmt = MatrixFormat.parse(fmt)
    return Path(directory) / f"B.{fmt.extension}"


def coefficient_path(directory: PathLike, fmt: Union[str, MatrixFormat],
                     client_id: int) -> Path:
    fmt = MatrixFormat.parse(fmt)
    return Path(directory) / f"S.{fmt.extension}.{client_id}"


def save_dictionary(directory: PathLike, B_rows: np.ndarray,
                    fmt: Union[str, MatrixFormat]) -> Path:
    """Write the ``dictionary_size x m`` dictionary."""
    path = dictionary_path(directory, fmt)
    with _writing(path):
        write_matrix(path, B_rows, fmt)
    logger.info("Wrote dictionary %s to %s", B_rows.shape, path)
    return path


def save_coefficients(directory: PathLike, S_columns: np.ndarray,
                      fmt: Union[str, MatrixFormat], client_id: int) -> Path:
    """Write one client's ``client_n x dictionary_size`` coefficient shard."""
    path = coefficient_path(directory, fmt, client_id)
    with _writing(path):
        write_matrix(path, S_columns, fmt)
    logger.info("Wrote coefficients of client %d to %s", client_id, path)
    return path


def save_eval_logs(directory: PathLike, loss: np.ndarray, elapsed: np.ndarray) -> Dict[str, Path]:
    """Write ``loss.txt`` and ``time.txt`` (slots x clients)."""
    directory = Path(directory)
    logger.info("Writing loss result to directory: %s", directory)
    paths = {}
    for key, name, values in (("loss", LOSS_FILENAME, loss), ("time", TIME_FILENAME, elapsed)):
        with _writing(directory / name) as path:
            paths[key] = write_eval_log(path, values)
    return paths


def save_metadata(directory: PathLike, meta: Dict[str, Any]) -> Path:
    path = Path(directory) / METADATA_FILENAME
    with _writing(path), open(path, "w", encoding="utf-8") as fh:
        json.dump(meta, fh, indent=2, default=str)
    return path


def load_metadata(directory: PathLike) -> Dict[str, Any]:
    with open(Path(directory) / METADATA_FILENAME, "r", encoding="utf-8") as fh:
        return json.load(fh)


def load_cached_dictionary(cache_dir: PathLike, fmt: Union[str, MatrixFormat],
                           dictionary_size: int, m: int) -> np.ndarray:
    """
    Read ``B.<ext>`` from a cache directory.

    Raises
    ------
    CacheMissingError
        The file does not exist.
    """
    path = dictionary_path(cache_dir, fmt)
    if not path.is_file():
        raise CacheMissingError(path)
    return read_matrix(path, fmt, dictionary_size, m)


def load_cached_coefficients(cache_dir: PathLike, fmt: Union[str, MatrixFormat],
                             client_id: int, client_n: int,
                             dictionary_size: int) -> np.ndarray:
    """Read ``S.<ext>.<client_id>`` as ``client_n x dictionary_size``."""
    path = coefficient_path(cache_dir, fmt, client_id)
    if not path.is_file():
        raise CacheMissingError(path)
    return read_matrix(path, fmt, client_n, dictionary_size)
