"""
On-disk matrix encodings.

Two interchangeable encodings are supported:

- ``text``: whitespace separated floating point values, one matrix row per
  line. Written tab separated with nine significant digits, which is enough
  for float32 values to survive a write/read cycle unchanged.
- ``binary``: raw little-endian 4-byte floats, row-major, no header and no
  delimiters.

Evaluation logs (loss and time) are always text and mark empty slots with
``N/A``.
"""

from __future__ import annotations
from enum import Enum
from pathlib import Path
from typing import Union

import numpy as np

from .errors import ConfigError, DataFormatError

PathLike = Union[str, Path]

# Loss-table slots whose magnitude does not exceed this were never written.
INFINITESIMAL = 1e-12

BINARY_DTYPE = np.dtype("<f4")
TEXT_FMT = "%.9g"


class MatrixFormat(Enum):
    """Encoding of a matrix file."""
    TEXT = "text"
    BINARY = "binary"

    @classmethod
    def parse(cls, value: Union[str, "MatrixFormat"]) -> "MatrixFormat":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ConfigError(f"Unrecognized data format: {value}") from None

    @property
    def extension(self) -> str:
        return "txt" if self is MatrixFormat.TEXT else "bin"


def read_matrix(path: PathLike, fmt: Union[str, MatrixFormat],
                rows: int, cols: int) -> np.ndarray:
    """
    Read a ``rows x cols`` float32 matrix.

    Raises
    ------
    ConfigError
        Unknown format string.
    DataFormatError
        Missing file, unparsable value or wrong number of values.
    """
    fmt = MatrixFormat.parse(fmt)
    path = Path(path)
    try:
        if fmt is MatrixFormat.TEXT:
            with open(path, "r", encoding="utf-8") as fh:
                values = np.array(fh.read().split(), dtype=np.float32)
        else:
            raw = path.read_bytes()
            if len(raw) % BINARY_DTYPE.itemsize:
                raise DataFormatError(
                    f"{path} holds {len(raw)} bytes, not a whole number of "
                    f"{BINARY_DTYPE.itemsize}-byte floats")
            values = np.frombuffer(raw, dtype=BINARY_DTYPE).astype(np.float32)
    except OSError as e:
        raise DataFormatError(f"Cannot read matrix file {path}: {e}") from e
    except ValueError as e:
        raise DataFormatError(f"Malformed value in {path}: {e}") from e

    if values.size != rows * cols:
        raise DataFormatError(
            f"{path} holds {values.size} values, expected {rows} x {cols} = {rows * cols}")
    return values.reshape(rows, cols)


def write_matrix(path: PathLike, matrix: np.ndarray,
                 fmt: Union[str, MatrixFormat]) -> Path:
    """Write a 2-D matrix row by row in the requested encoding."""
    fmt = MatrixFormat.parse(fmt)
    path = Path(path)
    matrix = np.atleast_2d(np.asarray(matrix, dtype=np.float32))
    if fmt is MatrixFormat.TEXT:
        np.savetxt(path, matrix, fmt=TEXT_FMT, delimiter="\t")
    else:
        np.ascontiguousarray(matrix, dtype=BINARY_DTYPE).tofile(path)
    return path


def write_eval_log(path: PathLike, values: np.ndarray) -> Path:
    """
    Write an evaluation log: one line per evaluation slot, one
    tab-separated column per client, ``N/A`` for slots never written.
    """
    path = Path(path)
    values = np.atleast_2d(np.asarray(values, dtype=np.float64))
    with open(path, "w", encoding="utf-8") as fh:
        for row in values:
            cells = ["N/A" if abs(v) <= INFINITESIMAL else TEXT_FMT % v for v in row]
            fh.write("\t".join(cells) + "\n")
    return path


def read_eval_log(path: PathLike) -> np.ndarray:
    """Read an evaluation log back, ``N/A`` becoming NaN."""
    rows = []
    with open(path, "r", encoding="utf-8") as fh:
        for line in fh:
            if not line.strip():
                continue
            rows.append([np.nan if c == "N/A" else float(c) for c in line.split()])
    return np.array(rows, dtype=np.float64)
