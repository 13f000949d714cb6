"""
Test configuration and fixtures for distributed dictionary training tests.

Provides small block-structured data matrices, helpers that write them to
disk in either encoding, and a factory for engine configurations pointing at
a temporary directory.
"""

from pathlib import Path

import numpy as np
import pytest

from distributed_nmf import EngineConfig, write_matrix


@pytest.fixture
def random_seed():
    """Fixed random seed for reproducible tests."""
    return 42


def block_matrix(num_blocks=3, block_rows=1, block_cols=3):
    """
    Non-negative block-diagonal matrix of ones.

    ``num_blocks=3, block_rows=1, block_cols=3`` gives the 3 x 9 matrix whose
    row ``i`` is one on columns ``3i .. 3i+2``.
    """
    return np.kron(np.eye(num_blocks), np.ones((block_rows, block_cols))).astype(np.float32)


@pytest.fixture
def small_matrix():
    """3 x 9 block matrix with an exact rank-3 non-negative factorization."""
    return block_matrix()


@pytest.fixture
def write_input(tmp_path):
    """Write a matrix under ``tmp_path/data`` and return its path."""
    def _write(X, fmt="text", name=None):
        data_dir = tmp_path / "data"
        data_dir.mkdir(exist_ok=True)
        path = data_dir / (name or f"X.{'txt' if fmt == 'text' else 'bin'}")
        write_matrix(path, X, fmt)
        return path
    return _write


@pytest.fixture
def make_config(tmp_path, write_input, small_matrix, random_seed):
    """
    Build an ``EngineConfig`` for ``X`` (default: the 3 x 9 block matrix)
    with results under ``tmp_path/out``. Keyword arguments override fields.
    """
    def _make(X=None, fmt="text", **overrides):
        X = small_matrix if X is None else X
        path = write_input(X, fmt)
        values = dict(
            data_file=str(path),
            input_data_format=fmt,
            output_data_format=fmt,
            output_path=str(tmp_path / "out"),
            m=X.shape[0],
            n=X.shape[1],
            dictionary_size=3,
            num_clients=1,
            num_worker_threads=1,
            num_epochs=1,
            minibatch_size=9,
            num_eval_minibatch=10,
            num_eval_samples=10,
            num_iter_S_per_minibatch=10,
            init_step_size_B=0.01,
            step_size_offset_B=0.0,
            step_size_pow_B=0.0,
            init_step_size_S=0.01,
            step_size_offset_S=0.0,
            step_size_pow_S=0.0,
            seed=random_seed,
        )
        values.update(overrides)
        return EngineConfig(**values)
    return _make


def read_text_rows(path):
    """Non-empty lines of a text file split on tabs."""
    return [line.rstrip("\n").split("\t")
            for line in Path(path).read_text(encoding="utf-8").splitlines()
            if line.strip()]
