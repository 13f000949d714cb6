"""
Per-client coefficient shard with per-column locking.
"""

import threading

import numpy as np
import pytest

from distributed_nmf import CoefficientShard, ColumnRangeError


@pytest.fixture
def shard(random_seed):
    return CoefficientShard(3, 5, 0.0, 0.01, rng=np.random.default_rng(random_seed))


class TestCoefficientShard:

    def test_initial_range(self):
        shard = CoefficientShard(4, 50, 0.5, 1.0, rng=np.random.default_rng(0))
        S = shard.snapshot()
        assert S.shape == (50, 4)
        assert S.dtype == np.float32
        assert np.all(S >= 0.5) and np.all(S < 1.0)

    def test_increment(self, shard):
        before = shard.get_column(2)
        delta = np.array([1.0, -2.0, 0.5], dtype=np.float32)
        shard.increment_column(2, delta)
        np.testing.assert_allclose(shard.get_column(2), before + delta, rtol=1e-6)

    def test_increment_with_decay(self, shard):
        before = shard.get_column(0)
        shard.increment_column(0, np.ones(3), decay=0.5)
        np.testing.assert_allclose(shard.get_column(0), before * 0.5 + 1.0, rtol=1e-6)

    def test_random_column_matches_stored_value(self, shard):
        rng = np.random.default_rng(1)
        for _ in range(10):
            j, col = shard.get_random_column(rng)
            assert 0 <= j < 5
            np.testing.assert_array_equal(col, shard.get_column(j))

    def test_assign_column(self, shard):
        target = np.array([0.25, 0.5, 0.75], dtype=np.float32)
        shard.assign_column(4, target)
        np.testing.assert_allclose(shard.get_column(4), target, atol=1e-6)

    def test_out_of_range(self, shard):
        with pytest.raises(ColumnRangeError):
            shard.get_column(5)
        with pytest.raises(ColumnRangeError):
            shard.increment_column(-1, np.zeros(3))

    def test_concurrent_increments_are_not_lost(self):
        shard = CoefficientShard(2, 1, 0.0, 0.0)
        ones = np.ones(2, dtype=np.float32)

        def worker():
            for _ in range(500):
                shard.increment_column(0, ones)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thr in threads:
            thr.start()
        for thr in threads:
            thr.join()
        np.testing.assert_array_equal(shard.get_column(0), [2000.0, 2000.0])

    def test_reads_never_see_half_an_increment(self):
        shard = CoefficientShard(64, 1, 0.0, 0.0)
        step = np.ones(64, dtype=np.float32)
        done = threading.Event()
        torn = []

        def writer():
            for _ in range(2000):
                shard.increment_column(0, step)
            done.set()

        def reader():
            rng = np.random.default_rng(0)
            while not done.is_set():
                _, col = shard.get_random_column(rng)
                if not np.all(col == col[0]):
                    torn.append(col)
                col = shard.get_column(0)
                if not np.all(col == col[0]):
                    torn.append(col)

        threads = [threading.Thread(target=writer), threading.Thread(target=reader)]
        for thr in threads:
            thr.start()
        for thr in threads:
            thr.join()
        assert not torn
        np.testing.assert_array_equal(shard.get_column(0), np.full(64, 2000.0))
