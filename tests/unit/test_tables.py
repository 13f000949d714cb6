"""
Bounded-staleness row tables shared by worker threads.
"""

import threading

import numpy as np
import pytest

from distributed_nmf import ColumnRangeError, ConfigError, LocalTableGroup, TableGroupAborted

TIMEOUT = 5.0


def in_thread(fn):
    """Run ``fn`` in a daemon thread; returns the thread and a result dict."""
    result = {}

    def run():
        try:
            result["value"] = fn()
        except BaseException as e:
            result["error"] = e

    thr = threading.Thread(target=run, daemon=True)
    thr.start()
    return thr, result


@pytest.fixture
def pair():
    """Group of two workers sharing table 0 (2 rows x 3, staleness 0)."""
    group = LocalTableGroup(2)
    group.create_table(0, 2, 3, 0)
    return group, group.register_thread(0, 0), group.register_thread(0, 1)


class TestTableOperations:

    def test_increments_accumulate(self):
        group = LocalTableGroup(1)
        group.create_table(0, 2, 3, 0)
        table = group.register_thread(0, 0).get_table(0)
        assert (table.num_rows, table.row_width) == (2, 3)
        np.testing.assert_array_equal(table.get(1), np.zeros(3))

        table.batch_inc(1, np.array([1.0, 2.0, 3.0]))
        table.batch_inc(1, {0: 0.5, 2: -1.0})
        table.inc(1, 1, 0.25)
        np.testing.assert_array_equal(table.get(1), [1.5, 2.25, 2.0])
        np.testing.assert_array_equal(group.snapshot(0)[0], np.zeros(3))

    def test_get_returns_copy(self):
        group = LocalTableGroup(1)
        group.create_table(0, 1, 2, 0)
        table = group.register_thread(0, 0).get_table(0)
        row = table.get(0)
        row[:] = 9.0
        np.testing.assert_array_equal(table.get(0), np.zeros(2))

    def test_range_errors(self, pair):
        _, a, _ = pair
        table = a.get_table(0)
        with pytest.raises(ColumnRangeError):
            table.get(2)
        with pytest.raises(ColumnRangeError):
            table.batch_inc(0, {3: 1.0})
        with pytest.raises(ValueError):
            table.batch_inc(0, np.ones(4))
        with pytest.raises(ConfigError):
            a.get_table(7)

    def test_setup_errors(self, pair):
        group, _, _ = pair
        with pytest.raises(ConfigError):
            group.create_table(0, 1, 1, 0)
        with pytest.raises(ConfigError):
            group.register_thread(0, 0)
        with pytest.raises(ConfigError):
            group.register_thread(1, 0)
        with pytest.raises(ConfigError):
            LocalTableGroup(0)

    def test_concurrent_increments_are_additive(self):
        group = LocalTableGroup(4)
        group.create_table(0, 1, 2, 0)
        sessions = [group.register_thread(0, i) for i in range(4)]

        def worker(session):
            table = session.get_table(0)
            for _ in range(100):
                table.batch_inc(0, np.ones(2, dtype=np.float32))

        threads = [threading.Thread(target=worker, args=(s,)) for s in sessions]
        for thr in threads:
            thr.start()
        for thr in threads:
            thr.join()
        np.testing.assert_array_equal(group.snapshot(0)[0], [400.0, 400.0])


class TestStaleness:

    def test_read_waits_for_slow_worker(self, pair):
        group, a, b = pair
        b.get_table(0).inc(0, 0, 1.0)
        a.clock()
        thr, result = in_thread(lambda: a.get_table(0).get(0))
        thr.join(0.2)
        assert thr.is_alive()

        b.clock()
        thr.join(TIMEOUT)
        assert not thr.is_alive()
        np.testing.assert_array_equal(result["value"], [1.0, 0.0, 0.0])

    def test_read_within_staleness_does_not_wait(self):
        group = LocalTableGroup(2)
        group.create_table(0, 1, 1, 1)
        a = group.register_thread(0, 0)
        group.register_thread(0, 1)
        a.clock()
        thr, result = in_thread(lambda: a.get_table(0).get(0))
        thr.join(TIMEOUT)
        assert not thr.is_alive()
        assert "value" in result

    def test_deregistered_worker_does_not_block(self, pair):
        _, a, b = pair
        a.clock()
        thr, result = in_thread(lambda: a.get_table(0).get(0))
        thr.join(0.2)
        assert thr.is_alive()
        b.deregister()
        thr.join(TIMEOUT)
        assert not thr.is_alive()
        assert "value" in result


class TestBarrier:

    def test_barrier_aligns_clocks(self, pair):
        group, a, b = pair
        for _ in range(3):
            a.clock()
        thr, result = in_thread(a.global_barrier)
        b.global_barrier()
        thr.join(TIMEOUT)
        assert not thr.is_alive()
        assert "error" not in result
        assert group.worker_clock(0, 0) == group.worker_clock(0, 1) == 3

    def test_parked_worker_does_not_block_readers(self, pair):
        group, a, b = pair
        parked, _ = in_thread(a.global_barrier)
        b.clock()
        b.clock()
        reader, result = in_thread(lambda: b.get_table(0).get(0))
        reader.join(TIMEOUT)
        assert not reader.is_alive()
        assert "value" in result

        b.global_barrier()
        parked.join(TIMEOUT)
        assert not parked.is_alive()


class TestAbort:

    def test_abort_releases_readers(self, pair):
        group, a, _ = pair
        a.clock()
        thr, result = in_thread(lambda: a.get_table(0).get(0))
        thr.join(0.2)
        assert thr.is_alive()
        group.abort()
        thr.join(TIMEOUT)
        assert isinstance(result.get("error"), TableGroupAborted)

    def test_abort_releases_barrier(self, pair):
        _, a, b = pair
        thr, result = in_thread(a.global_barrier)
        thr.join(0.2)
        b.abort()
        thr.join(TIMEOUT)
        assert isinstance(result.get("error"), TableGroupAborted)
        with pytest.raises(TableGroupAborted):
            b.global_barrier()
