"""
Column shard of the data matrix.
"""

import numpy as np
import pytest

from distributed_nmf import ColumnRangeError, ConfigError, DataFormatError, DataShardLoader


@pytest.fixture
def numbered_matrix():
    """3 x 10 matrix whose column j holds j, 10 + j and 20 + j."""
    return np.arange(30, dtype=np.float32).reshape(3, 10)


class TestDataShardLoader:

    def test_monolithic_file_keeps_owned_columns(self, write_input, numbered_matrix):
        path = write_input(numbered_matrix)
        shard = DataShardLoader(path, "text", 3, 10, client_id=1, num_clients=3)
        assert shard.m == 3
        assert shard.client_n == len(shard) == 3
        # local column i is global column 1 + 3 i
        for i, j in enumerate([1, 4, 7]):
            np.testing.assert_array_equal(shard.get_column(i), numbered_matrix[:, j])

    def test_whole_file(self, write_input, numbered_matrix):
        path = write_input(numbered_matrix, fmt="binary")
        shard = DataShardLoader(path, "binary", 3, 10)
        assert shard.client_n == 10
        np.testing.assert_array_equal(shard.as_matrix(), numbered_matrix)

    def test_columns_are_copies(self, write_input, numbered_matrix):
        shard = DataShardLoader(write_input(numbered_matrix), "text", 3, 10)
        col = shard.get_column(0)
        col[:] = -1
        np.testing.assert_array_equal(shard.get_column(0), numbered_matrix[:, 0])

    def test_out_of_range(self, write_input, numbered_matrix):
        shard = DataShardLoader(write_input(numbered_matrix), "text", 3, 10, 0, 3)
        with pytest.raises(ColumnRangeError):
            shard.get_column(4)
        with pytest.raises(IndexError):
            shard.get_column(-1)

    def test_shape_mismatch(self, write_input, numbered_matrix):
        with pytest.raises(DataFormatError):
            DataShardLoader(write_input(numbered_matrix), "text", 3, 9)

    def test_client_id_without_num_clients(self, write_input, numbered_matrix):
        with pytest.raises(ConfigError):
            DataShardLoader(write_input(numbered_matrix), "text", 3, 10, client_id=0)
