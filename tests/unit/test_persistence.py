"""
Result files, evaluation logs and resume caches.
"""

import numpy as np
import pytest

from distributed_nmf import CacheMissingError, ConfigError, NMFError, OutputError
from distributed_nmf.persistence import (
    coefficient_path, dictionary_path, load_cached_coefficients,
    load_cached_dictionary, load_metadata, save_coefficients, save_dictionary,
    save_eval_logs, save_metadata,
)
from tests.conftest import read_text_rows


class TestPaths:

    def test_names(self, tmp_path):
        assert dictionary_path(tmp_path, "text").name == "B.txt"
        assert dictionary_path(tmp_path, "binary").name == "B.bin"
        assert coefficient_path(tmp_path, "text", 3).name == "S.txt.3"
        assert coefficient_path(tmp_path, "binary", 0).name == "S.bin.0"


class TestSaveAndLoad:

    @pytest.mark.parametrize("fmt", ["text", "binary"])
    def test_dictionary_cache(self, tmp_path, fmt):
        B = np.abs(np.random.default_rng(0).standard_normal((3, 4))).astype(np.float32)
        out = tmp_path / "nested" / "out"
        save_dictionary(out, B, fmt)
        np.testing.assert_array_equal(load_cached_dictionary(out, fmt, 3, 4), B)

    @pytest.mark.parametrize("fmt", ["text", "binary"])
    def test_coefficient_cache(self, tmp_path, fmt):
        S = np.random.default_rng(1).standard_normal((5, 3)).astype(np.float32)
        save_coefficients(tmp_path, S, fmt, 2)
        np.testing.assert_array_equal(load_cached_coefficients(tmp_path, fmt, 2, 5, 3), S)

    def test_missing_cache(self, tmp_path):
        with pytest.raises(CacheMissingError, match="does not exist"):
            load_cached_dictionary(tmp_path, "text", 3, 3)
        with pytest.raises(ConfigError):
            load_cached_coefficients(tmp_path, "binary", 0, 3, 3)

    def test_eval_logs(self, tmp_path):
        loss = np.array([[2.0, 3.0], [0.0, 1.0]])
        paths = save_eval_logs(tmp_path, loss, loss * 10)
        assert read_text_rows(paths["loss"]) == [["2", "3"], ["N/A", "1"]]
        assert read_text_rows(paths["time"]) == [["20", "30"], ["N/A", "10"]]

    def test_metadata(self, tmp_path):
        save_metadata(tmp_path, {"m": 3, "shape": (3, 4)})
        assert load_metadata(tmp_path) == {"m": 3, "shape": [3, 4]}


class TestWriteFailures:

    def test_output_path_is_a_file(self, tmp_path):
        blocker = tmp_path / "taken"
        blocker.write_text("not a directory")
        with pytest.raises(OutputError):
            save_dictionary(blocker, np.ones((2, 2)), "text")
        with pytest.raises(OutputError):
            save_coefficients(blocker / "deeper", np.ones((2, 2)), "binary", 0)
        with pytest.raises(NMFError):
            save_eval_logs(blocker, np.ones((1, 1)), np.ones((1, 1)))
        with pytest.raises(OutputError):
            save_metadata(blocker, {"m": 1})

    def test_target_is_a_directory(self, tmp_path):
        (tmp_path / "B.txt").mkdir()
        with pytest.raises(OutputError, match="Cannot write"):
            save_dictionary(tmp_path, np.ones((2, 2)), "text")
