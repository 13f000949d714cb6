from __future__ import annotations
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, NonNegativeInt, PositiveInt, ValidationError, model_validator

from .errors import ConfigError
from .partition import client_num_columns, max_client_columns, minibatches_per_epoch, num_eval_slots


class EngineConfig(BaseModel):
    """Immutable settings for one client's training engine."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # input and output
    data_file: str = ""
    input_data_format: str = "text"
    is_partitioned: bool = False
    output_path: str = ""
    output_data_format: str = "text"
    maximum_running_time: float = -1.0   # hours, <= 0 disables the budget
    load_cache: bool = False
    cache_path: str = ""

    # objective
    m: PositiveInt
    n: PositiveInt
    dictionary_size: NonNegativeInt = 0   # 0 -> n

    # topology
    client_id: NonNegativeInt = 0
    num_clients: PositiveInt = 1
    num_worker_threads: PositiveInt = 4

    # optimization
    num_epochs: PositiveInt = 100
    minibatch_size: PositiveInt = 1
    num_eval_minibatch: PositiveInt = 10
    num_eval_samples: PositiveInt = 10
    num_iter_S_per_minibatch: NonNegativeInt = 10
    init_step_size_B: float = 0.5
    step_size_offset_B: float = 100.0
    step_size_pow_B: float = 0.5
    init_step_size_S: float = 0.5
    step_size_offset_S: float = 100.0
    step_size_pow_S: float = 0.5
    init_B_low: float = 0.0
    init_B_high: float = 0.01
    init_S_low: float = 0.0
    init_S_high: float = 0.01
    seed: Optional[int] = None

    # tables
    table_staleness: NonNegativeInt = 0
    loss_table_staleness: NonNegativeInt = 50

    @model_validator(mode="after")
    def _check_consistency(self) -> "EngineConfig":
        if self.client_id >= self.num_clients:
            raise ValueError(
                f"client_id {self.client_id} must be below num_clients {self.num_clients}")
        if self.init_B_low > self.init_B_high:
            raise ValueError("init_B_low must not exceed init_B_high")
        if self.init_S_low > self.init_S_high:
            raise ValueError("init_S_low must not exceed init_S_high")
        if self.n < self.num_clients:
            raise ValueError(
                f"n = {self.n} columns cannot give each of {self.num_clients} clients a column")
        if self.load_cache and not self.cache_path:
            raise ValueError("load_cache requires cache_path")
        return self

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "EngineConfig":
        """Validate a plain mapping, reporting problems as ``ConfigError``."""
        try:
            return cls(**dict(raw))
        except ValidationError as e:
            raise ConfigError(str(e)) from e

    def for_client(self, client_id: int) -> "EngineConfig":
        """Copy of this configuration for another client of the same job."""
        return EngineConfig.from_mapping({**self.model_dump(), "client_id": client_id})

    @property
    def client_data_file(self) -> str:
        """
        Data file read by this client. A pre-partitioned input names one
        file per client through a ``{client_id}`` placeholder.
        """
        if self.is_partitioned and "{client_id}" in self.data_file:
            return self.data_file.replace("{client_id}", str(self.client_id))
        return self.data_file

    @property
    def effective_dictionary_size(self) -> int:
        return self.dictionary_size or self.n

    @property
    def client_n(self) -> int:
        return client_num_columns(self.n, self.client_id, self.num_clients)

    @property
    def max_client_n(self) -> int:
        return max_client_columns(self.n, self.num_clients)

    @property
    def minibatches_per_epoch(self) -> int:
        return minibatches_per_epoch(self.client_n, self.num_worker_threads, self.minibatch_size)

    @property
    def num_eval_per_client(self) -> int:
        return num_eval_slots(self.n, self.num_clients, self.num_worker_threads,
                              self.num_epochs, self.minibatch_size, self.num_eval_minibatch)

    @property
    def num_workers_total(self) -> int:
        return self.num_clients * self.num_worker_threads


def load_config(path: Optional[Union[str, Path]]) -> Dict[str, Any]:
    """Read a YAML file of configuration values (empty mapping for no path)."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return raw


SCHEMA_VERSION = 1

def make_metadata(cfg: EngineConfig, B_shape, S_shapes, extra=None):
    meta = {
        "schema_version": SCHEMA_VERSION,
        "m": cfg.m,
        "n": cfg.n,
        "dictionary_size": cfg.effective_dictionary_size,
        "num_clients": cfg.num_clients,
        "num_worker_threads": cfg.num_worker_threads,
        "num_epochs": cfg.num_epochs,
        "minibatch_size": cfg.minibatch_size,
        "num_eval_per_client": cfg.num_eval_per_client,
        "output_data_format": cfg.output_data_format,
        "seed": cfg.seed,
        "shapes": {"B": list(B_shape), "S": [list(s) for s in S_shapes]},
        "config": cfg.model_dump(),
    }
    if extra: meta.update(extra)
    return meta
