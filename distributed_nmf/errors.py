"""
Exception hierarchy for distributed dictionary training.

Every fallible operation raises one of these; nothing is retried or turned
into a soft error. The command-line entry point is the single place that
catches ``NMFError`` and terminates the process.
"""


class NMFError(Exception):
    """Base class for all training failures."""


class ConfigError(NMFError):
    """Unrecognized or inconsistent configuration (e.g. unknown data format)."""


class CacheMissingError(ConfigError):
    """A cache file required by ``load_cache`` does not exist."""

    def __init__(self, path):
        self.path = path
        super().__init__(f"Cache file {path} does not exist!")


class DataFormatError(NMFError):
    """A matrix file could not be parsed into the expected shape."""


class ColumnRangeError(NMFError, IndexError):
    """Column or row index outside of the owning shard or table."""

    def __init__(self, index, size, what="column"):
        self.index = index
        self.size = size
        super().__init__(f"{what} index {index} out of range [0, {size})")


class OutputError(NMFError):
    """A result file or its directory could not be written."""
