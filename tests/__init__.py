"""
Test suite for distributed non-negative dictionary training.

Unit tests cover the shards, tables, kernels and file formats in isolation;
integration tests drive whole jobs through the in-process table group;
property-based tests check the partitioning and update invariants with
Hypothesis.
"""
