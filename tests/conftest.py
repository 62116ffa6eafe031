# tests/conftest.py
# Copyright (c) 2025, Robert Senatorov
# All rights reserved.
import numpy as np
import pytest

from vitnet.checkpoint import BlockDims, WEIGHT_SUFFIXES, expected_sizes, write_floats

SMALL = BlockDims(model_dim=16, head_dim=4, mlp_dim=32, n_heads=4)


def write_random_block(prefix, dims, seed=0):
    """Write a full set of block files filled with small random floats."""
    rng = np.random.default_rng(seed)
    sizes = expected_sizes(dims)
    arrays = {}
    for suffix in WEIGHT_SUFFIXES:
        arr = (rng.standard_normal(sizes[suffix]) * 0.05).astype(np.float32)
        write_floats(prefix + suffix, arr)
        arrays[suffix] = arr
    return arrays


@pytest.fixture
def small_dims():
    return SMALL


@pytest.fixture
def write_block():
    return write_random_block


@pytest.fixture
def small_prefix(tmp_path):
    prefix = str(tmp_path / "blocks.0")
    write_random_block(prefix, SMALL)
    return prefix
