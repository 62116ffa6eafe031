# src/vitnet/checkpoint.py
# Copyright (c) 2025, Robert Senatorov
# All rights reserved.
"""
Raw float32 checkpoint files for a single ViT encoder block.

Each block is stored as twelve headerless little-endian float32 files,
named by appending a fixed suffix to a caller-supplied prefix
(e.g. 'weights/blocks.0' + '.mlp.fc1.weight.bin'). Weight matrices are
flattened row-major as (out_dim, in_dim).
"""
import os
from dataclasses import dataclass

import numpy as np
import torch

WEIGHT_SUFFIXES = (
    '.mlp.fc1.weight.bin',
    '.mlp.fc1.bias.bin',
    '.mlp.fc2.weight.bin',
    '.mlp.fc2.bias.bin',
    '.attn.qkv.weight.bin',
    '.attn.qkv.bias.bin',
    '.attn.proj.weight.bin',
    '.attn.proj.bias.bin',
    '.norm1.weight.bin',
    '.norm1.bias.bin',
    '.norm2.weight.bin',
    '.norm2.bias.bin',
)

FLOAT_DTYPE = np.dtype('<f4')


@dataclass(frozen=True)
class BlockDims:
    """Dimensions a checkpoint is validated against."""
    model_dim: int
    head_dim: int
    mlp_dim: int
    n_heads: int

    @property
    def inner_dim(self):
        return self.head_dim * self.n_heads


# ViT-Base/16
VIT_BASE = BlockDims(model_dim=768, head_dim=64, mlp_dim=3072, n_heads=12)


class CheckpointError(RuntimeError):
    """Base class for block checkpoint failures."""
    def __init__(self, path, message):
        super().__init__(f"{message}: {path}")
        self.path = path


class CheckpointFileError(CheckpointError):
    """A checkpoint file is missing or unreadable."""


class CheckpointShapeError(CheckpointError):
    """A checkpoint file holds the wrong number of floats."""
    def __init__(self, path, expected, actual):
        super().__init__(
            path, f"expected {expected} floats, found {actual}"
        )
        self.expected = expected
        self.actual = actual


def expected_sizes(dims):
    """
    Element count of every file for the given dimensions, keyed by suffix.
    """
    d, m, i = dims.model_dim, dims.mlp_dim, dims.inner_dim
    return {
        '.mlp.fc1.weight.bin':   m * d,
        '.mlp.fc1.bias.bin':     m,
        '.mlp.fc2.weight.bin':   d * m,
        '.mlp.fc2.bias.bin':     d,
        '.attn.qkv.weight.bin':  3 * i * d,
        '.attn.qkv.bias.bin':    3 * i,
        '.attn.proj.weight.bin': d * i,
        '.attn.proj.bias.bin':   d,
        '.norm1.weight.bin':     d,
        '.norm1.bias.bin':       d,
        '.norm2.weight.bin':     d,
        '.norm2.bias.bin':       d,
    }


def read_floats(path):
    """Read a headerless float32 file into a flat array."""
    try:
        return np.fromfile(path, dtype=FLOAT_DTYPE)
    except OSError as e:
        raise CheckpointFileError(path, f"cannot read weight file ({e.strerror or e})") from e


def write_floats(path, values):
    """Write a tensor or array as flat row-major float32."""
    if isinstance(values, torch.Tensor):
        values = values.detach().cpu().numpy()
    arr = np.ascontiguousarray(values, dtype=FLOAT_DTYPE)
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    arr.tofile(path)


def load_block_arrays(prefix, dims=VIT_BASE):
    """
    Read and validate all twelve files for one block.

    Every file is checked before anything is returned, so a failure
    never leaves a partially loaded block behind.
    """
    sizes = expected_sizes(dims)
    arrays = {}
    for suffix in WEIGHT_SUFFIXES:
        path = prefix + suffix
        if not os.path.isfile(path):
            raise CheckpointFileError(path, "missing weight file")
        # np.fromfile drops a trailing partial float
        nbytes = os.path.getsize(path)
        if nbytes != sizes[suffix] * FLOAT_DTYPE.itemsize:
            raise CheckpointShapeError(path, sizes[suffix],
                                       nbytes / FLOAT_DTYPE.itemsize)
        arr = read_floats(path)
        if arr.size != sizes[suffix]:
            raise CheckpointShapeError(path, sizes[suffix], arr.size)
        arrays[suffix] = arr
    return arrays


def split_qkv(weight, bias, inner_dim):
    """
    Split a fused (3*inner, in) QKV weight and its bias into
    [(wq, bq), (wk, bk), (wv, bv)], one contiguous row-block each.
    """
    ws = torch.split(weight, inner_dim, dim=0)
    bs = torch.split(bias, inner_dim, dim=0)
    if len(ws) != 3 or len(bs) != 3:
        raise ValueError(
            f"fused qkv rows {weight.shape[0]} not divisible into 3 x {inner_dim}"
        )
    return [(w.clone(), b.clone()) for w, b in zip(ws, bs)]


def block_state_from_arrays(arrays, dims=VIT_BASE):
    """
    Map validated file arrays onto VisionTransformerBlock state_dict keys.
    """
    d, m, i = dims.model_dim, dims.mlp_dim, dims.inner_dim

    def t(suffix, *shape):
        return torch.from_numpy(arrays[suffix].astype(np.float32)).reshape(*shape)

    state = {
        'w1.weight': t('.mlp.fc1.weight.bin', m, d),
        'w1.bias':   t('.mlp.fc1.bias.bin', m),
        'w2.weight': t('.mlp.fc2.weight.bin', d, m),
        'w2.bias':   t('.mlp.fc2.bias.bin', d),
        'wf.weight': t('.attn.proj.weight.bin', d, i),
        'wf.bias':   t('.attn.proj.bias.bin', d),
        'norm1.weight': t('.norm1.weight.bin', d),
        'norm1.bias':   t('.norm1.bias.bin', d),
        'norm2.weight': t('.norm2.weight.bin', d),
        'norm2.bias':   t('.norm2.bias.bin', d),
    }
    qkv = split_qkv(t('.attn.qkv.weight.bin', 3 * i, d),
                    t('.attn.qkv.bias.bin', 3 * i), i)
    for name, (w, b) in zip(('wq', 'wk', 'wv'), qkv):
        state[f'{name}.weight'] = w
        state[f'{name}.bias'] = b
    return state


def save_block_weights(block, prefix):
    """
    Write a block's parameters in the twelve-file layout, fusing
    wq/wk/wv back into a single qkv weight and bias.
    """
    tensors = {
        '.mlp.fc1.weight.bin': block.w1.weight,
        '.mlp.fc1.bias.bin':   block.w1.bias,
        '.mlp.fc2.weight.bin': block.w2.weight,
        '.mlp.fc2.bias.bin':   block.w2.bias,
        '.attn.qkv.weight.bin': torch.cat(
            [block.wq.weight, block.wk.weight, block.wv.weight], dim=0),
        '.attn.qkv.bias.bin': torch.cat(
            [block.wq.bias, block.wk.bias, block.wv.bias], dim=0),
        '.attn.proj.weight.bin': block.wf.weight,
        '.attn.proj.bias.bin':   block.wf.bias,
        '.norm1.weight.bin': block.norm1.weight,
        '.norm1.bias.bin':   block.norm1.bias,
        '.norm2.weight.bin': block.norm2.weight,
        '.norm2.bias.bin':   block.norm2.bias,
    }
    for suffix in WEIGHT_SUFFIXES:
        write_floats(prefix + suffix, tensors[suffix])
    print(f"[INFO] Block weights saved to {prefix}.*.bin")


def export_state_dict(state_dict, key_prefix, out_prefix):
    """
    Write one block of a timm-style ViT state dict
    ('blocks.0.mlp.fc1.weight', ...) as raw float files.
    """
    for suffix in WEIGHT_SUFFIXES:
        key = key_prefix + suffix[:-len('.bin')]
        if key not in state_dict:
            raise KeyError(f"state dict has no entry '{key}'")
        write_floats(out_prefix + suffix, state_dict[key].float())
