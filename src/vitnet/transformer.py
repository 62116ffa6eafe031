# src/vitnet/transformer.py
# Copyright (c) 2025, Robert Senatorov
# All rights reserved.
"""
Pre-Normalization Vision Transformer encoder block.
"""
import math

import torch
import torch.nn as nn
import torch.nn.functional as F

from .checkpoint import VIT_BASE, block_state_from_arrays, load_block_arrays

GELU_C1 = math.sqrt(2.0 / math.pi)
GELU_C2 = 0.044715

LAYERDROP_SCALES = ('batch', 'nominal')


def gelu(x):
    """
    Tanh approximation of GELU (https://arxiv.org/pdf/1606.08415.pdf).
    """
    return 0.5 * x * (1.0 + torch.tanh(GELU_C1 * (x + GELU_C2 * x.pow(3))))


class VisionTransformerBlock(nn.Module):
    """
    Single pre-norm ViT block:
    LN -> MHSA -> DropPath -> Add -> LN -> MLP -> DropPath -> Add

    forward() takes tokens laid out (C, T, B). The sub-steps mlp(),
    self_attention() and drop_path() work batch-first on (B, T, C).

    Args:
        model_dim (int): width of the residual stream.
        head_dim (int): width of a single attention head.
        mlp_dim (int): hidden width of the MLP.
        n_heads (int): number of attention heads.
        p_dropout (float): dropout rate used in training mode.
        p_layerdrop (float): drop-path rate used in training mode.
        attn_dropout (bool): also apply dropout to the attention weights.
        layerdrop_scale (str): 'batch' rescales kept samples by the keep
            ratio realized in the batch, 'nominal' by 1 - p_layerdrop.
        generator (torch.Generator): random source for drop-path masks.
    """
    def __init__(self, model_dim=768, head_dim=64, mlp_dim=3072, n_heads=12,
                 p_dropout=0.0, p_layerdrop=0.0, attn_dropout=False,
                 layerdrop_scale='batch', generator=None):
        super().__init__()
        for name, v in (('model_dim', model_dim), ('head_dim', head_dim),
                        ('mlp_dim', mlp_dim), ('n_heads', n_heads)):
            if v <= 0:
                raise ValueError(f"{name} must be positive, got {v}")
        for name, p in (('p_dropout', p_dropout), ('p_layerdrop', p_layerdrop)):
            if not 0.0 <= p <= 1.0:
                raise ValueError(f"{name} must be in [0, 1], got {p}")
        if layerdrop_scale not in LAYERDROP_SCALES:
            raise ValueError(
                f"layerdrop_scale must be one of {LAYERDROP_SCALES}, "
                f"got {layerdrop_scale!r}"
            )
        if layerdrop_scale == 'nominal' and p_layerdrop == 1.0:
            raise ValueError("p_layerdrop=1 cannot be rescaled by 1 - p_layerdrop")

        self.model_dim = model_dim
        self.head_dim = head_dim
        self.mlp_dim = mlp_dim
        self.n_heads = n_heads
        self.p_dropout = p_dropout
        self.p_layerdrop = p_layerdrop
        self.attn_dropout = attn_dropout
        self.layerdrop_scale = layerdrop_scale
        self.generator = generator

        inner_dim = head_dim * n_heads
        self.w1 = nn.Linear(model_dim, mlp_dim)
        self.w2 = nn.Linear(mlp_dim, model_dim)
        self.wq = nn.Linear(model_dim, inner_dim)
        self.wk = nn.Linear(model_dim, inner_dim)
        self.wv = nn.Linear(model_dim, inner_dim)
        self.wf = nn.Linear(inner_dim, model_dim)
        self.norm1 = nn.LayerNorm(model_dim, eps=1e-6)
        self.norm2 = nn.LayerNorm(model_dim, eps=1e-6)

        for lin in (self.w1, self.w2, self.wq, self.wk, self.wv, self.wf):
            nn.init.trunc_normal_(lin.weight, std=0.02)
            nn.init.zeros_(lin.bias)

    @classmethod
    def from_checkpoint(cls, prefix, dims=VIT_BASE, requires_grad=False, **kwargs):
        """
        Build a block from the twelve raw float files at `prefix`.

        All files are validated before the block is created. Loaded
        parameters stay registered but do not require grad unless
        `requires_grad` is set.
        """
        clash = sorted(set(kwargs) & {'model_dim', 'head_dim', 'mlp_dim', 'n_heads'})
        if clash:
            raise ValueError(
                f"{', '.join(clash)} come from dims, pass a BlockDims instead"
            )
        print(f"[INFO] Loading block weights from {prefix}")
        arrays = load_block_arrays(prefix, dims)
        state = block_state_from_arrays(arrays, dims)

        kwargs.setdefault('p_dropout', 0.0)
        kwargs.setdefault('p_layerdrop', 0.0)
        block = cls(model_dim=dims.model_dim, head_dim=dims.head_dim,
                    mlp_dim=dims.mlp_dim, n_heads=dims.n_heads, **kwargs)
        block.load_state_dict(state)
        for p in block.parameters():
            p.requires_grad_(requires_grad)
        return block

    def mlp(self, x):
        p = self.p_dropout if self.training else 0.0
        out = gelu(self.w1(x))
        out = F.dropout(out, p=p, training=self.training)
        out = self.w2(out)
        return F.dropout(out, p=p, training=self.training)

    def _split_heads(self, t):
        # [B, T, H*D] -> [B*H, T, D]
        B, T, _ = t.shape
        t = t.reshape(B, T, self.n_heads, self.head_dim).transpose(1, 2)
        return t.reshape(B * self.n_heads, T, self.head_dim)

    def _merge_heads(self, t, B):
        # [B*H, T, D] -> [B, T, H*D]
        _, T, _ = t.shape
        t = t.reshape(B, self.n_heads, T, self.head_dim).transpose(1, 2)
        return t.reshape(B, T, self.n_heads * self.head_dim)

    def attention_weights(self, x):
        """
        Softmax attention weights [B*H, T, T] for batch-first input
        [B, T, C]; rows index queries, columns keys.
        """
        q = self._split_heads(self.wq(x)) / math.sqrt(self.head_dim)
        k = self._split_heads(self.wk(x))
        scores = torch.bmm(q, k.transpose(1, 2))
        return F.softmax(scores, dim=-1)

    def self_attention(self, x):
        B = x.shape[0]
        p = self.p_dropout if self.training else 0.0

        attn = self.attention_weights(x)
        if self.attn_dropout:
            attn = F.dropout(attn, p=p, training=self.training)
        v = self._split_heads(self.wv(x))
        out = torch.bmm(attn.to(v.dtype), v)

        out = self.wf(self._merge_heads(out, B))
        return F.dropout(out, p=p, training=self.training)

    def drop_path(self, x):
        """
        Stochastic depth: zero the whole branch for some batch samples.
        """
        if not self.training or self.p_layerdrop == 0.0:
            return x

        B = x.shape[0]
        device = self.generator.device if self.generator is not None else x.device
        u = torch.rand(B, generator=self.generator, device=device)
        keep = (u > self.p_layerdrop).to(device=x.device, dtype=x.dtype)

        if self.layerdrop_scale == 'batch':
            ratio = keep.mean()
        else:
            ratio = keep.new_tensor(1.0 - self.p_layerdrop)
        if ratio.item() == 0.0:
            return torch.zeros_like(x)
        keep = keep / ratio
        return x * keep.view(B, 1, 1)

    def forward(self, *inputs):
        if len(inputs) == 1 and isinstance(inputs[0], (list, tuple)):
            return [self.forward(*inputs[0])]
        if len(inputs) != 1:
            raise ValueError(
                f"VisionTransformerBlock expects exactly 1 input, got {len(inputs)}"
            )

        x = inputs[0]
        if x.dim() != 3 or x.shape[0] != self.model_dim:
            raise ValueError(
                f"expected input [C={self.model_dim}, T, B], got {list(x.shape)}"
            )

        x = x.permute(2, 1, 0)        # [B, T, C]
        out = x + self.drop_path(self.self_attention(self.norm1(x)))
        out = out + self.drop_path(self.mlp(self.norm2(out)))
        return out.permute(2, 1, 0)   # [C, T, B]

    def describe(self):
        return (f"VisionTransformerBlock (n_heads: {self.n_heads}), "
                f"(p_dropout: {self.p_dropout}), "
                f"(p_layerdrop: {self.p_layerdrop})")

    def extra_repr(self):
        return (f"n_heads={self.n_heads}, head_dim={self.head_dim}, "
                f"p_dropout={self.p_dropout}, p_layerdrop={self.p_layerdrop}")
