# src/run_block.py
# Copyright (c) 2025, Robert Senatorov
# All rights reserved.
"""
Smoke run - push random tokens through exported ViT blocks.
"""
import os
import torch
from tqdm import tqdm

from vitnet.checkpoint import WEIGHT_SUFFIXES
from vitnet.transformer import VisionTransformerBlock

DEV = torch.device('cuda' if torch.cuda.is_available() else 'cpu')

CONFIG = {
    'weights_dir': 'weights',
    'key_prefix':  'blocks',
    'depth':       12,
    'seq_len':     197,   # 14x14 patches + cls token
    'batch_size':  2,
    'seed':        0,
}

def has_weights(prefix):
    return all(os.path.isfile(prefix + s) for s in WEIGHT_SUFFIXES)

def build_blocks():
    blocks = []
    for i in tqdm(range(CONFIG['depth']), desc="Load"):
        prefix = os.path.join(CONFIG['weights_dir'],
                              f"{CONFIG['key_prefix']}.{i}")
        if has_weights(prefix):
            blocks.append(VisionTransformerBlock.from_checkpoint(prefix))
        else:
            print(f"[WARN] No weights at {prefix}, using random init.")
            blocks.append(VisionTransformerBlock())
    return torch.nn.Sequential(*blocks)

def main():
    torch.manual_seed(CONFIG['seed'])
    net = build_blocks().to(DEV).eval()
    print(net[0].describe())

    # tokens are [C, T, B]
    x = torch.randn(net[0].model_dim, CONFIG['seq_len'],
                    CONFIG['batch_size'], device=DEV)
    with torch.inference_mode():
        y = net(x)

    print(f"in  {list(x.shape)}  mean {x.mean():.4f}  std {x.std():.4f}")
    print(f"out {list(y.shape)}  mean {y.mean():.4f}  std {y.std():.4f}")

if __name__ == '__main__':
    main()
