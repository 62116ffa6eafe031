# src/export_weights.py
# Copyright (c) 2025, Robert Senatorov
# All rights reserved.
"""
Export the encoder blocks of a PyTorch ViT checkpoint as raw float files.

Expects timm-style keys ('blocks.{i}.attn.qkv.weight', ...) and writes
'{output_dir}/blocks.{i}.attn.qkv.weight.bin' etc., the layout read by
VisionTransformerBlock.from_checkpoint.
"""
import os
import torch
from tqdm import tqdm

from vitnet.checkpoint import export_state_dict

# --- CONFIGURATION ---
CONFIG = {
    'state_dict':  'checkpoints/vit_base_patch16_224.pth',
    'output_dir':  'weights',
    'depth':       12,
    'key_prefix':  'blocks',
}

def unwrap_state_dict(ck):
    """
    Accept a bare state dict or one nested under a common training key.
    """
    for key in ('model', 'state_dict', 'net'):
        if isinstance(ck, dict) and key in ck and isinstance(ck[key], dict):
            return ck[key]
    return ck

def main():
    path = CONFIG['state_dict']
    if not os.path.isfile(path):
        raise FileNotFoundError(f"state dict not found: {path}")

    print(f"[INFO] Loading state dict {path}")
    sd = unwrap_state_dict(torch.load(path, map_location='cpu'))

    os.makedirs(CONFIG['output_dir'], exist_ok=True)
    for i in tqdm(range(CONFIG['depth']), desc="Export"):
        name = f"{CONFIG['key_prefix']}.{i}"
        export_state_dict(sd, name,
                          os.path.join(CONFIG['output_dir'], name))
    print(f"[INFO] Exported {CONFIG['depth']} blocks to {CONFIG['output_dir']}")

if __name__ == '__main__':
    main()
