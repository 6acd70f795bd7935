"""
Configuration and constants for the model converter.

This module contains all the magic numbers, file names, and prefixes
so we don't have random strings scattered everywhere in the codebase.

Quantization exclusion rules are loaded from quantization_rules.json.
Users can customize by creating ~/.model_converter/quantization_rules.json
"""

import json
import os
from typing import List, Dict, Tuple
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Supported file formats
SAFETENSORS_EXTENSIONS = {'.safetensors', '.sft'}
CHECKPOINT_EXTENSIONS = {'.ckpt', '.pt', '.pth', '.bin'}
CONTAINER_EXTENSION = '.gguf'
MODEL_EXTENSIONS = SAFETENSORS_EXTENSIONS | CHECKPOINT_EXTENSIONS | {CONTAINER_EXTENSION}

# Pipeline directory layout
MODEL_INDEX_FILENAME = 'model_index.json'
TRANSFORMER_CONFIG_PATH = 'transformer/config.json'
TEXT_ENCODER_CONFIG_PATH = 'text_encoder/config.json'
TEXT_ENCODER_DIRNAME = 'text_encoder'

# Sub-paths (relative to the model root, without extension)
TEXT_ENCODER_SUBPATH = 'text_encoder/model'
TEXT_ENCODER_2_SUBPATH = 'text_encoder_2/model'
TEXT_ENCODER_3_SUBPATH = 'text_encoder_3/model'
VAE_SUBPATH = 'vae/diffusion_pytorch_model'
UNET_SUBPATH = 'unet/diffusion_pytorch_model'
TRANSFORMER_SUBPATH = 'transformer/diffusion_pytorch_model'
FLUX_DEV_SUBPATH = 'flux1-dev'
FLUX_SCHNELL_SUBPATH = 'flux1-schnell'

# Registry prefixes - one per sub-model so merged names never collide
TEXT_ENCODER_PREFIX = 'te.'
TEXT_ENCODER_2_PREFIX = 'te1.'
TEXT_ENCODER_3_PREFIX = 'te2.'
VAE_PREFIX = 'vae.'
UNET_PREFIX = 'unet.'
TRANSFORMER_PREFIX = 'transformer.'
FLUX_DIFFUSION_MODEL_PREFIX = 'model.diffusion_model.'

# Output defaults
DEFAULT_OUTPUT_TYPE = 'fp16'
DEFAULT_OUTPUT_STEM = 'output'
CONTAINER_ARCHITECTURE = 'stable-diffusion'
MAX_TENSOR_NAME_LENGTH = 127

# Logging
LOG_LEVEL_ENV_VAR = 'MODEL_CONVERTER_LOG_LEVEL'
DEFAULT_LOG_LEVEL = 'info'

# Hashing
HASH_CHUNK_SIZE = 1024 * 1024


def load_quantization_rules() -> Tuple[List[str], Dict[str, List[str]]]:
    """
    Load quantization exclusion rules from JSON files.

    Loads in order of priority:
    1. Default rules (shipped with tool)
    2. User rules from ~/.model_converter/quantization_rules.json (if exists)

    User pattern groups override default groups with the same name, and a
    user 'keep_suffixes' list replaces the default one.

    Returns:
        Tuple of (keep_suffixes, keep_patterns_by_group)
    """
    default_file = Path(__file__).parent / 'quantization_rules.json'

    try:
        with open(default_file, 'r', encoding='utf-8') as f:
            default_data = json.load(f)
            suffixes = list(default_data.get('keep_suffixes', []))
            patterns = dict(default_data.get('keep_patterns', {}))
    except (FileNotFoundError, json.JSONDecodeError):
        # Fallback to hardcoded if JSON is missing/corrupt
        suffixes = ['.bias', '.scale']
        patterns = {
            'flux': ['img_in.', 'txt_in.', 'time_in.', 'vector_in.', 'guidance_in.', 'final_layer.'],
            'mmdit': ['x_embedder.', 't_embedder.', 'y_embedder.', 'pos_embed', 'context_embedder.'],
            'unet': ['time_embed.', 'label_emb.'],
            'embeddings': ['embedding'],
        }

    user_file = Path.home() / '.model_converter' / 'quantization_rules.json'

    if user_file.exists():
        try:
            with open(user_file, 'r', encoding='utf-8') as f:
                user_data = json.load(f)

            for group, pattern_list in user_data.get('keep_patterns', {}).items():
                patterns[group] = list(pattern_list)

            if 'keep_suffixes' in user_data:
                suffixes = list(user_data['keep_suffixes'])

        except (json.JSONDecodeError, IOError):
            # If user file is corrupt, just use defaults
            pass

    return suffixes, patterns


KEEP_PRECISION_SUFFIXES, KEEP_PRECISION_PATTERNS = load_quantization_rules()


def get_log_level() -> str:
    """
    Get the configured log level ('debug', 'info', ...).

    Reads MODEL_CONVERTER_LOG_LEVEL, which python-dotenv may have loaded
    from a .env file.
    """
    return os.environ.get(LOG_LEVEL_ENV_VAR, DEFAULT_LOG_LEVEL).strip().lower()


def is_verbose() -> bool:
    """True when debug output was requested via the environment."""
    return get_log_level() == 'debug'
