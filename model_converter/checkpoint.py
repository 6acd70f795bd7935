"""
Legacy checkpoint reading (.ckpt, .pt, .pth, .bin).

Loads pickle-based checkpoints with weights_only=True so a malicious file
can't execute code, then digs the actual state dict out of whatever
wrapper the training code saved it in.
"""

from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import torch

from .console import ConsoleLogger
from .errors import LoadError


def remove_module_prefix(state_dict: Dict[str, torch.Tensor]) -> Tuple[Dict[str, torch.Tensor], int]:
    """
    Remove 'module.' prefixes from state dict keys.

    When models are trained with PyTorch's DataParallel (multi-GPU training),
    it wraps the model and adds 'module.' prefixes to all keys.

    Example:
        'module.encoder.weight' -> 'encoder.weight'

    Returns:
        Tuple of (cleaned_state_dict, count_of_prefixes_removed)
    """
    cleaned = {}
    prefix_count = 0

    for key, value in state_dict.items():
        if key.startswith('module.'):
            cleaned[key[len('module.'):]] = value
            prefix_count += 1
        else:
            cleaned[key] = value

    return cleaned, prefix_count


def detect_checkpoint_format(checkpoint: Dict[str, Any]) -> str:
    """
    Detect the format/structure of a loaded checkpoint.

    Checkpoints can be structured in different ways:
    - Bare state dict: {'model.layer.weight': tensor, ...}
    - Wrapped: {'state_dict': {...}, 'optimizer_state': {...}, ...}
    - Training checkpoint: {'model': {...}, 'epoch': 42, ...}

    Returns:
        Format identifier: 'bare', 'wrapped', 'nested' or 'unknown'
    """
    if all(isinstance(k, str) and '.' in k for k in list(checkpoint.keys())[:10]):
        sample_values = [v for _, v in list(checkpoint.items())[:5]]
        if all(isinstance(v, torch.Tensor) for v in sample_values):
            return 'bare'

    if 'state_dict' in checkpoint:
        return 'wrapped'

    if 'model' in checkpoint:
        return 'nested'

    return 'unknown'


def extract_state_dict(checkpoint: Dict[str, Any], logger: Optional[ConsoleLogger] = None) -> Dict[str, torch.Tensor]:
    """
    Extract the state dictionary from a checkpoint.

    Handles standard wrappers (state_dict, model, weights, model_state_dict),
    textual inversion embeddings (string_to_param) and bare state dicts.
    Whatever wrapper is found, only tensor values are kept.

    Raises:
        ValueError: If no tensors can be found in the checkpoint
    """
    format_type = detect_checkpoint_format(checkpoint)

    if format_type == 'bare':
        found, description = checkpoint, 'Bare state dict'
    elif format_type == 'wrapped':
        found, description = checkpoint['state_dict'], "Wrapped (has 'state_dict' key)"
    elif format_type == 'nested':
        found, description = checkpoint['model'], "Nested (has 'model' key)"
        # Sometimes 'model' contains another layer of nesting
        if isinstance(found, dict) and 'state_dict' in found:
            found = found['state_dict']
    elif 'string_to_param' in checkpoint:
        found, description = checkpoint['string_to_param'], 'Textual Inversion Embedding'
    elif 'weights' in checkpoint:
        found, description = checkpoint['weights'], "Has 'weights' key"
    elif 'model_state_dict' in checkpoint:
        found, description = checkpoint['model_state_dict'], "Has 'model_state_dict' key"
    else:
        found, description = checkpoint, 'Unknown, keeping top-level tensors'

    if logger is not None:
        logger.debug(f"Format: {description}")

    if not isinstance(found, dict):
        raise ValueError(f"Checkpoint entry for '{description}' is not a dictionary")

    tensors = {k: v for k, v in found.items() if isinstance(k, str) and isinstance(v, torch.Tensor)}

    if not tensors:
        keys = list(checkpoint.keys())
        raise ValueError(
            f"Cannot find tensors in checkpoint! Top-level keys: {keys[:10]}. "
            f"Expected one of: 'state_dict', 'model', 'weights', 'string_to_param', or bare tensors"
        )

    return tensors


def load_checkpoint(filepath: Path, logger: Optional[ConsoleLogger] = None) -> Dict[str, torch.Tensor]:
    """
    Load a legacy checkpoint file safely (weights only, no code execution).

    Args:
        filepath: Path to checkpoint file
        logger: Where to report progress

    Returns:
        State dict of tensors, with DataParallel prefixes removed

    Raises:
        LoadError: If the file is missing, can't be loaded safely, or holds no tensors
    """
    filepath = Path(filepath)
    if not filepath.is_file():
        raise LoadError(f"Checkpoint file not found: {filepath}")

    if logger is not None:
        logger.warning(f"Loading pickle file (legacy format): {filepath.name}")
        logger.debug("Using safe mode (weights_only=True)...")

    try:
        checkpoint = torch.load(filepath, map_location='cpu', weights_only=True)
    except Exception as e:
        # For your safety, this tool will NOT attempt unsafe loading
        raise LoadError(f"Safe loading failed for {filepath.name}: {e}")

    if isinstance(checkpoint, torch.Tensor):
        checkpoint = {filepath.stem: checkpoint}
    if not isinstance(checkpoint, dict):
        raise LoadError(f"Checkpoint {filepath.name} does not contain a dictionary")

    try:
        state_dict = extract_state_dict(checkpoint, logger)
    except ValueError as e:
        raise LoadError(f"Failed to extract model weights from {filepath.name}: {e}")

    state_dict, prefix_count = remove_module_prefix(state_dict)
    if logger is not None and prefix_count > 0:
        logger.debug(f"Removed 'module.' prefix from {prefix_count} keys")

    return state_dict
