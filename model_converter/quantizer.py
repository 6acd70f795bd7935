"""
Per-tensor output type resolution and payload conversion.

Deciding a tensor's output type depends on its group's requested type,
its shape and its name. Converting the payload is a pure function of
(array, storage type, target type) with no cross-tensor state.
"""

from typing import Optional, Sequence

import numpy as np
from gguf.constants import GGMLQuantizationType
from gguf.quants import dequantize, quantize

from . import config
from .kquants import KQUANT_ENCODERS
from .precision import INTEGER_TYPES, block_size, is_float_type, is_quantized
from .registry import TensorDescriptor


def must_keep_precision(name: str, shape: Sequence[int], target: GGMLQuantizationType) -> bool:
    """
    Check whether a tensor has to stay in its source precision.

    A tensor keeps its precision when:
    1. The target is a block format and the innermost dimension isn't a
       whole number of blocks
    2. Its name ends with one of the configured suffixes (.bias, .scale)
    3. Its name contains one of the configured patterns (input/output
       projections and embeddings that are sensitive to quantization)

    Args:
        name: Fully-qualified tensor name
        shape: Tensor shape, outermost first
        target: Requested output type

    Returns:
        True if the tensor must not be converted
    """
    if is_quantized(target) and (not shape or shape[-1] % block_size(target) != 0):
        return True

    if any(name.endswith(suffix) for suffix in config.KEEP_PRECISION_SUFFIXES):
        return True

    for patterns in config.KEEP_PRECISION_PATTERNS.values():
        if any(pattern in name for pattern in patterns):
            return True

    return False


def resolve_target_type(
    descriptor: TensorDescriptor,
    default: Optional[GGMLQuantizationType] = None
) -> GGMLQuantizationType:
    """
    Work out the type a tensor is written as.

    Integer tensors always keep their storage type. Otherwise the group's
    requested type applies (falling back to the run's default) unless the
    tensor must keep its precision.

    Example:
        >>> resolve_target_type(bias_descriptor, GGMLQuantizationType.Q4_0)
        <GGMLQuantizationType.F32: 0>
    """
    storage = descriptor.storage_type
    if storage in INTEGER_TYPES:
        return storage

    requested = descriptor.output_type if descriptor.output_type is not None else default
    if requested is None or requested == storage:
        return storage

    if must_keep_precision(descriptor.full_name, descriptor.shape, requested):
        return storage

    return requested


def to_float32(data: np.ndarray, source_type: GGMLQuantizationType) -> np.ndarray:
    """Decode a payload held as source_type to float32 values."""
    if source_type in (GGMLQuantizationType.F32, GGMLQuantizationType.F16):
        return np.asarray(data).astype(np.float32)
    return dequantize(np.asarray(data), source_type)


def convert_payload(
    data: np.ndarray,
    source_type: GGMLQuantizationType,
    target: GGMLQuantizationType
) -> np.ndarray:
    """
    Convert one payload from its storage type to the target type.

    Identical types pass through untouched. Otherwise the payload is
    decoded to float32 (dequantizing block formats) and encoded again.

    Args:
        data: Payload as read from the source (uint8 blocks for block formats)
        source_type: Type the payload is held as
        target: Type to encode to

    Returns:
        Array in the target type (uint8 blocks for block formats)

    Raises:
        ValueError: If either side is an integer type, or the shape doesn't
            fit the target's block size
    """
    if source_type == target:
        return data

    if not is_float_type(source_type) or not is_float_type(target):
        raise ValueError(f"Cannot convert {source_type.name} to {target.name}")

    values = to_float32(data, source_type)

    encoder = KQUANT_ENCODERS.get(target)
    if encoder is not None:
        return encoder(values)
    return quantize(values, target)
