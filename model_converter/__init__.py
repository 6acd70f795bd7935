"""
Model Converter - Convert diffusion models into a single GGUF container.

This package provides utilities for:
- Detecting which diffusion family and variant a pipeline directory holds
  (SD1/SD2, SDXL, SD3/SD3.5, Flux dev/schnell/lite)
- Loading tensors from safetensors files and shards, legacy checkpoints
  (.ckpt/.pt/.pth/.bin, loaded safely) and existing GGUF containers
- Merging text encoders, VAE and diffusion backbone under distinct prefixes
- Quantizing per sub-model group (fp32, fp16, q8_0, q5_x, q4_x, k-quants)
- Writing the result atomically, with a SHA-256 for verification

Main workflow:
    1. Parse command line → ConvertParams
    2. Detect model version (directories only)
    3. Load each sub-model into one registry
    4. Convert payloads and write the container
"""

__version__ = '0.2.0'

# Expose main classes and functions at package level
from .errors import (
    ConversionError,
    DetectionError,
    LoadError,
    TensorNameCollision,
    WriteError,
)

from .precision import (
    resolve_type_token,
    type_display_name,
)

from .detector import (
    ModelVersion,
    detect_version,
)

from .registry import (
    TensorDescriptor,
    TensorRegistry,
)

from .loader import ModelLoader

from .quantizer import (
    convert_payload,
    resolve_target_type,
)

from .writer import save_container

from .reader import (
    read_container,
    load_container_tensor,
)

from .params import (
    ConvertParams,
    default_output_path,
)

from .pipelines import (
    FAMILY_CONVERTERS,
    convert_model,
)

__all__ = [
    # Errors
    'ConversionError',
    'DetectionError',
    'LoadError',
    'TensorNameCollision',
    'WriteError',

    # Precision
    'resolve_type_token',
    'type_display_name',

    # Detection
    'ModelVersion',
    'detect_version',

    # Registry / loading
    'TensorDescriptor',
    'TensorRegistry',
    'ModelLoader',

    # Quantization
    'convert_payload',
    'resolve_target_type',

    # Container
    'save_container',
    'read_container',
    'load_container_tensor',

    # Orchestration
    'ConvertParams',
    'default_output_path',
    'FAMILY_CONVERTERS',
    'convert_model',
]
