"""
Conversion parameters, built once from the command line.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from gguf.constants import GGMLQuantizationType

from . import config
from .precision import type_display_name


@dataclass(frozen=True)
class ConvertParams:
    """
    Everything one conversion run needs to know.

    Attributes:
        model_path: Single model file or pipeline root directory
        output_path: Destination container
        output_type: Run-wide output type
        diffusion_model_path: Explicit backbone file (skips auto-discovery)
        vae_path: Explicit autoencoder file
        clip_l_path: Explicit first text encoder file
        clip_g_path: Explicit second text encoder file
        t5xxl_path: Explicit T5 text encoder file
        vae_output_type: Output type for the autoencoder group
        clip_l_output_type: Output type for the first text encoder group
        clip_g_output_type: Output type for the second text encoder group
        t5xxl_output_type: Output type for the T5 text encoder group
    """
    model_path: Path
    output_path: Path
    output_type: GGMLQuantizationType = GGMLQuantizationType.F16
    diffusion_model_path: Optional[Path] = None
    vae_path: Optional[Path] = None
    clip_l_path: Optional[Path] = None
    clip_g_path: Optional[Path] = None
    t5xxl_path: Optional[Path] = None
    vae_output_type: Optional[GGMLQuantizationType] = None
    clip_l_output_type: Optional[GGMLQuantizationType] = None
    clip_g_output_type: Optional[GGMLQuantizationType] = None
    t5xxl_output_type: Optional[GGMLQuantizationType] = None


def default_output_path(model_path: Path, qtype: GGMLQuantizationType) -> Path:
    """
    Generate the default output filename for a model.

    Known model extensions are stripped from the basename, so
    'foo/bar.safetensors' at fp16 becomes 'bar-F16.gguf' in the current
    directory. A directory keeps its full name.

    Example:
        >>> default_output_path(Path('foo/bar.safetensors'), GGMLQuantizationType.F16)
        PosixPath('bar-F16.gguf')
    """
    name = Path(model_path).name
    suffix = Path(name).suffix.lower()
    if suffix in config.MODEL_EXTENSIONS:
        name = name[:-len(suffix)]
    if not name:
        name = config.DEFAULT_OUTPUT_STEM
    return Path(f"{name}-{type_display_name(qtype)}{config.CONTAINER_EXTENSION}")
