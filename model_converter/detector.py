"""
Model version detection for pipeline-style model directories.

Reads model_index.json (and, depending on the family, one auxiliary
config file) to decide which architecture and variant a directory holds.
Detection is a pure function of the JSON files: no tensors are opened.
"""

import json
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from . import config
from .console import ConsoleLogger
from .errors import DetectionError


class ModelVersion(Enum):
    """Detected family x variant."""
    SD1 = 'SD1'
    SD2 = 'SD2'
    SDXL = 'SDXL'
    SDXL_REFINER = 'SDXL-refiner'
    SD3_2B = 'SD3-2B'
    SD3_5_2B = 'SD3.5-2B'
    SD3_5_8B = 'SD3.5-8B'
    FLUX_DEV = 'Flux-dev'
    FLUX_SCHNELL = 'Flux-schnell'
    FLUX_LITE = 'Flux-lite'

    @property
    def family(self) -> str:
        """Family name shared by all variants ('SD', 'SDXL', 'SD3', 'Flux')."""
        return _FAMILIES[self]


_FAMILIES = {
    ModelVersion.SD1: 'SD',
    ModelVersion.SD2: 'SD',
    ModelVersion.SDXL: 'SDXL',
    ModelVersion.SDXL_REFINER: 'SDXL',
    ModelVersion.SD3_2B: 'SD3',
    ModelVersion.SD3_5_2B: 'SD3',
    ModelVersion.SD3_5_8B: 'SD3',
    ModelVersion.FLUX_DEV: 'Flux',
    ModelVersion.FLUX_SCHNELL: 'Flux',
    ModelVersion.FLUX_LITE: 'Flux',
}


def load_json(path: Path) -> Dict[str, Any]:
    """
    Load a JSON config file that detection depends on.

    Raises:
        DetectionError: If the file is missing or isn't a JSON object
    """
    if not path.is_file():
        raise DetectionError(f"Required config file not found: {path}")
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise DetectionError(f"Failed to read {path}: {e}")
    if not isinstance(data, dict):
        raise DetectionError(f"Expected a JSON object in {path}")
    return data


def _require(data: Dict[str, Any], key: str, path: Path) -> Any:
    if key not in data:
        raise DetectionError(f"Field '{key}' is missing from {path}")
    return data[key]


def _require_int(data: Dict[str, Any], key: str, path: Path) -> int:
    value = _require(data, key, path)
    if isinstance(value, bool) or not isinstance(value, int):
        raise DetectionError(f"Field '{key}' in {path} is not an integer: {value!r}")
    return value


def _detect_sd3(model_dir: Path) -> ModelVersion:
    path = model_dir / config.TRANSFORMER_CONFIG_PATH
    transformer_config = load_json(path)

    if _require_int(transformer_config, 'num_layers', path) == 38:
        return ModelVersion.SD3_5_8B
    if _require_int(transformer_config, 'pos_embed_max_size', path) == 384:
        return ModelVersion.SD3_5_2B
    return ModelVersion.SD3_2B


def _detect_flux(model_dir: Path) -> ModelVersion:
    path = model_dir / config.TRANSFORMER_CONFIG_PATH
    transformer_config = load_json(path)

    # Schnell is distilled without guidance embeddings
    if transformer_config.get('guidance_embeds') is not True:
        return ModelVersion.FLUX_SCHNELL
    if _require_int(transformer_config, 'num_layers', path) == 8:
        return ModelVersion.FLUX_LITE
    return ModelVersion.FLUX_DEV


def _detect_sd(model_dir: Path) -> ModelVersion:
    path = model_dir / config.TEXT_ENCODER_CONFIG_PATH
    text_encoder_config = load_json(path)

    if _require_int(text_encoder_config, 'hidden_size', path) == 1024:
        return ModelVersion.SD2
    return ModelVersion.SD1


_PIPELINE_CLASSES = {
    'StableDiffusion3Pipeline': _detect_sd3,
    'FluxPipeline': _detect_flux,
    'StableDiffusionXLPipeline': lambda model_dir: ModelVersion.SDXL,
    'StableDiffusionXLImg2ImgPipeline': lambda model_dir: ModelVersion.SDXL_REFINER,
    'StableDiffusionPipeline': _detect_sd,
}


def detect_version(model_dir: Path, logger: Optional[ConsoleLogger] = None) -> ModelVersion:
    """
    Classify a pipeline directory by its JSON descriptors.

    Args:
        model_dir: Root of the pipeline directory
        logger: Where to report what was found

    Returns:
        The detected ModelVersion

    Raises:
        DetectionError: If a required config file/field is missing or the
            pipeline class isn't one we know how to convert

    Example:
        >>> detect_version(Path('stable-diffusion-xl-base-1.0'))
        <ModelVersion.SDXL: 'SDXL'>
    """
    model_dir = Path(model_dir)
    index_path = model_dir / config.MODEL_INDEX_FILENAME
    model_index = load_json(index_path)

    class_name = model_index.get('_class_name')
    detector = _PIPELINE_CLASSES.get(class_name) if isinstance(class_name, str) else None
    if detector is None:
        raise DetectionError(f"Unknown model version: unrecognized pipeline class {class_name!r}")

    version = detector(model_dir)

    if logger is not None:
        logger.debug(f"Pipeline class: {class_name}")
        logger.info(f"Detected model version: [bold]{version.value}[/bold]")

    return version
