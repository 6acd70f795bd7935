"""
Family orchestrators: which sub-models to load, from where, under which prefix.

Every family converter is a fixed script of loader calls (text encoders,
optional autoencoder, diffusion backbone) into one registry. The family
to run is picked from FAMILY_CONVERTERS by the detected ModelVersion.
"""

import time
from pathlib import Path
from typing import Callable, Dict, Optional

from gguf.constants import GGMLQuantizationType

from . import __version__, config
from .console import ConsoleLogger
from .detector import ModelVersion, detect_version
from .errors import LoadError
from .loader import ModelLoader
from .params import ConvertParams
from .writer import build_group_metadata, plan_tensors, save_container


def _load_submodel(
    loader: ModelLoader,
    params: ConvertParams,
    label: str,
    subpath: str,
    prefix: str,
    explicit_path: Optional[Path] = None,
    explicit_prefix: Optional[str] = None,
    output_type: Optional[GGMLQuantizationType] = None
) -> int:
    """
    Load one sub-model from an explicit file or from under the model root.

    Args:
        loader: Loader holding the run's registry
        params: Run parameters
        label: Human-readable sub-model name used in errors ('vae', ...)
        subpath: Sub-path under the model root when no explicit file is given
        prefix: Namespace for tensors found under the root
        explicit_path: File given on the command line, if any
        explicit_prefix: Namespace for the explicit file (default: prefix)
        output_type: Output type for this group (None = run default)

    Returns:
        Number of tensors loaded

    Raises:
        LoadError: Naming the sub-model, if it's absent or fails to load
    """
    if explicit_path is not None:
        prefix = prefix if explicit_prefix is None else explicit_prefix

    loader.set_group_output_type(prefix, output_type)

    try:
        if explicit_path is not None:
            return loader.load_from_single_file(explicit_path, prefix)

        count = loader.load_from_subpath(params.model_path, subpath, output_type, prefix)
    except LoadError as e:
        raise LoadError(f"Failed to load {label} model: {e}", submodel=label)

    if count is None:
        raise LoadError(
            f"Failed to load {label} model: {subpath} not found under {params.model_path}",
            submodel=label
        )
    return count


def _load_vae(loader: ModelLoader, params: ConvertParams, logger: ConsoleLogger) -> None:
    """
    Load the autoencoder unless an explicit backbone makes it optional.

    An explicit backbone file skips the autoencoder under the root; an
    explicit autoencoder file is always loaded.
    """
    if params.diffusion_model_path is not None and params.vae_path is None:
        logger.info("Explicit diffusion model given, skipping vae")
        return

    _load_submodel(
        loader, params, 'vae', config.VAE_SUBPATH, config.VAE_PREFIX,
        explicit_path=params.vae_path,
        output_type=params.vae_output_type
    )


def convert_sd(loader: ModelLoader, params: ConvertParams, version: ModelVersion, logger: ConsoleLogger) -> None:
    """SD1/SD2: text encoder, vae, unet."""
    _load_submodel(
        loader, params, 'text encoder', config.TEXT_ENCODER_SUBPATH, config.TEXT_ENCODER_PREFIX,
        explicit_path=params.clip_l_path,
        output_type=params.clip_l_output_type
    )
    _load_vae(loader, params, logger)
    _load_submodel(
        loader, params, 'unet', config.UNET_SUBPATH, config.UNET_PREFIX,
        explicit_path=params.diffusion_model_path,
        explicit_prefix='',
        output_type=params.output_type
    )


def convert_sdxl(loader: ModelLoader, params: ConvertParams, version: ModelVersion, logger: ConsoleLogger) -> None:
    """SDXL/SDXL-refiner: optional text encoder, text encoder 2, vae, unet."""
    # The refiner ships without the first text encoder
    if params.clip_l_path is not None or (Path(params.model_path) / config.TEXT_ENCODER_DIRNAME).is_dir():
        _load_submodel(
            loader, params, 'text encoder', config.TEXT_ENCODER_SUBPATH, config.TEXT_ENCODER_PREFIX,
            explicit_path=params.clip_l_path,
            output_type=params.clip_l_output_type
        )
    else:
        logger.debug(f"No {config.TEXT_ENCODER_DIRNAME} directory, skipping text encoder")

    _load_submodel(
        loader, params, 'text encoder 2', config.TEXT_ENCODER_2_SUBPATH, config.TEXT_ENCODER_2_PREFIX,
        explicit_path=params.clip_g_path,
        output_type=params.clip_g_output_type
    )
    _load_vae(loader, params, logger)
    _load_submodel(
        loader, params, 'unet', config.UNET_SUBPATH, config.UNET_PREFIX,
        explicit_path=params.diffusion_model_path,
        explicit_prefix='',
        output_type=params.output_type
    )


def convert_sd3(loader: ModelLoader, params: ConvertParams, version: ModelVersion, logger: ConsoleLogger) -> None:
    """SD3/SD3.5: three text encoders, vae, transformer."""
    _load_submodel(
        loader, params, 'text encoder', config.TEXT_ENCODER_SUBPATH, config.TEXT_ENCODER_PREFIX,
        explicit_path=params.clip_l_path,
        output_type=params.clip_l_output_type
    )
    _load_submodel(
        loader, params, 'text encoder 2', config.TEXT_ENCODER_2_SUBPATH, config.TEXT_ENCODER_2_PREFIX,
        explicit_path=params.clip_g_path,
        output_type=params.clip_g_output_type
    )
    _load_submodel(
        loader, params, 'text encoder 3', config.TEXT_ENCODER_3_SUBPATH, config.TEXT_ENCODER_3_PREFIX,
        explicit_path=params.t5xxl_path,
        output_type=params.t5xxl_output_type
    )
    _load_vae(loader, params, logger)
    _load_submodel(
        loader, params, 'transformer', config.TRANSFORMER_SUBPATH, config.TRANSFORMER_PREFIX,
        explicit_path=params.diffusion_model_path,
        explicit_prefix='',
        output_type=params.output_type
    )


def convert_flux(loader: ModelLoader, params: ConvertParams, version: ModelVersion, logger: ConsoleLogger) -> None:
    """Flux: text encoder, T5, vae, then the flux1-dev/flux1-schnell backbone."""
    _load_submodel(
        loader, params, 'text encoder', config.TEXT_ENCODER_SUBPATH, config.TEXT_ENCODER_PREFIX,
        explicit_path=params.clip_l_path,
        output_type=params.clip_l_output_type
    )
    _load_submodel(
        loader, params, 'text encoder 2', config.TEXT_ENCODER_2_SUBPATH, config.TEXT_ENCODER_2_PREFIX,
        explicit_path=params.t5xxl_path,
        output_type=params.t5xxl_output_type
    )
    _load_vae(loader, params, logger)

    # Lite checkpoints are distributed under the schnell filename
    if version == ModelVersion.FLUX_DEV:
        backbone = config.FLUX_DEV_SUBPATH
    else:
        backbone = config.FLUX_SCHNELL_SUBPATH

    _load_submodel(
        loader, params, 'transformer', backbone, config.TRANSFORMER_PREFIX,
        explicit_path=params.diffusion_model_path,
        explicit_prefix=config.FLUX_DIFFUSION_MODEL_PREFIX,
        output_type=params.output_type
    )


FamilyConverter = Callable[[ModelLoader, ConvertParams, ModelVersion, ConsoleLogger], None]

FAMILY_CONVERTERS: Dict[ModelVersion, FamilyConverter] = {
    ModelVersion.SD1: convert_sd,
    ModelVersion.SD2: convert_sd,
    ModelVersion.SDXL: convert_sdxl,
    ModelVersion.SDXL_REFINER: convert_sdxl,
    ModelVersion.SD3_2B: convert_sd3,
    ModelVersion.SD3_5_2B: convert_sd3,
    ModelVersion.SD3_5_8B: convert_sd3,
    ModelVersion.FLUX_DEV: convert_flux,
    ModelVersion.FLUX_SCHNELL: convert_flux,
    ModelVersion.FLUX_LITE: convert_flux,
}


def validate_family_converters() -> None:
    """Every ModelVersion must have a converter."""
    missing = [version.value for version in ModelVersion if version not in FAMILY_CONVERTERS]
    if missing:
        raise RuntimeError(f"No converter registered for: {', '.join(missing)}")


validate_family_converters()


def convert_file(loader: ModelLoader, params: ConvertParams, logger: ConsoleLogger) -> None:
    """Single-file input: everything goes in under the empty prefix."""
    loader.load_from_single_file(params.model_path, '')


def load_model(params: ConvertParams, logger: ConsoleLogger) -> tuple:
    """
    Load everything a run needs into one registry.

    Returns:
        Tuple of (loader, detected ModelVersion or None for single files)

    Raises:
        DetectionError: If the directory can't be classified
        LoadError: If any sub-model fails to load
    """
    model_path = Path(params.model_path)

    if not model_path.is_dir():
        version = None
    else:
        logger.section("Detecting Model Version")
        version = detect_version(model_path, logger)

    loader = ModelLoader(logger=logger)
    try:
        if version is None:
            logger.section("Loading Model File")
            convert_file(loader, params, logger)
        else:
            logger.section(f"Loading {version.value} Sub-models")
            FAMILY_CONVERTERS[version](loader, params, version, logger)
    except Exception:
        loader.close()
        raise

    return loader, version


def convert_model(params: ConvertParams, logger: Optional[ConsoleLogger] = None) -> str:
    """
    Run one whole conversion: detect, load, convert and write.

    Args:
        params: Run parameters
        logger: Where to report progress

    Returns:
        SHA-256 hash of the written container

    Raises:
        ConversionError: Any detection, load or write failure
    """
    logger = logger if logger is not None else ConsoleLogger(quiet=True)
    start_time = time.time()

    loader, version = load_model(params, logger)
    try:
        groups = loader.registry.groups()
        for prefix, count in groups.items():
            logger.debug(f"{prefix or '<root>'}: {count} tensors")
        logger.success(f"Loaded {len(loader.registry)} tensors from {len(groups)} group(s)")

        plan = plan_tensors(loader.registry, params.output_type)
        metadata = {
            'sd.model_version': version.value if version is not None else 'unknown',
            'sd.converter.version': __version__,
        }
        metadata.update(build_group_metadata(plan, loader.group_sources))

        logger.section("Writing Container")
        output_hash = save_container(
            loader.registry,
            params.output_path,
            params.output_type,
            logger,
            metadata=metadata
        )
    finally:
        loader.close()

    logger.debug(f"Conversion took {time.time() - start_time:.1f}s")
    return output_hash
