"""
Test helper utilities.

Provides functions for creating dummy models, pipeline directories and
checkpoints.
"""

import json
import torch
from pathlib import Path
from typing import Any, Dict, Optional, List
from safetensors.torch import save_file

from model_converter.console import ConsoleLogger


DTYPE_MAP = {
    'fp16': torch.float16,
    'fp32': torch.float32,
    'bf16': torch.bfloat16,
}


def quiet_logger() -> ConsoleLogger:
    """A logger that prints nothing but errors."""
    return ConsoleLogger(quiet=True)


def dummy_state_dict(
    precision: str = "fp32",
    size: int = 32,
    seed: Optional[int] = None,
    names: Optional[List[str]] = None
) -> Dict[str, torch.Tensor]:
    """
    Build a tiny state dict of weight/bias pairs.

    Args:
        precision: 'fp16', 'fp32', or 'bf16'
        size: Size of tensor dimensions (keep a multiple of 32 for quantizing)
        seed: Random seed for reproducibility
        names: Layer names (default: layer1, layer2)
    """
    if seed is not None:
        torch.manual_seed(seed)

    dtype = DTYPE_MAP.get(precision, torch.float32)
    state_dict = {}
    for name in names or ['layer1', 'layer2']:
        state_dict[f"{name}.weight"] = torch.randn(size, size, dtype=dtype)
        state_dict[f"{name}.bias"] = torch.randn(size, dtype=dtype)
    return state_dict


def create_dummy_model(
    name: str,
    precision: str = "fp32",
    size: int = 32,
    temp_dir: Path = Path("tests/temp"),
    seed: Optional[int] = None,
    custom_keys: Optional[Dict[str, torch.Tensor]] = None
) -> Path:
    """
    Create a tiny dummy safetensors model for testing.

    Args:
        name: Filename (may include sub-directories) for the model
        precision: 'fp16', 'fp32', or 'bf16'
        size: Size of tensor dimensions
        temp_dir: Directory to save the model
        seed: Random seed for reproducibility
        custom_keys: Custom tensors to include

    Returns:
        Path to the created model file
    """
    state_dict = dummy_state_dict(precision, size, seed)
    if custom_keys:
        state_dict.update(custom_keys)

    path = Path(temp_dir) / name
    path.parent.mkdir(parents=True, exist_ok=True)
    save_file(state_dict, str(path))
    return path


def create_dummy_checkpoint(
    name: str,
    temp_dir: Path = Path("tests/temp"),
    format_type: str = "wrapped",
    size: int = 32
) -> Path:
    """
    Create a dummy pickle checkpoint.

    Args:
        name: Filename for the checkpoint (should end in .ckpt, .pt, or .pth)
        temp_dir: Directory to save the checkpoint
        format_type: 'bare', 'wrapped', or 'nested'
        size: Size of tensor dimensions

    Returns:
        Path to the created checkpoint file
    """
    state_dict = {
        "model.diffusion_model.layer1.weight": torch.randn(size, size),
        "model.diffusion_model.layer1.bias": torch.randn(size),
        "first_stage_model.encoder.weight": torch.randn(size, size),
    }

    if format_type == "wrapped":
        checkpoint = {
            "state_dict": state_dict,
            "optimizer_state": {"lr": 0.001},
            "epoch": 10,
        }
    elif format_type == "nested":
        checkpoint = {
            "model": state_dict,
            "epoch": 10,
        }
    else:
        checkpoint = state_dict

    temp_dir = Path(temp_dir)
    temp_dir.mkdir(parents=True, exist_ok=True)
    path = temp_dir / name
    torch.save(checkpoint, path)
    return path


def write_json(path: Path, data: Any) -> Path:
    """Write a JSON file, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding='utf-8')
    return path


def create_pipeline_dir(
    root: Path,
    class_name: str,
    transformer_config: Optional[Dict[str, Any]] = None,
    text_encoder_config: Optional[Dict[str, Any]] = None
) -> Path:
    """
    Create the JSON descriptors of a pipeline directory.

    Args:
        root: Directory to create
        class_name: Value of _class_name in model_index.json
        transformer_config: Contents of transformer/config.json, if any
        text_encoder_config: Contents of text_encoder/config.json, if any

    Returns:
        The root directory
    """
    root = Path(root)
    write_json(root / "model_index.json", {"_class_name": class_name})
    if transformer_config is not None:
        write_json(root / "transformer" / "config.json", transformer_config)
    if text_encoder_config is not None:
        write_json(root / "text_encoder" / "config.json", text_encoder_config)
    return root


def add_submodel(
    root: Path,
    subpath: str,
    names: Optional[List[str]] = None,
    size: int = 32,
    precision: str = "fp32"
) -> Path:
    """
    Write <root>/<subpath>.safetensors with a few dummy layers.

    Returns:
        Path to the created file
    """
    path = Path(root) / f"{subpath}.safetensors"
    path.parent.mkdir(parents=True, exist_ok=True)
    save_file(dummy_state_dict(precision, size, names=names), str(path))
    return path


def create_sd_pipeline(root: Path, hidden_size: int = 768) -> Path:
    """Create a complete SD1/SD2 pipeline directory with dummy weights."""
    create_pipeline_dir(root, "StableDiffusionPipeline", text_encoder_config={"hidden_size": hidden_size})
    add_submodel(root, "text_encoder/model", names=["text_model.layer"])
    add_submodel(root, "vae/diffusion_pytorch_model", names=["decoder.conv"])
    add_submodel(root, "unet/diffusion_pytorch_model", names=["down_blocks.0", "up_blocks.0"])
    return Path(root)


def create_sdxl_pipeline(root: Path, with_text_encoder: bool = True, refiner: bool = False) -> Path:
    """Create an SDXL (or refiner) pipeline directory with dummy weights."""
    class_name = "StableDiffusionXLImg2ImgPipeline" if refiner else "StableDiffusionXLPipeline"
    create_pipeline_dir(root, class_name)
    if with_text_encoder:
        add_submodel(root, "text_encoder/model", names=["text_model.layer"])
    add_submodel(root, "text_encoder_2/model", names=["text_model.layer"])
    add_submodel(root, "vae/diffusion_pytorch_model", names=["decoder.conv"])
    add_submodel(root, "unet/diffusion_pytorch_model", names=["down_blocks.0"])
    return Path(root)


def create_sd3_pipeline(root: Path, num_layers: int = 24, pos_embed_max_size: int = 192) -> Path:
    """Create an SD3 pipeline directory with dummy weights."""
    create_pipeline_dir(
        root, "StableDiffusion3Pipeline",
        transformer_config={"num_layers": num_layers, "pos_embed_max_size": pos_embed_max_size}
    )
    add_submodel(root, "text_encoder/model", names=["text_model.layer"])
    add_submodel(root, "text_encoder_2/model", names=["text_model.layer"])
    add_submodel(root, "text_encoder_3/model", names=["encoder.block"])
    add_submodel(root, "vae/diffusion_pytorch_model", names=["decoder.conv"])
    add_submodel(root, "transformer/diffusion_pytorch_model", names=["transformer_blocks.0"])
    return Path(root)


def create_flux_pipeline(root: Path, guidance_embeds: bool = True, num_layers: int = 19) -> Path:
    """Create a Flux pipeline directory with dummy weights and root backbone file."""
    create_pipeline_dir(
        root, "FluxPipeline",
        transformer_config={"guidance_embeds": guidance_embeds, "num_layers": num_layers}
    )
    add_submodel(root, "text_encoder/model", names=["text_model.layer"])
    add_submodel(root, "text_encoder_2/model", names=["encoder.block"])
    add_submodel(root, "vae/diffusion_pytorch_model", names=["decoder.conv"])
    backbone = "flux1-dev" if guidance_embeds and num_layers != 8 else "flux1-schnell"
    add_submodel(root, backbone, names=["double_blocks.0"])
    return Path(root)


def get_state_dict(path: Path) -> Dict[str, torch.Tensor]:
    """Load a safetensors file and return its state dict."""
    from safetensors.torch import load_file
    return load_file(str(path))
