"""
Container writing.

Serializes the merged registry into one GGUF container: tensor infos are
declared up front, then each payload is converted and streamed to disk in
registry order. The container is written to a temp file next to the
destination and only renamed into place once it reads back correctly.
"""

import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from gguf.constants import GGML_QUANT_VERSION, GGMLQuantizationType
from gguf.gguf_writer import GGUFWriter

from . import config
from .console import ConsoleLogger
from .errors import WriteError
from .hasher import compute_sha256
from .precision import file_type_for, is_quantized, tensor_nbytes
from .quantizer import convert_payload, resolve_target_type
from .reader import verify_container
from .registry import TensorDescriptor, TensorRegistry

MetadataValue = Union[str, int, List[str]]

_NUMPY_DTYPES = {
    GGMLQuantizationType.F32: np.float32,
    GGMLQuantizationType.F16: np.float16,
    GGMLQuantizationType.I8: np.int8,
    GGMLQuantizationType.I16: np.int16,
    GGMLQuantizationType.I32: np.int32,
}


def plan_tensors(
    registry: TensorRegistry,
    default_type: GGMLQuantizationType
) -> List[Tuple[TensorDescriptor, GGMLQuantizationType]]:
    """Pair every registered tensor with the type it will be written as."""
    return [(descriptor, resolve_target_type(descriptor, default_type)) for descriptor in registry]


def payload_layout(shape: Sequence[int], qtype: GGMLQuantizationType) -> Tuple[Tuple[int, ...], type]:
    """
    Array shape and numpy dtype a payload of this type is written with.

    Block formats are written as uint8 with the innermost dimension
    counted in bytes.
    """
    shape = tuple(int(d) for d in shape)
    if is_quantized(qtype):
        return (*shape[:-1], tensor_nbytes(shape[-1:], qtype)), np.uint8
    if qtype not in _NUMPY_DTYPES:
        raise ValueError(f"Cannot write tensors of type {qtype.name}")
    return shape, _NUMPY_DTYPES[qtype]


def check_tensor_names(registry: TensorRegistry) -> None:
    """
    Raises:
        WriteError: If any name is longer than the container allows
    """
    too_long = [name for name in registry.names() if len(name) > config.MAX_TENSOR_NAME_LENGTH]
    if too_long:
        raise WriteError(
            f"Tensor name longer than {config.MAX_TENSOR_NAME_LENGTH} characters: {too_long[0]}"
        )


def _group_label(prefix: str) -> str:
    return prefix.rstrip('.') or 'root'


def _add_metadata(writer: GGUFWriter, metadata: Dict[str, MetadataValue]) -> None:
    for key, value in metadata.items():
        if isinstance(value, bool):
            writer.add_bool(key, value)
        elif isinstance(value, int):
            writer.add_uint32(key, value)
        elif isinstance(value, (list, tuple)):
            writer.add_array(key, [str(v) for v in value])
        else:
            writer.add_string(key, str(value))


def build_group_metadata(
    plan: List[Tuple[TensorDescriptor, GGMLQuantizationType]],
    group_sources: Optional[Dict[str, List[str]]] = None
) -> Dict[str, MetadataValue]:
    """
    Describe each sub-model group: where it came from and what it became.

    Produces keys like 'sd.group.vae.sources' and 'sd.group.vae.types'.
    """
    types: Dict[str, List[str]] = {}
    for descriptor, target in plan:
        names = types.setdefault(descriptor.prefix, [])
        if target.name not in names:
            names.append(target.name)

    metadata: Dict[str, MetadataValue] = {}
    for prefix, type_names in types.items():
        label = _group_label(prefix)
        metadata[f'sd.group.{label}.types'] = type_names
        if group_sources and prefix in group_sources:
            metadata[f'sd.group.{label}.sources'] = list(group_sources[prefix])
    return metadata


def _write_container(
    path: Path,
    plan: List[Tuple[TensorDescriptor, GGMLQuantizationType]],
    default_type: GGMLQuantizationType,
    name: str,
    metadata: Dict[str, MetadataValue],
    logger: ConsoleLogger
) -> None:
    writer = GGUFWriter(path=None, arch=config.CONTAINER_ARCHITECTURE)
    try:
        writer.add_name(name)
        writer.add_file_type(int(file_type_for(default_type)))
        writer.add_quantization_version(GGML_QUANT_VERSION)
        _add_metadata(writer, metadata)

        layouts = []
        for descriptor, target in plan:
            shape, dtype = payload_layout(descriptor.shape, target)
            nbytes = tensor_nbytes(descriptor.shape, target)
            writer.add_tensor_info(descriptor.full_name, shape, np.dtype(dtype), nbytes, raw_dtype=target)
            layouts.append((shape, dtype, nbytes))

        writer.write_header_to_file(path=path)
        writer.write_kv_data_to_file()
        writer.write_ti_data_to_file()

        with logger.progress() as progress:
            task = progress.add_task(f"Writing {len(plan)} tensors", total=len(plan))
            for (descriptor, target), (shape, dtype, nbytes) in zip(plan, layouts):
                payload = convert_payload(descriptor.read(), descriptor.storage_type, target)
                payload = np.ascontiguousarray(payload, dtype=dtype).reshape(shape)
                if payload.nbytes != nbytes:
                    raise WriteError(
                        f"Payload size mismatch for '{descriptor.full_name}' ({descriptor.location}): "
                        f"expected {nbytes} bytes, got {payload.nbytes}"
                    )
                writer.write_tensor_data(payload)
                progress.advance(task)
    finally:
        writer.close()


def _current_umask() -> int:
    umask = os.umask(0)
    os.umask(umask)
    return umask


def save_container(
    registry: TensorRegistry,
    output_path: Path,
    default_type: GGMLQuantizationType,
    logger: Optional[ConsoleLogger] = None,
    metadata: Optional[Dict[str, MetadataValue]] = None
) -> str:
    """
    Write the registry to a container file.

    The file is first written under a hidden temp name in the destination
    directory, read back and checked against the plan, then renamed over
    the destination. On any failure the temp file is removed and the
    destination is left as it was.

    Args:
        registry: Tensors to write, in order
        output_path: Destination file
        default_type: Run-wide output type (groups may override it)
        logger: Where to report progress
        metadata: Extra container metadata (string, int or string list values)

    Returns:
        SHA-256 hash of the written file

    Raises:
        WriteError: If nothing can be written, a name is too long, or the
            file can't be created, converted, written or verified
    """
    logger = logger if logger is not None else ConsoleLogger(quiet=True)
    output_path = Path(output_path)

    if len(registry) == 0:
        raise WriteError("No tensors to write")
    check_tensor_names(registry)

    plan = plan_tensors(registry, default_type)

    if output_path.exists():
        logger.warning(f"Output file already exists and will be replaced: {output_path}")

    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(
            prefix=f".{output_path.name}.", suffix='.tmp', dir=str(output_path.parent)
        )
        os.close(fd)
    except OSError as e:
        raise WriteError(f"Cannot create output file in {output_path.parent}: {e}")
    temp_path = Path(temp_name)

    logger.info(f"Writing container to [bold]{output_path}[/bold]")

    try:
        _write_container(
            temp_path,
            plan,
            default_type,
            output_path.stem,
            dict(metadata or {}),
            logger
        )

        problems = verify_container(
            temp_path,
            [(d.full_name, d.shape, target) for d, target in plan]
        )
        if problems:
            raise WriteError("Container verification failed: " + "; ".join(problems[:5]))

        # mkstemp creates 0600; give the container the mode a plain open() would
        os.chmod(temp_path, 0o666 & ~_current_umask())
        os.replace(temp_path, output_path)
    except WriteError:
        temp_path.unlink(missing_ok=True)
        raise
    except Exception as e:
        temp_path.unlink(missing_ok=True)
        raise WriteError(f"Failed to write container {output_path}: {e}")

    logger.success(f"Wrote {len(plan)} tensors")
    logger.info("Computing SHA-256 hash of output file...")
    return compute_sha256(output_path, logger)
