"""
Tensor sources: the on-disk formats a sub-model can come from.

Three formats are understood:
- safetensors files (single files or shards of a pipeline directory)
- legacy pickle checkpoints (.ckpt/.pt/.pth/.bin)
- existing GGUF containers

Each source can describe its tensors without reading payloads, and read
one payload at a time when the container writer asks for it.
"""

import json
import struct
from pathlib import Path
from typing import List, Optional

import numpy as np
import torch
from gguf.constants import GGMLQuantizationType
from gguf.gguf_reader import GGUFReader
from gguf.quants import dequantize
from safetensors import safe_open

from . import config
from .checkpoint import load_checkpoint
from .console import ConsoleLogger
from .errors import LoadError
from .registry import TensorDescriptor

GGUF_MAGIC = b'GGUF'
ZIP_MAGIC = b'PK\x03\x04'
PICKLE_PROTO = 0x80

SAFETENSORS_DTYPES = {
    'F64', 'F32', 'F16', 'BF16', 'F8_E4M3', 'F8_E5M2',
    'I64', 'I32', 'I16', 'I8', 'U8', 'BOOL',
}

_TORCH_DTYPE_NAMES = {
    torch.float64: 'F64',
    torch.float32: 'F32',
    torch.float16: 'F16',
    torch.bfloat16: 'BF16',
    torch.int64: 'I64',
    torch.int32: 'I32',
    torch.int16: 'I16',
    torch.int8: 'I8',
    torch.uint8: 'U8',
    torch.bool: 'BOOL',
}

# Float8 dtypes only exist in newer PyTorch builds
for _name, _dtype_name in (('float8_e4m3fn', 'F8_E4M3'), ('float8_e5m2', 'F8_E5M2')):
    if hasattr(torch, _name):
        _TORCH_DTYPE_NAMES[getattr(torch, _name)] = _dtype_name

_TORCH_WIDENING = {
    'F64': torch.float32,
    'BF16': torch.float32,
    'F8_E4M3': torch.float16,
    'F8_E5M2': torch.float16,
    'I64': torch.int32,
    'U8': torch.int16,
    'BOOL': torch.int8,
}


def _normalize_shape(shape) -> tuple:
    """Scalars are stored as one-element vectors (containers need >= 1 dim)."""
    shape = tuple(int(d) for d in shape)
    return shape if shape else (1,)


def tensor_to_numpy(tensor: torch.Tensor) -> np.ndarray:
    """
    Convert a torch tensor to the numpy array its storage type calls for.

    bf16/f64 widen to float32, float8 to float16, and integer types to the
    nearest type a container can hold.
    """
    dtype_name = _TORCH_DTYPE_NAMES.get(tensor.dtype)
    if dtype_name is None:
        raise ValueError(f"Unsupported tensor dtype: {tensor.dtype}")

    if dtype_name in _TORCH_WIDENING:
        tensor = tensor.to(_TORCH_WIDENING[dtype_name])

    array = tensor.detach().cpu().contiguous().numpy()
    if array.ndim == 0:
        array = array.reshape(1)
    return array


class TensorSource:
    """Base class for one readable file."""

    format_name = 'unknown'

    def __init__(self, path: Path):
        self.path = Path(path)

    def describe(self) -> List[TensorDescriptor]:
        """Descriptors for every tensor in the file, in file order."""
        raise NotImplementedError

    def read(self, key: str) -> np.ndarray:
        """Read one payload, stored as its descriptor's storage type."""
        raise NotImplementedError

    def close(self) -> None:
        pass


def read_safetensors_header(path: Path) -> tuple:
    """
    Parse the JSON header of a safetensors file.

    Layout: 8-byte little-endian header length, JSON header, raw data.

    Returns:
        Tuple of (header_dict, data_start_offset)

    Raises:
        LoadError: If the header is truncated, malformed or points past EOF
    """
    file_size = path.stat().st_size
    with open(path, 'rb') as f:
        raw_length = f.read(8)
        if len(raw_length) < 8:
            raise LoadError(f"Truncated safetensors file: {path}")
        (header_length,) = struct.unpack('<Q', raw_length)
        if header_length == 0 or 8 + header_length > file_size:
            raise LoadError(f"Corrupt safetensors header in {path}")
        try:
            header = json.loads(f.read(header_length))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise LoadError(f"Corrupt safetensors header in {path}: {e}")

    if not isinstance(header, dict):
        raise LoadError(f"Corrupt safetensors header in {path}")

    data_start = 8 + header_length
    for key, entry in header.items():
        if key == '__metadata__':
            continue
        try:
            dtype = entry['dtype']
            begin, end = entry['data_offsets']
            shape = entry['shape']
        except (KeyError, TypeError, ValueError):
            raise LoadError(f"Malformed entry for tensor '{key}' in {path}")
        if dtype not in SAFETENSORS_DTYPES:
            raise LoadError(f"Unsupported dtype {dtype} for tensor '{key}' in {path}")
        if not all(isinstance(v, int) for v in (begin, end)) or not isinstance(shape, list) \
                or not all(isinstance(d, int) for d in shape):
            raise LoadError(f"Malformed entry for tensor '{key}' in {path}")
        if begin > end or data_start + end > file_size:
            raise LoadError(f"Tensor '{key}' lies outside the data section of {path}")

    return header, data_start


class SafetensorsSource(TensorSource):
    """A .safetensors file; payloads are read through safe_open."""

    format_name = 'safetensors'

    def __init__(self, path: Path):
        super().__init__(path)
        self._header, self._data_start = read_safetensors_header(self.path)
        self._handle = None

    def describe(self) -> List[TensorDescriptor]:
        descriptors = []
        for key, entry in self._header.items():
            if key == '__metadata__':
                continue
            descriptors.append(TensorDescriptor(
                name=key,
                shape=_normalize_shape(entry['shape']),
                dtype=entry['dtype'],
                source=self,
                key=key,
                offset=self._data_start + entry['data_offsets'][0],
            ))
        return descriptors

    def read(self, key: str) -> np.ndarray:
        if self._handle is None:
            self._handle = safe_open(str(self.path), framework='pt', device='cpu')
        return tensor_to_numpy(self._handle.get_tensor(key))

    def close(self) -> None:
        self._handle = None


class CheckpointSource(TensorSource):
    """A pickle checkpoint; the whole state dict is held in memory."""

    format_name = 'checkpoint'

    def __init__(self, path: Path, logger: Optional[ConsoleLogger] = None):
        super().__init__(path)
        self._state_dict = load_checkpoint(self.path, logger)

    def describe(self) -> List[TensorDescriptor]:
        descriptors = []
        for key, tensor in self._state_dict.items():
            dtype_name = _TORCH_DTYPE_NAMES.get(tensor.dtype)
            if dtype_name is None:
                raise LoadError(f"Unsupported dtype {tensor.dtype} for tensor '{key}' in {self.path}")
            descriptors.append(TensorDescriptor(
                name=key,
                shape=_normalize_shape(tensor.shape),
                dtype=dtype_name,
                source=self,
                key=key,
            ))
        return descriptors

    def read(self, key: str) -> np.ndarray:
        return tensor_to_numpy(self._state_dict[key])

    def close(self) -> None:
        self._state_dict = {}


class ContainerSource(TensorSource):
    """An existing GGUF container; quantized payloads stay as raw blocks."""

    format_name = 'gguf'

    def __init__(self, path: Path):
        super().__init__(path)
        try:
            reader = GGUFReader(str(self.path))
        except Exception as e:
            raise LoadError(f"Failed to read container {path}: {e}")
        self._tensors = {t.name: t for t in reader.tensors}

    def describe(self) -> List[TensorDescriptor]:
        descriptors = []
        for name, tensor in self._tensors.items():
            descriptors.append(TensorDescriptor(
                name=name,
                # Containers store dimensions innermost first
                shape=_normalize_shape(reversed(tensor.shape.tolist())),
                dtype=tensor.tensor_type.name,
                source=self,
                key=name,
                offset=int(tensor.data_offset),
            ))
        return descriptors

    def read(self, key: str) -> np.ndarray:
        tensor = self._tensors[key]
        data = np.asarray(tensor.data)
        if tensor.tensor_type == GGMLQuantizationType.BF16:
            return dequantize(data, GGMLQuantizationType.BF16)
        if tensor.tensor_type == GGMLQuantizationType.F64:
            return data.astype(np.float32)
        if tensor.tensor_type == GGMLQuantizationType.I64:
            return data.astype(np.int32)
        return np.ascontiguousarray(data)

    def close(self) -> None:
        self._tensors = {}


def sniff_format(path: Path) -> str:
    """
    Work out a file's format from its leading bytes.

    Returns:
        'gguf', 'safetensors' or 'checkpoint'

    Raises:
        LoadError: If the file is empty or unreadable
    """
    try:
        with open(path, 'rb') as f:
            head = f.read(9)
    except OSError as e:
        raise LoadError(f"Cannot read {path}: {e}")

    if len(head) < 4:
        raise LoadError(f"File is too small to be a model: {path}")
    if head[:4] == GGUF_MAGIC:
        return 'gguf'
    # safetensors: u64 header length followed by a JSON object
    if len(head) == 9 and head[8:9] == b'{':
        return 'safetensors'
    if head[:4] == ZIP_MAGIC or head[0] == PICKLE_PROTO:
        return 'checkpoint'
    if path.suffix.lower() in config.SAFETENSORS_EXTENSIONS:
        return 'safetensors'
    raise LoadError(f"Unrecognized model file format: {path}")


def open_source(path: Path, logger: Optional[ConsoleLogger] = None) -> TensorSource:
    """
    Open a model file as a TensorSource, whatever its format.

    Raises:
        LoadError: If the file is missing, unreadable or corrupt
    """
    path = Path(path)
    if not path.is_file():
        raise LoadError(f"Model file not found: {path}")

    format_name = sniff_format(path)
    if logger is not None:
        logger.debug(f"{path.name}: {format_name}")

    if format_name == 'gguf':
        return ContainerSource(path)
    if format_name == 'checkpoint':
        return CheckpointSource(path, logger)
    return SafetensorsSource(path)


def shards_from_index(index_path: Path) -> List[Path]:
    """
    List the shard files named by a *.safetensors.index.json weight map.

    Raises:
        LoadError: If the index is unreadable or names a missing shard
    """
    try:
        with open(index_path, 'r', encoding='utf-8') as f:
            weight_map = json.load(f).get('weight_map')
    except (OSError, json.JSONDecodeError, AttributeError) as e:
        raise LoadError(f"Failed to read shard index {index_path}: {e}")

    if not isinstance(weight_map, dict) or not weight_map:
        raise LoadError(f"Shard index has no weight_map: {index_path}")

    shards = [index_path.parent / name for name in sorted(set(weight_map.values()))]
    missing = [s for s in shards if not s.is_file()]
    if missing:
        raise LoadError(f"Shard listed in {index_path.name} not found: {missing[0]}")
    return shards


def resolve_subpath(root: Path, subpath: str) -> Optional[List[Path]]:
    """
    Find the safetensors file(s) for a sub-path under a model root.

    Tried in order:
    1. <subpath>.safetensors, then <subpath>.fp16.safetensors
    2. <subpath>.safetensors.index.json shard index
    3. <subpath>-*-of-*.safetensors shards
    4. a <subpath> directory containing *.safetensors

    Args:
        root: Model root directory
        subpath: Sub-path without extension, e.g. 'vae/diffusion_pytorch_model'

    Returns:
        List of files to read, or None if the sub-path doesn't exist
    """
    base = Path(root) / subpath
    parent, stem = base.parent, base.name

    for candidate in (parent / f"{stem}.safetensors", parent / f"{stem}.fp16.safetensors"):
        if candidate.is_file():
            return [candidate]

    index_path = parent / f"{stem}.safetensors.index.json"
    if index_path.is_file():
        return shards_from_index(index_path)

    shards = sorted(parent.glob(f"{stem}-*-of-*.safetensors"))
    if shards:
        return shards

    if base.is_dir():
        files = sorted(base.glob('*.safetensors'))
        if files:
            return files

    return None
