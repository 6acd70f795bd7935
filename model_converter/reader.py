"""
Container reading and verification.

Re-opens written containers to list their metadata and tensors, load
single tensors back as float32, and check a freshly written file against
what the writer planned to put in it.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple

import numpy as np
from gguf.constants import GGMLQuantizationType, GGUFValueType
from gguf.gguf_reader import GGUFReader

from .quantizer import to_float32


@dataclass
class ContainerTensor:
    """One tensor entry of a container."""
    name: str
    shape: Tuple[int, ...]
    qtype: GGMLQuantizationType
    offset: int
    nbytes: int


@dataclass
class ContainerInfo:
    """Everything a container declares, without payloads."""
    path: Path
    metadata: Dict[str, Any] = field(default_factory=dict)
    tensors: List[ContainerTensor] = field(default_factory=list)

    def tensor(self, name: str) -> ContainerTensor:
        for entry in self.tensors:
            if entry.name == name:
                return entry
        raise KeyError(name)


def _field_value(reader_field) -> Any:
    """Decode a reader field into a plain Python value."""
    if not reader_field.types:
        return None

    main_type = reader_field.types[0]
    if main_type == GGUFValueType.ARRAY:
        if reader_field.types[-1] == GGUFValueType.STRING:
            return [bytes(reader_field.parts[i]).decode('utf-8') for i in reader_field.data]
        return [reader_field.parts[i].tolist()[0] for i in reader_field.data]

    if main_type == GGUFValueType.STRING:
        return bytes(reader_field.parts[reader_field.data[0]]).decode('utf-8')

    return reader_field.parts[reader_field.data[0]].tolist()[0]


def _shape_of(reader_tensor) -> Tuple[int, ...]:
    # Containers store dimensions innermost first
    return tuple(int(d) for d in reversed(reader_tensor.shape.tolist()))


def read_container(path: Path) -> ContainerInfo:
    """
    List a container's metadata and tensor infos, in file order.

    Args:
        path: Container file

    Returns:
        ContainerInfo with metadata (header pseudo-keys excluded) and tensors
    """
    path = Path(path)
    reader = GGUFReader(str(path))

    info = ContainerInfo(path=path)
    for name, reader_field in reader.fields.items():
        if name.startswith('GGUF.'):
            continue
        info.metadata[name] = _field_value(reader_field)

    for reader_tensor in reader.tensors:
        info.tensors.append(ContainerTensor(
            name=reader_tensor.name,
            shape=_shape_of(reader_tensor),
            qtype=GGMLQuantizationType(reader_tensor.tensor_type),
            offset=int(reader_tensor.data_offset),
            nbytes=int(reader_tensor.n_bytes),
        ))

    return info


def load_container_tensor(path: Path, name: str, decode: bool = True) -> np.ndarray:
    """
    Load one tensor back from a container.

    Args:
        path: Container file
        name: Fully-qualified tensor name
        decode: Dequantize to float32 (False returns the stored payload as-is)

    Raises:
        KeyError: If the container has no tensor with that name
    """
    reader = GGUFReader(str(path))
    for reader_tensor in reader.tensors:
        if reader_tensor.name != name:
            continue
        data = np.array(reader_tensor.data)
        qtype = GGMLQuantizationType(reader_tensor.tensor_type)
        if not decode or qtype in (GGMLQuantizationType.I8, GGMLQuantizationType.I16, GGMLQuantizationType.I32):
            return data
        return to_float32(data, qtype).reshape(_shape_of(reader_tensor))
    raise KeyError(name)


def verify_container(
    path: Path,
    expected: Sequence[Tuple[str, Tuple[int, ...], GGMLQuantizationType]]
) -> List[str]:
    """
    Compare a written container with the planned tensor list.

    Args:
        path: Container to check
        expected: (name, shape, type) per tensor, in write order

    Returns:
        List of problems found (empty when the container matches)
    """
    try:
        info = read_container(path)
    except Exception as e:
        return [f"Container could not be read back: {e}"]

    problems = []
    if len(info.tensors) != len(expected):
        problems.append(f"Tensor count mismatch: expected {len(expected)}, found {len(info.tensors)}")

    for entry, (name, shape, qtype) in zip(info.tensors, expected):
        if entry.name != name:
            problems.append(f"Tensor order mismatch: expected '{name}', found '{entry.name}'")
        elif entry.qtype != qtype:
            problems.append(f"Type mismatch for '{name}': expected {qtype.name}, found {entry.qtype.name}")
        elif entry.shape != tuple(shape):
            problems.append(f"Shape mismatch for '{name}': expected {tuple(shape)}, found {entry.shape}")

    return problems
