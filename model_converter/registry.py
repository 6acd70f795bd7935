"""
Tensor registry shared by every sub-model load of a conversion run.

Descriptors only carry metadata plus a handle to their source; payloads
are read lazily when the container is written.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

import numpy as np
from gguf.constants import GGMLQuantizationType

from .errors import TensorNameCollision
from .precision import storage_type_for


@dataclass(frozen=True)
class TensorDescriptor:
    """
    One tensor as found in a source file.

    Attributes:
        name: Name inside the sub-model (before prefixing)
        shape: Dimension sizes, outermost first
        dtype: Source dtype name ('F32', 'BF16', 'Q4_0', ...)
        source: TensorSource the payload is read from
        key: Name of the tensor inside that source
        offset: Byte offset of the payload in the source file, when known
        prefix: Namespace of the sub-model the tensor belongs to
        output_type: Output type requested for that sub-model (None = default)
    """
    name: str
    shape: Tuple[int, ...]
    dtype: str
    source: Any = field(compare=False, repr=False)
    key: str = ''
    offset: Optional[int] = None
    prefix: str = ''
    output_type: Optional[GGMLQuantizationType] = None

    @property
    def full_name(self) -> str:
        return self.prefix + self.name

    @property
    def storage_type(self) -> GGMLQuantizationType:
        """Element type of the array returned by read()."""
        return storage_type_for(self.dtype)

    @property
    def location(self) -> str:
        path = getattr(self.source, 'path', '?')
        if self.offset is None:
            return f"{path}:{self.key}"
        return f"{path}@{self.offset}"

    def read(self) -> np.ndarray:
        """Read the payload from the source (stored as storage_type)."""
        return self.source.read(self.key)

    def in_group(self, prefix: str, output_type: Optional[GGMLQuantizationType]) -> 'TensorDescriptor':
        """Copy of this descriptor placed under a sub-model prefix."""
        return replace(self, prefix=prefix, output_type=output_type)


class TensorRegistry:
    """
    Ordered mapping of fully-qualified tensor name to descriptor.

    Insertion order is the order tensors are written to the container.
    """

    def __init__(self):
        self._tensors: Dict[str, TensorDescriptor] = {}

    def __len__(self) -> int:
        return len(self._tensors)

    def __contains__(self, name: str) -> bool:
        return name in self._tensors

    def __getitem__(self, name: str) -> TensorDescriptor:
        return self._tensors[name]

    def __iter__(self) -> Iterator[TensorDescriptor]:
        return iter(self._tensors.values())

    def names(self) -> List[str]:
        return list(self._tensors.keys())

    def add_all(self, descriptors: Iterable[TensorDescriptor]) -> int:
        """
        Insert a batch of descriptors, all or nothing.

        The whole batch is checked against the registry and against itself
        before anything is inserted, so a collision never leaves half a
        sub-model behind.

        Args:
            descriptors: Descriptors with their prefix already applied

        Returns:
            Number of descriptors inserted

        Raises:
            TensorNameCollision: If any fully-qualified name is already taken
        """
        batch = list(descriptors)
        seen = set()
        collisions = []

        for descriptor in batch:
            name = descriptor.full_name
            if name in self._tensors or name in seen:
                collisions.append(name)
            seen.add(name)

        if collisions:
            raise TensorNameCollision(collisions)

        for descriptor in batch:
            self._tensors[descriptor.full_name] = descriptor

        return len(batch)

    def groups(self) -> Dict[str, int]:
        """Tensor count per sub-model prefix, in first-seen order."""
        counts: Dict[str, int] = {}
        for descriptor in self._tensors.values():
            counts[descriptor.prefix] = counts.get(descriptor.prefix, 0) + 1
        return counts
