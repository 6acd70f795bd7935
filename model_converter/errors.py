"""
Exception types for the conversion pipeline.

Every fatal condition the converter can hit maps to one of these, so the
CLI can report it and exit with a non-zero code without guessing.
"""

from typing import Optional


class ConversionError(Exception):
    """Base class for all fatal conversion errors."""


class DetectionError(ConversionError):
    """The model directory could not be classified."""


class LoadError(ConversionError):
    """A sub-model could not be read into the tensor registry."""

    def __init__(self, message: str, submodel: Optional[str] = None):
        super().__init__(message)
        self.submodel = submodel


class TensorNameCollision(LoadError):
    """Two tensors ended up with the same fully-qualified name."""

    def __init__(self, names):
        self.names = list(names)
        shown = ', '.join(repr(n) for n in self.names[:5])
        if len(self.names) > 5:
            shown += f", ... ({len(self.names) - 5} more)"
        super().__init__(f"Tensor name collision: {shown}")


class WriteError(ConversionError):
    """The output container could not be written."""
