"""
Model loading into the shared tensor registry.

A ModelLoader is created once per conversion run. Each load call opens
one or more source files, prefixes every tensor name, and merges the
batch into the registry in one step.
"""

from pathlib import Path
from typing import Dict, List, Optional

from gguf.constants import GGMLQuantizationType

from .console import ConsoleLogger
from .errors import LoadError
from .registry import TensorDescriptor, TensorRegistry
from .sources import TensorSource, open_source, resolve_subpath


class ModelLoader:
    """
    Loads sub-models into one TensorRegistry under caller-chosen prefixes.

    Args:
        registry: Registry to fill (a new one when omitted)
        logger: Where to report what gets loaded
    """

    def __init__(
        self,
        registry: Optional[TensorRegistry] = None,
        logger: Optional[ConsoleLogger] = None
    ):
        self.registry = registry if registry is not None else TensorRegistry()
        self.logger = logger if logger is not None else ConsoleLogger(quiet=True)
        self.group_types: Dict[str, GGMLQuantizationType] = {}
        self.group_sources: Dict[str, List[str]] = {}
        self._sources: List[TensorSource] = []

    def set_group_output_type(self, prefix: str, qtype: Optional[GGMLQuantizationType]) -> None:
        """
        Record the output type for tensors loaded under a prefix from now on.

        Passing None clears it, so the group inherits the run's default type.
        """
        if qtype is None:
            self.group_types.pop(prefix, None)
        else:
            self.group_types[prefix] = qtype
            self.logger.debug(f"Output type for '{prefix or '<root>'}': {qtype.name}")

    def load_from_single_file(self, path: Path, prefix: str = '') -> int:
        """
        Load every tensor of a checkpoint, safetensors file or container.

        Args:
            path: File to load
            prefix: Namespace for the tensor names

        Returns:
            Number of tensors added to the registry

        Raises:
            LoadError: If the file is missing, unreadable, or a name collides
        """
        path = Path(path)
        self.logger.info(f"Loading [bold]{path.name}[/bold]")
        return self._load_files([path], prefix, self.group_types.get(prefix))

    def load_from_subpath(
        self,
        root: Path,
        subpath: str,
        target_type: Optional[GGMLQuantizationType] = None,
        prefix: str = ''
    ) -> Optional[int]:
        """
        Load a sub-model stored under a pipeline root directory.

        Args:
            root: Model root directory
            subpath: Sub-path without extension ('vae/diffusion_pytorch_model')
            target_type: Output type for these tensors (default: the group's)
            prefix: Namespace for the tensor names

        Returns:
            Number of tensors added, or None if the sub-path doesn't exist

        Raises:
            LoadError: If a file is unreadable or a name collides
        """
        files = resolve_subpath(Path(root), subpath)
        if files is None:
            self.logger.debug(f"Sub-path not found: {subpath}")
            return None

        self.logger.info(f"Loading [bold]{subpath}[/bold] ({len(files)} file(s))")
        if target_type is None:
            target_type = self.group_types.get(prefix)
        return self._load_files(files, prefix, target_type)

    def _load_files(
        self,
        files: List[Path],
        prefix: str,
        target_type: Optional[GGMLQuantizationType]
    ) -> int:
        # Describe everything first so a failure leaves the registry untouched
        batch: List[TensorDescriptor] = []
        opened: List[TensorSource] = []
        try:
            for index, path in enumerate(files, 1):
                if len(files) > 1:
                    self.logger.step(index, len(files), f"Reading {path.name}")
                try:
                    source = open_source(path, self.logger)
                    opened.append(source)
                    batch.extend(d.in_group(prefix, target_type) for d in source.describe())
                except LoadError:
                    raise
                except (OSError, ValueError, RuntimeError) as e:
                    raise LoadError(f"Failed to read {path}: {e}")

            count = self.registry.add_all(batch)
        except LoadError:
            for source in opened:
                source.close()
            raise

        self._sources.extend(opened)
        self.group_sources.setdefault(prefix, []).extend(str(p) for p in files)
        self.logger.debug(f"Added {count} tensors under '{prefix or '<root>'}'")
        return count

    def close(self) -> None:
        """Release every source opened by this loader."""
        for source in self._sources:
            source.close()
        self._sources = []
