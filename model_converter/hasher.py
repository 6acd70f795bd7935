"""
File hashing for finished containers.

The SHA-256 of every written container is reported to the user so the
file can be verified after copying it around.
"""

import hashlib
from pathlib import Path
from typing import Optional

from . import config
from .console import ConsoleLogger


def compute_sha256(
    filepath: Path,
    logger: Optional[ConsoleLogger] = None,
    chunk_size: int = config.HASH_CHUNK_SIZE
) -> str:
    """
    Compute the SHA-256 hash of a file.

    Reads the file in chunks to avoid loading huge models into memory.

    Args:
        filepath: Path to the file to hash
        logger: Where to draw the progress bar (no progress when None)
        chunk_size: Size of chunks to read (default 1MB)

    Returns:
        Hex string of the SHA-256 hash

    Example:
        >>> compute_sha256(Path("model-F16.gguf"))
        '3f1c...'
    """
    filepath = Path(filepath)
    hasher = hashlib.sha256()
    logger = logger if logger is not None else ConsoleLogger(quiet=True)

    with logger.progress() as progress:
        task = progress.add_task(
            f"[cyan]Hashing {filepath.name} (SHA256)...",
            total=filepath.stat().st_size
        )
        with open(filepath, 'rb') as f:
            while True:
                chunk = f.read(chunk_size)
                if not chunk:
                    break
                hasher.update(chunk)
                progress.advance(task, len(chunk))

    return hasher.hexdigest()

