"""Local Directory Source.

Recursively collects every CSV file (extension matched case-insensitively) under
an operator-supplied directory, for reloading already-extracted archives.
"""

import logging
import os
from pathlib import Path
from typing import Iterator, Union

from moneymatched.domain.ports import ArchiveSourcePort, SourceEntry, SourceUnavailableError
from moneymatched.domain.schema import is_tabular_name

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024


class LocalDirectorySource(ArchiveSourcePort):
    """Archive source backed by a directory tree.

    Files are discovered with a sorted, depth-first walk so the processing order
    is stable across runs; each file is read lazily in chunks.
    """

    def __init__(self, directory: Union[str, Path], chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.directory = Path(directory)
        self.chunk_size = chunk_size

    def describe(self) -> str:
        return f"local:{self.directory}"

    def discover(self) -> list[Path]:
        """List every CSV file under the directory, in walk order.

        Raises:
            SourceUnavailableError: If the path is missing, not a directory, or holds no CSV files
        """
        if not self.directory.exists():
            raise SourceUnavailableError(f"Directory not found: {self.directory}", source=str(self.directory))
        if not self.directory.is_dir():
            raise SourceUnavailableError(f"Not a directory: {self.directory}", source=str(self.directory))

        files = []
        for dirpath, dirnames, filenames in os.walk(self.directory):
            dirnames.sort()
            for filename in sorted(filenames):
                if is_tabular_name(filename):
                    files.append(Path(dirpath) / filename)

        if not files:
            raise SourceUnavailableError(f"No CSV files found in {self.directory}", source=str(self.directory))

        logger.info(f"Found {len(files)} CSV files to process")
        return files

    def entries(self) -> Iterator[SourceEntry]:
        for path in self.discover():
            name = path.relative_to(self.directory).as_posix()
            logger.info(f"Processing file: {name}")
            yield SourceEntry(name=name, chunks=self._read_chunks(path))

    def _read_chunks(self, path: Path) -> Iterator[bytes]:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(self.chunk_size), b""):
                yield chunk
