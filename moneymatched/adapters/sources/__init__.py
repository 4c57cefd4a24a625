"""Archive source adapters.

Each adapter implements ArchiveSourcePort: remote ZIP archives streamed over
HTTP, or a local directory of already extracted CSV files.
"""

from pathlib import Path
from typing import Optional, Sequence, Union

from moneymatched.adapters.sources.local_directory import LocalDirectorySource
from moneymatched.adapters.sources.remote_archive import RemoteArchiveSource
from moneymatched.domain.ports import ArchiveSourcePort
from moneymatched.infrastructure.settings import Settings, get_settings

__all__ = ["LocalDirectorySource", "RemoteArchiveSource", "get_source"]


def get_source(
    urls: Optional[Sequence[str]] = None,
    local_dir: Optional[Union[str, Path]] = None,
    settings: Optional[Settings] = None,
) -> ArchiveSourcePort:
    """Factory function selecting the source for a run.

    Local-directory mode wins when a directory is given; otherwise the given URLs
    (or the configured default archives) are downloaded.

    Example Usage:
        ```python
        source = get_source(local_dir="./data")
        source = get_source(urls=["https://example.gov/archive.zip"])
        ```
    """
    settings = settings or get_settings()
    if local_dir is not None:
        return LocalDirectorySource(local_dir, chunk_size=settings.download_chunk_size)
    return RemoteArchiveSource(
        list(urls) if urls else settings.data_urls,
        chunk_size=settings.download_chunk_size,
        timeout=settings.http_timeout,
    )
