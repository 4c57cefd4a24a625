"""Remote Archive Source.

Downloads ZIP archives over HTTP(S) and yields their CSV members while the
download is still in flight. Nothing is written to disk and no member is held
in memory: response chunks feed the ZIP decompressor, whose output chunks feed
the normalizer.

Architecture:
    - Implements ArchiveSourcePort (Hexagonal Architecture)
    - requests streams the response body; redirects are followed by requests
    - stream-unzip decompresses members sequentially from a non-seekable stream

Memory Impact:
    - Bounded by the download chunk size plus the decompressor's window
"""

import logging
from typing import Iterable, Iterator, Sequence

import requests
from stream_unzip import UnzipError, stream_unzip

from moneymatched.domain.ports import ArchiveSourcePort, SourceEntry, SourceUnavailableError
from moneymatched.domain.schema import is_tabular_name

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_TIMEOUT = 60.0


def decode_member_name(raw: bytes) -> str:
    """Decode a ZIP member name (UTF-8 when flagged, CP437 in legacy archives)."""
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("cp437")


class RemoteArchiveSource(ArchiveSourcePort):
    """Archive source reading one or more remote ZIP files in order.

    Parameters:
        urls: Archive URLs, processed in the given order
        chunk_size: Download chunk size in bytes
        timeout: Connect/read timeout in seconds

    Example Usage:
        ```python
        source = RemoteArchiveSource(["https://dpupd.sco.ca.gov/04_From_500_To_Beyond.zip"])
        for entry in source.entries():
            for chunk in entry.chunks:
                ...
        ```
    """

    def __init__(
        self,
        urls: Sequence[str],
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        if not urls:
            raise ValueError("At least one archive URL is required")
        self.urls = list(urls)
        self.chunk_size = chunk_size
        self.timeout = timeout

    def describe(self) -> str:
        return ", ".join(self.urls)

    def entries(self) -> Iterator[SourceEntry]:
        for url in self.urls:
            yield from self._archive_entries(url)

    def _open(self, url: str) -> requests.Response:
        """Issue the GET and validate the terminal response.

        Raises:
            SourceUnavailableError: If the request fails or ends in a non-2xx response
        """
        logger.info(f"Downloading from: {url}")
        try:
            response = requests.get(url, stream=True, allow_redirects=True, timeout=self.timeout)
        except requests.RequestException as e:
            raise SourceUnavailableError(f"Failed to download {url}: {str(e)}", source=url) from e

        for hop in response.history:
            logger.info(f"Following redirect to: {hop.headers.get('Location')}")

        if not 200 <= response.status_code < 300:
            response.close()
            raise SourceUnavailableError(
                f"Failed to download {url}: {response.status_code} {response.reason}",
                source=url,
                status_code=response.status_code,
            )
        return response

    def _archive_entries(self, url: str) -> Iterator[SourceEntry]:
        response = self._open(url)
        with response:
            members = stream_unzip(self._guarded(url, response.iter_content(chunk_size=self.chunk_size)))
            try:
                for raw_name, _size, chunks in members:
                    name = decode_member_name(raw_name)
                    entry = SourceEntry(name=name, chunks=self._guarded(url, chunks), drain_on_close=True)
                    if not is_tabular_name(name):
                        discarded = entry.drain()
                        logger.debug(f"Skipped non-CSV entry {name} ({discarded} bytes)")
                        continue
                    logger.info(f"Processing file: {name}")
                    yield entry
                    # Members decompress sequentially; finish this one before the next
                    entry.drain()
            except UnzipError as e:
                raise SourceUnavailableError(f"Invalid archive from {url}: {str(e)}", source=url) from e

    @staticmethod
    def _guarded(url: str, chunks: Iterable[bytes]) -> Iterator[bytes]:
        """Translate transport and archive errors raised mid-stream into SourceUnavailableError."""
        try:
            yield from chunks
        except requests.RequestException as e:
            raise SourceUnavailableError(f"Download of {url} was interrupted: {str(e)}", source=url) from e
        except UnzipError as e:
            raise SourceUnavailableError(f"Invalid archive from {url}: {str(e)}", source=url) from e
