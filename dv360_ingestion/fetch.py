"""Download of job results into readable text streams."""

import io
import logging
import tempfile
import zipfile
from contextlib import asynccontextmanager
from typing import AsyncIterator, BinaryIO, TextIO

from dv360_ingestion.client import Dv360Client
from dv360_ingestion.errors import StructuralStreamError

logger = logging.getLogger(__name__)

# Results larger than this spill from memory to a temporary file
SPOOL_MAX_BYTES = 16 * 1024 * 1024


class StreamFetcher:
    def __init__(self, client: Dv360Client, spool_max_bytes: int = SPOOL_MAX_BYTES):
        self.client = client
        self.spool_max_bytes = spool_max_bytes

    @asynccontextmanager
    async def open(self, location: str, archived: bool) -> AsyncIterator[TextIO]:
        """
        Download the result at ``location`` and yield it as UTF-8 text.

        For archived results (SDF bundles) ``location`` is a media resource
        name and the first entry of the zip is exposed; otherwise it is a
        plain URL to a CSV file.
        """
        with tempfile.SpooledTemporaryFile(max_size=self.spool_max_bytes) as spool:
            if archived:
                size = await self.client.download_media(location, spool)
            else:
                size = await self.client.download_report(location, spool)
            logger.info(f"Fetched {size} bytes from {location}")

            spool.seek(0)
            with open_payload(spool, archived) as text_stream:
                yield text_stream


def open_payload(payload: BinaryIO, archived: bool) -> TextIO:
    """Wrap a seekable binary payload as text, extracting the first zip entry if archived."""
    if not archived:
        return io.TextIOWrapper(payload, encoding="utf-8-sig", newline="")

    try:
        archive = zipfile.ZipFile(payload)
        entries = archive.infolist()
        if not entries:
            raise StructuralStreamError("SDF archive is empty")
        if len(entries) > 1:
            logger.warning(f"SDF archive has {len(entries)} entries, reading only {entries[0].filename}")
        entry = archive.open(entries[0])
    except zipfile.BadZipFile as e:
        raise StructuralStreamError(f"SDF payload is not a valid zip archive: {e}") from e

    logger.info(f"Extracting {entries[0].filename} ({entries[0].file_size} bytes)")
    return io.TextIOWrapper(entry, encoding="utf-8-sig", newline="")
