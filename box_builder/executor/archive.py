"""Direct image archive construction and import.

This module handles:
- Spooling layer content to a temporary file and digesting it
- Building the three archive members (config, repositories, manifest)
- Streaming the tar archive through a pipe while the engine reads it
- Scanning the import response for structured errors

Members are always written in the same order, and each header declares
the exact length of the payload that follows it.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tarfile
import tempfile
import threading
import time
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import TYPE_CHECKING, Any, BinaryIO

from box_builder.config import Settings, get_settings
from box_builder.executor.errors import ArchiveImportError

if TYPE_CHECKING:
    from box_builder.buildconfig import BuildConfig
    from box_builder.executor.engine import Engine
    from box_builder.executor.state import BuildState

logger = logging.getLogger(__name__)

REPOSITORIES_NAME = "repositories"
MANIFEST_NAME = "manifest.json"
MEMBER_MODE = 0o666

# Chunk size for spooling and streaming (bytes)
STREAM_CHUNK_SIZE = 64 * 1024


@dataclass
class ArchiveMember:
    """One regular file in an image archive."""

    name: str
    payload: bytes


@dataclass
class SpooledLayer:
    """Layer content spooled to disk.

    Attributes:
        path: Temporary file holding the content.
        digest: ``sha256:``-prefixed digest of the content.
        size_bytes: Content length.
    """

    path: Path
    digest: str
    size_bytes: int


def _encode(value: Any) -> bytes:
    return json.dumps(value, separators=(",", ":")).encode("utf-8")


@contextmanager
def spool_layer(
    content: BinaryIO | None,
    tmp_dir: Path | None = None,
    chunk_size: int = STREAM_CHUNK_SIZE,
) -> Iterator[SpooledLayer]:
    """Copy ``content`` to a uniquely named temporary file.

    The file is removed when the block exits, however it exits.

    Args:
        content: Stream to spool; None spools nothing.
        tmp_dir: Directory for the file (system default if None).
        chunk_size: Copy chunk size.

    Yields:
        SpooledLayer describing the spooled content.
    """
    with tempfile.NamedTemporaryFile(
        prefix="box-temporary-layer-", dir=tmp_dir, delete=False
    ) as tmp_file:
        tmp_path = Path(tmp_file.name)

    try:
        sha256 = hashlib.sha256()
        size = 0
        with tmp_path.open("wb") as f:
            while content is not None and (chunk := content.read(chunk_size)):
                f.write(chunk)
                sha256.update(chunk)
                size += len(chunk)

        logger.debug("Spooled %d bytes of layer content to %s", size, tmp_path)
        yield SpooledLayer(
            path=tmp_path, digest=f"sha256:{sha256.hexdigest()}", size_bytes=size
        )
    finally:
        tmp_path.unlink(missing_ok=True)


def build_archive_members(
    image_id: str,
    config: BuildConfig,
    comment: str = "",
) -> list[ArchiveMember]:
    """Build the members of an image archive, in archive order.

    The archive describes a zero-layer image: the manifest lists no
    layers and the config declares no ``diff_ids``, so every layer the
    manifest names is present in the archive.

    Args:
        image_id: Id the new image is named and tagged after.
        config: Build configuration the image config is derived from.
        comment: Comment recorded in the image history.

    Returns:
        ``[<id>.json, repositories, manifest.json]`` members.
    """
    config_name = f"{image_id}.json"
    repositories = {image_id: {"latest": image_id}}
    manifest = [
        {
            "Config": config_name,
            "RepoTags": [image_id],
            "Layers": [],
        }
    ]

    return [
        ArchiveMember(config_name, _encode(config.to_image_spec(comment=comment))),
        ArchiveMember(REPOSITORIES_NAME, _encode(repositories)),
        ArchiveMember(MANIFEST_NAME, _encode(manifest)),
    ]


def write_archive(members: Iterable[ArchiveMember], fileobj: BinaryIO) -> None:
    """Write members to ``fileobj`` as a streamed tar archive.

    Args:
        members: Members in the order they are written.
        fileobj: Writable binary stream; it is not closed.
    """
    now = time.time()
    with tarfile.open(fileobj=fileobj, mode="w|") as tar:
        for member in members:
            info = tarfile.TarInfo(member.name)
            info.size = len(member.payload)
            info.mode = MEMBER_MODE
            info.type = tarfile.REGTYPE
            info.uname = "root"
            info.gname = "root"
            info.mtime = now
            tar.addfile(info, BytesIO(member.payload))


class ArchiveStream:
    """Tar archive produced by a writer thread and consumed by iteration.

    The writer fills one end of an OS pipe while the consumer reads the
    other, so the engine starts receiving data before the archive is
    complete. Leaving the context closes the read end and joins the
    writer; a writer blocked on a full pipe then fails with a broken pipe
    and exits.
    """

    def __init__(
        self,
        members: list[ArchiveMember],
        debug_path: Path | None = None,
        chunk_size: int = STREAM_CHUNK_SIZE,
    ) -> None:
        self.members = members
        self.debug_path = debug_path
        self.chunk_size = chunk_size
        self.error: Exception | None = None
        self._reader: BinaryIO | None = None
        self._writer: threading.Thread | None = None

    def _write(self, pipe: BinaryIO) -> None:
        try:
            with pipe:
                write_archive(self.members, pipe)
        except BrokenPipeError:
            logger.debug("Archive consumer went away before the archive was complete")
        except (OSError, tarfile.TarError) as e:
            self.error = e
            logger.error("Failed to write image archive: %s", e)

    def __enter__(self) -> ArchiveStream:
        read_fd, write_fd = os.pipe()
        self._reader = os.fdopen(read_fd, "rb")
        self._writer = threading.Thread(
            target=self._write,
            args=(os.fdopen(write_fd, "wb"),),
            name="box-archive-writer",
            daemon=True,
        )
        self._writer.start()
        return self

    def __iter__(self) -> Iterator[bytes]:
        if self._reader is None:
            raise RuntimeError("ArchiveStream must be entered before iterating")

        debug_file = self.debug_path.open("wb") if self.debug_path else None
        try:
            while chunk := self._reader.read(self.chunk_size):
                if debug_file is not None:
                    debug_file.write(chunk)
                yield chunk
        finally:
            if debug_file is not None:
                debug_file.close()
                logger.debug("Mirrored image archive to %s", self.debug_path)

    def __exit__(self, *exc_info: object) -> None:
        if self._reader is not None:
            self._reader.close()
        if self._writer is not None:
            self._writer.join()


def check_import_response(lines: Iterable[dict[str, Any]]) -> list[str]:
    """Consume an import response, failing on any structured error.

    Args:
        lines: Decoded response lines.

    Returns:
        Status messages reported by the engine.

    Raises:
        ArchiveImportError: If any line carries an ``error`` field.
    """
    messages: list[str] = []
    for line in lines:
        error = line.get("error")
        if error is None and isinstance(line.get("errorDetail"), dict):
            error = line["errorDetail"].get("message")
        if error:
            raise ArchiveImportError(str(error))

        message = line.get("stream") or line.get("status")
        if message:
            message = str(message).strip()
            logger.debug("Import: %s", message)
            messages.append(message)
    return messages


def import_image_archive(
    engine: Engine,
    state: BuildState,
    image_id: str,
    content: BinaryIO | None = None,
    settings: Settings | None = None,
) -> str:
    """Build an image archive for ``image_id`` and import it into the engine.

    Args:
        engine: Engine adapter.
        state: Build state; the resulting image becomes ``image_id`` on success.
        image_id: Id to name the new image after.
        content: Layer content to spool (may be None).
        settings: Application settings.

    Returns:
        The imported image id.

    Raises:
        EngineError: If the import call fails.
        ArchiveImportError: If the engine or the archive writer reports an error.
    """
    if settings is None:
        settings = get_settings()

    with spool_layer(content, settings.tmp_dir) as layer:
        members = build_archive_members(
            image_id, state.config, comment=f"content {layer.digest}"
        )
        logger.info(
            "Importing %s (%d bytes of layer content, %s)",
            image_id,
            layer.size_bytes,
            layer.digest[:19],
        )

        with ArchiveStream(members, debug_path=settings.archive_debug_path) as archive:
            messages = check_import_response(engine.load(archive))
        if archive.error is not None:
            raise ArchiveImportError(f"Could not write image archive: {archive.error}")

    for message in messages:
        logger.info("Import: %s", message)

    state.image = image_id
    return image_id


__all__ = [
    "MANIFEST_NAME",
    "REPOSITORIES_NAME",
    "ArchiveMember",
    "ArchiveStream",
    "SpooledLayer",
    "build_archive_members",
    "check_import_response",
    "import_image_archive",
    "spool_layer",
    "write_archive",
]
