"""Engine adapter over the Docker SDK low-level client.

This module handles:
- Connecting to one engine endpoint
- Translating SDK failures into executor errors with context
- Exposing the attach socket as a pollable byte stream

Every call blocks the caller. Only ``wait`` accepts a timeout, which is
how the exit-status wait is made cancellable.
"""

from __future__ import annotations

import logging
import socket
from collections.abc import Iterable, Iterator
from typing import TYPE_CHECKING, Any

import docker
import requests
import urllib3
from docker.errors import APIError, DockerException, NotFound
from docker.utils import kwargs_from_env

from box_builder.executor.errors import (
    ContainerNotFoundError,
    EngineError,
    ImageNotFoundError,
)
from box_builder.types import ImageRecord

if TYPE_CHECKING:
    from box_builder.config import Settings

logger = logging.getLogger(__name__)


def _is_read_timeout(exc: requests.exceptions.RequestException) -> bool:
    """Return True when a request failed only because the read timed out."""
    if isinstance(exc, requests.exceptions.ReadTimeout):
        return True
    for arg in exc.args:
        if isinstance(arg, urllib3.exceptions.ReadTimeoutError):
            return True
        if isinstance(arg, urllib3.exceptions.MaxRetryError) and isinstance(
            arg.reason, urllib3.exceptions.ReadTimeoutError
        ):
            return True
    return False


class AttachedStream:
    """Bidirectional byte stream of an attached container.

    Wraps whatever the SDK returns from ``attach_socket`` and exposes the
    underlying socket so callers can poll it with ``select``.
    """

    def __init__(self, handle: Any) -> None:
        self._handle = handle
        self._sock: socket.socket = getattr(handle, "_sock", handle)
        self._closed = False

    def fileno(self) -> int:
        return self._sock.fileno()

    def recv(self, size: int) -> bytes:
        return self._sock.recv(size)

    def sendall(self, data: bytes) -> None:
        self._sock.sendall(data)

    def close_write(self) -> None:
        """Signal end of input to the container, keeping output readable."""
        try:
            self._sock.shutdown(socket.SHUT_WR)
        except OSError:
            # Peer already gone
            pass

    def close(self) -> None:
        """Close the stream; safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # Peer already gone
            pass
        self._sock.close()
        if self._handle is not self._sock:
            self._handle.close()


class Engine:
    """Thin wrapper over ``docker.APIClient`` for one engine endpoint."""

    def __init__(self, client: docker.APIClient) -> None:
        self.client = client

    # Containers

    def create(self, spec: dict[str, Any]) -> str:
        """Create a container from an engine container config."""
        try:
            response = self.client.create_container_from_config(spec)
        except DockerException as e:
            raise EngineError(f"Could not create container: {e}") from e
        container_id: str = response["Id"]
        logger.debug("Created container %s from %s", container_id[:12], spec.get("Image"))
        return container_id

    def remove(self, container_id: str, force: bool = False) -> None:
        """Remove a container.

        Raises:
            ContainerNotFoundError: If the container does not exist.
            EngineError: If removal fails for any other reason.
        """
        try:
            self.client.remove_container(container_id, force=force)
        except NotFound as e:
            raise ContainerNotFoundError(container_id) from e
        except APIError as e:
            if e.status_code == 409 and "already in progress" in str(e.explanation):
                logger.debug("Removal of %s already in progress", container_id[:12])
                return
            raise EngineError(f"Could not remove container {container_id!r}: {e}") from e
        except DockerException as e:
            raise EngineError(f"Could not remove container {container_id!r}: {e}") from e
        logger.debug("Removed container %s (force=%s)", container_id[:12], force)

    def commit(self, container_id: str, config: dict[str, Any], comment: str) -> str:
        """Commit a container's filesystem as a new image.

        Returns:
            Id of the new image.
        """
        try:
            response = self.client.commit(container_id, message=comment, conf=config)
        except DockerException as e:
            raise EngineError(f"Error during commit: {e}") from e
        return response["Id"]

    def attach(self, container_id: str, stdin: bool = False) -> AttachedStream:
        """Attach to a container's combined stdio stream."""
        params = {"stdin": int(stdin), "stdout": 1, "stderr": 1, "stream": 1}
        try:
            handle = self.client.attach_socket(container_id, params=params)
        except DockerException as e:
            raise EngineError(f"Could not attach to container: {e}") from e
        return AttachedStream(handle)

    def start(self, container_id: str) -> None:
        try:
            self.client.start(container_id)
        except DockerException as e:
            raise EngineError(f"Could not start container: {e}") from e

    def wait(self, container_id: str, timeout: float | None = None) -> int | None:
        """Wait for a container to exit.

        Args:
            container_id: Container to wait for.
            timeout: Seconds to wait before giving up (None = forever).

        Returns:
            Exit status, or None if the timeout elapsed first.
        """
        try:
            result = self.client.wait(container_id, timeout=timeout)
        except requests.exceptions.RequestException as e:
            if timeout is not None and _is_read_timeout(e):
                return None
            raise EngineError(f"Error waiting for container {container_id!r}: {e}") from e
        except DockerException as e:
            raise EngineError(f"Error waiting for container {container_id!r}: {e}") from e

        error = (result.get("Error") or {}).get("Message")
        if error:
            raise EngineError(f"Error waiting for container {container_id!r}: {error}")
        return int(result["StatusCode"])

    def get_archive(self, container_id: str, path: str) -> tuple[Iterator[bytes], int]:
        """Fetch a path from a container as a tar stream.

        Returns:
            Tuple of (chunk iterator, declared size).
        """
        try:
            stream, stat = self.client.get_archive(container_id, path)
        except NotFound as e:
            raise EngineError(f"Could not find {path!r} in container") from e
        except DockerException as e:
            raise EngineError(f"Could not copy {path!r} from container: {e}") from e
        return stream, int(stat.get("size", 0))

    # Images

    def list_images(self) -> list[ImageRecord]:
        """List all images, including intermediate ones."""
        try:
            images = self.client.images(all=True)
        except DockerException as e:
            raise EngineError(f"Could not list images: {e}") from e
        return [ImageRecord.from_listing(item) for item in images]

    def inspect_image(self, reference: str) -> ImageRecord:
        """Inspect an image by id or reference.

        Raises:
            ImageNotFoundError: If the image is not present locally.
        """
        try:
            data = self.client.inspect_image(reference)
        except NotFound as e:
            raise ImageNotFoundError(reference) from e
        except DockerException as e:
            raise EngineError(f"Could not inspect image {reference!r}: {e}") from e
        return ImageRecord.from_inspect(data)

    def pull(self, reference: str) -> Iterator[dict[str, Any]]:
        """Pull an image, yielding decoded progress events."""
        try:
            yield from self.client.pull(reference, stream=True, decode=True)
        except DockerException as e:
            raise EngineError(f"Could not pull {reference!r}: {e}") from e

    def tag(self, image_id: str, repository: str, tag: str | None = None) -> None:
        try:
            ok = self.client.tag(image_id, repository, tag=tag, force=True)
        except DockerException as e:
            raise EngineError(f"Could not tag {image_id!r}: {e}") from e
        if not ok:
            raise EngineError(f"Engine refused to tag {image_id!r} as {repository}")

    def load(self, data: Iterable[bytes]) -> Iterator[dict[str, Any]]:
        """Stream an image archive into the engine.

        The request body is consumed before the first response line is
        yielded.

        Yields:
            Decoded response lines.
        """
        try:
            yield from self.client.load_image(data)
        except DockerException as e:
            raise EngineError(f"Could not import image archive: {e}") from e


def get_engine(settings: Settings) -> Engine:
    """Connect to the configured engine endpoint.

    Args:
        settings: Application settings.

    Returns:
        Engine instance.

    Raises:
        EngineError: If the client cannot be constructed.
    """
    kwargs: dict[str, Any] = {}
    if settings.docker_host:
        kwargs["base_url"] = settings.docker_host
    else:
        kwargs.update(kwargs_from_env())

    try:
        client = docker.APIClient(
            version=settings.docker_api_version,
            timeout=settings.docker_timeout,
            **kwargs,
        )
    except DockerException as e:
        raise EngineError(f"Could not connect to engine: {e}") from e

    logger.debug("Connected to engine at %s", client.base_url)
    return Engine(client)


__all__ = ["AttachedStream", "Engine", "get_engine"]
