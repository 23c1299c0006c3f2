"""Ephemeral container lifecycle.

This module handles:
- Creating a step container from the current build state
- Idempotent force-destruction
- The commit orchestration for one step, including interrupt cleanup
- Reading single files out of a throwaway container

Exactly one container is live per step, and it is gone by the time the
step returns, whatever the outcome.
"""

from __future__ import annotations

import io
import logging
import posixpath
import tarfile
from contextlib import ExitStack
from typing import TYPE_CHECKING

from box_builder.executor.errors import (
    BuildInterruptedError,
    ContainerNotFoundError,
    EngineError,
)
from box_builder.executor.signals import CancelToken, SignalDispatcher, get_dispatcher

if TYPE_CHECKING:
    from box_builder.executor.base import Hook
    from box_builder.executor.engine import Engine
    from box_builder.executor.state import BuildState

logger = logging.getLogger(__name__)


def create_container(engine: Engine, state: BuildState) -> str:
    """Create a container from the current build state snapshot.

    Returns:
        Container id.

    Raises:
        EngineError: If creation fails.
    """
    return engine.create(state.container_spec())


def destroy_container(engine: Engine, container_id: str) -> None:
    """Force-remove a container.

    A container that is already gone counts as destroyed, so this is safe
    to call from both the interrupt path and the normal cleanup path.

    Raises:
        EngineError: If the engine fails to remove an existing container.
    """
    try:
        engine.remove(container_id, force=True)
    except ContainerNotFoundError:
        logger.debug("Container %s already removed", container_id[:12])


def _cleanup(engine: Engine, container_id: str) -> None:
    try:
        destroy_container(engine, container_id)
    except EngineError as e:
        logger.error("Could not clean up container %s: %s", container_id[:12], e)


def _raise_if_interrupted(
    token: CancelToken, container_id: str, error: EngineError
) -> None:
    # The interrupt path force-removes the container, so engine calls racing
    # it fail; report those as the interrupt.
    if token.cancelled:
        raise BuildInterruptedError(
            f"Build interrupted ({token.reason}) while committing "
            f"container {container_id!r}"
        ) from error


def commit_step(
    engine: Engine,
    state: BuildState,
    fingerprint: str,
    hook: Hook | None = None,
    token: CancelToken | None = None,
    dispatcher: SignalDispatcher | None = None,
) -> str:
    """Run one step in a fresh container and commit it as a new image.

    Steps:
    1. Create a container from the current state
    2. Force-destroy it on the first interrupt while the step runs
    3. Run ``hook`` (if any); a non-empty return overrides the fingerprint
    4. Commit the container, stamping the fingerprint as the image comment
    5. Remove the container; failure here fails the step
    6. Record the new image as the resulting image

    Args:
        engine: Engine adapter.
        state: Build state; ``state.image`` is updated only on success.
        fingerprint: Cache key of the step.
        hook: Optional callable run against the live container.
        token: Cancellation token for the step (created if omitted).
        dispatcher: Signal dispatcher (process-wide one if omitted).

    Returns:
        Id of the committed image.

    Raises:
        EngineError: If any engine call fails.
        BuildInterruptedError: If the step was interrupted.
        ExecutorError: Whatever the hook raised.
    """
    if token is None:
        token = CancelToken()
    if dispatcher is None:
        dispatcher = get_dispatcher()

    container_id = create_container(engine, state)
    logger.info("Running step %r in container %s", fingerprint, container_id[:12])

    with ExitStack() as stack:
        stack.callback(_cleanup, engine, container_id)
        stack.enter_context(dispatcher.listen(token))
        token.add_callback(lambda: _cleanup(engine, container_id))

        if hook is not None:
            override = hook(container_id, token)
            if override:
                logger.debug("Hook overrode fingerprint %r with %r", fingerprint, override)
                fingerprint = override

        token.raise_if_cancelled()

        try:
            image_id = engine.commit(
                container_id, config=state.container_spec(), comment=fingerprint
            )
        except EngineError as e:
            _raise_if_interrupted(token, container_id, e)
            raise

        # Normal removal first; the deferred cleanup above is the last resort
        try:
            engine.remove(container_id)
        except EngineError as e:
            _raise_if_interrupted(token, container_id, e)
            raise EngineError(
                f"Could not remove intermediate container {container_id!r}: {e}"
            ) from e

        token.raise_if_cancelled()
        state.image = image_id

    logger.info("Committed step %r as %s", fingerprint, image_id)
    return image_id


def copy_file_from_image(engine: Engine, state: BuildState, path: str) -> bytes:
    """Read one file from the current image via a throwaway container.

    Args:
        engine: Engine adapter.
        state: Build state whose image is read.
        path: Absolute path of the file inside the image.

    Returns:
        File content.

    Raises:
        EngineError: If the file is missing or an engine call fails.
    """
    container_id = create_container(engine, state)
    try:
        chunks, _ = engine.get_archive(container_id, path)
        buffer = io.BytesIO(b"".join(chunks))
        name = posixpath.basename(path)
        with tarfile.open(fileobj=buffer, mode="r|") as tar:
            for member in tar:
                if member.name != name:
                    continue
                extracted = tar.extractfile(member)
                if extracted is None:
                    break
                return extracted.read()
        raise EngineError(f"Could not find {path!r} in container")
    except tarfile.TarError as e:
        raise EngineError(f"Could not read {path!r} from container: {e}") from e
    finally:
        _cleanup(engine, container_id)


__all__ = [
    "commit_step",
    "copy_file_from_image",
    "create_container",
    "destroy_container",
]
