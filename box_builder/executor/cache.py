"""Layer cache lookup.

A committed step image records its fingerprint as the image comment.
A step is a cache hit when some child of the current resulting image
carries the same comment.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from rich.console import Console

if TYPE_CHECKING:
    from box_builder.executor.engine import Engine
    from box_builder.executor.state import BuildState

logger = logging.getLogger(__name__)


def check_cache(
    engine: Engine,
    state: BuildState,
    fingerprint: str,
    console: Console | None = None,
) -> bool:
    """Look up a committed image for a step fingerprint.

    Only images whose parent is the current resulting image are
    considered; the first one (in engine listing order) whose comment
    equals ``fingerprint`` wins. On a hit the image becomes the resulting
    image and its config is merged into the build configuration. Nothing
    is created or deleted.

    Args:
        engine: Engine adapter.
        state: Build state to read and, on a hit, update.
        fingerprint: Cache key of the step.
        console: Console for the cache-hit notice.

    Returns:
        True on a cache hit, False otherwise.

    Raises:
        EngineError: If listing or inspecting images fails.
    """
    if not state.use_cache:
        return False

    parent = state.image
    if not parent:
        logger.debug("No resulting image yet, cache miss for %r", fingerprint)
        return False

    for candidate in engine.list_images():
        if candidate.parent_id != parent:
            continue

        record = engine.inspect_image(candidate.id)
        if record.comment != fingerprint:
            continue

        logger.info("Cache hit for %r: %s", fingerprint, candidate.id)
        if console is not None:
            console.print(f"+++ Cache hit: using {candidate.id}")
        state.config.merge_engine_config(record.config)
        state.image = candidate.id
        return True

    logger.debug("Cache miss for %r on parent %s", fingerprint, parent)
    return False


__all__ = ["check_cache"]
