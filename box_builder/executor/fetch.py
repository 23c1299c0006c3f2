"""Base image resolution.

This module handles:
- Resolving an image reference locally
- Pulling it when absent, with a one-line or live per-layer display
- Merging the resolved image's config into the build configuration
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from rich.console import Console, Group
from rich.live import Live
from rich.text import Text

from box_builder.executor.errors import EngineError, ImageNotFoundError

if TYPE_CHECKING:
    from box_builder.executor.engine import Engine
    from box_builder.executor.state import BuildState

logger = logging.getLogger(__name__)


class PullProgress:
    """Per-layer pull status, rendered as one line per layer.

    Events without a layer id update the overall status line, which is
    drawn above the layer lines.
    """

    def __init__(self) -> None:
        self.status = ""
        self.layers: dict[str, tuple[str, str]] = {}

    def update(self, event: dict[str, Any]) -> None:
        """Apply one decoded pull event.

        Raises:
            EngineError: If the event reports an error.
        """
        error = event.get("error")
        if error:
            raise EngineError(f"Pull failed: {error}")

        status = event.get("status", "")
        layer_id = event.get("id")
        if layer_id is None:
            self.status = status
            return
        self.layers[layer_id] = (status, event.get("progress", ""))

    def lines(self) -> list[str]:
        rendered = [self.status] if self.status else []
        for layer_id, (status, progress) in self.layers.items():
            rendered.append(f"{layer_id} {status} {progress}".rstrip())
        return rendered

    def render(self) -> Group:
        return Group(*(Text(line) for line in self.lines()))


def _drain_pull(events: Iterable[dict[str, Any]]) -> None:
    for event in events:
        error = event.get("error")
        if error:
            raise EngineError(f"Pull failed: {error}")


def _render_pull(events: Iterable[dict[str, Any]], console: Console) -> None:
    progress = PullProgress()
    with Live(progress.render(), console=console, refresh_per_second=8) as live:
        for event in events:
            progress.update(event)
            live.update(progress.render())


def pull_image(
    engine: Engine,
    reference: str,
    tty: bool = False,
    console: Console | None = None,
) -> None:
    """Pull ``reference`` and report progress.

    Args:
        engine: Engine adapter.
        reference: Image reference to pull.
        tty: Render a live per-layer display instead of a status line.
        console: Console to render on.

    Raises:
        EngineError: If the pull fails.
    """
    if console is None:
        console = Console()

    logger.info("Pulling %s", reference)
    events = engine.pull(reference)
    if tty:
        _render_pull(events, console)
        return

    console.print(f"+++ Pulling {reference!r}...", end="")
    _drain_pull(events)
    console.print("done.")


def fetch_image(
    engine: Engine,
    state: BuildState,
    reference: str,
    console: Console | None = None,
) -> str:
    """Resolve ``reference`` to a local image, pulling it if needed.

    The image's config is merged into the build configuration and the
    image becomes the resulting image.

    Args:
        engine: Engine adapter.
        state: Build state to update.
        reference: Image reference (name, tag or id).
        console: Console for pull progress.

    Returns:
        Id of the resolved image.

    Raises:
        EngineError: If inspecting or pulling fails.
    """
    try:
        record = engine.inspect_image(reference)
    except ImageNotFoundError:
        logger.debug("%s not present locally", reference)
        pull_image(engine, reference, tty=state.tty, console=console)
        record = engine.inspect_image(reference)

    state.config.merge_engine_config(record.config)
    state.image = record.id
    logger.info("Resolved %s to %s", reference, record.id)
    return record.id


__all__ = ["PullProgress", "fetch_image", "pull_image"]
