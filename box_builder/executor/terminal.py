"""Raw-mode handling for the local terminal."""

from __future__ import annotations

import logging
import termios
import tty
from collections.abc import Iterator
from contextlib import contextmanager

from box_builder.executor.errors import TerminalError

logger = logging.getLogger(__name__)


@contextmanager
def raw_terminal(fd: int) -> Iterator[None]:
    """Put the terminal on ``fd`` in raw mode for the duration of the block.

    The saved attributes are restored exactly once on every exit path.
    Non-terminal descriptors (pipes, files) are left alone.

    Raises:
        TerminalError: If the terminal attributes cannot be changed.
    """
    try:
        saved = termios.tcgetattr(fd)
    except termios.error:
        logger.debug("fd %d is not a terminal, leaving it as is", fd)
        yield
        return

    try:
        tty.setraw(fd)
    except termios.error as e:
        raise TerminalError(f"Could not attach terminal to container: {e}") from e

    try:
        yield
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)
        logger.debug("Restored terminal on fd %d", fd)


__all__ = ["raw_terminal"]
