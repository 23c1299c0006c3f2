"""Interactive process execution inside a step container.

This module handles:
- Attaching to a container's combined stdio before it starts
- Forwarding local stdin (raw terminal) into the container
- Demultiplexing the engine's framed output into stdout/stderr
- Waiting for the exit status, cancellable by interrupts and copy errors

At most two copy threads run per call. They poll a shared stop event
between chunks, and the first copy error to be reported wins; later
reports (including those caused by tearing the stream down) are dropped.
"""

from __future__ import annotations

import logging
import os
import select
import struct
import sys
import threading
from collections.abc import Callable
from contextlib import ExitStack
from typing import TYPE_CHECKING, Any, BinaryIO

from rich.console import Console

from box_builder.config import Settings, get_settings
from box_builder.executor.errors import (
    BuildInterruptedError,
    EngineError,
    NonZeroExitError,
    StreamCopyError,
)
from box_builder.executor.signals import CancelToken, SignalDispatcher, get_dispatcher
from box_builder.executor.terminal import raw_terminal
from box_builder.types import StreamId

if TYPE_CHECKING:
    from box_builder.executor.engine import AttachedStream, Engine
    from box_builder.executor.state import BuildState

logger = logging.getLogger(__name__)

# Frame header: stream id, three padding bytes, big-endian payload length
FRAME_HEADER = struct.Struct(">BxxxL")

COPY_CHUNK_SIZE = 32 * 1024

BEGIN_MARKER = "------ BEGIN OUTPUT ------"
END_MARKER = "------- END OUTPUT -------"
MARKER_STYLE = "bold red on white"


class FrameDemuxer:
    """Incremental parser for the engine's multiplexed stdio framing.

    Each frame is an 8-byte header (stream id, padding, payload length)
    followed by the payload. Data may be fed in arbitrary pieces.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet forming a complete frame."""
        return len(self._buffer)

    def feed(self, data: bytes) -> list[tuple[StreamId, bytes]]:
        """Add data and return every frame it completes.

        Raises:
            StreamCopyError: If a header names an unknown stream.
        """
        self._buffer.extend(data)
        frames: list[tuple[StreamId, bytes]] = []

        while len(self._buffer) >= FRAME_HEADER.size:
            stream_id, length = FRAME_HEADER.unpack_from(self._buffer)
            end = FRAME_HEADER.size + length
            if len(self._buffer) < end:
                break
            try:
                stream = StreamId(stream_id)
            except ValueError:
                raise StreamCopyError(
                    f"Unrecognized stream id {stream_id} in attach stream"
                ) from None
            frames.append((stream, bytes(self._buffer[FRAME_HEADER.size : end])))
            del self._buffer[:end]

        return frames


class ErrorSignal:
    """First-error-wins slot plus the stop event for copy loops."""

    def __init__(self) -> None:
        self.stop = threading.Event()
        self._lock = threading.Lock()
        self.error: StreamCopyError | None = None

    def report(self, error: StreamCopyError) -> bool:
        """Record ``error`` unless an error was already reported or copying stopped.

        Returns:
            True if the error was recorded.
        """
        with self._lock:
            if self.error is not None or self.stop.is_set():
                logger.debug("Dropping late stream error: %s", error)
                return False
            self.error = error
            self.stop.set()
        logger.error("Stream copy failed: %s", error)
        return True

    def finish(self) -> StreamCopyError | None:
        """Stop copying and return the error reported so far, if any."""
        with self._lock:
            self.stop.set()
            return self.error


def _copy_output(
    stream: AttachedStream,
    demuxer: FrameDemuxer | None,
    stdout: BinaryIO,
    stderr: BinaryIO,
    errors: ErrorSignal,
    poll_interval: float,
) -> None:
    try:
        while not errors.stop.is_set():
            ready, _, _ = select.select([stream], [], [], poll_interval)
            if not ready:
                continue
            data = stream.recv(COPY_CHUNK_SIZE)
            if not data:
                break

            if demuxer is None:
                stdout.write(data)
                stdout.flush()
                continue

            for stream_id, payload in demuxer.feed(data):
                target = stderr if stream_id == StreamId.STDERR else stdout
                target.write(payload)
                target.flush()
        else:
            return

        if demuxer is not None and demuxer.pending:
            raise StreamCopyError(
                f"Attach stream ended inside a frame ({demuxer.pending} bytes left)"
            )
    except StreamCopyError as e:
        errors.report(e)
    except (OSError, ValueError) as e:
        errors.report(StreamCopyError(f"Error copying container output: {e}"))


def _copy_input(
    stdin_fd: int,
    stream: AttachedStream,
    errors: ErrorSignal,
    poll_interval: float,
) -> None:
    try:
        while not errors.stop.is_set():
            ready, _, _ = select.select([stdin_fd], [], [], poll_interval)
            if not ready:
                continue
            data = os.read(stdin_fd, COPY_CHUNK_SIZE)
            if not data:
                logger.debug("Local stdin reached end of file")
                stream.close_write()
                return
            stream.sendall(data)
    except (OSError, ValueError) as e:
        errors.report(StreamCopyError(f"Error copying input to container: {e}"))


def _spawn(name: str, target: Callable[..., None], *args: Any) -> threading.Thread:
    thread = threading.Thread(target=target, args=args, name=name, daemon=True)
    thread.start()
    return thread


def _close_stream(stream: AttachedStream, errors: ErrorSignal) -> None:
    # Closing releases copy threads blocked on the socket; their errors are dropped
    errors.stop.set()
    stream.close()


def _stop_helpers(errors: ErrorSignal, helpers: list[threading.Thread]) -> None:
    errors.stop.set()
    for thread in helpers:
        thread.join()


def _wait_for_exit(
    engine: Engine,
    container_id: str,
    token: CancelToken,
    errors: ErrorSignal,
    poll_interval: float,
) -> int:
    while True:
        if errors.error is not None:
            raise errors.error
        token.raise_if_cancelled()

        try:
            status = engine.wait(container_id, timeout=poll_interval)
        except EngineError as e:
            if token.cancelled:
                raise BuildInterruptedError(
                    f"Build interrupted ({token.reason}) while waiting for "
                    f"container {container_id!r}"
                ) from e
            raise

        if status is None:
            continue
        token.raise_if_cancelled()
        return status


def run_in_container(
    engine: Engine,
    state: BuildState,
    container_id: str,
    token: CancelToken | None = None,
    stdin: BinaryIO | None = None,
    stdout: BinaryIO | None = None,
    stderr: BinaryIO | None = None,
    console: Console | None = None,
    dispatcher: SignalDispatcher | None = None,
    settings: Settings | None = None,
) -> None:
    """Start a created container and relay its stdio until it exits.

    The container is attached before it is started so no output is lost.
    With ``state.stdin`` the local terminal is put in raw mode and input is
    forwarded. Without ``state.tty`` the output stream is demultiplexed
    into ``stdout`` and ``stderr``; with it, bytes are copied as they are.

    Args:
        engine: Engine adapter.
        state: Build state (reads ``tty`` and ``stdin`` only).
        container_id: Created, not yet started, container.
        token: Cancellation token of the step (created if omitted).
        stdin: Local input stream (defaults to the process stdin).
        stdout: Destination for output (defaults to the process stdout).
        stderr: Destination for errors (defaults to the process stderr).
        console: Console for the output markers.
        dispatcher: Signal dispatcher (process-wide one if omitted).
        settings: Application settings.

    Raises:
        EngineError: If attaching, starting or waiting fails.
        TerminalError: If raw mode cannot be engaged.
        StreamCopyError: If relaying output or input fails.
        BuildInterruptedError: If an interrupt arrives before exit.
        NonZeroExitError: If the process exits with a non-zero status.
    """
    if token is None:
        token = CancelToken()
    if dispatcher is None:
        dispatcher = get_dispatcher()
    if settings is None:
        settings = get_settings()
    if console is None:
        console = Console()
    stdin = stdin if stdin is not None else sys.stdin.buffer
    stdout = stdout if stdout is not None else sys.stdout.buffer
    stderr = stderr if stderr is not None else sys.stderr.buffer
    poll_interval = settings.copy_poll_interval

    stream = engine.attach(container_id, stdin=state.stdin)
    errors = ErrorSignal()
    helpers: list[threading.Thread] = []

    with ExitStack() as stack:
        stack.callback(_stop_helpers, errors, helpers)
        stack.callback(_close_stream, stream, errors)
        stack.enter_context(dispatcher.listen(token))

        if state.stdin:
            stdin_fd = stdin.fileno()
            stack.enter_context(raw_terminal(stdin_fd))
            helpers.append(
                _spawn("box-stdin", _copy_input, stdin_fd, stream, errors, poll_interval)
            )

        engine.start(container_id)

        if not state.stdin:
            console.print(BEGIN_MARKER, style=MARKER_STYLE)

        output = _spawn(
            "box-output",
            _copy_output,
            stream,
            None if state.tty else FrameDemuxer(),
            stdout,
            stderr,
            errors,
            poll_interval,
        )
        helpers.append(output)

        try:
            status = _wait_for_exit(
                engine, container_id, token, errors, settings.wait_poll_interval
            )
        except (StreamCopyError, EngineError) as e:
            console.print(f"+++ Error: {e}")
            raise

        output.join(settings.output_drain_timeout)
        if output.is_alive():
            logger.warning(
                "Output of %s still open after %.1fs, stopping copy",
                container_id[:12],
                settings.output_drain_timeout,
            )
        error = errors.finish()
        if error is not None:
            raise error

    if not state.stdin:
        console.print(END_MARKER, style=MARKER_STYLE)

    if status != 0:
        raise NonZeroExitError(status, container_id)

    logger.debug("Container %s exited cleanly", container_id[:12])


__all__ = [
    "BEGIN_MARKER",
    "END_MARKER",
    "ErrorSignal",
    "FrameDemuxer",
    "run_in_container",
]
