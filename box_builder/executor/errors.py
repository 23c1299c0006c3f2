"""Error types raised by the executor.

Every error carries a stable ``code`` for structured handling. A cache
miss is not an error; ``check_cache`` simply returns False.
"""


class ExecutorError(Exception):
    """Base error for executor operations."""

    def __init__(self, message: str, code: str = "executor_error") -> None:
        super().__init__(message)
        self.code = code


class EngineError(ExecutorError):
    """Raised when an engine call fails."""

    def __init__(self, message: str, code: str = "engine_error") -> None:
        super().__init__(message, code=code)


class ContainerNotFoundError(EngineError):
    """Raised when the engine reports a container as absent."""

    def __init__(self, container_id: str) -> None:
        super().__init__(
            f"Container not found: {container_id}", code="container_not_found"
        )
        self.container_id = container_id


class ImageNotFoundError(EngineError):
    """Raised when the engine reports an image as absent."""

    def __init__(self, reference: str) -> None:
        super().__init__(f"Image not found: {reference}", code="image_not_found")
        self.reference = reference


class NonZeroExitError(ExecutorError):
    """Raised when the contained process exits with a non-zero status."""

    def __init__(self, exit_code: int, container_id: str) -> None:
        super().__init__(
            f"Command exited with status {exit_code} for container {container_id!r}",
            code="nonzero_exit",
        )
        self.exit_code = exit_code
        self.container_id = container_id


class StreamCopyError(ExecutorError):
    """Raised when copying an attached stream fails before end-of-stream."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="stream_error")


class ArchiveImportError(ExecutorError):
    """Raised when the engine reports an error while importing an archive."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="archive_import_error")


class BuildInterruptedError(ExecutorError):
    """Raised when a step is aborted by an interrupt or terminate signal."""

    def __init__(self, message: str = "Build interrupted") -> None:
        super().__init__(message, code="interrupted")


class TerminalError(ExecutorError):
    """Raised when the local terminal cannot be switched to raw mode."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="terminal_error")


__all__ = [
    "ArchiveImportError",
    "BuildInterruptedError",
    "ContainerNotFoundError",
    "EngineError",
    "ExecutorError",
    "ImageNotFoundError",
    "NonZeroExitError",
    "StreamCopyError",
    "TerminalError",
]
