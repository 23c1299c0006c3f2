"""Build execution core.

This module handles:
- Cache lookup by step fingerprint
- Ephemeral container lifecycle and commit orchestration
- Interactive run with stdio relay and cancellation
- Direct image archive import
- Base image fetch

Access submodules directly (box_builder.executor.cache, etc.) or use
DockerExecutor, which composes them.
"""

from box_builder.executor.base import Executor, Hook
from box_builder.executor.docker_executor import DockerExecutor
from box_builder.executor.errors import (
    ArchiveImportError,
    BuildInterruptedError,
    ContainerNotFoundError,
    EngineError,
    ExecutorError,
    ImageNotFoundError,
    NonZeroExitError,
    StreamCopyError,
    TerminalError,
)
from box_builder.executor.signals import CancelToken
from box_builder.executor.state import BuildState

__all__ = [
    "ArchiveImportError",
    "BuildInterruptedError",
    "BuildState",
    "CancelToken",
    "ContainerNotFoundError",
    "DockerExecutor",
    "EngineError",
    "Executor",
    "ExecutorError",
    "Hook",
    "ImageNotFoundError",
    "NonZeroExitError",
    "StreamCopyError",
    "TerminalError",
]
