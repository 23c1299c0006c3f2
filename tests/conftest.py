"""Shared fixtures for executor tests.

The engine adapter is replaced with a MagicMock; attach streams are real
socket pairs so framing and copy loops run for real.
"""

import io
import socket
from unittest.mock import MagicMock

import pytest
from rich.console import Console

from box_builder.config import Settings
from box_builder.executor.engine import AttachedStream, Engine
from box_builder.executor.signals import SignalDispatcher
from box_builder.executor.state import BuildState


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings with short poll intervals and a private temp directory."""
    return Settings(
        wait_poll_interval=0.01,
        copy_poll_interval=0.01,
        output_drain_timeout=2.0,
        tmp_dir=tmp_path,
    )


@pytest.fixture
def engine() -> MagicMock:
    """Engine adapter mock."""
    return MagicMock(spec=Engine)


@pytest.fixture
def state() -> BuildState:
    """Build state with caching enabled and no resulting image."""
    return BuildState()


@pytest.fixture
def console_output() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def console(console_output) -> Console:
    """Console writing to an in-memory buffer."""
    return Console(file=console_output, width=120, color_system=None)


@pytest.fixture
def dispatcher(console) -> SignalDispatcher:
    return SignalDispatcher(console=console)


@pytest.fixture
def attach_pair():
    """Return (AttachedStream, remote socket) connected to each other."""
    local, remote = socket.socketpair()
    stream = AttachedStream(local)
    yield stream, remote
    stream.close()
    remote.close()
