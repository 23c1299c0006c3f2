"""Executor backed by a Docker engine.

Composes the cache index, container lifecycle, interactive run, archive
import and fetch around a single ``BuildState``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import BinaryIO

from docker.utils import parse_repository_tag
from rich.console import Console

from box_builder.buildconfig import BuildConfig
from box_builder.config import Settings, get_settings
from box_builder.executor.archive import import_image_archive
from box_builder.executor.base import Executor, Hook
from box_builder.executor.cache import check_cache
from box_builder.executor.engine import Engine, get_engine
from box_builder.executor.errors import EngineError
from box_builder.executor.fetch import fetch_image
from box_builder.executor.interactive import run_in_container
from box_builder.executor.lifecycle import (
    commit_step,
    copy_file_from_image,
    create_container,
    destroy_container,
)
from box_builder.executor.signals import CancelToken, SignalDispatcher, get_dispatcher
from box_builder.executor.state import BuildState

logger = logging.getLogger(__name__)


class DockerExecutor(Executor):
    """Executor that materializes steps through a Docker engine.

    Attributes:
        engine: Engine adapter.
        state: Build state owned by this executor.
        settings: Application settings.
    """

    def __init__(
        self,
        engine: Engine | None = None,
        settings: Settings | None = None,
        console: Console | None = None,
        dispatcher: SignalDispatcher | None = None,
        stdin: BinaryIO | None = None,
        stdout: BinaryIO | None = None,
        stderr: BinaryIO | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.engine = engine or get_engine(self.settings)
        self.console = console or Console()
        self.dispatcher = dispatcher or get_dispatcher()
        self.state = BuildState(
            use_cache=self.settings.use_cache,
            tty=self.settings.tty,
            stdin=self.settings.stdin,
        )
        self._stdin = stdin
        self._stdout = stdout
        self._stderr = stderr

    @property
    def image_id(self) -> str:
        return self.state.image

    @property
    def config(self) -> BuildConfig:
        return self.state.config

    def load_config(self, config: BuildConfig) -> None:
        self.state.config = config

    def use_cache(self, enabled: bool) -> None:
        self.state.use_cache = enabled

    def use_tty(self, enabled: bool) -> None:
        self.state.tty = enabled

    def set_stdin(self, enabled: bool) -> None:
        """Forward local stdin during run steps, mainly for debugging."""
        self.state.stdin = enabled

    def check_cache(self, fingerprint: str) -> bool:
        return check_cache(self.engine, self.state, fingerprint, console=self.console)

    def create(self) -> str:
        return create_container(self.engine, self.state)

    def destroy(self, container_id: str) -> None:
        destroy_container(self.engine, container_id)

    def commit(
        self,
        fingerprint: str,
        hook: Hook | None = None,
        token: CancelToken | None = None,
    ) -> str:
        return commit_step(
            self.engine,
            self.state,
            fingerprint,
            hook=hook,
            token=token,
            dispatcher=self.dispatcher,
        )

    def run_hook(self, container_id: str, token: CancelToken) -> str | None:
        run_in_container(
            self.engine,
            self.state,
            container_id,
            token=token,
            stdin=self._stdin,
            stdout=self._stdout,
            stderr=self._stderr,
            console=self.console,
            dispatcher=self.dispatcher,
            settings=self.settings,
        )
        return None

    def copy_one_file_from_container(self, path: str) -> bytes:
        return copy_file_from_image(self.engine, self.state, path)

    def copy_from_container(
        self, container_id: str, path: str
    ) -> tuple[Iterator[bytes], int]:
        return self.engine.get_archive(container_id, path)

    def copy_to_container(self, container_id: str, content: BinaryIO | None) -> str:
        """Import ``content`` as a new image named after ``container_id``."""
        return import_image_archive(
            self.engine, self.state, container_id, content, settings=self.settings
        )

    def tag(self, tag: str) -> None:
        """Tag the resulting image as ``repository[:tag]``.

        Raises:
            EngineError: If there is no resulting image or tagging fails.
        """
        if not self.state.image:
            raise EngineError("No image to tag: nothing has been built yet")
        repository, version = parse_repository_tag(tag)
        self.engine.tag(self.state.image, repository, tag=version)
        logger.info("Tagged %s as %s", self.state.image, tag)

    def fetch(self, reference: str) -> str:
        return fetch_image(self.engine, self.state, reference, console=self.console)


__all__ = ["DockerExecutor"]
