"""Executor contract shared by build backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from typing import BinaryIO

from box_builder.buildconfig import BuildConfig
from box_builder.executor.signals import CancelToken

# Runs against a live step container; a non-empty return overrides the
# step fingerprint.
Hook = Callable[[str, CancelToken], str | None]


class Executor(ABC):
    """Operations a build pipeline drives, one step at a time."""

    @property
    @abstractmethod
    def image_id(self) -> str:
        """Id of the most recent resulting image."""

    @property
    @abstractmethod
    def config(self) -> BuildConfig:
        """Current build configuration."""

    @abstractmethod
    def load_config(self, config: BuildConfig) -> None: ...

    @abstractmethod
    def use_cache(self, enabled: bool) -> None: ...

    @abstractmethod
    def use_tty(self, enabled: bool) -> None: ...

    @abstractmethod
    def set_stdin(self, enabled: bool) -> None: ...

    @abstractmethod
    def check_cache(self, fingerprint: str) -> bool:
        """Adopt a cached image for ``fingerprint`` if one exists."""

    @abstractmethod
    def create(self) -> str: ...

    @abstractmethod
    def destroy(self, container_id: str) -> None: ...

    @abstractmethod
    def commit(
        self,
        fingerprint: str,
        hook: Hook | None = None,
        token: CancelToken | None = None,
    ) -> str:
        """Run ``hook`` in a fresh container and commit the result."""

    @abstractmethod
    def run_hook(self, container_id: str, token: CancelToken) -> str | None:
        """Hook that runs the configured command inside the container."""

    @abstractmethod
    def copy_one_file_from_container(self, path: str) -> bytes: ...

    @abstractmethod
    def copy_from_container(
        self, container_id: str, path: str
    ) -> tuple[Iterator[bytes], int]: ...

    @abstractmethod
    def copy_to_container(self, container_id: str, content: BinaryIO | None) -> str: ...

    @abstractmethod
    def tag(self, tag: str) -> None: ...

    @abstractmethod
    def fetch(self, reference: str) -> str: ...


__all__ = ["Executor", "Hook"]
