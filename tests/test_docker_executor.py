"""Tests for executor/docker_executor.py module.

The engine adapter is mocked; these tests check how DockerExecutor
wires the build state through the executor operations.
"""

import io
import os
import tarfile
from contextlib import contextmanager
from unittest.mock import call

import pytest

from box_builder.buildconfig import BuildConfig
from box_builder.executor import (
    BuildInterruptedError,
    DockerExecutor,
    EngineError,
    Executor,
)
from box_builder.types import ImageRecord


@pytest.fixture
def executor(engine, settings, console, dispatcher) -> DockerExecutor:
    return DockerExecutor(
        engine=engine, settings=settings, console=console, dispatcher=dispatcher
    )


class TestDockerExecutor:
    """Tests for DockerExecutor class."""

    def test_is_executor(self, executor):
        """Should implement the executor contract."""
        assert isinstance(executor, Executor)

    def test_state_from_settings(self, engine, console, dispatcher):
        """Should take the toggles from settings."""
        from box_builder.config import Settings

        executor = DockerExecutor(
            engine=engine,
            settings=Settings(use_cache=False, tty=True),
            console=console,
            dispatcher=dispatcher,
        )

        assert executor.state.use_cache is False
        assert executor.state.tty is True

    def test_toggles(self, executor):
        """Should update the build state."""
        executor.use_cache(False)
        executor.use_tty(True)
        executor.set_stdin(True)

        assert executor.state.use_cache is False
        assert executor.state.tty is True
        assert executor.state.stdin is True

    def test_load_config(self, executor):
        """Should replace the build configuration."""
        executor.load_config(BuildConfig(image="sha256:a", cmd=["sh"]))

        assert executor.image_id == "sha256:a"
        assert executor.config.cmd == ["sh"]

    def test_fetch_then_cache_hit(self, executor, engine):
        """Should adopt a cached child of the fetched image."""
        engine.inspect_image.side_effect = [
            ImageRecord(id="sha256:base"),
            ImageRecord(id="sha256:step", parent_id="sha256:base", comment="run true"),
        ]
        engine.list_images.return_value = [
            ImageRecord(id="sha256:step", parent_id="sha256:base")
        ]

        executor.fetch("alpine")

        assert executor.check_cache("run true") is True
        assert executor.image_id == "sha256:step"

    def test_commit_without_hook(self, executor, engine):
        """Should commit a container of the current image."""
        executor.load_config(BuildConfig(image="sha256:base"))
        engine.create.return_value = "c1"
        engine.commit.return_value = "sha256:next"

        assert executor.commit("copy file") == "sha256:next"
        assert executor.image_id == "sha256:next"

    def test_interrupted_run_step(
        self, engine, settings, console, dispatcher, attach_pair, monkeypatch
    ):
        """Should destroy the container and restore the terminal once on interrupt."""
        calls = {"enter": 0, "exit": 0}

        @contextmanager
        def fake_raw_terminal(fd):
            calls["enter"] += 1
            try:
                yield
            finally:
                calls["exit"] += 1

        monkeypatch.setattr(
            "box_builder.executor.interactive.raw_terminal", fake_raw_terminal
        )
        stream, _ = attach_pair
        engine.create.return_value = "c1"
        engine.attach.return_value = stream

        def wait(container_id, timeout):
            dispatcher.deliver()
            return None

        engine.wait.side_effect = wait
        read_fd, write_fd = os.pipe()
        try:
            with os.fdopen(read_fd, "rb") as stdin:
                executor = DockerExecutor(
                    engine=engine,
                    settings=settings,
                    console=console,
                    dispatcher=dispatcher,
                    stdin=stdin,
                    stdout=io.BytesIO(),
                    stderr=io.BytesIO(),
                )
                executor.load_config(BuildConfig(image="sha256:base"))
                executor.set_stdin(True)

                with pytest.raises(BuildInterruptedError):
                    executor.commit("run sh", hook=executor.run_hook)
        finally:
            os.close(write_fd)

        assert call("c1", force=True) in engine.remove.call_args_list
        assert calls == {"enter": 1, "exit": 1}
        engine.commit.assert_not_called()
        assert executor.image_id == "sha256:base"

    def test_create_and_destroy(self, executor, engine):
        """Should create from the current state and force-remove."""
        engine.create.return_value = "c1"

        container_id = executor.create()
        executor.destroy(container_id)

        engine.remove.assert_called_once_with("c1", force=True)

    def test_copy_one_file(self, executor, engine):
        """Should read a single file through a throwaway container."""
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            info = tarfile.TarInfo("hosts")
            info.size = 9
            tar.addfile(info, io.BytesIO(b"127.0.0.1"))
        engine.create.return_value = "c1"
        engine.get_archive.return_value = (iter([buffer.getvalue()]), 9)

        assert executor.copy_one_file_from_container("/etc/hosts") == b"127.0.0.1"

    def test_copy_from_container(self, executor, engine):
        """Should hand back the engine's tar stream."""
        engine.get_archive.return_value = (iter([b"tar"]), 3)

        chunks, size = executor.copy_from_container("c1", "/src")

        assert list(chunks) == [b"tar"]
        assert size == 3

    def test_copy_to_container_imports(self, executor, engine):
        """Should import content as an image named after the given id."""
        engine.load.side_effect = lambda data: (b"".join(data), iter([]))[1]

        assert executor.copy_to_container("img1", io.BytesIO(b"layer")) == "img1"
        assert executor.image_id == "img1"

    def test_tag(self, executor, engine):
        """Should split the reference into repository and tag."""
        executor.load_config(BuildConfig(image="sha256:a"))

        executor.tag("registry:5000/app:1.0")

        engine.tag.assert_called_once_with("sha256:a", "registry:5000/app", tag="1.0")

    def test_tag_without_version(self, executor, engine):
        """Should pass no tag when the reference has none."""
        executor.load_config(BuildConfig(image="sha256:a"))

        executor.tag("app")

        engine.tag.assert_called_once_with("sha256:a", "app", tag=None)

    def test_tag_nothing_built(self, executor, engine):
        """Should refuse to tag before any image exists."""
        with pytest.raises(EngineError, match="No image to tag"):
            executor.tag("app:latest")

        engine.tag.assert_not_called()
