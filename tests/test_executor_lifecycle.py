"""Tests for executor/lifecycle.py module.

Tests container creation, idempotent destruction and the commit
orchestration with mocked engine calls.
"""

import io
import tarfile
from unittest.mock import MagicMock, call

import pytest

from box_builder.executor.errors import (
    BuildInterruptedError,
    ContainerNotFoundError,
    EngineError,
    NonZeroExitError,
)
from box_builder.executor.lifecycle import (
    commit_step,
    copy_file_from_image,
    create_container,
    destroy_container,
)
from box_builder.executor.signals import CancelToken


def _tar_bytes(files: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


class TestCreateContainer:
    """Tests for create_container function."""

    def test_creates_from_state_snapshot(self, engine, state):
        """Should pass the current container spec to the engine."""
        state.image = "base"
        state.config.cmd = ["true"]
        engine.create.return_value = "c1"

        assert create_container(engine, state) == "c1"
        spec = engine.create.call_args.args[0]
        assert spec["Image"] == "base"
        assert spec["Cmd"] == ["true"]


class TestDestroyContainer:
    """Tests for destroy_container function."""

    def test_force_removes(self, engine):
        """Should force-remove the container."""
        destroy_container(engine, "c1")
        engine.remove.assert_called_once_with("c1", force=True)

    def test_second_call_tolerates_absence(self, engine):
        """Should not fail when the container is already gone."""
        engine.remove.side_effect = [None, ContainerNotFoundError("c1")]

        destroy_container(engine, "c1")
        destroy_container(engine, "c1")

        assert engine.remove.call_count == 2

    def test_other_failures_propagate(self, engine):
        """Should raise engine failures other than absence."""
        engine.remove.side_effect = EngineError("daemon unavailable")

        with pytest.raises(EngineError):
            destroy_container(engine, "c1")


class TestCommitStep:
    """Tests for commit_step function."""

    @pytest.fixture(autouse=True)
    def _engine_defaults(self, engine):
        engine.create.return_value = "c1"
        engine.commit.return_value = "img2"

    def test_commits_and_records_image(self, engine, state, dispatcher):
        """Should commit with the fingerprint as comment and adopt the image."""
        state.image = "img1"

        image_id = commit_step(engine, state, "run true", dispatcher=dispatcher)

        assert image_id == "img2"
        assert state.image == "img2"
        engine.commit.assert_called_once()
        assert engine.commit.call_args.args[0] == "c1"
        assert engine.commit.call_args.kwargs["comment"] == "run true"

    def test_normal_removal_before_cleanup(self, engine, state, dispatcher):
        """Should remove normally, then run the tolerant deferred cleanup."""
        engine.remove.side_effect = [None, ContainerNotFoundError("c1")]

        commit_step(engine, state, "run true", dispatcher=dispatcher)

        assert engine.remove.call_args_list == [call("c1"), call("c1", force=True)]

    def test_hook_receives_container_and_token(self, engine, state, dispatcher):
        """Should call the hook with the container id and the step token."""
        hook = MagicMock(return_value=None)
        token = CancelToken()

        commit_step(engine, state, "fp", hook=hook, token=token, dispatcher=dispatcher)

        hook.assert_called_once_with("c1", token)

    def test_hook_overrides_fingerprint(self, engine, state, dispatcher):
        """Should stamp the hook's fingerprint when it returns one."""
        hook = MagicMock(return_value="copy sha256:abc")

        commit_step(engine, state, "copy", hook=hook, dispatcher=dispatcher)

        assert engine.commit.call_args.kwargs["comment"] == "copy sha256:abc"

    def test_hook_failure_destroys_container(self, engine, state, dispatcher):
        """Should destroy the container and keep the image when the hook fails."""
        state.image = "img1"
        hook = MagicMock(side_effect=NonZeroExitError(2, "c1"))

        with pytest.raises(NonZeroExitError):
            commit_step(engine, state, "fp", hook=hook, dispatcher=dispatcher)

        engine.commit.assert_not_called()
        engine.remove.assert_called_once_with("c1", force=True)
        assert state.image == "img1"

    def test_commit_failure_destroys_container(self, engine, state, dispatcher):
        """Should destroy the container when the commit fails."""
        state.image = "img1"
        engine.commit.side_effect = EngineError("Error during commit: disk full")

        with pytest.raises(EngineError, match="disk full"):
            commit_step(engine, state, "fp", dispatcher=dispatcher)

        engine.remove.assert_called_once_with("c1", force=True)
        assert state.image == "img1"

    def test_removal_failure_is_fatal(self, engine, state, dispatcher):
        """Should fail the step when the normal removal fails."""
        state.image = "img1"
        engine.remove.side_effect = [EngineError("busy"), None]

        with pytest.raises(EngineError, match="intermediate container"):
            commit_step(engine, state, "fp", dispatcher=dispatcher)

        assert state.image == "img1"
        assert engine.remove.call_args_list[-1] == call("c1", force=True)

    def test_interrupt_during_hook(self, engine, state, dispatcher):
        """Should destroy the container on interrupt and abort the commit."""
        state.image = "img1"

        def hook(container_id, token):
            dispatcher.deliver()
            assert token.cancelled

        with pytest.raises(BuildInterruptedError):
            commit_step(engine, state, "fp", hook=hook, dispatcher=dispatcher)

        engine.commit.assert_not_called()
        assert call("c1", force=True) in engine.remove.call_args_list
        assert state.image == "img1"

    def test_interrupt_during_commit(self, engine, state, dispatcher):
        """Should report an interrupt that lands while committing as an interrupt."""
        state.image = "img1"

        def commit(container_id, config, comment):
            dispatcher.deliver()
            return "img2"

        def remove(container_id, force=False):
            if not force:
                raise ContainerNotFoundError(container_id)

        engine.commit.side_effect = commit
        engine.remove.side_effect = remove

        with pytest.raises(BuildInterruptedError, match="while committing") as exc_info:
            commit_step(engine, state, "fp", dispatcher=dispatcher)

        assert isinstance(exc_info.value.__cause__, ContainerNotFoundError)
        assert call("c1", force=True) in engine.remove.call_args_list
        assert state.image == "img1"

    def test_commit_failure_after_interrupt(self, engine, state, dispatcher):
        """Should report a commit broken by the interrupt cleanup as an interrupt."""
        state.image = "img1"

        def commit(container_id, config, comment):
            dispatcher.deliver()
            raise EngineError("Error during commit: no such container")

        engine.commit.side_effect = commit

        with pytest.raises(BuildInterruptedError, match="while committing"):
            commit_step(engine, state, "fp", dispatcher=dispatcher)

        assert state.image == "img1"

    def test_create_failure_propagates(self, engine, state, dispatcher):
        """Should fail before anything else when creation fails."""
        engine.create.side_effect = EngineError("Could not create container")

        with pytest.raises(EngineError):
            commit_step(engine, state, "fp", dispatcher=dispatcher)

        engine.remove.assert_not_called()


class TestCopyFileFromImage:
    """Tests for copy_file_from_image function."""

    def test_returns_file_content(self, engine, state):
        """Should return the content of the requested file."""
        engine.create.return_value = "c1"
        engine.get_archive.return_value = (
            iter([_tar_bytes({"os-release": b"ID=alpine\n"})]),
            10,
        )

        assert copy_file_from_image(engine, state, "/etc/os-release") == b"ID=alpine\n"
        engine.get_archive.assert_called_once_with("c1", "/etc/os-release")
        engine.remove.assert_called_once_with("c1", force=True)

    def test_missing_file(self, engine, state):
        """Should raise and still destroy the container when the file is absent."""
        engine.create.return_value = "c1"
        engine.get_archive.return_value = (iter([_tar_bytes({"other": b"x"})]), 1)

        with pytest.raises(EngineError, match="Could not find"):
            copy_file_from_image(engine, state, "/etc/os-release")
        engine.remove.assert_called_once_with("c1", force=True)
