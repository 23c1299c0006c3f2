"""Mutable build session state."""

from dataclasses import dataclass, field

from box_builder.buildconfig import BuildConfig


@dataclass
class BuildState:
    """Session record owned by the sequential build pipeline.

    ``config.image`` holds the resulting image id. It only changes on a
    successful commit, cache hit, fetch or archive import. Helper threads
    may read it but never assign it.

    Attributes:
        config: Accumulated build configuration.
        use_cache: Consult the image cache before executing steps.
        tty: Allocate a TTY for run steps and render live pull progress.
        stdin: Forward local stdin into run steps.
    """

    config: BuildConfig = field(default_factory=BuildConfig)
    use_cache: bool = True
    tty: bool = False
    stdin: bool = False

    @property
    def image(self) -> str:
        """Id of the most recent resulting image ('' before the first)."""
        return self.config.image

    @image.setter
    def image(self, value: str) -> None:
        self.config.image = value

    def container_spec(self) -> dict:
        """Engine container config for the current snapshot."""
        return self.config.to_container_spec(tty=self.tty, stdin=self.stdin)


__all__ = ["BuildState"]
