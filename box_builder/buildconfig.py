"""Build configuration model.

The build configuration is the state a sequence of steps accumulates:
base image reference, command, environment, working directory and exposed
ports. The executor consumes it to create containers and image configs,
and merges engine image configs back into it on cache hits and fetches.
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BuildConfig(BaseModel):
    """Schema for the accumulated build configuration.

    Attributes:
        image: Image reference or id new containers are created from.
        cmd: Default command.
        entrypoint: Entrypoint prepended to the command.
        env: Environment variables, in declaration order.
        workdir: Working directory for processes.
        user: User processes run as.
        exposed_ports: Ports in ``port/proto`` form.
        architecture: Architecture recorded in imported image configs.
        os: Operating system recorded in imported image configs.
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    image: str = Field(default="", description="Image reference or id")
    cmd: list[str] = Field(default_factory=list)
    entrypoint: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    workdir: str = Field(default="")
    user: str = Field(default="")
    exposed_ports: list[str] = Field(default_factory=list)
    architecture: str = Field(default="amd64")
    os: str = Field(default="linux")

    @field_validator("exposed_ports")
    @classmethod
    def validate_exposed_ports(cls, v: list[str]) -> list[str]:
        """Normalize ports to ``port/proto``, defaulting to tcp."""
        normalized: list[str] = []
        for port in v:
            number, _, proto = str(port).partition("/")
            if not number.isdigit():
                raise ValueError(f"exposed port must be numeric, got '{port}'")
            entry = f"{number}/{proto or 'tcp'}"
            if entry not in normalized:
                normalized.append(entry)
        return normalized

    def _engine_fields(self) -> dict[str, Any]:
        return {
            "Cmd": list(self.cmd) or None,
            "Entrypoint": list(self.entrypoint) or None,
            "Env": [f"{key}={value}" for key, value in self.env.items()],
            "WorkingDir": self.workdir,
            "User": self.user,
            "ExposedPorts": {port: {} for port in self.exposed_ports},
        }

    def to_container_spec(self, tty: bool = False, stdin: bool = False) -> dict[str, Any]:
        """Convert to an engine container config.

        The result is accepted both by container creation and as the
        config recorded on commit.

        Args:
            tty: Allocate a pseudo terminal.
            stdin: Keep stdin open and attach it.

        Returns:
            Engine container config dictionary.
        """
        spec = self._engine_fields()
        spec.update(
            {
                "Image": self.image,
                "Tty": tty,
                "OpenStdin": stdin,
                "StdinOnce": stdin,
                "AttachStdin": stdin,
                "AttachStdout": True,
                "AttachStderr": True,
            }
        )
        return spec

    def to_image_spec(
        self,
        diff_ids: list[str] | None = None,
        comment: str = "",
    ) -> dict[str, Any]:
        """Convert to a minimal base image config blob.

        Args:
            diff_ids: Layer digests recorded in ``rootfs``.
            comment: Comment of the single history entry.

        Returns:
            Image config dictionary suitable for an image archive.
        """
        created = datetime.now(timezone.utc).isoformat()
        history: dict[str, Any] = {"created": created, "created_by": "box import"}
        if comment:
            history["comment"] = comment
        if not diff_ids:
            history["empty_layer"] = True
        return {
            "architecture": self.architecture,
            "os": self.os,
            "created": created,
            "config": self._engine_fields(),
            "rootfs": {"type": "layers", "diff_ids": list(diff_ids or [])},
            "history": [history],
        }

    def merge_engine_config(self, config: dict[str, Any] | None) -> None:
        """Adopt the fields an engine image config defines.

        Fields the engine config leaves unset keep their current value.

        Args:
            config: ``Config`` section of an image inspect payload.
        """
        if not config:
            return

        if config.get("Cmd") is not None:
            self.cmd = list(config["Cmd"])
        if config.get("Entrypoint") is not None:
            self.entrypoint = list(config["Entrypoint"])
        if config.get("Env") is not None:
            env: dict[str, str] = {}
            for item in config["Env"]:
                key, _, value = item.partition("=")
                env[key] = value
            self.env = env
        if config.get("WorkingDir"):
            self.workdir = config["WorkingDir"]
        if config.get("User"):
            self.user = config["User"]
        if config.get("ExposedPorts") is not None:
            self.exposed_ports = list(config["ExposedPorts"])


__all__ = ["BuildConfig"]
