"""Shared type definitions for box_builder.

This module contains dataclasses and enums shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


class StreamId(IntEnum):
    """Stream identifiers used in the engine's multiplexed attach framing."""

    STDIN = 0
    STDOUT = 1
    STDERR = 2


@dataclass
class ImageRecord:
    """Read-only view of an engine image.

    Listing an image only yields ``id`` and ``parent_id``; ``comment`` and
    ``config`` are populated from an inspect.
    """

    id: str
    parent_id: str = ""
    comment: str = ""
    config: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_listing(cls, data: dict[str, Any]) -> "ImageRecord":
        """Build a record from one entry of an image listing."""
        return cls(id=data.get("Id", ""), parent_id=data.get("ParentId") or "")

    @classmethod
    def from_inspect(cls, data: dict[str, Any]) -> "ImageRecord":
        """Build a record from an image inspect payload."""
        return cls(
            id=data.get("Id", ""),
            parent_id=data.get("Parent") or "",
            comment=data.get("Comment") or "",
            config=data.get("Config") or {},
        )


__all__ = ["ImageRecord", "StreamId"]
