from __future__ import annotations

from dataclasses import dataclass

from .geo import GeoPoint


@dataclass(frozen=True, slots=True)
class Stop:
    """A named stop on a bus route."""

    id: str
    name: str
    location: GeoPoint

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Stop id must be non-empty")
