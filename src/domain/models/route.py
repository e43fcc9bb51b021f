from __future__ import annotations

from dataclasses import dataclass, field

from .stop import Stop


@dataclass(frozen=True, slots=True)
class BusRoute:
    """Ordered stops served by one vehicle.

    Order is display order only; proximity logic never depends on it.
    """

    vehicle_id: str
    name: str
    stops: tuple[Stop, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for stop in self.stops:
            if stop.id in seen:
                raise ValueError(
                    f"Duplicate stop id {stop.id!r} in route {self.vehicle_id!r}"
                )
            seen.add(stop.id)
