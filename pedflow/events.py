"""
Event Manager
Discrete door state changes applied at frame boundaries
"""

from dataclasses import dataclass
from typing import List, Optional

from loguru import logger

from .exceptions import ConfigurationError

ACTIONS = ("open", "close")


@dataclass(order=True)
class Event:
    """Open or close the door with the given id at the given simulated time."""

    time: float
    door_id: int
    action: str

    def __post_init__(self):
        self.action = str(self.action).lower()
        if self.action not in ACTIONS:
            raise ConfigurationError(f"Unknown event action '{self.action}' (expected one of {ACTIONS})")
        if self.time < 0:
            raise ConfigurationError(f"Event for door {self.door_id} scheduled at negative time")


class EventManager:
    """
    Holds the scheduled events in time order and applies every due event at
    the start of a frame. Any change of door state triggers a rebuild of the
    routing graph.
    """

    def __init__(self, events: Optional[List[Event]] = None, log=None):
        self.events: List[Event] = sorted(events or [])
        self.log = log or logger.bind(component="events")
        self.building = None
        self.routing_engine = None
        self._next = 0

    def init(self, building, routing_engine=None):
        """Bind to the building and check that every event targets a known door."""
        self.building = building
        self.routing_engine = routing_engine
        for event in self.events:
            if self._find_door(event.door_id) is None:
                raise ConfigurationError(f"Event at t={event.time} references the unknown door {event.door_id}")
        self.log.info("{} events scheduled", len(self.events))

    def _find_door(self, door_id: int):
        # Transitions first: they carry the exits events usually target
        door = self.building.transitions.get(door_id)
        if door is None:
            door = self.building.crossings.get(door_id)
        return door

    @property
    def pending(self) -> int:
        return len(self.events) - self._next

    def process(self, time: float) -> int:
        """
        Apply all events due at or before time.

        Args:
            time: Current simulated time

        Returns:
            Number of doors whose state changed
        """
        changed = 0
        while self._next < len(self.events) and self.events[self._next].time <= time + 1e-9:
            event = self.events[self._next]
            self._next += 1
            door = self._find_door(event.door_id)
            was_open = door.is_open
            if event.action == "open":
                door.open()
            else:
                door.close()
            if door.is_open != was_open:
                changed += 1
                self.log.info("t={:.2f}: door {} ({}) is now {}", time, door.id, door.caption,
                              "open" if door.is_open else "closed")
            else:
                self.log.debug("t={:.2f}: door {} already {}", time, door.id, event.action)

        if changed and self.routing_engine is not None:
            self.routing_engine.on_topology_change()
        return changed
