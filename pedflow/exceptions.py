"""
Error Types
Fatal configuration errors raised before the first frame runs
"""


class PedflowError(Exception):
    """Base class for all pedflow errors."""


class ConfigurationError(PedflowError):
    """Invalid configuration or scenario; the simulation must not start."""


class GeometryError(ConfigurationError):
    """Malformed geometry: unclosable polygon, dangling reference, bad boundary."""


class DuplicateIdError(GeometryError):
    """An id was inserted twice into a uniqueness-enforced collection."""

    def __init__(self, kind: str, element_id: int):
        super().__init__(f"Duplicate index for {kind} found [{element_id}]")
        self.kind = kind
        self.element_id = element_id


class RoutingError(ConfigurationError):
    """The routing graph cannot serve the configured destinations."""
