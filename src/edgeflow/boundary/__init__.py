"""Boundary markers, condition handlers and their dispatcher."""

from edgeflow.boundary.dispatcher import BoundaryContext, BoundaryDispatcher, MarkerBinding
from edgeflow.boundary.handlers import DEFAULT_HANDLERS
from edgeflow.boundary.markers import BoundaryKind, BoundaryMarker, markers_from_config

__all__ = [
    "BoundaryContext",
    "BoundaryDispatcher",
    "MarkerBinding",
    "DEFAULT_HANDLERS",
    "BoundaryKind",
    "BoundaryMarker",
    "markers_from_config",
]
