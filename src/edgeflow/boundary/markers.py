"""
Boundary Marker Definitions

A marker is a named group of boundary vertices sharing one boundary
condition kind and a parameter set. Markers are immutable during a run;
only parameters named in an 'unsteady' block vary, sinusoidally in time.
"""

import numpy as np
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Union
from dataclasses import dataclass, field
import logging

from ..core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_REQUIRED = object()


class BoundaryKind(Enum):
    """Boundary condition kinds understood by the dispatcher."""
    EULER_WALL = "euler_wall"
    SYMMETRY = "symmetry"
    HEATFLUX_WALL = "heatflux_wall"
    ISOTHERMAL_WALL = "isothermal_wall"
    FAR_FIELD = "far_field"
    RIEMANN = "riemann"
    INLET_TOTAL = "inlet_total"
    INLET_MASS_FLOW = "inlet_mass_flow"
    SUPERSONIC_INLET = "supersonic_inlet"
    OUTLET = "outlet"
    SUPERSONIC_OUTLET = "supersonic_outlet"
    PERIODIC = "periodic"
    INTERFACE = "interface"
    NEARFIELD = "nearfield"
    ACTUATOR_DISK_INLET = "actuator_disk_inlet"
    ACTUATOR_DISK_OUTLET = "actuator_disk_outlet"
    ENGINE_INFLOW = "engine_inflow"
    ENGINE_EXHAUST = "engine_exhaust"
    MIXING_PLANE = "mixing_plane"
    CUSTOM = "custom"
    DIRICHLET = "dirichlet"
    NEUMANN = "neumann"

    @classmethod
    def from_string(cls, value: str, marker: str = "") -> 'BoundaryKind':
        try:
            return cls(value.lower())
        except ValueError:
            raise ConfigurationError(
                f"Marker '{marker}': unrecognized boundary condition kind '{value}'"
            ) from None

    @property
    def is_wall(self) -> bool:
        return self in WALL_KINDS

    @property
    def is_paired(self) -> bool:
        return self in PAIRED_KINDS

    @property
    def is_strong(self) -> bool:
        return self in STRONG_KINDS


WALL_KINDS = frozenset({BoundaryKind.EULER_WALL, BoundaryKind.HEATFLUX_WALL, BoundaryKind.ISOTHERMAL_WALL})

# Kinds whose vertices are matched one-to-one with vertices of a donor marker
PAIRED_KINDS = frozenset({
    BoundaryKind.PERIODIC, BoundaryKind.INTERFACE, BoundaryKind.NEARFIELD,
    BoundaryKind.ACTUATOR_DISK_INLET, BoundaryKind.ACTUATOR_DISK_OUTLET,
})

# Kinds that overwrite rows of the residual and Jacobian; applied after all others
STRONG_KINDS = frozenset({BoundaryKind.HEATFLUX_WALL, BoundaryKind.ISOTHERMAL_WALL, BoundaryKind.DIRICHLET})

# Kinds that also make sense for the scalar transport equation set
SCALAR_KINDS = frozenset({
    BoundaryKind.EULER_WALL, BoundaryKind.SYMMETRY, BoundaryKind.FAR_FIELD,
    BoundaryKind.PERIODIC, BoundaryKind.INTERFACE, BoundaryKind.NEARFIELD,
    BoundaryKind.SUPERSONIC_OUTLET, BoundaryKind.CUSTOM, BoundaryKind.DIRICHLET,
    BoundaryKind.NEUMANN,
})

REQUIRED_PARAMETERS = {
    BoundaryKind.ISOTHERMAL_WALL: ("temperature",),
    BoundaryKind.RIEMANN: ("pressure", "temperature"),
    BoundaryKind.INLET_TOTAL: ("total_pressure", "total_temperature"),
    BoundaryKind.INLET_MASS_FLOW: ("mass_flow", "total_temperature"),
    BoundaryKind.SUPERSONIC_INLET: ("pressure", "temperature"),
    BoundaryKind.OUTLET: ("pressure",),
    BoundaryKind.ACTUATOR_DISK_INLET: ("pressure_jump",),
    BoundaryKind.ACTUATOR_DISK_OUTLET: ("pressure_jump",),
    BoundaryKind.ENGINE_INFLOW: ("target_mach",),
    BoundaryKind.ENGINE_EXHAUST: ("total_pressure", "total_temperature"),
}

PrescribedValues = Union[np.ndarray, Callable[[np.ndarray, float], np.ndarray]]


@dataclass(frozen=True)
class BoundaryMarker:
    """
    Boundary condition assigned to one mesh marker.

    Attributes:
        name: Marker name, matching a MarkerGeometry of the mesh
        kind: Boundary condition kind
        parameters: Scalar parameters (pressure, temperature, targets, ...)
        donor: Name of the paired or mixing-plane donor marker
        unsteady: Sinusoidal variation {parameter, amplitude, frequency, phase}
        values: Prescribed primitive states for custom/Dirichlet markers,
            either an array (1 or n_vertex rows) or a callable
            f(coordinates, time) returning one row per vertex
    """
    name: str
    kind: BoundaryKind
    parameters: Mapping[str, float] = field(default_factory=dict)
    donor: Optional[str] = None
    unsteady: Optional[Mapping[str, Any]] = None
    values: Optional[PrescribedValues] = None

    @classmethod
    def from_config(cls, config) -> 'BoundaryMarker':
        """Build a marker from a MarkerConfig entry."""
        kind = BoundaryKind.from_string(config.kind, config.name)
        values = None if config.values is None else np.atleast_2d(np.asarray(config.values, dtype=float))
        unsteady = dict(config.unsteady) if config.unsteady else None
        if unsteady is not None and "parameter" not in unsteady:
            raise ConfigurationError(f"Marker '{config.name}': unsteady block needs a 'parameter' entry")
        return cls(config.name, kind, dict(config.parameters), config.donor, unsteady, values)

    def parameter(self, key: str, default: Any = _REQUIRED, time: float = 0.0) -> float:
        """
        Value of a marker parameter at the given physical time.

        Raises:
            ConfigurationError: The parameter is missing and has no default
        """
        if key in self.parameters:
            value = float(self.parameters[key])
        elif default is _REQUIRED:
            raise ConfigurationError(f"Marker '{self.name}' ({self.kind.value}) needs parameter '{key}'")
        else:
            return default

        if self.unsteady and self.unsteady.get("parameter") == key:
            amplitude = float(self.unsteady.get("amplitude", 0.0))
            frequency = float(self.unsteady.get("frequency", 0.0))
            phase = float(self.unsteady.get("phase", 0.0))
            value += amplitude * np.sin(2.0 * np.pi * frequency * time + phase)
        return value

    def vector(self, prefix: str, n_dim: int, time: float = 0.0) -> Optional[np.ndarray]:
        """Vector parameter stored as '<prefix>_x', '<prefix>_y', '<prefix>_z', or None if absent."""
        keys = [f"{prefix}_{axis}" for axis in "xyz"[:n_dim]]
        if not any(key in self.parameters for key in keys):
            return None
        return np.array([self.parameter(key, 0.0, time) for key in keys])

    def prescribed(self, coordinates: np.ndarray, time: float = 0.0) -> np.ndarray:
        """Prescribed rows for every vertex, from the value table or callable."""
        if self.values is None:
            raise ConfigurationError(f"Marker '{self.name}' ({self.kind.value}) needs prescribed values")
        if callable(self.values):
            table = np.atleast_2d(np.asarray(self.values(coordinates, time), dtype=float))
        else:
            table = np.atleast_2d(self.values)
        return np.broadcast_to(table, (len(coordinates), table.shape[1])).copy()


def markers_from_config(marker_configs) -> Dict[str, BoundaryMarker]:
    """Build all markers of a SolverConfig, keyed by name."""
    markers = {}
    for entry in marker_configs:
        markers[entry.name] = BoundaryMarker.from_config(entry)
    return markers
