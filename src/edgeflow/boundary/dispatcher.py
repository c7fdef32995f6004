"""
Boundary Condition Dispatch

Maps every boundary kind to a handler function through a dispatch table.
All handlers share one signature, handler(context, binding) -> flux, where
the context carries the solver state and numerics of the current pass and
the binding carries the marker, its geometry and, for paired kinds, the
donor geometry. New kinds are added with BoundaryDispatcher.register.

Markers are bound once against the mesh; binding validates everything a
handler would otherwise discover mid-run (missing markers or parameters,
unmatched donors, prescribed tables of the wrong shape). A kind without a
handler is fatal both at binding and at dispatch time.
"""

import numpy as np
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from dataclasses import dataclass, field
import logging

from ..core.exceptions import ConfigurationError
from ..equations.equation_sets import EulerEquations
from .markers import BoundaryKind, BoundaryMarker, REQUIRED_PARAMETERS, SCALAR_KINDS

logger = logging.getLogger(__name__)


@dataclass
class BoundaryContext:
    """Solver state and numerics shared by all handlers during one pass."""
    mesh: object
    store: object
    equations: object
    assembler: object
    freestream: np.ndarray  # exterior primitive state of far-field markers
    system: Optional[object] = None  # BlockSparseSystem in implicit mode
    time: float = 0.0
    averager: Optional[object] = None  # MixedOutAverager for mixing planes
    communicator: Optional[object] = None
    mixed_out: Dict[str, object] = field(default_factory=dict)  # marker -> MixedOutState

    @property
    def implicit(self) -> bool:
        return self.system is not None


@dataclass
class MarkerBinding:
    """A marker bound to its mesh geometry."""
    marker: BoundaryMarker
    geometry: object  # MarkerGeometry
    donor_geometry: Optional[object] = None
    donor_normals: Optional[np.ndarray] = None  # normal of each vertex's donor on the donor marker

    @property
    def name(self) -> str:
        return self.marker.name

    @property
    def kind(self) -> BoundaryKind:
        return self.marker.kind


Handler = Callable[[BoundaryContext, MarkerBinding], np.ndarray]


class BoundaryDispatcher:
    """
    Dispatch table from boundary kind to handler.

    Weak conditions (flux contributions) are applied before strong ones
    (row replacement), so a strong row is never modified afterwards by a
    neighbouring marker.
    """

    def __init__(self, handlers: Optional[Dict[BoundaryKind, Handler]] = None):
        if handlers is None:
            from .handlers import DEFAULT_HANDLERS
            handlers = DEFAULT_HANDLERS
        self.handlers: Dict[BoundaryKind, Handler] = dict(handlers)
        self.bindings: List[MarkerBinding] = []

    def register(self, kind: BoundaryKind, handler: Handler) -> None:
        """Install or replace the handler of a boundary kind."""
        self.handlers[kind] = handler

    def handler_for(self, binding: MarkerBinding) -> Handler:
        try:
            return self.handlers[binding.kind]
        except KeyError:
            raise ConfigurationError(
                f"Marker '{binding.name}': no handler for boundary kind '{binding.kind.value}'"
            ) from None

    def bind(self, markers: Iterable[BoundaryMarker], mesh, equations) -> List[MarkerBinding]:
        """
        Attach markers to mesh geometry and validate their configuration.

        Every mesh marker must be configured and every configured marker
        must exist in the mesh.
        """
        markers = list(markers)
        configured = {marker.name: marker for marker in markers}
        unconfigured = sorted(set(mesh.markers) - set(configured))
        if unconfigured:
            raise ConfigurationError(f"Mesh markers without boundary condition: {', '.join(unconfigured)}")

        compressible = isinstance(equations, EulerEquations)
        bindings = []
        for marker in markers:
            geometry = mesh.marker(marker.name)
            binding = MarkerBinding(marker, geometry)
            self.handler_for(binding)
            if not compressible and marker.kind not in SCALAR_KINDS:
                raise ConfigurationError(
                    f"Marker '{marker.name}': kind '{marker.kind.value}' needs a compressible equation set"
                )
            for key in REQUIRED_PARAMETERS.get(marker.kind, ()):
                marker.parameter(key)
            if marker.kind.is_paired:
                self._bind_pair(binding, mesh, configured)
            elif marker.kind == BoundaryKind.MIXING_PLANE:
                if marker.donor is None:
                    raise ConfigurationError(f"Marker '{marker.name}': mixing plane needs a 'donor' marker")
                binding.donor_geometry = mesh.marker(marker.donor)
            elif marker.kind in (BoundaryKind.CUSTOM, BoundaryKind.DIRICHLET):
                self._check_prescribed(binding, mesh, equations)
            bindings.append(binding)

        self.bindings = bindings
        logger.info(f"Bound {len(bindings)} boundary markers: "
                    + ", ".join(f"{b.name}={b.kind.value}" for b in bindings))
        return bindings

    def _bind_pair(self, binding: MarkerBinding, mesh, configured: Dict[str, BoundaryMarker]) -> None:
        marker, geometry = binding.marker, binding.geometry
        if geometry.donors is None:
            raise ConfigurationError(f"Marker '{marker.name}': mesh provides no matched donor points")
        donor_name = marker.donor or marker.name
        if donor_name not in configured:
            raise ConfigurationError(f"Marker '{marker.name}': donor marker '{donor_name}' is not configured")
        donor_marker = configured[donor_name]
        if not donor_marker.kind.is_paired:
            raise ConfigurationError(
                f"Marker '{marker.name}': donor '{donor_name}' has non-paired kind '{donor_marker.kind.value}'"
            )
        donor_geometry = mesh.marker(donor_name)
        if donor_geometry.donors is None:
            raise ConfigurationError(f"Marker '{donor_name}': mesh provides no matched donor points")

        position = {int(v): k for k, v in enumerate(donor_geometry.vertices)}
        rows = []
        for vertex, donor in zip(geometry.vertices, geometry.donors):
            row = position.get(int(donor))
            if row is None:
                raise ConfigurationError(
                    f"Marker '{marker.name}': donor point {int(donor)} of vertex {int(vertex)} "
                    f"is not on marker '{donor_name}'"
                )
            if int(donor_geometry.donors[row]) != int(vertex):
                raise ConfigurationError(
                    f"Marker '{marker.name}': pairing with '{donor_name}' is not symmetric at vertex {int(vertex)}"
                )
            rows.append(row)
        binding.donor_geometry = donor_geometry
        binding.donor_normals = donor_geometry.normals[np.asarray(rows, dtype=np.int64)]

    def _check_prescribed(self, binding: MarkerBinding, mesh, equations) -> None:
        marker, geometry = binding.marker, binding.geometry
        if marker.values is None:
            if marker.kind == BoundaryKind.DIRICHLET and equations.n_prim == 1 and "value" in marker.parameters:
                return
            raise ConfigurationError(f"Marker '{marker.name}' ({marker.kind.value}) needs prescribed values")
        if callable(marker.values):
            return
        table = np.atleast_2d(marker.values)
        if table.shape[1] != equations.n_prim or table.shape[0] not in (1, geometry.n_vertices):
            raise ConfigurationError(
                f"Marker '{marker.name}': value table has shape {table.shape}, expected "
                f"(1 or {geometry.n_vertices}, {equations.n_prim})"
            )

    def extra_pairs(self) -> List[Tuple[int, int]]:
        """Off-diagonal (vertex, donor) couplings the Jacobian pattern must contain."""
        pairs = []
        for binding in self.bindings:
            if binding.kind in (BoundaryKind.PERIODIC, BoundaryKind.INTERFACE, BoundaryKind.NEARFIELD):
                pairs.extend((int(v), int(d)) for v, d in zip(binding.geometry.vertices, binding.geometry.donors))
        return pairs

    def apply(self, context: BoundaryContext) -> Dict[str, np.ndarray]:
        """
        Run every bound marker's handler once.

        Returns:
            Integrated boundary flux of each marker over its owned vertices
        """
        ordered = sorted(self.bindings, key=lambda b: b.kind.is_strong)
        report = {}
        for binding in ordered:
            handler = self.handler_for(binding)
            flux = handler(context, binding)
            owned = binding.geometry.vertices < context.mesh.n_owned
            report[binding.name] = np.sum(flux[owned], axis=0) if len(flux) else np.zeros(context.equations.n_var)
        return report
