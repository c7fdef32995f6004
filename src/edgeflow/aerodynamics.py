"""
Aerodynamic Force and Moment Integration

Integrates pressure and, for viscous equation sets, wall shear over wall
markers and reduces the result to force and moment coefficients with the
free-stream dynamic pressure and the reference area and length.
"""

import numpy as np
from typing import Dict, List, Sequence
from dataclasses import dataclass, field
import logging

from .equations.equation_sets import NavierStokesEquations

logger = logging.getLogger(__name__)


@dataclass
class ForceReport:
    """Integrated loads of one or more markers."""
    markers: List[str]
    pressure_force: np.ndarray
    viscous_force: np.ndarray
    moment: np.ndarray  # always 3 components; 2D moments are about z
    coefficients: Dict[str, float] = field(default_factory=dict)

    @property
    def force(self) -> np.ndarray:
        return self.pressure_force + self.viscous_force

    def to_dict(self) -> Dict[str, object]:
        return {
            'markers': self.markers,
            'force': self.force.tolist(),
            'pressure_force': self.pressure_force.tolist(),
            'viscous_force': self.viscous_force.tolist(),
            'moment': self.moment.tolist(),
            'coefficients': dict(self.coefficients),
        }


class AerodynamicsCapability:
    """
    Force, moment and coefficient accessors keyed by wall marker.

    Forces act on the body: the traction (p - p_ref) n - τ n with n the
    outward (into the body) area-weighted normal of each wall vertex.
    """

    def __init__(self, mesh, equations, freestream: np.ndarray, flow_angles: Sequence[float],
                 reference, wall_markers: Sequence[str], communicator=None):
        """
        Initialize aerodynamic coefficient capability.

        Args:
            mesh: DualMesh
            equations: Compressible equation set
            freestream: Free-stream primitive state
            flow_angles: (angle of attack, sideslip) in degrees
            reference: ReferenceConfig (area, length, moment origin)
            wall_markers: Markers included in the totals
            communicator: Communicator for partition sums
        """
        self.mesh = mesh
        self.equations = equations
        self.freestream = np.asarray(freestream, dtype=float)
        self.alpha, self.beta = np.radians(flow_angles[0]), np.radians(flow_angles[1])
        self.reference = reference
        self.wall_markers = list(wall_markers)
        self.communicator = communicator

    @property
    def dynamic_pressure(self) -> float:
        eq = self.equations
        return 0.5 * self.freestream[0] * float(np.sum(self.freestream[eq.velocity] ** 2))

    def _directions(self):
        """Drag, lift and side-force unit vectors in the mesh frame."""
        n_dim = self.mesh.n_dim
        a, b = self.alpha, self.beta
        if n_dim == 1:
            return np.array([1.0]), np.array([0.0]), None
        if n_dim == 2:
            return np.array([np.cos(a), np.sin(a)]), np.array([-np.sin(a), np.cos(a)]), None
        drag = np.array([np.cos(a) * np.cos(b), np.sin(b), np.sin(a) * np.cos(b)])
        lift = np.array([-np.sin(a), 0.0, np.cos(a)])
        side = np.array([-np.sin(b) * np.cos(a), np.cos(b), -np.sin(b) * np.sin(a)])
        return drag, lift, side

    def _wall_shear(self, store, vertices: np.ndarray, normals: np.ndarray) -> np.ndarray:
        eq = self.equations
        V = store.primitive[vertices]
        grad_u = store.gradient[vertices][:, eq.velocity, :]
        mu = eq.laminar_viscosity(V)
        divergence = np.trace(grad_u, axis1=1, axis2=2)
        tau = mu[:, None, None] * (grad_u + np.swapaxes(grad_u, 1, 2)
                                   - (2.0 / 3.0) * divergence[:, None, None] * np.eye(eq.n_dim)[None])
        return np.einsum("vkm,vm->vk", tau, normals)

    def marker_loads(self, store, marker_names: Sequence[str]) -> ForceReport:
        """Integrate loads over the owned vertices of the given markers."""
        eq = self.equations
        n_dim = self.mesh.n_dim
        pressure_force = np.zeros(n_dim)
        viscous_force = np.zeros(n_dim)
        moment = np.zeros(3)
        origin = np.zeros(3)
        origin[:min(3, len(self.reference.origin))] = self.reference.origin[:3]
        p_ref = self.freestream[eq.pressure_index]

        for name in marker_names:
            geometry = self.mesh.marker(name)
            owned = geometry.vertices < self.mesh.n_owned
            vertices = geometry.vertices[owned]
            normals = geometry.normals[owned]
            p = store.primitive[vertices, eq.pressure_index]
            f_pressure = (p - p_ref)[:, None] * normals
            f_viscous = np.zeros_like(f_pressure)
            if isinstance(eq, NavierStokesEquations):
                f_viscous = -self._wall_shear(store, vertices, normals)
            pressure_force += np.sum(f_pressure, axis=0)
            viscous_force += np.sum(f_viscous, axis=0)

            arm = np.zeros((len(vertices), 3))
            arm[:, :n_dim] = self.mesh.coordinates[vertices]
            arm -= origin
            load = np.zeros((len(vertices), 3))
            load[:, :n_dim] = f_pressure + f_viscous
            moment += np.sum(np.cross(arm, load), axis=0)

        if self.communicator is not None:
            totals = self.communicator.global_reduction(np.concatenate([pressure_force, viscous_force, moment]), "sum")
            totals = np.asarray(totals)
            pressure_force, viscous_force, moment = totals[:n_dim], totals[n_dim:2 * n_dim], totals[2 * n_dim:]

        report = ForceReport(list(marker_names), pressure_force, viscous_force, moment)
        report.coefficients = self.coefficients(report)
        return report

    def coefficients(self, report: ForceReport) -> Dict[str, float]:
        """Lift, drag, side-force and moment coefficients; NaN without free-stream velocity."""
        q_area = self.dynamic_pressure * self.reference.area
        if q_area <= 0.0:
            return {'CL': float('nan'), 'CD': float('nan'), 'CSF': float('nan'), 'CMz': float('nan')}
        drag, lift, side = self._directions()
        force = report.force
        result = {
            'CD': float(force @ drag) / q_area,
            'CL': float(force @ lift) / q_area,
            'CSF': float(force @ side) / q_area if side is not None else 0.0,
            'CMz': float(report.moment[2]) / (q_area * self.reference.length),
        }
        if self.mesh.n_dim == 3:
            result['CMx'] = float(report.moment[0]) / (q_area * self.reference.length)
            result['CMy'] = float(report.moment[1]) / (q_area * self.reference.length)
        return result

    def total_loads(self, store) -> ForceReport:
        """Loads summed over all wall markers."""
        return self.marker_loads(store, self.wall_markers)

    def loads_by_marker(self, store) -> Dict[str, ForceReport]:
        return {name: self.marker_loads(store, [name]) for name in self.wall_markers}
