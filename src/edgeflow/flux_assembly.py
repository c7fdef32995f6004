"""
Edge-Based Residual and Jacobian Assembly

For every interior edge (i, j) the assembler reconstructs left/right
primitive states (first order or limited MUSCL), evaluates the numerical
flux through the dual face, adds it to point i and subtracts it from point
j. In implicit mode the flux Jacobians go into the four blocks ii, ij, ji
and jj of the block-sparse system. Viscous fluxes follow the same pattern
with the opposite sign; source terms touch a single point.

Scatter-adds use numpy's unbuffered ufunc.at, so repeated point indices
within one batch accumulate correctly without edge colouring.
"""

import numpy as np
from typing import Optional, Sequence
import logging

from .core.exceptions import HaloExchangeError
from .numerics.limiters import reconstruct

logger = logging.getLogger(__name__)


def scatter_edge_flux(residual: np.ndarray, edges: np.ndarray, flux: np.ndarray) -> None:
    """Add flux to the first endpoint and subtract it from the second."""
    np.add.at(residual, edges[:, 0], flux)
    np.add.at(residual, edges[:, 1], -flux)


class FluxAssembler:
    """
    Accumulates convective, viscous and source contributions into the
    residual buffer of a StateStore and, optionally, a BlockSparseSystem.
    """

    def __init__(self, mesh, equations, convective_scheme,
                 viscous_flux=None, source_terms: Sequence = (), muscl: bool = False):
        """
        Initialize flux assembler.

        Args:
            mesh: DualMesh of the local partition
            equations: Equation set
            convective_scheme: ConvectiveScheme evaluating edge fluxes
            viscous_flux: Optional ViscousFlux
            source_terms: Point-local SourceTerm instances
            muscl: Second-order limited reconstruction instead of first order
        """
        self.mesh = mesh
        self.equations = equations
        self.convective = convective_scheme
        self.viscous = viscous_flux
        self.sources = list(source_terms)
        self.muscl = muscl

    def _check_halo(self, store) -> None:
        if self.mesh.n_halo > 0 and store.halo_stale:
            raise HaloExchangeError("Halo points are stale: exchange the state before assembling fluxes")

    def reconstruct(self, store):
        """
        Left and right primitive states of every edge.

        Edges whose limited reconstruction is non-physical on either side
        fall back to first order and flag both endpoints.

        Returns:
            Tuple of (V_left, V_right, fallback edge mask)
        """
        i, j = self.mesh.edges[:, 0], self.mesh.edges[:, 1]
        V = store.primitive
        if not self.muscl:
            return V[i].copy(), V[j].copy(), np.zeros(len(i), dtype=bool)

        half = 0.5 * self.mesh.edge_vectors
        V_left = reconstruct(V[i], store.gradient[i], store.limiter[i], half)
        V_right = reconstruct(V[j], store.gradient[j], store.limiter[j], -half)

        fallback = ~(self.equations.is_physical(V_left) & self.equations.is_physical(V_right))
        if np.any(fallback):
            V_left[fallback] = V[i[fallback]]
            V_right[fallback] = V[j[fallback]]
            store.non_physical[i[fallback]] = True
            store.non_physical[j[fallback]] = True
            logger.debug(f"First-order fallback on {int(np.sum(fallback))} edges with non-physical reconstruction")
        return V_left, V_right, fallback

    def assemble_convective(self, store, system=None) -> None:
        """Accumulate convective edge fluxes (and Jacobians when a system is given)."""
        self._check_halo(store)
        if self.mesh.n_edges == 0:
            return
        V_left, V_right, _ = self.reconstruct(store)
        result = self.convective.compute(V_left, V_right, self.mesh.edge_normals,
                                         compute_jacobian=system is not None)
        scatter_edge_flux(store.residual, self.mesh.edges, result.flux)
        if system is not None:
            system.add_edge_blocks(np.arange(self.mesh.n_edges),
                                   result.jacobian_left, result.jacobian_right,
                                   -result.jacobian_left, -result.jacobian_right)

    def assemble_viscous(self, store, system=None) -> None:
        """Accumulate diffusive edge fluxes, which leave the residual with a minus sign."""
        if self.viscous is None or self.mesh.n_edges == 0:
            return
        self._check_halo(store)
        i, j = self.mesh.edges[:, 0], self.mesh.edges[:, 1]
        V = store.primitive
        result = self.viscous.compute(V[i], V[j], store.gradient[i], store.gradient[j],
                                      self.mesh.edge_vectors, self.mesh.edge_normals,
                                      compute_jacobian=system is not None)
        scatter_edge_flux(store.residual, self.mesh.edges, -result.flux)
        if system is not None:
            system.add_edge_blocks(np.arange(self.mesh.n_edges),
                                   -result.jacobian_left, -result.jacobian_right,
                                   result.jacobian_left, result.jacobian_right)

    def assemble_sources(self, store, system=None) -> None:
        """Subtract V_i * S_i from each owned point's residual."""
        n = self.mesh.n_owned
        volumes = self.mesh.volumes[:n]
        for source in self.sources:
            S, jacobian = source.compute(store.solution[:n], store.primitive[:n],
                                         compute_jacobian=system is not None)
            store.residual[:n] -= volumes[:, None] * S
            if system is not None:
                system.add_diagonal_blocks(np.arange(n), -volumes[:, None, None] * jacobian)

    def assemble_interior(self, store, system=None) -> None:
        """Convective, viscous and source contributions of one assembly pass."""
        self.assemble_convective(store, system)
        self.assemble_viscous(store, system)
        self.assemble_sources(store, system)

    def boundary_flux(self, store, vertices: np.ndarray, V_ghost: np.ndarray,
                      normals: np.ndarray, system=None,
                      V_interior: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Flux between boundary points and their ghost states.

        Args:
            store: StateStore
            vertices: Boundary point indices
            V_ghost: Exterior primitive states (n_vertex, n_prim)
            normals: Outward area-weighted normals
            system: Block system receiving dF/dU_interior on the diagonal
            V_interior: Interior states, defaults to the stored primitives

        Returns:
            Flux per vertex (already added to the residual)
        """
        if V_interior is None:
            V_interior = store.primitive[vertices]
        result = self.convective.compute(V_interior, V_ghost, normals, compute_jacobian=system is not None)
        np.add.at(store.residual, vertices, result.flux)
        if system is not None:
            system.add_diagonal_blocks(vertices, result.jacobian_left)
        return result.flux

    def add_boundary_residual(self, store, vertices: np.ndarray, flux: np.ndarray,
                              jacobian: Optional[np.ndarray] = None, system=None) -> None:
        """Add a directly computed boundary flux (and its Jacobian) to boundary points."""
        np.add.at(store.residual, vertices, flux)
        if system is not None and jacobian is not None:
            system.add_diagonal_blocks(vertices, jacobian)
