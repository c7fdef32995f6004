"""
Slope Limiters for MUSCL Reconstruction on Edges

Computes one factor in [0, 1] per point and variable that scales the
gradient term of the reconstruction:
- Barth-Jespersen: strict bound to the neighbourhood extrema
- Venkatakrishnan: smooth variant controlled by the parameter K

Both endpoints of an edge are limited against the same bounds, the
intersection of their two neighbourhood ranges.
"""

import numpy as np
from typing import Tuple
from abc import ABC, abstractmethod
import logging

from ..core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def neighbourhood_extrema(mesh, values: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Min and max of each point and its edge neighbours, shape (n_points, n_field)."""
    u_min = values.copy()
    u_max = values.copy()
    i, j = mesh.edges[:, 0], mesh.edges[:, 1]
    np.minimum.at(u_min, i, values[j])
    np.minimum.at(u_min, j, values[i])
    np.maximum.at(u_max, i, values[j])
    np.maximum.at(u_max, j, values[i])
    return u_min, u_max


def edge_bounds(mesh, values: np.ndarray, extrema=None) -> Tuple[np.ndarray, np.ndarray]:
    """
    Shared lower and upper bound of every edge, shape (n_edges, n_field).

    Partitioned meshes pass extrema with exchanged halo rows, since a halo
    point only sees part of its neighbourhood.
    """
    u_min, u_max = neighbourhood_extrema(mesh, values) if extrema is None else extrema
    i, j = mesh.edges[:, 0], mesh.edges[:, 1]
    return np.maximum(u_min[i], u_min[j]), np.minimum(u_max[i], u_max[j])


def reconstruct(base: np.ndarray, gradient: np.ndarray, limiter: np.ndarray,
                displacement: np.ndarray) -> np.ndarray:
    """MUSCL face value: base + limiter * (gradient · displacement)."""
    projected = np.einsum("...fd,...d->...f", gradient, displacement)
    return base + limiter * projected


class SlopeLimiter(ABC):
    """Abstract base class for slope limiters."""

    name = "base"

    def __init__(self, epsilon: float = 1e-12):
        """
        Args:
            epsilon: Projected changes smaller than this are left unlimited
        """
        self.epsilon = epsilon

    @abstractmethod
    def limit_ratio(self, delta: np.ndarray, delta_bound: np.ndarray,
                    length: np.ndarray) -> np.ndarray:
        """
        Limiter value for projected change delta against the allowed change delta_bound.

        delta_bound carries the same sign as delta (or is zero).
        """

    def compute(self, mesh, values: np.ndarray, gradient: np.ndarray, extrema=None) -> np.ndarray:
        """
        Compute per-point limiter factors.

        Args:
            mesh: DualMesh
            values: Per-point values (n_points, n_field)
            gradient: Per-point gradients (n_points, n_field, n_dim)
            extrema: Precomputed (min, max) neighbourhood extrema

        Returns:
            Limiter array (n_points, n_field) with entries in [0, 1]
        """
        phi = np.ones_like(values)
        if mesh.n_edges == 0:
            return phi

        lower, upper = edge_bounds(mesh, values, extrema)
        i, j = mesh.edges[:, 0], mesh.edges[:, 1]
        half = 0.5 * mesh.edge_vectors
        length = mesh.characteristic_length()

        for point, sign in ((i, 1.0), (j, -1.0)):
            delta = np.einsum("efd,ed->ef", gradient[point], sign * half)
            bound = np.where(delta > 0.0, upper - values[point], lower - values[point])
            phi_edge = np.ones_like(delta)
            active = np.abs(delta) > self.epsilon
            if np.any(active):
                phi_edge[active] = self.limit_ratio(
                    delta[active], bound[active],
                    np.broadcast_to(length[point][:, None], delta.shape)[active]
                )
            np.minimum.at(phi, point, phi_edge)

        return np.clip(phi, 0.0, 1.0)


class BarthJespersenLimiter(SlopeLimiter):
    """
    Barth-Jespersen limiter for unstructured meshes.

    Ensures that reconstructed values at edge midpoints do not
    exceed the maximum and minimum values in the local neighborhood.
    """

    name = "barth_jespersen"

    def limit_ratio(self, delta, delta_bound, length):
        return np.minimum(1.0, delta_bound / delta)


class VenkatakrishnanLimiter(SlopeLimiter):
    """
    Venkatakrishnan limiter - smooth version of Barth-Jespersen.

    The smoothing term ε² = (K h)³ uses the point's characteristic length h.
    """

    name = "venkatakrishnan"

    def __init__(self, K: float = 5.0, epsilon: float = 1e-12):
        super().__init__(epsilon)
        self.K = K

    def limit_ratio(self, delta, delta_bound, length):
        eps2 = (self.K * length) ** 3
        numerator = delta_bound**2 + eps2 + 2.0 * delta * delta_bound
        denominator = delta_bound**2 + 2.0 * delta**2 + delta * delta_bound + eps2
        return numerator / denominator


class NoLimiter(SlopeLimiter):
    """Unlimited reconstruction."""

    name = "none"

    def limit_ratio(self, delta, delta_bound, length):
        return np.ones_like(delta)

    def compute(self, mesh, values, gradient, extrema=None):
        return np.ones_like(values)


def create_limiter(limiter_type: str, venkatakrishnan_k: float = 5.0) -> SlopeLimiter:
    """Factory function to create slope limiters."""
    if limiter_type == "barth_jespersen":
        return BarthJespersenLimiter()
    if limiter_type == "venkatakrishnan":
        return VenkatakrishnanLimiter(K=venkatakrishnan_k)
    if limiter_type == "none":
        return NoLimiter()
    raise ConfigurationError(f"Unknown limiter type: {limiter_type}")
