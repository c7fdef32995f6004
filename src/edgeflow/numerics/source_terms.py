"""
Volume Source Terms

Point-local source contributions S(U) with their Jacobians dS/dU. The
assembler subtracts V_i * S_i from the residual of point i; unlike edge
fluxes there is no antisymmetric partner.
"""

import numpy as np
from typing import List, Optional, Sequence, Tuple
from abc import ABC, abstractmethod
import logging

from ..core.exceptions import ConfigurationError
from ..equations.equation_sets import EulerEquations

logger = logging.getLogger(__name__)


class SourceTerm(ABC):
    """Abstract base class for source terms."""

    @abstractmethod
    def compute(self, U: np.ndarray, V: np.ndarray,
                compute_jacobian: bool = False) -> Tuple[np.ndarray, Optional[np.ndarray]]:
        """
        Compute source term contribution.

        Args:
            U: Conserved state (n_points, n_var)
            V: Primitive state (n_points, n_prim)
            compute_jacobian: Also return dS/dU

        Returns:
            S of shape (n_points, n_var) and optionally dS/dU (n_points, n_var, n_var)
        """


class LinearRelaxationSource(SourceTerm):
    """
    Relaxation toward a target state: S = -k (U - U_target).

    The Jacobian -k I is exact, which makes this source the reference
    problem for implicit convergence checks.
    """

    def __init__(self, rate: float, target: Sequence[float]):
        self.rate = rate
        self.target = np.asarray(target, dtype=float)

    def compute(self, U, V, compute_jacobian=False):
        if self.target.shape[-1] != U.shape[1]:
            raise ConfigurationError(
                f"Relaxation target has {self.target.shape[-1]} entries, state has {U.shape[1]}"
            )
        S = -self.rate * (U - self.target)
        jacobian = None
        if compute_jacobian:
            jacobian = np.broadcast_to(-self.rate * np.eye(U.shape[1]), (U.shape[0], U.shape[1], U.shape[1])).copy()
        return S, jacobian


class BodyForceSource(SourceTerm):
    """Constant body acceleration g: S = [0, ρg, ρu·g]."""

    def __init__(self, equations: EulerEquations, acceleration: Sequence[float]):
        if not isinstance(equations, EulerEquations):
            raise ConfigurationError("Body force source needs a compressible equation set")
        self.equations = equations
        self.acceleration = np.asarray(acceleration, dtype=float)
        if self.acceleration.shape != (equations.n_dim,):
            raise ConfigurationError(
                f"Body force needs {equations.n_dim} components, got {self.acceleration.shape}"
            )

    def compute(self, U, V, compute_jacobian=False):
        eq = self.equations
        g = self.acceleration
        S = np.zeros_like(U)
        S[:, eq.velocity] = U[:, :1] * g
        S[:, eq.energy_index] = U[:, eq.velocity] @ g
        jacobian = None
        if compute_jacobian:
            jacobian = np.zeros((U.shape[0], U.shape[1], U.shape[1]))
            jacobian[:, eq.velocity, 0] = g
            jacobian[:, eq.energy_index, eq.velocity] = g
        return S, jacobian


def create_source_terms(source_configs, equations) -> List[SourceTerm]:
    """Build source terms from SourceConfig entries."""
    sources: List[SourceTerm] = []
    for entry in source_configs:
        if entry.kind == "linear_relaxation":
            if entry.target is None:
                raise ConfigurationError("linear_relaxation source needs a 'target' state")
            sources.append(LinearRelaxationSource(entry.rate, entry.target))
        elif entry.kind == "body_force":
            if entry.acceleration is None:
                raise ConfigurationError("body_force source needs an 'acceleration' vector")
            sources.append(BodyForceSource(equations, entry.acceleration))
        else:
            raise ConfigurationError(f"Unknown source term kind: {entry.kind}")
    return sources
