"""
Viscous (Diffusive) Edge Fluxes

Diffusive fluxes through dual faces evaluated from averaged point
gradients with an edge-direction correction, so that the directional
derivative along the edge equals the two-point difference:

    ∇φ_f = ∇φ_avg - (∇φ_avg · e - (φ_j - φ_i)/|d|) e

The Jacobians are the usual two-point approximations used for implicit
stabilisation, not exact derivatives.
"""

import numpy as np
from abc import ABC, abstractmethod
import logging

from ..core.exceptions import ConfigurationError
from ..equations.equation_sets import NavierStokesEquations, ScalarTransportEquations
from .convective_fluxes import FluxResult

logger = logging.getLogger(__name__)


def corrected_face_gradient(V_i, V_j, grad_i, grad_j, displacement):
    """Average the two point gradients and correct them along the edge direction."""
    length = np.linalg.norm(displacement, axis=1)
    e = displacement / length[:, None]
    average = 0.5 * (grad_i + grad_j)
    directional = np.einsum("efd,ed->ef", average, e)
    correction = directional - (V_j - V_i) / length[:, None]
    return average - correction[:, :, None] * e[:, None, :], length


class ViscousFlux(ABC):
    """Abstract base class for diffusive fluxes."""

    def __init__(self, equations):
        self.equations = equations

    @abstractmethod
    def compute(self, V_i, V_j, grad_i, grad_j, displacement, normals,
                compute_jacobian: bool = False) -> FluxResult:
        """
        Evaluate the diffusive flux through the faces between point pairs.

        Args:
            V_i, V_j: Primitive states at the two endpoints (n_edge, n_prim)
            grad_i, grad_j: Primitive gradients (n_edge, n_prim, n_dim)
            displacement: x_j - x_i (n_edge, n_dim)
            normals: Area-weighted face normals from i to j (n_edge, n_dim)
            compute_jacobian: Also return approximate dF/dU_i and dF/dU_j

        Returns:
            FluxResult whose flux is the diffusive flux leaving point i
            with opposite sign convention to convection (it is subtracted
            from the residual)
        """


class NavierStokesViscousFlux(ViscousFlux):
    """Laminar stress tensor and Fourier heat conduction."""

    def __init__(self, equations: NavierStokesEquations):
        if not isinstance(equations, NavierStokesEquations):
            raise ConfigurationError("Viscous Navier-Stokes flux needs the navier_stokes equation set")
        super().__init__(equations)

    def compute(self, V_i, V_j, grad_i, grad_j, displacement, normals, compute_jacobian=False):
        eq = self.equations
        d = eq.n_dim
        gradient, length = corrected_face_gradient(V_i, V_j, grad_i, grad_j, displacement)
        V_face = 0.5 * (V_i + V_j)
        mu = 0.5 * (eq.laminar_viscosity(V_i) + eq.laminar_viscosity(V_j))
        conductivity = mu * eq.gas.cp / eq.prandtl_number

        grad_u = gradient[:, eq.velocity, :]
        divergence = np.trace(grad_u, axis1=1, axis2=2)
        tau = mu[:, None, None] * (
            grad_u + np.swapaxes(grad_u, 1, 2)
            - (2.0 / 3.0) * divergence[:, None, None] * np.eye(d)[None, :, :]
        )

        rho = V_face[:, 0]
        p = V_face[:, eq.pressure_index]
        grad_rho = gradient[:, 0, :]
        grad_p = gradient[:, eq.pressure_index, :]
        grad_T = (grad_p / rho[:, None] - p[:, None] * grad_rho / rho[:, None] ** 2) / eq.gas.R

        stress = np.einsum("ekm,em->ek", tau, normals)
        heat = conductivity * np.sum(grad_T * normals, axis=1)
        work = np.sum(stress * V_face[:, eq.velocity], axis=1)
        flux = np.column_stack([np.zeros_like(rho), stress, work + heat])
        area = np.linalg.norm(normals, axis=1)
        result = FluxResult(flux, mu / rho * area / length)

        if compute_jacobian:
            scale = area / length / rho
            diagonal = np.zeros((len(rho), eq.n_var))
            diagonal[:, eq.velocity] = (mu * scale)[:, None]
            diagonal[:, eq.energy_index] = eq.gamma * mu / eq.prandtl_number * scale
            block = diagonal[:, :, None] * np.eye(eq.n_var)[None, :, :]
            result.jacobian_left = -block
            result.jacobian_right = block
        return result


class ScalarDiffusionFlux(ViscousFlux):
    """Constant-coefficient diffusion of a scalar."""

    def __init__(self, equations: ScalarTransportEquations):
        if not isinstance(equations, ScalarTransportEquations):
            raise ConfigurationError("Scalar diffusion needs the scalar_transport equation set")
        super().__init__(equations)

    def compute(self, V_i, V_j, grad_i, grad_j, displacement, normals, compute_jacobian=False):
        gradient, length = corrected_face_gradient(V_i, V_j, grad_i, grad_j, displacement)
        coefficient = self.equations.diffusion_coefficient
        flux = coefficient * np.einsum("efd,ed->ef", gradient, normals)
        area = np.linalg.norm(normals, axis=1)
        result = FluxResult(flux, coefficient * area / length)
        if compute_jacobian:
            block = (coefficient * area / length)[:, None, None] * np.ones((1, 1, 1))
            result.jacobian_left = -block
            result.jacobian_right = block
        return result


def create_viscous_flux(equations):
    """Return the diffusive flux matching the equation set, or None for inviscid sets."""
    if isinstance(equations, NavierStokesEquations):
        return NavierStokesViscousFlux(equations)
    if isinstance(equations, ScalarTransportEquations):
        if equations.diffusion_coefficient > 0.0:
            return ScalarDiffusionFlux(equations)
        return None
    raise ConfigurationError(f"Equation set '{equations.name}' has no viscous flux")
