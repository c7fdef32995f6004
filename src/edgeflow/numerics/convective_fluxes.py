"""
Convective Numerical Fluxes and Their Jacobians

Edge-vectorized approximate Riemann solvers used by the flux assembler:
- Roe flux-difference splitting with Harten entropy fix (Euler/NS sets)
- Rusanov / local Lax-Friedrichs flux (any equation set)

Every scheme evaluates all edges of a batch at once from left/right
primitive states and area-weighted normals, and optionally returns the
Jacobians of the flux with respect to the left and right conserved states.
"""

import numpy as np
from typing import Optional
from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging

from ..core.exceptions import ConfigurationError
from ..equations.equation_sets import EulerEquations

logger = logging.getLogger(__name__)


@dataclass
class FluxResult:
    """Numerical flux of a batch of faces."""
    flux: np.ndarray  # (n_face, n_var)
    spectral_radius: np.ndarray  # (n_face,) including face area
    jacobian_left: Optional[np.ndarray] = None  # (n_face, n_var, n_var)
    jacobian_right: Optional[np.ndarray] = None


class ConvectiveScheme(ABC):
    """Abstract base class for convective numerical fluxes."""

    name = "base"

    def __init__(self, equations):
        self.equations = equations

    @abstractmethod
    def compute(self, V_left: np.ndarray, V_right: np.ndarray, normals: np.ndarray,
                compute_jacobian: bool = False) -> FluxResult:
        """
        Evaluate the numerical flux.

        Args:
            V_left: Left primitive states (n_face, n_prim)
            V_right: Right primitive states (n_face, n_prim)
            normals: Area-weighted normals pointing from left to right (n_face, n_dim)
            compute_jacobian: Also return dF/dU_left and dF/dU_right

        Returns:
            FluxResult
        """


class RoeScheme(ConvectiveScheme):
    """
    Roe approximate Riemann solver with entropy fix.

    Uses Roe-averaged states to compute upwind fluxes.
    Includes Harten entropy fix for expansion shocks. The implicit
    Jacobians freeze the Roe dissipation matrix:
    dF/dU_L = ½(A_L + |Ã|), dF/dU_R = ½(A_R - |Ã|).
    """

    name = "roe"

    def __init__(self,
                 equations: EulerEquations,
                 entropy_fix: bool = True,
                 entropy_fix_parameter: float = 0.125):
        """
        Initialize Roe solver.

        Args:
            equations: Compressible equation set
            entropy_fix: Apply Harten entropy fix
            entropy_fix_parameter: Parameter for entropy fix
        """
        if not isinstance(equations, EulerEquations):
            raise ConfigurationError(f"Roe scheme needs a compressible equation set, got '{equations.name}'")
        super().__init__(equations)
        self.entropy_fix = entropy_fix
        self.entropy_fix_parameter = entropy_fix_parameter

    def _roe_average(self, V_left, V_right):
        eq = self.equations
        sqrt_rho_L = np.sqrt(V_left[:, 0])
        sqrt_rho_R = np.sqrt(V_right[:, 0])
        weight_L = (sqrt_rho_L / (sqrt_rho_L + sqrt_rho_R))[:, None]
        weight_R = 1.0 - weight_L

        rho = sqrt_rho_L * sqrt_rho_R
        velocity = weight_L * V_left[:, eq.velocity] + weight_R * V_right[:, eq.velocity]
        H = weight_L[:, 0] * eq.total_enthalpy(V_left) + weight_R[:, 0] * eq.total_enthalpy(V_right)
        q2 = np.sum(velocity**2, axis=1)
        a2 = eq.gas.gamma_minus_1 * (H - 0.5 * q2)
        a = np.sqrt(np.maximum(a2, 1e-12))
        return rho, velocity, H, q2, a

    def _wave_speeds(self, un, a):
        return np.column_stack([un - a, un, un + a])

    def _apply_entropy_fix(self, eigenvalues, V_left, V_right, unit_normals):
        """Apply Harten entropy fix to prevent expansion shocks."""
        eq = self.equations
        lambda_L = self._wave_speeds(np.sum(V_left[:, eq.velocity] * unit_normals, axis=1), eq.sound_speed(V_left))
        lambda_R = self._wave_speeds(np.sum(V_right[:, eq.velocity] * unit_normals, axis=1), eq.sound_speed(V_right))
        delta = self.entropy_fix_parameter * np.maximum(0.0, lambda_R - lambda_L)
        fixed = np.abs(eigenvalues)
        smoothed = (delta > 0.0) & (fixed < delta)
        safe_delta = np.where(smoothed, delta, 1.0)
        return np.where(smoothed, (eigenvalues**2 + delta**2) / (2.0 * safe_delta), fixed)

    def _dissipation(self, dU, roe, abs_lambda, unit_normals):
        """|Ã| dU from Roe-linearized primitive jumps."""
        eq = self.equations
        rho, velocity, H, q2, a = roe
        g1 = eq.gas.gamma_minus_1
        d_rho = dU[:, 0]
        d_mom = dU[:, eq.velocity]
        d_E = dU[:, eq.energy_index]

        d_u = (d_mom - velocity * d_rho[:, None]) / rho[:, None]
        d_p = g1 * (d_E - np.sum(velocity * d_mom, axis=1) + 0.5 * q2 * d_rho)
        d_un = np.sum(d_u * unit_normals, axis=1)
        un = np.sum(velocity * unit_normals, axis=1)

        alpha_1 = (d_p - rho * a * d_un) / (2.0 * a**2)
        alpha_2 = d_rho - d_p / a**2
        alpha_3 = (d_p + rho * a * d_un) / (2.0 * a**2)
        shear = rho[:, None] * (d_u - d_un[:, None] * unit_normals)

        a_n = a[:, None] * unit_normals
        r_1 = np.column_stack([np.ones_like(un), velocity - a_n, H - a * un])
        r_2 = np.column_stack([np.ones_like(un), velocity, 0.5 * q2])
        r_s = np.column_stack([np.zeros_like(un), shear, np.sum(velocity * shear, axis=1)])
        r_3 = np.column_stack([np.ones_like(un), velocity + a_n, H + a * un])

        return ((abs_lambda[:, 0] * alpha_1)[:, None] * r_1
                + abs_lambda[:, 1][:, None] * (alpha_2[:, None] * r_2 + r_s)
                + (abs_lambda[:, 2] * alpha_3)[:, None] * r_3)

    def compute(self, V_left, V_right, normals, compute_jacobian=False):
        eq = self.equations
        V_left = np.atleast_2d(V_left)
        V_right = np.atleast_2d(V_right)
        normals = np.atleast_2d(normals)
        area = np.linalg.norm(normals, axis=1)
        unit_normals = normals / np.where(area > 0.0, area, 1.0)[:, None]

        roe = self._roe_average(V_left, V_right)
        un = np.sum(roe[1] * unit_normals, axis=1)
        eigenvalues = self._wave_speeds(un, roe[4])
        if self.entropy_fix:
            abs_lambda = self._apply_entropy_fix(eigenvalues, V_left, V_right, unit_normals)
        else:
            abs_lambda = np.abs(eigenvalues)

        U_left = eq.to_conservative(V_left)
        U_right = eq.to_conservative(V_right)
        F_left = eq.flux(V_left, normals)
        F_right = eq.flux(V_right, normals)
        dissipation = self._dissipation(U_right - U_left, roe, abs_lambda, unit_normals)
        flux = 0.5 * (F_left + F_right) - 0.5 * area[:, None] * dissipation
        result = FluxResult(flux, (np.abs(un) + roe[4]) * area)

        if compute_jacobian:
            n_face, n_var = flux.shape
            abs_A = np.zeros((n_face, n_var, n_var))
            for k in range(n_var):
                unit = np.zeros((n_face, n_var))
                unit[:, k] = 1.0
                abs_A[:, :, k] = self._dissipation(unit, roe, abs_lambda, unit_normals)
            abs_A *= area[:, None, None]
            result.jacobian_left = 0.5 * (eq.flux_jacobian(V_left, normals) + abs_A)
            result.jacobian_right = 0.5 * (eq.flux_jacobian(V_right, normals) - abs_A)
        return result


class RusanovScheme(ConvectiveScheme):
    """
    Rusanov (local Lax-Friedrichs) flux.

    F = ½(F_L + F_R) - ½ λ_max (U_R - U_L) with λ_max the larger spectral
    radius of the two states. Works with any equation set.
    """

    name = "rusanov"

    def compute(self, V_left, V_right, normals, compute_jacobian=False):
        eq = self.equations
        V_left = np.atleast_2d(V_left)
        V_right = np.atleast_2d(V_right)
        normals = np.atleast_2d(normals)
        lam = np.maximum(eq.spectral_radius(V_left, normals), eq.spectral_radius(V_right, normals))

        U_left = eq.to_conservative(V_left)
        U_right = eq.to_conservative(V_right)
        flux = 0.5 * (eq.flux(V_left, normals) + eq.flux(V_right, normals)) - 0.5 * lam[:, None] * (U_right - U_left)
        result = FluxResult(flux, lam)

        if compute_jacobian:
            identity = lam[:, None, None] * np.eye(eq.n_var)[None, :, :]
            result.jacobian_left = 0.5 * (eq.flux_jacobian(V_left, normals) + identity)
            result.jacobian_right = 0.5 * (eq.flux_jacobian(V_right, normals) - identity)
        return result


def create_convective_scheme(scheme_type: str, equations, entropy_fix: bool = True,
                             entropy_fix_parameter: float = 0.125) -> ConvectiveScheme:
    """Factory function to create convective schemes."""
    if scheme_type == "roe":
        return RoeScheme(equations, entropy_fix, entropy_fix_parameter)
    if scheme_type == "rusanov":
        return RusanovScheme(equations)
    raise ConfigurationError(f"Unknown convective scheme: {scheme_type}")
