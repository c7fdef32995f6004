"""
Equation Sets for the Edge-Based Solver Core

Each equation set describes the conserved/primitive variable layout of one
physical model and provides the pieces the flux assembler needs:
- conservative <-> primitive conversion with non-physical state recovery
- projected physical flux F(V)·n and its analytic Jacobian dF/dU
- spectral radius of the projected flux Jacobian for time step bounds

Implemented sets:
- EulerEquations: compressible inviscid flow of a perfect gas
- NavierStokesEquations: adds laminar viscosity and heat conduction
- ScalarTransportEquations: advection-diffusion of a non-negative scalar
"""

import numpy as np
from typing import List, Sequence, Tuple
from abc import ABC, abstractmethod
import logging

from ..core.exceptions import ConfigurationError
from .equation_state import PerfectGas, ConstantViscosity, SutherlandViscosity

logger = logging.getLogger(__name__)

_VELOCITY_NAMES = ("u", "v", "w")


class EquationSet(ABC):
    """Abstract base class for equation sets."""

    name = "base"

    def __init__(self, n_dim: int):
        if n_dim not in (1, 2, 3):
            raise ValueError(f"Spatial dimension must be 1, 2 or 3, got {n_dim}")
        self.n_dim = n_dim

    @property
    @abstractmethod
    def n_var(self) -> int:
        """Number of conserved variables."""

    @property
    def n_prim(self) -> int:
        """Number of primitive variables."""
        return self.n_var

    @property
    @abstractmethod
    def conservative_names(self) -> List[str]:
        pass

    @property
    @abstractmethod
    def primitive_names(self) -> List[str]:
        pass

    @abstractmethod
    def to_primitive(self, U: np.ndarray) -> np.ndarray:
        """Convert conservative (n, n_var) to primitive (n, n_prim) without any clipping."""

    @abstractmethod
    def to_conservative(self, V: np.ndarray) -> np.ndarray:
        """Convert primitive (n, n_prim) to conservative (n, n_var)."""

    @abstractmethod
    def is_physical(self, V: np.ndarray) -> np.ndarray:
        """Boolean mask of rows holding an admissible primitive state."""

    @abstractmethod
    def recover_primitive(self, U: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Convert to primitive variables, clipping non-physical rows to the floors.

        Returns:
            Tuple of (primitive, repaired conservative, non-physical mask)
        """

    @abstractmethod
    def flux(self, V: np.ndarray, normals: np.ndarray) -> np.ndarray:
        """Physical flux projected on area-weighted normals, shape (n, n_var)."""

    @abstractmethod
    def flux_jacobian(self, V: np.ndarray, normals: np.ndarray) -> np.ndarray:
        """Jacobian of the projected flux with respect to U, shape (n, n_var, n_var)."""

    @abstractmethod
    def spectral_radius(self, V: np.ndarray, normals: np.ndarray) -> np.ndarray:
        """Largest eigenvalue magnitude of the projected flux Jacobian, shape (n,)."""

    def diffusivity(self, V: np.ndarray) -> np.ndarray:
        """Effective kinematic diffusivity used by viscous time step limits."""
        return np.zeros(V.shape[0])

    def conservative_gradient(self, V: np.ndarray, grad_V: np.ndarray) -> np.ndarray:
        """
        Gradients of the conserved variables from primitive gradients.

        Args:
            V: Primitive states (n, n_prim)
            grad_V: Primitive gradients (n, n_prim, n_dim)

        Returns:
            Conserved gradients (n, n_var, n_dim)
        """
        return np.array(grad_V, dtype=float)


class EulerEquations(EquationSet):
    """
    Compressible Euler equations for a perfect gas.

    Conservative variables are [rho, rho*u_1..rho*u_nDim, rho*E] and
    primitive variables are [rho, u_1..u_nDim, p].
    """

    name = "euler"

    def __init__(self, gas: PerfectGas, n_dim: int = 2,
                 density_floor: float = 1e-10, pressure_floor: float = 1e-10):
        super().__init__(n_dim)
        self.gas = gas
        self.gamma = gas.gamma
        self.density_floor = density_floor
        self.pressure_floor = pressure_floor
        self.velocity = slice(1, 1 + n_dim)
        self.energy_index = n_dim + 1
        self.pressure_index = n_dim + 1

    @property
    def n_var(self) -> int:
        return self.n_dim + 2

    @property
    def conservative_names(self) -> List[str]:
        return ["rho"] + [f"rho_{c}" for c in _VELOCITY_NAMES[:self.n_dim]] + ["rho_E"]

    @property
    def primitive_names(self) -> List[str]:
        return ["rho"] + list(_VELOCITY_NAMES[:self.n_dim]) + ["p"]

    def to_primitive(self, U: np.ndarray) -> np.ndarray:
        U = np.atleast_2d(U)
        rho = U[:, 0]
        velocity = U[:, self.velocity] / rho[:, None]
        kinetic = 0.5 * rho * np.sum(velocity**2, axis=1)
        p = self.gas.gamma_minus_1 * (U[:, self.energy_index] - kinetic)
        return np.column_stack([rho, velocity, p])

    def to_conservative(self, V: np.ndarray) -> np.ndarray:
        V = np.atleast_2d(V)
        rho = V[:, 0]
        velocity = V[:, self.velocity]
        p = V[:, self.pressure_index]
        energy = p / self.gas.gamma_minus_1 + 0.5 * rho * np.sum(velocity**2, axis=1)
        return np.column_stack([rho, rho[:, None] * velocity, energy])

    def is_physical(self, V: np.ndarray) -> np.ndarray:
        V = np.atleast_2d(V)
        finite = np.all(np.isfinite(V), axis=1)
        return finite & (V[:, 0] > 0.0) & (V[:, self.pressure_index] > 0.0)

    def conservative_gradient(self, V: np.ndarray, grad_V: np.ndarray) -> np.ndarray:
        """Chain rule through U(V): ∇(ρu) = u∇ρ + ρ∇u, ∇(ρE) = ∇p/(γ-1) + ½|u|²∇ρ + ρ u·∇u."""
        V = np.atleast_2d(V)
        rho = V[:, 0]
        velocity = V[:, self.velocity]
        grad_rho = grad_V[:, 0, :]
        grad_u = grad_V[:, self.velocity, :]
        grad = np.empty((V.shape[0], self.n_var, self.n_dim))
        grad[:, 0, :] = grad_rho
        grad[:, self.velocity, :] = velocity[:, :, None] * grad_rho[:, None, :] + rho[:, None, None] * grad_u
        grad[:, self.energy_index, :] = (
            grad_V[:, self.pressure_index, :] / self.gas.gamma_minus_1
            + 0.5 * np.sum(velocity**2, axis=1)[:, None] * grad_rho
            + rho[:, None] * np.einsum("nk,nkd->nd", velocity, grad_u)
        )
        return grad

    def recover_primitive(self, U: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        U = np.array(np.atleast_2d(U), dtype=float)
        rho = U[:, 0]
        with np.errstate(divide="ignore", invalid="ignore"):
            V = self.to_primitive(U)
        bad = ~self.is_physical(V) | (rho < self.density_floor) | (V[:, self.pressure_index] < self.pressure_floor)
        if np.any(bad):
            rho_fixed = np.maximum(np.nan_to_num(rho[bad], nan=self.density_floor), self.density_floor)
            velocity = np.nan_to_num(V[bad][:, self.velocity], nan=0.0, posinf=0.0, neginf=0.0)
            velocity[rho[bad] <= 0.0] = 0.0
            p_fixed = np.maximum(
                np.nan_to_num(V[bad][:, self.pressure_index], nan=self.pressure_floor), self.pressure_floor
            )
            V[bad] = np.column_stack([rho_fixed, velocity, p_fixed])
            U[bad] = self.to_conservative(V[bad])
        return V, U, bad

    def velocity_squared(self, V: np.ndarray) -> np.ndarray:
        return np.sum(V[:, self.velocity] ** 2, axis=1)

    def sound_speed(self, V: np.ndarray) -> np.ndarray:
        return self.gas.speed_of_sound(V[:, 0], V[:, self.pressure_index])

    def temperature(self, V: np.ndarray) -> np.ndarray:
        return self.gas.temperature(V[:, 0], V[:, self.pressure_index])

    def total_enthalpy(self, V: np.ndarray) -> np.ndarray:
        return self.gas.total_enthalpy(V[:, 0], V[:, self.pressure_index], self.velocity_squared(V))

    def mach_number(self, V: np.ndarray) -> np.ndarray:
        return np.sqrt(self.velocity_squared(V)) / self.sound_speed(V)

    def primitive_from_pt(self, pressure, temperature, velocity) -> np.ndarray:
        """Primitive row(s) from static pressure, temperature and velocity vector."""
        pressure = np.atleast_1d(np.asarray(pressure, dtype=float))
        temperature = np.atleast_1d(np.asarray(temperature, dtype=float))
        velocity = np.atleast_2d(np.asarray(velocity, dtype=float))
        rho = self.gas.density(pressure, temperature)
        n = max(len(rho), velocity.shape[0])
        return np.column_stack([
            np.broadcast_to(rho, (n,)),
            np.broadcast_to(velocity, (n, self.n_dim)),
            np.broadcast_to(pressure, (n,)),
        ])

    def pressure_derivative(self, V: np.ndarray) -> np.ndarray:
        """dp/dU for each row, shape (n, n_var)."""
        g1 = self.gas.gamma_minus_1
        velocity = V[:, self.velocity]
        return np.column_stack([
            0.5 * g1 * np.sum(velocity**2, axis=1),
            -g1 * velocity,
            np.full(V.shape[0], g1),
        ])

    def flux(self, V: np.ndarray, normals: np.ndarray) -> np.ndarray:
        V = np.atleast_2d(V)
        normals = np.atleast_2d(normals)
        rho = V[:, 0]
        velocity = V[:, self.velocity]
        p = V[:, self.pressure_index]
        un = np.sum(velocity * normals, axis=1)
        rho_H = rho * self.total_enthalpy(V)
        return np.column_stack([
            rho * un,
            rho[:, None] * velocity * un[:, None] + p[:, None] * normals,
            rho_H * un,
        ])

    def flux_jacobian(self, V: np.ndarray, normals: np.ndarray) -> np.ndarray:
        V = np.atleast_2d(V)
        normals = np.atleast_2d(normals)
        n_pts, d = V.shape[0], self.n_dim
        g1 = self.gas.gamma_minus_1
        velocity = V[:, self.velocity]
        un = np.sum(velocity * normals, axis=1)
        phi = 0.5 * g1 * np.sum(velocity**2, axis=1)
        H = self.total_enthalpy(V)

        A = np.zeros((n_pts, d + 2, d + 2))
        A[:, 0, 1:d + 1] = normals
        # Momentum rows
        A[:, 1:d + 1, 0] = phi[:, None] * normals - velocity * un[:, None]
        A[:, 1:d + 1, 1:d + 1] = (
            velocity[:, :, None] * normals[:, None, :]
            - g1 * normals[:, :, None] * velocity[:, None, :]
            + un[:, None, None] * np.eye(d)[None, :, :]
        )
        A[:, 1:d + 1, d + 1] = g1 * normals
        # Energy row
        A[:, d + 1, 0] = un * (phi - H)
        A[:, d + 1, 1:d + 1] = H[:, None] * normals - g1 * velocity * un[:, None]
        A[:, d + 1, d + 1] = self.gamma * un
        return A

    def spectral_radius(self, V: np.ndarray, normals: np.ndarray) -> np.ndarray:
        V = np.atleast_2d(V)
        normals = np.atleast_2d(normals)
        un = np.sum(V[:, self.velocity] * normals, axis=1)
        area = np.linalg.norm(normals, axis=1)
        return np.abs(un) + self.sound_speed(V) * area


class NavierStokesEquations(EulerEquations):
    """Compressible Navier-Stokes equations with laminar transport properties."""

    name = "navier_stokes"

    def __init__(self, gas: PerfectGas, n_dim: int = 2,
                 viscosity_law=None, prandtl_number: float = 0.72,
                 density_floor: float = 1e-10, pressure_floor: float = 1e-10):
        super().__init__(gas, n_dim, density_floor, pressure_floor)
        self.viscosity_law = viscosity_law or SutherlandViscosity()
        self.prandtl_number = prandtl_number

    def laminar_viscosity(self, V: np.ndarray) -> np.ndarray:
        return self.viscosity_law(self.temperature(V))

    def thermal_conductivity(self, V: np.ndarray) -> np.ndarray:
        return self.laminar_viscosity(V) * self.gas.cp / self.prandtl_number

    def diffusivity(self, V: np.ndarray) -> np.ndarray:
        mu = self.laminar_viscosity(V)
        return max(4.0 / 3.0, self.gamma / self.prandtl_number) * mu / V[:, 0]


class ScalarTransportEquations(EquationSet):
    """
    Linear advection-diffusion of a single scalar.

    Stands in for the transport equations of turbulence models: the
    scalar is advected by a prescribed velocity, diffused with a constant
    coefficient and kept above a floor value.
    """

    name = "scalar_transport"

    def __init__(self, velocity: Sequence[float], diffusivity: float = 0.0,
                 floor: float = 0.0):
        velocity = np.asarray(velocity, dtype=float)
        super().__init__(len(velocity))
        self.advection_velocity = velocity
        self.diffusion_coefficient = diffusivity
        self.floor = floor

    @property
    def n_var(self) -> int:
        return 1

    @property
    def conservative_names(self) -> List[str]:
        return ["phi"]

    @property
    def primitive_names(self) -> List[str]:
        return ["phi"]

    def to_primitive(self, U: np.ndarray) -> np.ndarray:
        return np.array(np.atleast_2d(U), dtype=float)

    def to_conservative(self, V: np.ndarray) -> np.ndarray:
        return np.array(np.atleast_2d(V), dtype=float)

    def is_physical(self, V: np.ndarray) -> np.ndarray:
        V = np.atleast_2d(V)
        return np.isfinite(V[:, 0]) & (V[:, 0] >= self.floor)

    def recover_primitive(self, U: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        V = self.to_primitive(U)
        bad = ~self.is_physical(V)
        if np.any(bad):
            V[bad, 0] = np.maximum(np.nan_to_num(V[bad, 0], nan=self.floor), self.floor)
        return V, V.copy(), bad

    def _normal_speed(self, normals: np.ndarray) -> np.ndarray:
        return np.atleast_2d(normals) @ self.advection_velocity

    def flux(self, V: np.ndarray, normals: np.ndarray) -> np.ndarray:
        return np.atleast_2d(V) * self._normal_speed(normals)[:, None]

    def flux_jacobian(self, V: np.ndarray, normals: np.ndarray) -> np.ndarray:
        return self._normal_speed(normals)[:, None, None] * np.ones((1, 1, 1))

    def spectral_radius(self, V: np.ndarray, normals: np.ndarray) -> np.ndarray:
        return np.abs(self._normal_speed(normals))

    def diffusivity(self, V: np.ndarray) -> np.ndarray:
        return np.full(np.atleast_2d(V).shape[0], self.diffusion_coefficient)


def create_equation_set(config, n_dim: int) -> EquationSet:
    """
    Factory building the equation set named in a SolverConfig.

    Args:
        config: SolverConfig instance
        n_dim: Spatial dimension of the mesh

    Returns:
        Configured equation set
    """
    if config.equation_set == "scalar_transport":
        if len(config.scalar.velocity) != n_dim:
            raise ConfigurationError(
                f"scalar.velocity has {len(config.scalar.velocity)} components, mesh is {n_dim}D"
            )
        equations = ScalarTransportEquations(
            config.scalar.velocity, config.scalar.diffusivity, config.scalar.floor
        )
    else:
        fluid = config.fluid
        gas = PerfectGas(fluid.gamma, fluid.gas_constant)
        floors = dict(density_floor=config.numerics.density_floor,
                      pressure_floor=config.numerics.pressure_floor)
        if config.equation_set == "navier_stokes":
            if fluid.viscosity_model == "sutherland":
                law = SutherlandViscosity(fluid.viscosity, fluid.reference_temperature,
                                          fluid.sutherland_temperature)
            else:
                law = ConstantViscosity(fluid.viscosity)
            equations = NavierStokesEquations(gas, n_dim, law, fluid.prandtl_number, **floors)
        else:
            equations = EulerEquations(gas, n_dim, **floors)

    logger.info(f"Built equation set '{equations.name}' with {equations.n_var} variables "
                f"in {equations.n_dim}D")
    return equations
