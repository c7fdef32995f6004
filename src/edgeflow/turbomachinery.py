"""
Mixed-Out Averaging and Turbomachinery Performance

Collapses the non-uniform flow profile on a boundary marker into the one
uniform state that carries the same mass, momentum and energy flux:

    ρ u_n             = m
    ρ u_n² + p        = N
    ρ u_n u_t         = T
    u_n (ρE + p)      = m h0

Eliminating ρ, u_n and u_t leaves one equation in the pressure,

    f(p) = γ/(γ-1) p (N - p)/m² + ½ [(N - p)² + |T|²]/m² - h0 = 0,

solved by Newton iteration from the area-averaged pressure. The flux
integrals are reduced over all partitions before the iteration starts.
"""

import numpy as np
from typing import Any, Dict, Optional
from dataclasses import dataclass
import logging

from .core.exceptions import ConfigurationError
from .equations.equation_sets import EulerEquations

logger = logging.getLogger(__name__)


@dataclass
class MarkerFluxSummary:
    """Area-integrated fluxes through one marker."""
    mass: float
    momentum: np.ndarray
    energy: float
    area: float
    normal_sum: np.ndarray
    pressure_area: float  # ∫ p dA, initial guess of the Newton iteration
    density_area: float = 0.0  # ∫ ρ dA, used when there is no through-flow

    @property
    def unit_normal(self) -> np.ndarray:
        magnitude = np.linalg.norm(self.normal_sum)
        return self.normal_sum / magnitude if magnitude > 0.0 else self.normal_sum


@dataclass
class MixedOutState:
    """Result of one mixed-out averaging call."""
    marker: str
    pressure: float
    density: float
    velocity: np.ndarray
    normal_velocity: float
    converged: bool
    iterations: int
    residual: float
    summary: Optional[MarkerFluxSummary] = None

    def primitive(self) -> np.ndarray:
        return np.concatenate([[self.density], self.velocity, [self.pressure]])

    def diagnostics(self) -> Dict[str, Any]:
        return {
            'converged': self.converged,
            'iterations': self.iterations,
            'residual': self.residual,
            'pressure': self.pressure,
            'density': self.density,
        }


class MixedOutAverager:
    """
    Newton solver for the mixed-out state of a marker.

    Non-convergence is not an error: the best estimate is returned with
    converged=False.
    """

    def __init__(self, equations: EulerEquations, config=None, communicator=None):
        """
        Initialize mixed-out averager.

        Args:
            equations: Compressible equation set providing the gas model
            config: MixedOutConfig (tolerance, iteration cap, derivative kind)
            communicator: Communicator used to reduce flux integrals
        """
        if not isinstance(equations, EulerEquations):
            raise ConfigurationError("Mixed-out averaging needs a compressible equation set")
        self.equations = equations
        self.gamma = equations.gamma
        self.tolerance = getattr(config, 'tolerance', 1e-10)
        self.max_iterations = getattr(config, 'max_iterations', 50)
        self.derivative = getattr(config, 'derivative', 'analytic')
        self.fd_step = getattr(config, 'finite_difference_step', 1e-6)
        self.communicator = communicator

    def integrate_fluxes(self, V: np.ndarray, normals: np.ndarray) -> MarkerFluxSummary:
        """
        Integrate mass, momentum and energy flux over the marker vertices.

        Args:
            V: Primitive states at the marker vertices (n_vertex, n_prim)
            normals: Outward area-weighted normals (n_vertex, n_dim)
        """
        eq = self.equations
        flux = eq.flux(V, normals) if len(V) else np.zeros((0, eq.n_var))
        areas = np.linalg.norm(normals, axis=1) if len(V) else np.zeros(0)
        local = np.concatenate([
            np.sum(flux, axis=0),
            [np.sum(areas)],
            np.sum(normals, axis=0) if len(V) else np.zeros(eq.n_dim),
            [np.sum(V[:, eq.pressure_index] * areas) if len(V) else 0.0],
            [np.sum(V[:, 0] * areas) if len(V) else 0.0],
        ])
        if self.communicator is not None:
            local = np.asarray(self.communicator.global_reduction(local, "sum"))

        n_dim = eq.n_dim
        return MarkerFluxSummary(
            mass=float(local[0]),
            momentum=local[1:1 + n_dim].copy(),
            energy=float(local[n_dim + 1]),
            area=float(local[n_dim + 2]),
            normal_sum=local[n_dim + 3:2 * n_dim + 3].copy(),
            pressure_area=float(local[2 * n_dim + 3]),
            density_area=float(local[2 * n_dim + 4]),
        )

    def _residual(self, p, m, N, T2, h0):
        g = self.gamma / (self.gamma - 1.0)
        return g * p * (N - p) / m**2 + 0.5 * ((N - p) ** 2 + T2) / m**2 - h0

    def _derivative(self, p, m, N, T2, h0):
        if self.derivative == "finite_difference":
            h = self.fd_step * max(abs(p), 1.0)
            return (self._residual(p + h, m, N, T2, h0) - self._residual(p - h, m, N, T2, h0)) / (2.0 * h)
        g = self.gamma / (self.gamma - 1.0)
        return g * (N - 2.0 * p) / m**2 - (N - p) / m**2

    def solve(self, summary: MarkerFluxSummary, marker: str = "") -> MixedOutState:
        """Newton iteration on the pressure for already-integrated fluxes."""
        if summary.area <= 0.0:
            raise ConfigurationError(f"Mixed-out average on '{marker}' needs a marker with positive area")
        normal = summary.unit_normal
        m = summary.mass / summary.area
        momentum = summary.momentum / summary.area
        N = float(momentum @ normal)
        T = momentum - N * normal
        T2 = float(T @ T)
        p = summary.pressure_area / summary.area

        if abs(m) <= 1e-12 * max(abs(N), 1.0):
            logger.warning(f"No through-flow on marker '{marker}': using the area-averaged pressure")
            density = summary.density_area / summary.area
            return MixedOutState(marker, p, density, np.zeros_like(normal), 0.0, False, 0, np.inf, summary)

        h0 = summary.energy / summary.mass
        converged = False
        iterations = 0
        residual = np.inf
        for iterations in range(1, self.max_iterations + 1):
            f = self._residual(p, m, N, T2, h0)
            residual = abs(f) / abs(h0)
            if residual <= self.tolerance:
                converged = True
                break
            slope = self._derivative(p, m, N, T2, h0)
            if slope == 0.0 or not np.isfinite(slope):
                break
            step = f / slope
            p_new = p - step
            # Keep ρ = m²/(N - p) positive
            for _ in range(60):
                if 0.0 < p_new < N:
                    break
                step *= 0.5
                p_new = p - step
            p = p_new
            logger.debug(f"Mixed-out '{marker}' iteration {iterations}: p={p:.10g}, residual={residual:.3e}")

        if not converged:
            residual = abs(self._residual(p, m, N, T2, h0)) / abs(h0)
            logger.warning(f"Mixed-out average on '{marker}' not converged after "
                           f"{iterations} iterations (residual {residual:.3e})")

        normal_velocity = (N - p) / m
        density = m**2 / (N - p)
        velocity = normal_velocity * normal + T / m
        return MixedOutState(marker, float(p), float(density), velocity, float(normal_velocity),
                             converged, iterations, float(residual), summary)

    def average(self, V: np.ndarray, normals: np.ndarray, marker: str = "") -> MixedOutState:
        """Integrate the marker profile and return its mixed-out state."""
        return self.solve(self.integrate_fluxes(V, normals), marker)


@dataclass
class TurboPerformance:
    """Performance quantities of one turbomachinery marker."""
    marker: str
    mass_flow: float
    static_pressure: float
    static_temperature: float
    total_pressure: float
    total_temperature: float
    mach_number: float
    flow_angle: float  # degrees between velocity and marker normal
    entropy: float
    converged: bool


def marker_performance(state: MixedOutState, equations: EulerEquations) -> TurboPerformance:
    """Derive stagnation quantities and flow angle from a mixed-out state."""
    gas = equations.gas
    temperature = gas.temperature(state.density, state.pressure)
    speed = float(np.linalg.norm(state.velocity))
    mach = speed / gas.speed_of_sound(state.density, state.pressure)
    tangential = np.linalg.norm(state.velocity - state.normal_velocity * state.summary.unit_normal)
    return TurboPerformance(
        marker=state.marker,
        mass_flow=state.summary.mass,
        static_pressure=state.pressure,
        static_temperature=float(temperature),
        total_pressure=float(gas.total_pressure(state.pressure, mach)),
        total_temperature=float(gas.total_temperature(temperature, mach)),
        mach_number=float(mach),
        flow_angle=float(np.degrees(np.arctan2(tangential, abs(state.normal_velocity)))),
        entropy=float(gas.entropy(state.density, state.pressure)),
        converged=state.converged,
    )


def stage_performance(inlet: TurboPerformance, outlet: TurboPerformance, gamma: float) -> Dict[str, float]:
    """Total-pressure ratio, total-temperature ratio and isentropic efficiency between two markers."""
    pressure_ratio = outlet.total_pressure / inlet.total_pressure
    temperature_ratio = outlet.total_temperature / inlet.total_temperature
    ideal = pressure_ratio ** ((gamma - 1.0) / gamma) - 1.0
    actual = temperature_ratio - 1.0
    if abs(actual) < 1e-14:
        efficiency = float('nan')
    elif actual > 0.0:
        efficiency = ideal / actual  # compression
    else:
        efficiency = actual / ideal if ideal != 0.0 else float('nan')  # expansion
    return {
        'total_pressure_ratio': pressure_ratio,
        'total_temperature_ratio': temperature_ratio,
        'isentropic_efficiency': efficiency,
        'entropy_rise': outlet.entropy - inlet.entropy,
    }


class TurbomachineryCapability:
    """Performance accessors keyed by turbomachinery marker."""

    def __init__(self, mesh, equations: EulerEquations, averager: MixedOutAverager, markers):
        self.mesh = mesh
        self.equations = equations
        self.averager = averager
        self.markers = list(markers)

    def performance(self, store, marker: str) -> TurboPerformance:
        """Mixed-out performance of the marker's current profile."""
        geometry = self.mesh.marker(marker)
        owned = geometry.vertices < self.mesh.n_owned
        state = self.averager.average(store.primitive[geometry.vertices[owned]],
                                      geometry.normals[owned], marker)
        return marker_performance(state, self.equations)

    def all_performance(self, store) -> Dict[str, TurboPerformance]:
        return {marker: self.performance(store, marker) for marker in self.markers}

    def stage(self, store, inlet: str, outlet: str) -> Dict[str, float]:
        return stage_performance(self.performance(store, inlet), self.performance(store, outlet),
                                 self.equations.gamma)
