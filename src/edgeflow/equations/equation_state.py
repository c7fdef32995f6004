"""
Equation of State for Compressible Flow

Provides the thermodynamic relationships of a calorically perfect gas,
evaluated on whole point or edge arrays at once, plus the laminar
viscosity laws used by the Navier-Stokes equation set.
"""

import numpy as np
from typing import Union
import logging

logger = logging.getLogger(__name__)

ArrayLike = Union[float, np.ndarray]


class PerfectGas:
    """
    Perfect gas equation of state: p = ρRT

    All methods accept scalars or numpy arrays and broadcast.
    """

    def __init__(self, gamma: float = 1.4, gas_constant: float = 287.058):
        """Initialize perfect gas model."""
        self.gamma = gamma
        self.R = gas_constant
        self.gamma_minus_1 = gamma - 1.0

        # Specific heats
        self.cv = self.R / self.gamma_minus_1
        self.cp = self.gamma * self.cv

        logger.debug(f"Initialized perfect gas: γ={self.gamma}, R={self.R} J/kg/K")

    def pressure(self, density: ArrayLike, temperature: ArrayLike) -> ArrayLike:
        """Compute pressure: p = ρRT."""
        return density * self.R * temperature

    def temperature(self, density: ArrayLike, pressure: ArrayLike) -> ArrayLike:
        """Compute temperature: T = p/(ρR)."""
        return pressure / (density * self.R)

    def density(self, pressure: ArrayLike, temperature: ArrayLike) -> ArrayLike:
        """Compute density: ρ = p/(RT)."""
        return pressure / (self.R * temperature)

    def speed_of_sound(self, density: ArrayLike, pressure: ArrayLike) -> ArrayLike:
        """Compute speed of sound: a = √(γp/ρ)."""
        return np.sqrt(self.gamma * pressure / density)

    def speed_of_sound_from_temperature(self, temperature: ArrayLike) -> ArrayLike:
        """Compute speed of sound from temperature: a = √(γRT)."""
        return np.sqrt(self.gamma * self.R * temperature)

    def internal_energy(self, density: ArrayLike, pressure: ArrayLike) -> ArrayLike:
        """Volumetric internal energy ρe = p/(γ-1)."""
        return pressure / self.gamma_minus_1

    def total_enthalpy(self, density: ArrayLike, pressure: ArrayLike,
                       velocity_squared: ArrayLike) -> ArrayLike:
        """Compute total enthalpy: H = γ/(γ-1) p/ρ + ½|u|²."""
        return self.gamma / self.gamma_minus_1 * pressure / density + 0.5 * velocity_squared

    def total_temperature(self, temperature: ArrayLike, mach: ArrayLike) -> ArrayLike:
        """Isentropic stagnation temperature."""
        return temperature * (1.0 + 0.5 * self.gamma_minus_1 * mach**2)

    def total_pressure(self, pressure: ArrayLike, mach: ArrayLike) -> ArrayLike:
        """Isentropic stagnation pressure."""
        return pressure * (1.0 + 0.5 * self.gamma_minus_1 * mach**2) ** (self.gamma / self.gamma_minus_1)

    def entropy(self, density: ArrayLike, pressure: ArrayLike) -> ArrayLike:
        """Specific entropy relative to p = ρ = 1: s = cv ln(p/ρ^γ)."""
        return self.cv * np.log(pressure / density**self.gamma)


class ConstantViscosity:
    """Temperature-independent laminar viscosity."""

    def __init__(self, viscosity: float):
        self.viscosity = viscosity

    def __call__(self, temperature: ArrayLike) -> ArrayLike:
        return np.full_like(np.asarray(temperature, dtype=float), self.viscosity)


class SutherlandViscosity:
    """Sutherland's law: μ = μ_ref (T/T_ref)^{3/2} (T_ref + S)/(T + S)."""

    def __init__(self, reference_viscosity: float = 1.716e-5,
                 reference_temperature: float = 273.15,
                 sutherland_temperature: float = 110.4):
        self.mu_ref = reference_viscosity
        self.T_ref = reference_temperature
        self.S = sutherland_temperature

    def __call__(self, temperature: ArrayLike) -> ArrayLike:
        T = np.asarray(temperature, dtype=float)
        return self.mu_ref * (T / self.T_ref) ** 1.5 * (self.T_ref + self.S) / (T + self.S)
