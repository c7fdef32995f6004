"""Configuration management for edgeflow solver runs."""

import json
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import numpy as np
import yaml

from .exceptions import ConfigurationError

EQUATION_SETS = ("euler", "navier_stokes", "scalar_transport")
CONVECTIVE_SCHEMES = ("roe", "rusanov")
GRADIENT_METHODS = ("green_gauss", "weighted_least_squares")
LIMITERS = ("none", "barth_jespersen", "venkatakrishnan")
TIME_SCHEMES = ("explicit_euler", "runge_kutta", "classical_rk4", "implicit_euler")
TIME_MARCHING = ("steady", "dual_time_first", "dual_time_second")
LINEAR_METHODS = ("gmres", "bicgstab", "direct")
PRECONDITIONERS = ("ilu", "jacobi", "none")
VISCOSITY_MODELS = ("constant", "sutherland")


def _check_choice(section: str, name: str, value: str, choices) -> None:
    if value not in choices:
        raise ConfigurationError(
            f"Unknown {section}.{name} '{value}', expected one of: {', '.join(choices)}"
        )


def _build(cls, data: Optional[Dict[str, Any]], section: str):
    """Instantiate a config dataclass, turning unknown keys into ConfigurationError."""
    data = data or {}
    try:
        return cls(**data)
    except TypeError as exc:
        raise ConfigurationError(f"Invalid '{section}' section: {exc}") from exc


@dataclass
class FluidConfig:
    """Perfect-gas fluid model parameters."""
    gamma: float = 1.4
    gas_constant: float = 287.058  # J/(kg·K)
    prandtl_number: float = 0.72
    viscosity_model: str = "constant"
    viscosity: float = 1.716e-5  # Pa·s
    sutherland_temperature: float = 110.4  # K
    reference_temperature: float = 273.15  # K

    def __post_init__(self):
        _check_choice("fluid", "viscosity_model", self.viscosity_model, VISCOSITY_MODELS)
        if self.gamma <= 1.0:
            raise ConfigurationError(f"fluid.gamma must be > 1, got {self.gamma}")


@dataclass
class FreestreamConfig:
    """Free-stream reference state."""
    mach: float = 0.5
    angle_of_attack: float = 0.0  # degrees
    angle_of_sideslip: float = 0.0  # degrees
    pressure: float = 101325.0  # Pa
    temperature: float = 288.15  # K

    def flow_direction(self, n_dim: int) -> np.ndarray:
        """Unit free-stream direction for the given spatial dimension."""
        alpha = np.radians(self.angle_of_attack)
        beta = np.radians(self.angle_of_sideslip)
        if n_dim == 1:
            return np.array([1.0])
        if n_dim == 2:
            return np.array([np.cos(alpha), np.sin(alpha)])
        return np.array([np.cos(alpha) * np.cos(beta), np.sin(beta), np.sin(alpha) * np.cos(beta)])

    def primitive(self, fluid: FluidConfig, n_dim: int) -> np.ndarray:
        """Free-stream primitive vector [rho, u_1..u_nDim, p]."""
        density = self.pressure / (fluid.gas_constant * self.temperature)
        speed = self.mach * np.sqrt(fluid.gamma * fluid.gas_constant * self.temperature)
        return np.concatenate([[density], speed * self.flow_direction(n_dim), [self.pressure]])


@dataclass
class NumericsConfig:
    """Spatial discretization settings."""
    convective_scheme: str = "roe"
    entropy_fix: bool = True
    entropy_fix_parameter: float = 0.125
    muscl: bool = False
    gradient_method: str = "green_gauss"
    limiter: str = "venkatakrishnan"
    venkatakrishnan_k: float = 5.0
    lsq_singular_tolerance: float = 1e-10
    density_floor: float = 1e-10
    pressure_floor: float = 1e-10
    viscous: bool = False
    compute_jacobians: bool = True

    def __post_init__(self):
        _check_choice("numerics", "convective_scheme", self.convective_scheme, CONVECTIVE_SCHEMES)
        _check_choice("numerics", "gradient_method", self.gradient_method, GRADIENT_METHODS)
        _check_choice("numerics", "limiter", self.limiter, LIMITERS)


@dataclass
class LinearSolverConfig:
    """Settings handed to the sparse linear solver."""
    method: str = "gmres"
    preconditioner: str = "ilu"
    tolerance: float = 1e-8
    max_iterations: int = 200
    restart: int = 50

    def __post_init__(self):
        _check_choice("linear_solver", "method", self.method, LINEAR_METHODS)
        _check_choice("linear_solver", "preconditioner", self.preconditioner, PRECONDITIONERS)


@dataclass
class TimeIntegrationConfig:
    """Configuration for time integration schemes."""
    scheme: str = "runge_kutta"
    rk_coefficients: List[float] = field(default_factory=lambda: [0.25, 1.0 / 3.0, 0.5, 1.0])
    cfl_number: float = 1.0
    local_time_stepping: bool = True
    max_time_step: float = 1e10
    time_step: Optional[float] = None  # fixed (pseudo-)time step overriding the CFL bound
    time_marching: str = "steady"
    physical_time_step: float = 1e-3
    inner_iterations: int = 20
    linear_solver: LinearSolverConfig = field(default_factory=LinearSolverConfig)

    def __post_init__(self):
        _check_choice("time", "scheme", self.scheme, TIME_SCHEMES)
        _check_choice("time", "time_marching", self.time_marching, TIME_MARCHING)
        if isinstance(self.linear_solver, dict):
            self.linear_solver = _build(LinearSolverConfig, self.linear_solver, "time.linear_solver")
        if not self.rk_coefficients:
            raise ConfigurationError("time.rk_coefficients must not be empty")
        if self.cfl_number <= 0.0:
            raise ConfigurationError(f"time.cfl_number must be positive, got {self.cfl_number}")

    @property
    def is_implicit(self) -> bool:
        return self.scheme == "implicit_euler"

    @property
    def is_dual_time(self) -> bool:
        return self.time_marching.startswith("dual_time")


@dataclass
class MixedOutConfig:
    """Newton settings for mixed-out averaging."""
    tolerance: float = 1e-10
    max_iterations: int = 50
    derivative: str = "analytic"  # 'analytic' or 'finite_difference'
    finite_difference_step: float = 1e-6

    def __post_init__(self):
        _check_choice("mixed_out", "derivative", self.derivative, ("analytic", "finite_difference"))


@dataclass
class MarkerConfig:
    """One boundary marker as written in a configuration file."""
    name: str
    kind: str
    parameters: Dict[str, float] = field(default_factory=dict)
    donor: Optional[str] = None
    unsteady: Optional[Dict[str, Any]] = None
    values: Optional[List[List[float]]] = None


@dataclass
class SourceConfig:
    """Volume source term entry."""
    kind: str  # 'linear_relaxation' or 'body_force'
    rate: float = 0.0
    target: Optional[List[float]] = None
    acceleration: Optional[List[float]] = None


@dataclass
class ScalarTransportConfig:
    """Advection velocity and diffusivity for the scalar transport equation set."""
    velocity: List[float] = field(default_factory=lambda: [1.0, 0.0])
    diffusivity: float = 0.0
    floor: float = 0.0
    initial_value: float = 0.0


@dataclass
class ConvergenceConfig:
    """Stopping criteria and monitoring output."""
    max_iterations: int = 1000
    residual_target: float = -8.0  # log10 of the RMS of the first variable
    residual_reduction: float = 0.0  # orders of magnitude; 0 disables
    cauchy_elements: int = 0  # 0 disables the Cauchy criterion
    cauchy_epsilon: float = 1e-6
    monitor_frequency: int = 10
    history_file: Optional[str] = None


@dataclass
class ReferenceConfig:
    """Reference values for force and moment coefficients."""
    area: float = 1.0
    length: float = 1.0
    origin: List[float] = field(default_factory=lambda: [0.25, 0.0, 0.0])


@dataclass
class SolverConfig:
    """Top-level configuration of one solver instance."""
    equation_set: str = "euler"
    fluid: FluidConfig = field(default_factory=FluidConfig)
    freestream: FreestreamConfig = field(default_factory=FreestreamConfig)
    numerics: NumericsConfig = field(default_factory=NumericsConfig)
    time: TimeIntegrationConfig = field(default_factory=TimeIntegrationConfig)
    mixed_out: MixedOutConfig = field(default_factory=MixedOutConfig)
    convergence: ConvergenceConfig = field(default_factory=ConvergenceConfig)
    reference: ReferenceConfig = field(default_factory=ReferenceConfig)
    scalar: ScalarTransportConfig = field(default_factory=ScalarTransportConfig)
    markers: List[MarkerConfig] = field(default_factory=list)
    sources: List[SourceConfig] = field(default_factory=list)
    mesh: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        _check_choice("solver", "equation_set", self.equation_set, EQUATION_SETS)
        names = [marker.name for marker in self.markers]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate marker names: {', '.join(duplicates)}")

    @classmethod
    def from_file(cls, config_path: Union[str, Path]) -> 'SolverConfig':
        """Load configuration from YAML or JSON file."""
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, 'r') as f:
            if config_path.suffix.lower() in ['.yaml', '.yml']:
                data = yaml.safe_load(f)
            elif config_path.suffix.lower() == '.json':
                data = json.load(f)
            else:
                raise ConfigurationError(f"Unsupported config file format: {config_path.suffix}")

        return cls.from_dict(data or {})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SolverConfig':
        """Create configuration from dictionary."""
        config_data = dict(data)
        config_data['fluid'] = _build(FluidConfig, data.get('fluid'), 'fluid')
        config_data['freestream'] = _build(FreestreamConfig, data.get('freestream'), 'freestream')
        config_data['numerics'] = _build(NumericsConfig, data.get('numerics'), 'numerics')
        config_data['time'] = _build(TimeIntegrationConfig, data.get('time'), 'time')
        config_data['mixed_out'] = _build(MixedOutConfig, data.get('mixed_out'), 'mixed_out')
        config_data['convergence'] = _build(ConvergenceConfig, data.get('convergence'), 'convergence')
        config_data['reference'] = _build(ReferenceConfig, data.get('reference'), 'reference')
        config_data['scalar'] = _build(ScalarTransportConfig, data.get('scalar'), 'scalar')
        config_data['markers'] = [
            _build(MarkerConfig, marker_data, 'markers') for marker_data in data.get('markers', [])
        ]
        config_data['sources'] = [
            _build(SourceConfig, source_data, 'sources') for source_data in data.get('sources', [])
        ]

        try:
            return cls(**config_data)
        except TypeError as exc:
            raise ConfigurationError(f"Invalid solver configuration: {exc}") from exc

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return asdict(self)

    def save(self, config_path: Union[str, Path]) -> None:
        """Save configuration to file."""
        config_path = Path(config_path)

        with open(config_path, 'w') as f:
            if config_path.suffix.lower() in ['.yaml', '.yml']:
                yaml.safe_dump(self.to_dict(), f, default_flow_style=False)
            elif config_path.suffix.lower() == '.json':
                json.dump(self.to_dict(), f, indent=2)
            else:
                raise ConfigurationError(f"Unsupported config file format: {config_path.suffix}")
