"""Configuration, exceptions and capability registry for edgeflow."""

from edgeflow.core.capabilities import AERODYNAMICS, TURBOMACHINERY, SolverCapabilities
from edgeflow.core.config import SolverConfig
from edgeflow.core.exceptions import (
    ConfigurationError,
    EdgeflowError,
    HaloExchangeError,
    LinearSolverError,
    MeshError,
)

__all__ = [
    "AERODYNAMICS",
    "TURBOMACHINERY",
    "SolverCapabilities",
    "SolverConfig",
    "ConfigurationError",
    "EdgeflowError",
    "HaloExchangeError",
    "LinearSolverError",
    "MeshError",
]
