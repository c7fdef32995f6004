"""
edgeflow: edge-based finite-volume flow solver core.

Vertex-centered discretization on median-dual meshes with upwind convective
fluxes, gradient reconstruction and limiting, weak and strong boundary
conditions, explicit and implicit time advance, mixed-out averaging and
distributed-memory halo exchange.
"""

import logging

__author__ = "edgeflow developers"
__version__ = "0.1.0"

from edgeflow.core.config import SolverConfig
from edgeflow.core.exceptions import ConfigurationError, EdgeflowError
from edgeflow.flow_solver import FlowSolver
from edgeflow.mesh.dual_mesh import DualMesh, build_cartesian_dual_mesh, build_line_dual_mesh

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "SolverConfig",
    "ConfigurationError",
    "EdgeflowError",
    "FlowSolver",
    "DualMesh",
    "build_cartesian_dual_mesh",
    "build_line_dual_mesh",
]
