"""Equation sets and thermodynamic models."""

from edgeflow.equations.equation_sets import (
    EquationSet,
    EulerEquations,
    NavierStokesEquations,
    ScalarTransportEquations,
    create_equation_set,
)
from edgeflow.equations.equation_state import ConstantViscosity, PerfectGas, SutherlandViscosity

__all__ = [
    "EquationSet",
    "EulerEquations",
    "NavierStokesEquations",
    "ScalarTransportEquations",
    "create_equation_set",
    "ConstantViscosity",
    "PerfectGas",
    "SutherlandViscosity",
]
