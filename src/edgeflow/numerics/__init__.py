"""Gradients, limiters and flux schemes."""

from edgeflow.numerics.convective_fluxes import FluxResult, RoeScheme, RusanovScheme, create_convective_scheme
from edgeflow.numerics.gradients import compute_gradient, green_gauss_gradient, least_squares_gradient
from edgeflow.numerics.limiters import (
    BarthJespersenLimiter,
    NoLimiter,
    VenkatakrishnanLimiter,
    create_limiter,
    reconstruct,
)
from edgeflow.numerics.source_terms import BodyForceSource, LinearRelaxationSource, create_source_terms
from edgeflow.numerics.viscous_fluxes import NavierStokesViscousFlux, ScalarDiffusionFlux, create_viscous_flux

__all__ = [
    "FluxResult",
    "RoeScheme",
    "RusanovScheme",
    "create_convective_scheme",
    "compute_gradient",
    "green_gauss_gradient",
    "least_squares_gradient",
    "BarthJespersenLimiter",
    "NoLimiter",
    "VenkatakrishnanLimiter",
    "create_limiter",
    "reconstruct",
    "BodyForceSource",
    "LinearRelaxationSource",
    "create_source_terms",
    "NavierStokesViscousFlux",
    "ScalarDiffusionFlux",
    "create_viscous_flux",
]
