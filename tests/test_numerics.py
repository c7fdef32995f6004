#!/usr/bin/env python
"""
Test suite for gradients, limiters and numerical fluxes.
"""

import os
import sys
import unittest
import numpy as np

# Add source directory to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from edgeflow.core.exceptions import ConfigurationError
from edgeflow.equations.equation_sets import EulerEquations, ScalarTransportEquations
from edgeflow.equations.equation_state import PerfectGas
from edgeflow.mesh.dual_mesh import DualMesh, MarkerGeometry, build_cartesian_dual_mesh, build_line_dual_mesh
from edgeflow.numerics.gradients import compute_gradient, green_gauss_gradient, least_squares_gradient
from edgeflow.numerics.limiters import BarthJespersenLimiter, VenkatakrishnanLimiter, create_limiter, edge_bounds
from edgeflow.numerics.convective_fluxes import RoeScheme, RusanovScheme, create_convective_scheme
from edgeflow.numerics.viscous_fluxes import ScalarDiffusionFlux, corrected_face_gradient
from edgeflow.numerics.source_terms import BodyForceSource, LinearRelaxationSource


def euler_2d():
    return EulerEquations(PerfectGas(1.4, 1.0), n_dim=2)


def interior_points(nx, ny):
    index = np.arange(nx * ny).reshape(ny, nx)
    return index[1:-1, 1:-1].ravel()


class TestGradients(unittest.TestCase):
    """Test Green-Gauss and least-squares gradients on the median dual."""

    def setUp(self):
        self.nx, self.ny = 6, 5
        self.mesh = build_cartesian_dual_mesh(self.nx, self.ny, lx=2.0, ly=1.0)
        x, y = self.mesh.coordinates[:, 0], self.mesh.coordinates[:, 1]
        self.field = 2.0 * x - 3.0 * y + 1.0

    def test_constant_field_has_zero_gradient(self):
        gradient = green_gauss_gradient(self.mesh, np.full(self.mesh.n_points, 4.0))
        np.testing.assert_allclose(gradient, 0.0, atol=1e-12)

    def test_green_gauss_linear_field_interior(self):
        gradient = green_gauss_gradient(self.mesh, self.field)
        interior = interior_points(self.nx, self.ny)
        np.testing.assert_allclose(gradient[interior], np.tile([2.0, -3.0], (len(interior), 1)), atol=1e-12)

    def test_least_squares_linear_field_everywhere(self):
        gradient, degraded = least_squares_gradient(self.mesh, self.field)
        self.assertFalse(np.any(degraded))
        np.testing.assert_allclose(gradient, np.tile([2.0, -3.0], (self.mesh.n_points, 1)), atol=1e-10)

    def test_multiple_fields(self):
        fields = np.column_stack([self.field, -self.field])
        gradient, _ = compute_gradient(self.mesh, fields, "weighted_least_squares")
        self.assertEqual(gradient.shape, (self.mesh.n_points, 2, 2))
        np.testing.assert_allclose(gradient[:, 1, :], -gradient[:, 0, :])

    def test_singular_stencil_falls_back(self):
        # Collinear points in 2D leave the normal equations singular
        mesh = DualMesh(
            coordinates=[[0.0, 0.0], [1.0, 0.0], [2.0, 0.0]],
            volumes=[0.5, 1.0, 0.5],
            edges=[[0, 1], [1, 2]],
            edge_normals=[[1.0, 0.0], [1.0, 0.0]],
            markers=[MarkerGeometry("left", [0], [[-1.0, 0.0]]), MarkerGeometry("right", [2], [[1.0, 0.0]])],
        )
        field = np.array([0.0, 1.0, 2.0])
        gradient, degraded = least_squares_gradient(mesh, field)
        self.assertTrue(np.all(degraded))
        np.testing.assert_allclose(gradient, green_gauss_gradient(mesh, field))

    def test_unknown_method(self):
        with self.assertRaises(ConfigurationError):
            compute_gradient(self.mesh, self.field, "divergence")


class TestLimiters(unittest.TestCase):
    """Test slope limiter bounds."""

    def test_linear_field_is_unlimited(self):
        mesh = build_line_dual_mesh(8)
        values = mesh.coordinates[:, :1].copy()
        gradient = green_gauss_gradient(mesh, values)
        phi = BarthJespersenLimiter().compute(mesh, values, gradient)
        np.testing.assert_allclose(phi, 1.0)

    def test_extremum_neighbour_is_limited(self):
        mesh = build_line_dual_mesh(9)
        values = np.zeros((9, 1))
        values[4] = 1.0
        gradient = green_gauss_gradient(mesh, values)
        phi = BarthJespersenLimiter().compute(mesh, values, gradient)
        self.assertAlmostEqual(phi[3, 0], 0.0)
        self.assertAlmostEqual(phi[5, 0], 0.0)

    def test_reconstruction_respects_edge_bounds(self):
        rng = np.random.default_rng(7)
        mesh = build_cartesian_dual_mesh(7, 6)
        values = rng.random((mesh.n_points, 2))
        gradient = green_gauss_gradient(mesh, values)
        phi = BarthJespersenLimiter().compute(mesh, values, gradient)
        self.assertTrue(np.all((phi >= 0.0) & (phi <= 1.0)))

        lower, upper = edge_bounds(mesh, values)
        i, j = mesh.edges[:, 0], mesh.edges[:, 1]
        half = 0.5 * mesh.edge_vectors
        face_i = values[i] + phi[i] * np.einsum("efd,ed->ef", gradient[i], half)
        face_j = values[j] + phi[j] * np.einsum("efd,ed->ef", gradient[j], -half)
        for face in (face_i, face_j):
            self.assertTrue(np.all(face <= upper + 1e-10))
            self.assertTrue(np.all(face >= lower - 1e-10))

    def test_venkatakrishnan_range(self):
        rng = np.random.default_rng(3)
        mesh = build_cartesian_dual_mesh(6, 6)
        values = rng.random((mesh.n_points, 1))
        gradient = green_gauss_gradient(mesh, values)
        phi = VenkatakrishnanLimiter(K=0.5).compute(mesh, values, gradient)
        self.assertTrue(np.all((phi >= 0.0) & (phi <= 1.0)))

    def test_factory(self):
        self.assertEqual(create_limiter("none").name, "none")
        self.assertEqual(create_limiter("venkatakrishnan", 2.0).K, 2.0)
        with self.assertRaises(ConfigurationError):
            create_limiter("minmod")


class TestConvectiveFluxes(unittest.TestCase):
    """Test Roe and Rusanov fluxes."""

    def setUp(self):
        self.eq = EulerEquations(PerfectGas(1.4, 287.0), n_dim=2)
        self.V_left = np.array([[1.0, 0.3, -0.1, 1.0], [1.2, 2.5, 0.4, 0.8]])
        self.V_right = np.array([[0.8, 0.1, 0.2, 0.7], [1.1, 2.4, 0.3, 0.9]])
        self.normals = np.array([[0.6, 0.8], [1.5, -0.5]])

    def test_roe_pressure_jump(self):
        eq = EulerEquations(PerfectGas(1.4, 287.0), n_dim=2)
        result = RoeScheme(eq).compute(np.array([[1.0, 0.0, 0.0, 1.0]]),
                                       np.array([[1.0, 0.0, 0.0, 0.5]]),
                                       np.array([[1.0, 0.0]]))
        c = np.sqrt(1.05)
        np.testing.assert_allclose(result.flux[0], [c / 4.2, 0.75, 0.0, 0.625 * c], rtol=1e-12, atol=1e-14)

    def test_consistency(self):
        for scheme in (RoeScheme(self.eq), RusanovScheme(self.eq)):
            result = scheme.compute(self.V_left, self.V_left, self.normals)
            np.testing.assert_allclose(result.flux, self.eq.flux(self.V_left, self.normals), atol=1e-12)

    def test_antisymmetry(self):
        for scheme in (RoeScheme(self.eq), RusanovScheme(self.eq)):
            forward = scheme.compute(self.V_left, self.V_right, self.normals).flux
            backward = scheme.compute(self.V_right, self.V_left, -self.normals).flux
            np.testing.assert_allclose(forward, -backward, atol=1e-12)

    def test_roe_supersonic_upwinding(self):
        V_left = np.array([[1.0, 3.0, 0.0, 1.0]])
        V_right = np.array([[1.05, 3.1, 0.0, 1.02]])
        normals = np.array([[1.0, 0.0]])
        result = RoeScheme(self.eq).compute(V_left, V_right, normals)
        np.testing.assert_allclose(result.flux, self.eq.flux(V_left, normals), rtol=1e-10, atol=1e-12)

    def test_jacobian_shapes(self):
        result = create_convective_scheme("roe", self.eq).compute(
            self.V_left, self.V_right, self.normals, compute_jacobian=True)
        self.assertEqual(result.jacobian_left.shape, (2, 4, 4))
        self.assertEqual(result.jacobian_right.shape, (2, 4, 4))

    def test_rusanov_jacobian_difference(self):
        result = RusanovScheme(self.eq).compute(self.V_left, self.V_right, self.normals, compute_jacobian=True)
        lam = result.spectral_radius
        difference = result.jacobian_left - result.jacobian_right
        A_avg = 0.5 * (self.eq.flux_jacobian(self.V_left, self.normals)
                       - self.eq.flux_jacobian(self.V_right, self.normals))
        np.testing.assert_allclose(difference - A_avg, lam[:, None, None] * np.eye(4)[None], atol=1e-12)

    def test_roe_needs_compressible_equations(self):
        with self.assertRaises(ConfigurationError):
            RoeScheme(ScalarTransportEquations([1.0, 0.0]))
        with self.assertRaises(ConfigurationError):
            create_convective_scheme("hllc", self.eq)

    def test_rusanov_scalar_upwind(self):
        eq = ScalarTransportEquations([2.0, 0.0])
        result = RusanovScheme(eq).compute(np.array([[1.0]]), np.array([[3.0]]), np.array([[1.0, 0.0]]))
        self.assertAlmostEqual(result.flux[0, 0], 2.0)


class TestEquationSets(unittest.TestCase):
    """Test conversions and analytic flux Jacobians."""

    def setUp(self):
        self.eq = euler_2d()
        self.V = np.array([[1.3, 0.4, -0.2, 2.1], [0.9, -1.0, 0.5, 1.4]])
        self.normals = np.array([[0.5, 0.2], [-0.3, 1.0]])

    def test_conversion_round_trip(self):
        U = self.eq.to_conservative(self.V)
        np.testing.assert_allclose(self.eq.to_primitive(U), self.V)

    def test_flux_is_homogeneous(self):
        U = self.eq.to_conservative(self.V)
        A = self.eq.flux_jacobian(self.V, self.normals)
        np.testing.assert_allclose(np.einsum("nij,nj->ni", A, U), self.eq.flux(self.V, self.normals), atol=1e-12)

    def test_flux_jacobian_matches_finite_difference(self):
        eq = self.eq
        U = eq.to_conservative(self.V)
        A = eq.flux_jacobian(self.V, self.normals)
        step = 1e-7
        for k in range(eq.n_var):
            U_step = U.copy()
            U_step[:, k] += step
            derivative = (eq.flux(eq.to_primitive(U_step), self.normals) - eq.flux(self.V, self.normals)) / step
            np.testing.assert_allclose(derivative, A[:, :, k], atol=1e-5)

    def test_recover_primitive_clips(self):
        U = self.eq.to_conservative(self.V)
        U[1, 3] = 0.0  # negative pressure
        V, repaired, bad = self.eq.recover_primitive(U)
        self.assertEqual(bad.tolist(), [False, True])
        self.assertGreater(V[1, 3], 0.0)
        np.testing.assert_allclose(self.eq.to_primitive(repaired), V, atol=1e-12)

    def test_conservative_gradient_matches_finite_difference(self):
        eq = self.eq
        grad_V = np.random.default_rng(3).normal(size=(2, eq.n_prim, 2))
        grad_U = eq.conservative_gradient(self.V, grad_V)
        self.assertEqual(grad_U.shape, (2, eq.n_var, 2))

        step = 1e-6
        for direction in (np.array([1.0, 0.0]), np.array([0.6, -0.8])):
            dV = np.einsum("nkd,d->nk", grad_V, direction)
            derivative = (eq.to_conservative(self.V + step * dV) - eq.to_conservative(self.V - step * dV)) / (2 * step)
            np.testing.assert_allclose(np.einsum("nkd,d->nk", grad_U, direction), derivative, atol=1e-7)

    def test_scalar_conservative_gradient(self):
        eq = ScalarTransportEquations([1.0, 0.0])
        grad = np.array([[[0.5, -2.0]]])
        np.testing.assert_allclose(eq.conservative_gradient(np.array([[3.0]]), grad), grad)


class TestSourcesAndDiffusion(unittest.TestCase):
    """Test point sources and diffusive face fluxes."""

    def test_linear_relaxation(self):
        source = LinearRelaxationSource(2.0, [1.0, 0.0, 3.0])
        U = np.array([[2.0, 1.0, 3.0]])
        S, jacobian = source.compute(U, U, compute_jacobian=True)
        np.testing.assert_allclose(S, [[-2.0, -2.0, 0.0]])
        np.testing.assert_allclose(jacobian[0], -2.0 * np.eye(3))

    def test_relaxation_target_size(self):
        source = LinearRelaxationSource(1.0, [1.0, 0.0])
        with self.assertRaises(ConfigurationError):
            source.compute(np.ones((1, 3)), np.ones((1, 3)))

    def test_body_force(self):
        eq = euler_2d()
        V = np.array([[2.0, 1.0, 0.5, 1.0]])
        U = eq.to_conservative(V)
        S, jacobian = BodyForceSource(eq, [0.0, -10.0]).compute(U, V, compute_jacobian=True)
        np.testing.assert_allclose(S[0], [0.0, 0.0, -20.0, -10.0])
        np.testing.assert_allclose(np.einsum("nij,nj->ni", jacobian, U), S)

    def test_corrected_face_gradient(self):
        gradient, length = corrected_face_gradient(
            np.array([[0.0]]), np.array([[1.0]]), np.zeros((1, 1, 2)), np.zeros((1, 1, 2)),
            np.array([[2.0, 0.0]]))
        np.testing.assert_allclose(gradient[0, 0], [0.5, 0.0])
        self.assertAlmostEqual(length[0], 2.0)

    def test_scalar_diffusion_flux(self):
        eq = ScalarTransportEquations([0.0, 0.0], diffusivity=0.1)
        result = ScalarDiffusionFlux(eq).compute(
            np.array([[0.0]]), np.array([[1.0]]), np.zeros((1, 1, 2)), np.zeros((1, 1, 2)),
            np.array([[2.0, 0.0]]), np.array([[3.0, 0.0]]), compute_jacobian=True)
        self.assertAlmostEqual(result.flux[0, 0], 0.1 * 0.5 * 3.0)
        self.assertAlmostEqual(result.jacobian_right[0, 0, 0], 0.1 * 3.0 / 2.0)


if __name__ == "__main__":
    unittest.main()
