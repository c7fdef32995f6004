#!/usr/bin/env python
"""
Test suite for boundary condition binding and handlers.
"""

import os
import sys
import unittest
import numpy as np

# Add source directory to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from edgeflow.core.config import ReferenceConfig
from edgeflow.core.exceptions import ConfigurationError
from edgeflow.equations.equation_sets import EulerEquations, ScalarTransportEquations
from edgeflow.equations.equation_state import PerfectGas
from edgeflow.mesh.dual_mesh import DualMesh, MarkerGeometry, build_cartesian_dual_mesh
from edgeflow.numerics.convective_fluxes import RoeScheme, RusanovScheme
from edgeflow.flux_assembly import FluxAssembler
from edgeflow.linear_algebra import BlockSparseSystem
from edgeflow.state_store import StateStore
from edgeflow.boundary.markers import BoundaryKind, BoundaryMarker
from edgeflow.boundary.dispatcher import BoundaryContext, BoundaryDispatcher
from edgeflow.boundary.handlers import DEFAULT_HANDLERS, static_pressure_ghost, total_condition_ghost
from edgeflow.turbomachinery import MixedOutAverager
from edgeflow.aerodynamics import AerodynamicsCapability

WALLS = {'left': 'wall', 'right': 'wall', 'bottom': 'wall', 'top': 'wall'}


def euler_2d(gas_constant=1.0):
    return EulerEquations(PerfectGas(1.4, gas_constant), n_dim=2)


def setup_boundaries(mesh, eq, markers, V, system=None, scheme=None, averager=None, dispatcher=None):
    """Bind markers and build the context of one assembly pass over a uniform or given state."""
    V = np.broadcast_to(np.atleast_2d(V), (mesh.n_points, eq.n_prim)).copy()
    store = StateStore(mesh.n_points, eq.n_var, eq.n_prim, mesh.n_dim)
    store.set_solution(eq.to_conservative(V))
    store.primitive[:] = V
    store.halo_stale = False
    assembler = FluxAssembler(mesh, eq, scheme or RoeScheme(eq))
    dispatcher = dispatcher or BoundaryDispatcher()
    dispatcher.bind(markers, mesh, eq)
    context = BoundaryContext(mesh, store, eq, assembler, freestream=V[0].copy(),
                              system=system, averager=averager)
    return dispatcher, context


def assemble(dispatcher, context):
    context.store.reset_residual()
    context.assembler.assemble_interior(context.store, context.system)
    return dispatcher.apply(context)


class TestBinding(unittest.TestCase):
    """Test marker validation at bind time."""

    def setUp(self):
        self.mesh = build_cartesian_dual_mesh(4, 3)
        self.eq = euler_2d()
        self.walls = [BoundaryMarker(name, BoundaryKind.EULER_WALL) for name in ('left', 'right', 'bottom', 'top')]

    def test_unconfigured_mesh_marker(self):
        with self.assertRaises(ConfigurationError) as ctx:
            BoundaryDispatcher().bind(self.walls[:3], self.mesh, self.eq)
        self.assertIn("top", str(ctx.exception))

    def test_marker_missing_from_mesh(self):
        markers = self.walls + [BoundaryMarker("inlet", BoundaryKind.FAR_FIELD)]
        with self.assertRaises(ConfigurationError):
            BoundaryDispatcher().bind(markers, self.mesh, self.eq)

    def test_missing_required_parameter(self):
        markers = self.walls[:3] + [BoundaryMarker("top", BoundaryKind.OUTLET)]
        with self.assertRaises(ConfigurationError) as ctx:
            BoundaryDispatcher().bind(markers, self.mesh, self.eq)
        self.assertIn("pressure", str(ctx.exception))

    def test_kind_without_handler_is_fatal(self):
        handlers = dict(DEFAULT_HANDLERS)
        del handlers[BoundaryKind.EULER_WALL]
        with self.assertRaises(ConfigurationError):
            BoundaryDispatcher(handlers).bind(self.walls, self.mesh, self.eq)

    def test_scalar_set_rejects_compressible_kinds(self):
        eq = ScalarTransportEquations([1.0, 0.0])
        markers = self.walls[:3] + [BoundaryMarker("top", BoundaryKind.OUTLET, {'pressure': 1.0})]
        with self.assertRaises(ConfigurationError):
            BoundaryDispatcher().bind(markers, self.mesh, eq)

    def test_paired_marker_needs_mesh_donors(self):
        markers = [BoundaryMarker("left", BoundaryKind.PERIODIC, donor="right"),
                   BoundaryMarker("right", BoundaryKind.PERIODIC, donor="left")] + self.walls[2:]
        with self.assertRaises(ConfigurationError):
            BoundaryDispatcher().bind(markers, self.mesh, self.eq)

    def test_prescribed_table_shape(self):
        markers = self.walls[:3] + [BoundaryMarker("top", BoundaryKind.CUSTOM, values=np.ones((1, 3)))]
        with self.assertRaises(ConfigurationError):
            BoundaryDispatcher().bind(markers, self.mesh, self.eq)

    def test_registered_handler_is_used(self):
        calls = []

        def counting_wall(context, binding):
            calls.append(binding.name)
            return np.zeros((binding.geometry.n_vertices, context.equations.n_var))

        dispatcher = BoundaryDispatcher()
        dispatcher.register(BoundaryKind.EULER_WALL, counting_wall)
        dispatcher, context = setup_boundaries(self.mesh, self.eq, self.walls, [1.0, 0.0, 0.0, 1.0],
                                               dispatcher=dispatcher)
        assemble(dispatcher, context)
        self.assertEqual(sorted(calls), ['bottom', 'left', 'right', 'top'])


class TestWeakConditions(unittest.TestCase):
    """Test flux-type boundary conditions."""

    def test_closed_box_at_rest(self):
        mesh = build_cartesian_dual_mesh(5, 4, marker_names=WALLS)
        eq = euler_2d()
        dispatcher, context = setup_boundaries(mesh, eq, [BoundaryMarker("wall", BoundaryKind.EULER_WALL)],
                                               [1.0, 0.0, 0.0, 2.5])
        report = assemble(dispatcher, context)
        np.testing.assert_allclose(context.store.residual, 0.0, atol=1e-12)
        np.testing.assert_allclose(report['wall'], 0.0, atol=1e-12)

    def test_far_field_at_free_stream(self):
        mesh = build_cartesian_dual_mesh(5, 5)
        eq = euler_2d()
        markers = [BoundaryMarker(name, BoundaryKind.FAR_FIELD) for name in ('left', 'right', 'bottom', 'top')]
        dispatcher, context = setup_boundaries(mesh, eq, markers, [1.0, 0.5, 0.1, 1.0 / 1.4])
        assemble(dispatcher, context)
        np.testing.assert_allclose(context.store.residual, 0.0, atol=1e-12)

    def test_periodic_uniform_flow(self):
        mesh = build_cartesian_dual_mesh(5, 4, periodic_x=True)
        eq = euler_2d()
        markers = [BoundaryMarker("left", BoundaryKind.PERIODIC, donor="right"),
                   BoundaryMarker("right", BoundaryKind.PERIODIC, donor="left"),
                   BoundaryMarker("bottom", BoundaryKind.EULER_WALL),
                   BoundaryMarker("top", BoundaryKind.EULER_WALL)]
        dispatcher, context = setup_boundaries(mesh, eq, markers, [1.0, 0.6, 0.0, 1.0])
        assemble(dispatcher, context)
        np.testing.assert_allclose(context.store.residual, 0.0, atol=1e-12)

        pairs = dispatcher.extra_pairs()
        self.assertEqual(len(pairs), 2 * 4)
        self.assertIn((0, 4), pairs)

    def test_periodic_fluxes_cancel_exactly(self):
        mesh = build_cartesian_dual_mesh(5, 4, periodic_x=True)
        eq = euler_2d()
        markers = [BoundaryMarker("left", BoundaryKind.PERIODIC, donor="right"),
                   BoundaryMarker("right", BoundaryKind.PERIODIC, donor="left"),
                   BoundaryMarker("bottom", BoundaryKind.EULER_WALL),
                   BoundaryMarker("top", BoundaryKind.EULER_WALL)]
        rng = np.random.default_rng(11)
        V = np.column_stack([1.0 + 0.1 * rng.random(mesh.n_points), 0.2 * rng.standard_normal((mesh.n_points, 2)),
                             1.0 + 0.1 * rng.random(mesh.n_points)])
        system = BlockSparseSystem(mesh.n_points, eq.n_var, mesh.edges,
                                   [(0, 4), (5, 9), (10, 14), (15, 19)])
        dispatcher, context = setup_boundaries(mesh, eq, markers, V, system=system)
        report = assemble(dispatcher, context)
        np.testing.assert_allclose(report['left'] + report['right'], 0.0, atol=1e-13)

    def test_actuator_disk_jump(self):
        # Two 1D segments joined by a disk between points 1 and 2
        mesh = DualMesh(
            coordinates=[[0.0], [1.0], [1.0], [2.0]],
            volumes=[0.5, 0.5, 0.5, 0.5],
            edges=[[0, 1], [2, 3]],
            edge_normals=[[1.0], [1.0]],
            markers=[MarkerGeometry("left", [0], [[-1.0]]),
                     MarkerGeometry("disk_in", [1], [[1.0]], donors=[2]),
                     MarkerGeometry("disk_out", [2], [[-1.0]], donors=[1]),
                     MarkerGeometry("right", [3], [[1.0]])],
        )
        eq = EulerEquations(PerfectGas(1.4, 1.0), n_dim=1)
        markers = [BoundaryMarker("left", BoundaryKind.EULER_WALL),
                   BoundaryMarker("right", BoundaryKind.EULER_WALL),
                   BoundaryMarker("disk_in", BoundaryKind.ACTUATOR_DISK_INLET, {'pressure_jump': 0.2}, donor="disk_out"),
                   BoundaryMarker("disk_out", BoundaryKind.ACTUATOR_DISK_OUTLET, {'pressure_jump': 0.2}, donor="disk_in")]
        V = np.array([[1.0, 0.0, 1.0], [1.0, 0.0, 1.0], [1.0, 0.0, 1.2], [1.0, 0.0, 1.2]])
        dispatcher, context = setup_boundaries(mesh, eq, markers, V)
        assemble(dispatcher, context)
        np.testing.assert_allclose(context.store.residual, 0.0, atol=1e-12)

    def test_mixing_plane_of_uniform_flow(self):
        mesh = build_cartesian_dual_mesh(5, 4)
        eq = euler_2d()
        V = [1.0, 0.4, 0.0, 1.0]
        markers = [BoundaryMarker("left", BoundaryKind.MIXING_PLANE, donor="right"),
                   BoundaryMarker("right", BoundaryKind.OUTLET, {'pressure': 1.0}),
                   BoundaryMarker("bottom", BoundaryKind.EULER_WALL),
                   BoundaryMarker("top", BoundaryKind.EULER_WALL)]
        dispatcher, context = setup_boundaries(mesh, eq, markers, V, averager=MixedOutAverager(eq))
        assemble(dispatcher, context)
        state = context.mixed_out['left']
        self.assertTrue(state.converged)
        np.testing.assert_allclose(state.primitive(), V, atol=1e-10)
        np.testing.assert_allclose(context.store.residual, 0.0, atol=1e-10)

    def test_mixing_plane_needs_averager(self):
        mesh = build_cartesian_dual_mesh(4, 3)
        eq = euler_2d()
        markers = [BoundaryMarker("left", BoundaryKind.MIXING_PLANE, donor="right"),
                   BoundaryMarker("right", BoundaryKind.OUTLET, {'pressure': 1.0}),
                   BoundaryMarker("bottom", BoundaryKind.EULER_WALL),
                   BoundaryMarker("top", BoundaryKind.EULER_WALL)]
        dispatcher, context = setup_boundaries(mesh, eq, markers, [1.0, 0.4, 0.0, 1.0])
        with self.assertRaises(ConfigurationError):
            assemble(dispatcher, context)


class TestExteriorStates(unittest.TestCase):
    """Test characteristic ghost states."""

    def setUp(self):
        self.eq = euler_2d(gas_constant=287.0)
        self.normals = np.array([[-1.0, 0.0]])

    def test_total_condition_inflow(self):
        eq, gas = self.eq, self.eq.gas
        V_interior = np.array([[1.3, 50.0, 0.0, 1.1e5]])
        direction = np.array([[1.0, 0.0]])
        ghost = total_condition_ghost(eq, V_interior, self.normals, 1.2e5, 300.0, direction)

        speed = np.linalg.norm(ghost[0, 1:3])
        temperature = eq.temperature(ghost)[0]
        self.assertAlmostEqual(temperature + speed**2 / (2.0 * gas.cp), 300.0, places=8)
        mach = speed / eq.sound_speed(ghost)[0]
        self.assertAlmostEqual(gas.total_pressure(ghost[0, 3], mach) / 1.2e5, 1.0, places=10)
        self.assertAlmostEqual(ghost[0, 2], 0.0)

        invariant = lambda V: np.sum(V[:, 1:3] * self.normals, axis=1) + 2.0 * eq.sound_speed(V) / gas.gamma_minus_1
        self.assertAlmostEqual(invariant(ghost)[0], invariant(V_interior)[0], places=6)

    def test_static_pressure_outflow(self):
        eq, gas = self.eq, self.eq.gas
        normals = np.array([[1.0, 0.0]])
        V_interior = np.array([[1.2, 80.0, 5.0, 1.0e5]])
        ghost = static_pressure_ghost(eq, V_interior, normals, 0.95e5)
        self.assertAlmostEqual(ghost[0, 3], 0.95e5)
        entropy = lambda V: V[0, 3] / V[0, 0] ** gas.gamma
        self.assertAlmostEqual(entropy(ghost) / entropy(V_interior), 1.0, places=12)
        self.assertAlmostEqual(ghost[0, 2], 5.0)

    def test_supersonic_outflow_ignores_pressure(self):
        V_interior = np.array([[1.2, 900.0, 0.0, 1.0e5]])
        ghost = static_pressure_ghost(self.eq, V_interior, np.array([[1.0, 0.0]]), 0.5e5)
        np.testing.assert_allclose(ghost, V_interior)


class TestStrongConditions(unittest.TestCase):
    """Test row-replacing boundary conditions."""

    def test_dirichlet_applied_after_weak_markers(self):
        mesh = build_cartesian_dual_mesh(4, 4)
        eq = ScalarTransportEquations([1.0, 0.5])
        markers = [BoundaryMarker("left", BoundaryKind.DIRICHLET, {'value': 2.0}),
                   BoundaryMarker("right", BoundaryKind.FAR_FIELD),
                   BoundaryMarker("bottom", BoundaryKind.FAR_FIELD),
                   BoundaryMarker("top", BoundaryKind.FAR_FIELD)]
        system = BlockSparseSystem(mesh.n_points, 1, mesh.edges)
        rng = np.random.default_rng(2)
        dispatcher, context = setup_boundaries(mesh, eq, markers, rng.random((mesh.n_points, 1)),
                                               system=system, scheme=RusanovScheme(eq))
        assemble(dispatcher, context)
        left = mesh.markers['left'].vertices
        np.testing.assert_allclose(context.store.residual[left], 0.0)
        np.testing.assert_allclose(context.store.primitive[left], 2.0)
        dense = system.to_scipy().toarray()
        for vertex in left:
            expected = np.zeros(mesh.n_points)
            expected[vertex] = 1.0
            np.testing.assert_allclose(dense[vertex], expected)

    def test_isothermal_wall(self):
        mesh = build_cartesian_dual_mesh(4, 3, marker_names=WALLS)
        eq = euler_2d(gas_constant=287.0)
        markers = [BoundaryMarker("wall", BoundaryKind.ISOTHERMAL_WALL, {'temperature': 300.0})]
        dispatcher, context = setup_boundaries(mesh, eq, markers, [1.2, 10.0, 3.0, 1.0e5])
        assemble(dispatcher, context)
        vertices = mesh.markers['wall'].vertices
        V = context.store.primitive[vertices]
        np.testing.assert_allclose(V[:, 1:3], 0.0)
        np.testing.assert_allclose(eq.temperature(V), 300.0)
        np.testing.assert_allclose(context.store.residual[vertices][:, 1:], 0.0)


class TestWallLoads(unittest.TestCase):
    """Test force integration over wall markers."""

    def setUp(self):
        self.mesh = build_cartesian_dual_mesh(5, 3, lx=2.0, ly=1.0)
        self.eq = euler_2d()
        self.store = StateStore(self.mesh.n_points, 4, 4, 2)

    def test_pressure_force_on_marker(self):
        freestream = np.array([1.0, 1.0, 0.0, 1.0])
        self.store.primitive[:] = [1.0, 0.0, 0.0, 1.5]
        aero = AerodynamicsCapability(self.mesh, self.eq, freestream, (0.0, 0.0), ReferenceConfig(),
                                      ['bottom', 'top'])
        bottom = aero.marker_loads(self.store, ['bottom'])
        np.testing.assert_allclose(bottom.force, [0.0, -1.0], atol=1e-12)
        self.assertAlmostEqual(bottom.coefficients['CL'], -1.0 / 0.5)

        total = aero.total_loads(self.store)
        np.testing.assert_allclose(total.force, 0.0, atol=1e-12)
        self.assertEqual(set(aero.loads_by_marker(self.store)), {'bottom', 'top'})

    def test_coefficients_without_free_stream_velocity(self):
        freestream = np.array([1.0, 0.0, 0.0, 1.0])
        self.store.primitive[:] = [1.0, 0.0, 0.0, 1.0]
        aero = AerodynamicsCapability(self.mesh, self.eq, freestream, (0.0, 0.0), ReferenceConfig(), ['bottom'])
        report = aero.total_loads(self.store)
        np.testing.assert_allclose(report.force, 0.0)
        self.assertTrue(np.isnan(report.coefficients['CL']))


if __name__ == "__main__":
    unittest.main()
