#!/usr/bin/env python
"""
Test suite for the flow solver driver and the command-line interface.
"""

import os
import sys
import unittest
import tempfile
from pathlib import Path
import numpy as np

# Add source directory to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

import matplotlib
matplotlib.use("Agg")

from edgeflow import FlowSolver, SolverConfig, build_cartesian_dual_mesh
from edgeflow.core.exceptions import ConfigurationError
from edgeflow.cli.app import build_mesh, main

SIDES = ('left', 'right', 'bottom', 'top')
CHANNEL = {'left': 'inlet', 'right': 'outlet', 'bottom': 'wall', 'top': 'wall'}


def closed_box(**sections):
    data = {
        'freestream': {'mach': 0.0},
        'markers': [{'name': name, 'kind': 'euler_wall'} for name in SIDES],
        'convergence': {'residual_target': -6.0},
    }
    data.update(sections)
    return SolverConfig.from_dict(data)


def free_stream_total_conditions(config):
    gamma = config.fluid.gamma
    factor = 1.0 + 0.5 * (gamma - 1.0) * config.freestream.mach**2
    return config.freestream.pressure * factor ** (gamma / (gamma - 1.0)), config.freestream.temperature * factor


class TestClosedBox(unittest.TestCase):
    """A gas at rest inside slip walls is an exact steady state."""

    def setUp(self):
        self.mesh = build_cartesian_dual_mesh(6, 5)

    def check_at_rest(self, config):
        solver = FlowSolver(config, self.mesh)
        solver.initialize()
        initial = solver.primitive()
        scale = config.freestream.pressure

        residual = solver.assemble_residual()
        np.testing.assert_allclose(residual / scale, 0.0, atol=1e-12)

        summary = solver.solve(max_iterations=5)
        self.assertTrue(summary['converged'])
        self.assertEqual(summary['iterations'], 1)
        np.testing.assert_allclose(solver.primitive(), initial, rtol=1e-10, atol=1e-8)
        return solver

    def test_first_order_explicit(self):
        solver = self.check_at_rest(closed_box())
        loads = solver.forces()
        np.testing.assert_allclose(loads.force, 0.0)
        self.assertTrue(np.isnan(loads.coefficients['CL']))

    def test_muscl(self):
        self.check_at_rest(closed_box(numerics={'muscl': True, 'limiter': 'barth_jespersen'}))

    def test_least_squares_gradients(self):
        solver = self.check_at_rest(closed_box(numerics={'muscl': True, 'gradient_method': 'weighted_least_squares'}))
        np.testing.assert_allclose(solver.gradients(), 0.0, atol=1e-8)
        conserved = solver.conservative_gradients()
        self.assertEqual(conserved.shape, (self.mesh.n_owned, 4, 2))
        np.testing.assert_allclose(conserved, 0.0, atol=1e-7)

    def test_implicit(self):
        solver = self.check_at_rest(closed_box(time={'scheme': 'implicit_euler', 'cfl_number': 10.0}))
        self.assertIsNotNone(solver.residual_norms().linear_solver)

    def test_capabilities(self):
        solver = FlowSolver(closed_box(), self.mesh)
        self.assertTrue(solver.capabilities.has('aerodynamics'))
        self.assertFalse(solver.capabilities.has('turbomachinery'))
        with self.assertRaises(ConfigurationError):
            solver.turbomachinery_performance()

    def test_zero_iteration_limit(self):
        solver = FlowSolver(closed_box(), self.mesh)
        summary = solver.solve(max_iterations=0)
        self.assertEqual(summary['iterations'], 0)
        self.assertFalse(summary['converged'])
        self.assertEqual(summary['reasons'], ["Iteration limit reached"])
        self.assertIsNone(summary['final_rms'])


class TestFreeStream(unittest.TestCase):
    """Uniform free-stream flow is preserved by far-field and periodic boundaries."""

    def test_far_field(self):
        config = SolverConfig.from_dict({
            'markers': [{'name': name, 'kind': 'far_field'} for name in SIDES],
            'freestream': {'mach': 0.6, 'angle_of_attack': 10.0},
        })
        solver = FlowSolver(config, build_cartesian_dual_mesh(5, 5))
        solver.initialize()
        initial = solver.solution()
        for _ in range(3):
            report = solver.iterate()
        self.assertEqual(report.non_physical_points, 0)
        self.assertEqual(report.iteration, 3)
        np.testing.assert_allclose(solver.solution(), initial, rtol=1e-10)
        self.assertFalse(solver.capabilities.has('aerodynamics'))

    def test_periodic_implicit(self):
        config = SolverConfig.from_dict({
            'markers': [{'name': 'left', 'kind': 'periodic', 'donor': 'right'},
                        {'name': 'right', 'kind': 'periodic', 'donor': 'left'},
                        {'name': 'bottom', 'kind': 'euler_wall'},
                        {'name': 'top', 'kind': 'euler_wall'}],
            'time': {'scheme': 'implicit_euler', 'cfl_number': 5.0},
        })
        solver = FlowSolver(config, build_cartesian_dual_mesh(6, 4, periodic_x=True))
        solver.initialize()
        initial = solver.solution()
        solver.iterate()
        solver.iterate()
        np.testing.assert_allclose(solver.solution(), initial, rtol=1e-9)


class TestChannel(unittest.TestCase):
    """Inflow and outflow markers, turbomachinery capability and mixing planes."""

    def test_total_inlet_and_outlet(self):
        config = SolverConfig.from_dict({'freestream': {'mach': 0.3}})
        total_pressure, total_temperature = free_stream_total_conditions(config)
        config = SolverConfig.from_dict({
            'freestream': {'mach': 0.3},
            'markers': [
                {'name': 'inlet', 'kind': 'inlet_total',
                 'parameters': {'total_pressure': total_pressure, 'total_temperature': total_temperature,
                                'flow_direction_x': 1.0, 'flow_direction_y': 0.0}},
                {'name': 'outlet', 'kind': 'outlet', 'parameters': {'pressure': config.freestream.pressure}},
                {'name': 'wall', 'kind': 'euler_wall'},
            ],
        })
        solver = FlowSolver(config, build_cartesian_dual_mesh(6, 4, marker_names=CHANNEL))
        solver.initialize()
        for _ in range(3):
            report = solver.iterate()
        self.assertEqual(report.non_physical_points, 0)
        self.assertTrue(np.all(np.isfinite(solver.primitive())))

        performance = solver.turbomachinery_performance()
        self.assertEqual(set(performance), {'inlet', 'outlet'})
        outlet = solver.turbomachinery_performance('outlet')
        self.assertGreater(outlet.mass_flow, 0.0)
        self.assertAlmostEqual(outlet.total_pressure / total_pressure, 1.0, places=3)
        self.assertTrue(solver.capabilities.has('aerodynamics'))

    def test_mixing_plane_diagnostics(self):
        config = SolverConfig.from_dict({
            'freestream': {'mach': 0.4},
            'markers': [
                {'name': 'left', 'kind': 'mixing_plane', 'donor': 'right'},
                {'name': 'right', 'kind': 'outlet', 'parameters': {'pressure': 101325.0}},
                {'name': 'bottom', 'kind': 'euler_wall'},
                {'name': 'top', 'kind': 'euler_wall'},
            ],
        })
        solver = FlowSolver(config, build_cartesian_dual_mesh(5, 4))
        report = solver.iterate()
        self.assertIn('left', report.mixed_out)
        self.assertTrue(report.mixed_out['left']['converged'])
        self.assertIn('left', solver.mixed_out)


class TestScalarTransport(unittest.TestCase):
    """Advection of a Dirichlet inflow value through the domain."""

    def test_steady_state(self):
        config = SolverConfig.from_dict({
            'equation_set': 'scalar_transport',
            'scalar': {'velocity': [1.0, 0.0], 'initial_value': 0.0},
            'numerics': {'convective_scheme': 'rusanov'},
            'time': {'scheme': 'runge_kutta', 'cfl_number': 0.9},
            'markers': [{'name': 'left', 'kind': 'dirichlet', 'parameters': {'value': 1.0}},
                        {'name': 'right', 'kind': 'neumann'},
                        {'name': 'bottom', 'kind': 'euler_wall'},
                        {'name': 'top', 'kind': 'euler_wall'}],
            'convergence': {'max_iterations': 2000, 'residual_target': -10.0, 'monitor_frequency': 100},
        })
        solver = FlowSolver(config, build_cartesian_dual_mesh(6, 4))
        summary = solver.solve()
        self.assertTrue(summary['converged'])
        np.testing.assert_allclose(solver.solution(), 1.0, atol=1e-8)
        self.assertEqual(solver.capabilities.names, [])

    def test_dual_time_keeps_dirichlet_rows(self):
        config = SolverConfig.from_dict({
            'equation_set': 'scalar_transport',
            'scalar': {'velocity': [1.0, 0.0]},
            'numerics': {'convective_scheme': 'rusanov'},
            'time': {'scheme': 'implicit_euler', 'time_marching': 'dual_time_second',
                     'physical_time_step': 0.1, 'inner_iterations': 3,
                     'linear_solver': {'method': 'direct', 'preconditioner': 'none'}},
            'markers': [{'name': 'left', 'kind': 'dirichlet', 'parameters': {'value': 2.0}},
                        {'name': 'right', 'kind': 'neumann'},
                        {'name': 'bottom', 'kind': 'euler_wall'},
                        {'name': 'top', 'kind': 'euler_wall'}],
        })
        mesh = build_cartesian_dual_mesh(5, 3)
        solver = FlowSolver(config, mesh)
        solver.advance_physical_time()
        solver.advance_physical_time()
        left = mesh.markers['left'].vertices
        np.testing.assert_allclose(solver.solution()[left], 2.0)
        self.assertEqual(solver.time_advance.physical_step, 2)

    def test_unsteady_dirichlet_follows_physical_time(self):
        # value(t) = 1 + sin(2π t / 4): 2 at t = 1 and 1 at t = 2
        config = SolverConfig.from_dict({
            'equation_set': 'scalar_transport',
            'scalar': {'velocity': [1.0, 0.0]},
            'numerics': {'convective_scheme': 'rusanov'},
            'time': {'scheme': 'implicit_euler', 'time_marching': 'dual_time_first',
                     'physical_time_step': 1.0, 'inner_iterations': 2,
                     'linear_solver': {'method': 'direct', 'preconditioner': 'none'}},
            'markers': [{'name': 'left', 'kind': 'dirichlet', 'parameters': {'value': 1.0},
                         'unsteady': {'parameter': 'value', 'amplitude': 1.0, 'frequency': 0.25, 'phase': 0.0}},
                        {'name': 'right', 'kind': 'neumann'},
                        {'name': 'bottom', 'kind': 'euler_wall'},
                        {'name': 'top', 'kind': 'euler_wall'}],
        })
        mesh = build_cartesian_dual_mesh(5, 3)
        left = mesh.markers['left'].vertices
        solver = FlowSolver(config, mesh)

        solver.advance_physical_time()
        np.testing.assert_allclose(solver.solution()[left], 2.0, atol=1e-12)
        solver.advance_physical_time()
        np.testing.assert_allclose(solver.solution()[left], 1.0, atol=1e-12)
        self.assertAlmostEqual(solver.time_advance.physical_time, 2.0)
        self.assertAlmostEqual(solver.time_advance.target_time, 3.0)


class TestCommandLine(unittest.TestCase):
    """Test the edgeflow console entry point."""

    def write_case(self, directory, **sections):
        data = {
            'freestream': {'mach': 0.0},
            'markers': [{'name': name, 'kind': 'euler_wall'} for name in SIDES],
            'mesh': {'kind': 'cartesian', 'nx': 5, 'ny': 4},
            'convergence': {'residual_target': -6.0},
        }
        data.update(sections)
        path = Path(directory) / "case.yaml"
        SolverConfig.from_dict(data).save(path)
        return path

    def test_converged_run(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            case = self.write_case(temp_dir)
            history = Path(temp_dir) / "history.json"
            plot = Path(temp_dir) / "history.png"
            code = main([str(case), '-n', '3', '--history', str(history), '--plot', str(plot)])
            self.assertEqual(code, 0)
            self.assertTrue(history.exists())
            self.assertTrue(plot.exists())

    def test_unconverged_run(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            case = self.write_case(temp_dir, freestream={'mach': 0.3})
            self.assertEqual(main([str(case), '-n', '2']), 2)

    def test_dual_time_run(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            case = self.write_case(temp_dir, time={'time_marching': 'dual_time_first', 'inner_iterations': 2},
                                   mesh={'kind': 'line', 'n_points': 6},
                                   markers=[{'name': name, 'kind': 'euler_wall'} for name in SIDES[:2]])
            self.assertEqual(main([str(case), '--time-steps', '2']), 0)

    def test_unconverged_dual_time_run(self):
        sections = {'freestream': {'mach': 0.3},
                    'time': {'time_marching': 'dual_time_first', 'inner_iterations': 1},
                    'convergence': {'residual_target': -12.0}}
        with tempfile.TemporaryDirectory() as temp_dir:
            case = self.write_case(temp_dir, **sections)
            self.assertEqual(main([str(case), '--time-steps', '1']), 2)
            self.assertEqual(main([str(case), '--time-steps', '1', '-n', '2']), 2)

        config = closed_box(**sections)
        solver = FlowSolver(config, build_cartesian_dual_mesh(5, 4))
        summary = solver.solve_physical_time(2)
        self.assertFalse(summary['converged'])
        self.assertEqual(summary['iterations'], 2)
        self.assertIn('missed the residual target in steps [1, 2]', summary['reasons'][0])
        self.assertAlmostEqual(summary['physical_time'], 2 * config.time.physical_time_step)

    def test_errors(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            self.assertEqual(main([str(Path(temp_dir) / "missing.yaml")]), 1)
            case = self.write_case(temp_dir, markers=[{'name': name, 'kind': 'slip'} for name in SIDES])
            self.assertEqual(main([str(case)]), 1)

    def test_unknown_mesh_kind(self):
        with self.assertRaises(Exception):
            build_mesh({'kind': 'tetrahedral'})


if __name__ == "__main__":
    unittest.main()
