#!/usr/bin/env python
"""
Test suite for solver configuration, markers and capabilities.
"""

import os
import sys
import unittest
import tempfile
from pathlib import Path
import numpy as np

# Add source directory to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from edgeflow.core.config import SolverConfig, LinearSolverConfig
from edgeflow.core.capabilities import SolverCapabilities
from edgeflow.core.exceptions import ConfigurationError
from edgeflow.boundary.markers import BoundaryKind, BoundaryMarker, markers_from_config


class TestSolverConfig(unittest.TestCase):
    """Test loading and validation of SolverConfig."""

    def test_defaults(self):
        config = SolverConfig.from_dict({})
        self.assertEqual(config.equation_set, "euler")
        self.assertEqual(config.numerics.convective_scheme, "roe")
        self.assertIsInstance(config.time.linear_solver, LinearSolverConfig)
        self.assertFalse(config.time.is_implicit)
        self.assertFalse(config.time.is_dual_time)

    def test_nested_sections(self):
        config = SolverConfig.from_dict({
            'time': {'scheme': 'implicit_euler', 'time_marching': 'dual_time_second',
                     'linear_solver': {'method': 'bicgstab', 'preconditioner': 'jacobi'}},
            'markers': [{'name': 'wall', 'kind': 'euler_wall'}],
        })
        self.assertTrue(config.time.is_implicit)
        self.assertTrue(config.time.is_dual_time)
        self.assertEqual(config.time.linear_solver.method, 'bicgstab')
        self.assertEqual(config.markers[0].name, 'wall')

    def test_unknown_choice_is_rejected(self):
        with self.assertRaises(ConfigurationError):
            SolverConfig.from_dict({'numerics': {'convective_scheme': 'ausm'}})
        with self.assertRaises(ConfigurationError):
            SolverConfig.from_dict({'time': {'scheme': 'leapfrog'}})
        with self.assertRaises(ConfigurationError):
            SolverConfig.from_dict({'equation_set': 'mhd'})

    def test_unknown_key_is_rejected(self):
        with self.assertRaises(ConfigurationError):
            SolverConfig.from_dict({'numerics': {'flux_scheme': 'roe'}})

    def test_duplicate_marker_names(self):
        with self.assertRaises(ConfigurationError):
            SolverConfig.from_dict({'markers': [
                {'name': 'wall', 'kind': 'euler_wall'},
                {'name': 'wall', 'kind': 'far_field'},
            ]})

    def test_invalid_gamma(self):
        with self.assertRaises(ConfigurationError):
            SolverConfig.from_dict({'fluid': {'gamma': 1.0}})

    def test_yaml_round_trip(self):
        config = SolverConfig.from_dict({
            'freestream': {'mach': 0.8, 'angle_of_attack': 1.25},
            'markers': [{'name': 'out', 'kind': 'outlet', 'parameters': {'pressure': 9.0e4}}],
            'mesh': {'kind': 'cartesian', 'nx': 5, 'ny': 4},
        })
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "case.yaml"
            config.save(path)
            loaded = SolverConfig.from_file(path)
        self.assertEqual(loaded.to_dict(), config.to_dict())

    def test_file_errors(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "case.ini"
            path.write_text("[solver]\n")
            with self.assertRaises(ConfigurationError):
                SolverConfig.from_file(path)
            with self.assertRaises(FileNotFoundError):
                SolverConfig.from_file(Path(temp_dir) / "missing.yaml")

    def test_freestream_primitive(self):
        config = SolverConfig.from_dict({'freestream': {'mach': 0.5, 'angle_of_attack': 90.0}})
        V = config.freestream.primitive(config.fluid, 2)
        sound_speed = np.sqrt(config.fluid.gamma * config.fluid.gas_constant * config.freestream.temperature)
        self.assertAlmostEqual(np.linalg.norm(V[1:3]), 0.5 * sound_speed)
        self.assertAlmostEqual(V[1], 0.0, places=8)
        self.assertAlmostEqual(V[3], config.freestream.pressure)


class TestBoundaryMarkers(unittest.TestCase):
    """Test marker parsing and parameter lookup."""

    def test_unknown_kind_names_marker(self):
        with self.assertRaises(ConfigurationError) as ctx:
            BoundaryKind.from_string("slip_wal", "airfoil")
        self.assertIn("airfoil", str(ctx.exception))

    def test_kind_classification(self):
        self.assertTrue(BoundaryKind.ISOTHERMAL_WALL.is_wall)
        self.assertTrue(BoundaryKind.ISOTHERMAL_WALL.is_strong)
        self.assertTrue(BoundaryKind.PERIODIC.is_paired)
        self.assertFalse(BoundaryKind.FAR_FIELD.is_strong)
        self.assertEqual(BoundaryKind.from_string("FAR_FIELD"), BoundaryKind.FAR_FIELD)

    def test_missing_parameter(self):
        marker = BoundaryMarker("out", BoundaryKind.OUTLET)
        with self.assertRaises(ConfigurationError):
            marker.parameter("pressure")
        self.assertEqual(marker.parameter("pressure", 5.0), 5.0)

    def test_unsteady_parameter(self):
        marker = BoundaryMarker("out", BoundaryKind.OUTLET, {'pressure': 100.0},
                                unsteady={'parameter': 'pressure', 'amplitude': 10.0, 'frequency': 1.0})
        self.assertAlmostEqual(marker.parameter("pressure", time=0.0), 100.0)
        self.assertAlmostEqual(marker.parameter("pressure", time=0.25), 110.0)

    def test_vector_parameter(self):
        marker = BoundaryMarker("in", BoundaryKind.INLET_TOTAL,
                                {'flow_direction_x': 1.0, 'flow_direction_y': 2.0})
        np.testing.assert_allclose(marker.vector("flow_direction", 2), [1.0, 2.0])
        self.assertIsNone(marker.vector("velocity", 2))

    def test_prescribed_values(self):
        table = BoundaryMarker("c", BoundaryKind.CUSTOM, values=np.array([[1.0, 2.0, 3.0]]))
        rows = table.prescribed(np.zeros((4, 1)))
        self.assertEqual(rows.shape, (4, 3))

        function = BoundaryMarker("c", BoundaryKind.CUSTOM,
                                  values=lambda x, t: np.column_stack([x[:, 0] + t]))
        np.testing.assert_allclose(function.prescribed(np.array([[1.0], [2.0]]), 0.5)[:, 0], [1.5, 2.5])

    def test_markers_from_config(self):
        config = SolverConfig.from_dict({'markers': [
            {'name': 'in', 'kind': 'inlet_total',
             'parameters': {'total_pressure': 1.2e5, 'total_temperature': 300.0}},
            {'name': 'wall', 'kind': 'euler_wall'},
        ]})
        markers = markers_from_config(config.markers)
        self.assertEqual(set(markers), {'in', 'wall'})
        self.assertEqual(markers['in'].kind, BoundaryKind.INLET_TOTAL)

    def test_unsteady_needs_parameter(self):
        config = SolverConfig.from_dict({'markers': [
            {'name': 'out', 'kind': 'outlet', 'parameters': {'pressure': 1.0}, 'unsteady': {'amplitude': 1.0}},
        ]})
        with self.assertRaises(ConfigurationError):
            markers_from_config(config.markers)


class TestCapabilities(unittest.TestCase):
    """Test the optional capability registry."""

    def test_registry(self):
        capabilities = SolverCapabilities()
        self.assertFalse(capabilities.has("aerodynamics"))
        self.assertIsNone(capabilities.get("aerodynamics"))
        with self.assertRaises(ConfigurationError):
            capabilities.require("aerodynamics")
        capabilities.add("aerodynamics", object())
        self.assertTrue(capabilities.has("aerodynamics"))
        self.assertEqual(capabilities.names, ["aerodynamics"])


if __name__ == "__main__":
    unittest.main()
