"""Median-dual mesh data structures and builders."""

from edgeflow.mesh.dual_mesh import DualMesh, MarkerGeometry, build_cartesian_dual_mesh, build_line_dual_mesh

__all__ = ["DualMesh", "MarkerGeometry", "build_cartesian_dual_mesh", "build_line_dual_mesh"]
