"""
Median-Dual Mesh Geometry for Vertex-Centered Finite Volumes

Holds the read-only geometric data the solver core consumes:
- point coordinates and control-volume sizes
- oriented edges with area-weighted dual-face normals
- boundary markers (vertex lists with outward area-weighted normals)
- partition information (owned point count, global numbering, halo pattern)

Mesh generation itself is outside the solver core; the builders at the
bottom of this module create the small structured duals used by tests and
the command-line driver.
"""

import numpy as np
from typing import Dict, List, Optional, Sequence, Tuple
from dataclasses import dataclass
import logging

from ..core.exceptions import ConfigurationError, MeshError

logger = logging.getLogger(__name__)


@dataclass
class MarkerGeometry:
    """Vertices of one boundary marker and their outward dual-face normals."""
    name: str
    vertices: np.ndarray  # (n_vertex,) local point indices
    normals: np.ndarray  # (n_vertex, n_dim) area-weighted, pointing out of the domain
    donors: Optional[np.ndarray] = None  # (n_vertex,) matched local point on the paired marker

    def __post_init__(self):
        self.vertices = np.asarray(self.vertices, dtype=np.int64)
        self.normals = np.atleast_2d(np.asarray(self.normals, dtype=float))
        if self.donors is not None:
            self.donors = np.asarray(self.donors, dtype=np.int64)

    @property
    def n_vertices(self) -> int:
        return len(self.vertices)

    @property
    def areas(self) -> np.ndarray:
        return np.linalg.norm(self.normals, axis=1)

    @property
    def unit_normals(self) -> np.ndarray:
        areas = self.areas
        return self.normals / np.where(areas > 0.0, areas, 1.0)[:, None]


class DualMesh:
    """
    Edge-based dual mesh of one partition.

    Points [0, n_owned) are owned by this partition; the remaining points
    are halo mirrors refreshed by the communicator.
    """

    def __init__(self,
                 coordinates: np.ndarray,
                 volumes: np.ndarray,
                 edges: np.ndarray,
                 edge_normals: np.ndarray,
                 markers: Optional[Sequence[MarkerGeometry]] = None,
                 n_owned: Optional[int] = None,
                 global_index: Optional[np.ndarray] = None,
                 halo=None):
        """
        Initialize dual mesh.

        Args:
            coordinates: Point coordinates (n_points, n_dim)
            volumes: Control-volume sizes (n_points,)
            edges: Point index pairs (n_edges, 2)
            edge_normals: Area-weighted normals oriented from edges[:, 0] to edges[:, 1]
            markers: Boundary markers
            n_owned: Number of points owned by this partition
            global_index: Global point numbering (defaults to local numbering)
            halo: HaloPattern describing the partition exchange, if any
        """
        self.coordinates = np.atleast_2d(np.asarray(coordinates, dtype=float))
        self.volumes = np.asarray(volumes, dtype=float).reshape(-1)
        self.edges = np.asarray(edges, dtype=np.int64).reshape(-1, 2)
        edge_normals = np.asarray(edge_normals, dtype=float)
        if edge_normals.size == 0:
            edge_normals = np.zeros((0, self.coordinates.shape[1]))
        self.edge_normals = edge_normals.reshape(len(self.edges), -1)
        self.markers: Dict[str, MarkerGeometry] = {}
        for marker in markers or []:
            self.markers[marker.name] = marker
        self.n_owned = self.n_points if n_owned is None else int(n_owned)
        if global_index is None:
            global_index = np.arange(self.n_points)
        self.global_index = np.asarray(global_index, dtype=np.int64)
        self.halo = halo

        self.validate()
        self._build_adjacency()

    @property
    def n_points(self) -> int:
        return self.coordinates.shape[0]

    @property
    def n_dim(self) -> int:
        return self.coordinates.shape[1]

    @property
    def n_edges(self) -> int:
        return self.edges.shape[0]

    @property
    def n_halo(self) -> int:
        return self.n_points - self.n_owned

    @property
    def edge_vectors(self) -> np.ndarray:
        """Displacement x_j - x_i per edge."""
        return self.coordinates[self.edges[:, 1]] - self.coordinates[self.edges[:, 0]]

    @property
    def edge_areas(self) -> np.ndarray:
        return np.linalg.norm(self.edge_normals, axis=1)

    def validate(self) -> None:
        """Check array shapes and index ranges."""
        n = self.n_points
        if self.volumes.shape != (n,):
            raise MeshError(f"Expected {n} volumes, got {self.volumes.shape}")
        if np.any(self.volumes <= 0.0):
            raise MeshError(f"Non-positive control volume at points {np.flatnonzero(self.volumes <= 0.0)[:5]}")
        if self.n_edges and (self.edges.min() < 0 or self.edges.max() >= n):
            raise MeshError("Edge references a point outside the mesh")
        if self.n_edges and np.any(self.edges[:, 0] == self.edges[:, 1]):
            raise MeshError("Degenerate edge connecting a point to itself")
        if self.edge_normals.shape != (self.n_edges, self.n_dim) and self.n_edges:
            raise MeshError(f"Edge normals have shape {self.edge_normals.shape}, "
                            f"expected {(self.n_edges, self.n_dim)}")
        if not 0 <= self.n_owned <= n:
            raise MeshError(f"n_owned={self.n_owned} outside [0, {n}]")
        if self.global_index.shape != (n,):
            raise MeshError("Global index must have one entry per point")
        for marker in self.markers.values():
            if marker.n_vertices and (marker.vertices.min() < 0 or marker.vertices.max() >= n):
                raise MeshError(f"Marker '{marker.name}' references a point outside the mesh")
            if marker.normals.shape != (marker.n_vertices, self.n_dim):
                raise MeshError(f"Marker '{marker.name}' normals have shape {marker.normals.shape}")
            if marker.donors is not None and marker.donors.shape != marker.vertices.shape:
                raise MeshError(f"Marker '{marker.name}' needs one donor per vertex")

    def _build_adjacency(self) -> None:
        """Point-to-neighbor CSR arrays from the edge list."""
        if self.n_edges == 0:
            self._adjacency_ptr = np.zeros(self.n_points + 1, dtype=np.int64)
            self._adjacency = np.zeros(0, dtype=np.int64)
            return
        source = np.concatenate([self.edges[:, 0], self.edges[:, 1]])
        target = np.concatenate([self.edges[:, 1], self.edges[:, 0]])
        order = np.argsort(source, kind="stable")
        self._adjacency = target[order]
        counts = np.bincount(source, minlength=self.n_points)
        self._adjacency_ptr = np.concatenate([[0], np.cumsum(counts)])

    def neighbors(self, point: int) -> np.ndarray:
        """Points sharing an edge with the given point."""
        return self._adjacency[self._adjacency_ptr[point]:self._adjacency_ptr[point + 1]]

    def marker(self, name: str) -> MarkerGeometry:
        """Look up a marker, raising ConfigurationError when the mesh does not define it."""
        try:
            return self.markers[name]
        except KeyError:
            raise ConfigurationError(
                f"Marker '{name}' is not defined in the mesh (available: {', '.join(sorted(self.markers))})"
            ) from None

    def characteristic_length(self) -> np.ndarray:
        """Per-point length scale V^(1/nDim)."""
        return self.volumes ** (1.0 / self.n_dim)

    def closure_defect(self) -> np.ndarray:
        """
        Sum of outward normals bounding each control volume.

        Zero for every point of a closed dual; used to check mesh input.
        """
        defect = np.zeros((self.n_points, self.n_dim))
        np.add.at(defect, self.edges[:, 0], self.edge_normals)
        np.add.at(defect, self.edges[:, 1], -self.edge_normals)
        for marker in self.markers.values():
            np.add.at(defect, marker.vertices, marker.normals)
        return defect

    def get_statistics(self) -> Dict[str, float]:
        return {
            'n_points': self.n_points,
            'n_owned': self.n_owned,
            'n_edges': self.n_edges,
            'n_markers': len(self.markers),
            'total_volume': float(np.sum(self.volumes[:self.n_owned])),
            'min_volume': float(np.min(self.volumes)) if self.n_points else 0.0,
        }


def _dual_widths(n: int, spacing: float) -> np.ndarray:
    widths = np.full(n, spacing)
    widths[0] = widths[-1] = 0.5 * spacing
    return widths


def build_line_dual_mesh(n_points: int, length: float = 1.0,
                         marker_names: Tuple[str, str] = ("left", "right")) -> DualMesh:
    """
    Build a 1D vertex-centered dual with unit cross-section.

    Args:
        n_points: Number of vertices (>= 2)
        length: Domain length
        marker_names: Names of the left and right boundary markers

    Returns:
        DualMesh with two markers
    """
    if n_points < 2:
        raise MeshError("A line mesh needs at least two points")
    dx = length / (n_points - 1)
    x = np.linspace(0.0, length, n_points)
    edges = np.column_stack([np.arange(n_points - 1), np.arange(1, n_points)])
    markers = [
        MarkerGeometry(marker_names[0], [0], [[-1.0]]),
        MarkerGeometry(marker_names[1], [n_points - 1], [[1.0]]),
    ]
    return DualMesh(x[:, None], _dual_widths(n_points, dx), edges,
                    np.ones((n_points - 1, 1)), markers)


def build_cartesian_dual_mesh(nx: int, ny: int,
                              lx: float = 1.0, ly: float = 1.0,
                              origin: Sequence[float] = (0.0, 0.0),
                              marker_names: Optional[Dict[str, str]] = None,
                              periodic_x: bool = False) -> DualMesh:
    """
    Build the median dual of a uniform 2D grid of nx × ny vertices.

    Boundary vertices receive half (corners a quarter) control volumes.
    The four sides become markers named 'left', 'right', 'bottom', 'top'
    unless renamed via marker_names; sides mapped to the same name are
    merged into one marker.

    Args:
        nx, ny: Vertices per direction (>= 2)
        lx, ly: Domain extents
        origin: Lower-left corner
        marker_names: Optional side -> marker name mapping
        periodic_x: Pair the left and right markers as donors of each other

    Returns:
        DualMesh
    """
    if nx < 2 or ny < 2:
        raise MeshError("A Cartesian dual mesh needs at least 2x2 points")
    dx, dy = lx / (nx - 1), ly / (ny - 1)
    xs = origin[0] + dx * np.arange(nx)
    ys = origin[1] + dy * np.arange(ny)
    X, Y = np.meshgrid(xs, ys)
    coordinates = np.column_stack([X.ravel(), Y.ravel()])
    wx = _dual_widths(nx, dx)
    wy = _dual_widths(ny, dy)
    volumes = np.outer(wy, wx).ravel()

    index = np.arange(nx * ny).reshape(ny, nx)
    horizontal = np.column_stack([index[:, :-1].ravel(), index[:, 1:].ravel()])
    horizontal_normals = np.column_stack([np.repeat(wy, nx - 1), np.zeros(ny * (nx - 1))])
    vertical = np.column_stack([index[:-1, :].ravel(), index[1:, :].ravel()])
    vertical_normals = np.column_stack([np.zeros((ny - 1) * nx), np.tile(wx, ny - 1)])
    edges = np.vstack([horizontal, vertical])
    edge_normals = np.vstack([horizontal_normals, vertical_normals])

    sides = {
        'left': (index[:, 0], np.column_stack([-wy, np.zeros(ny)])),
        'right': (index[:, -1], np.column_stack([wy, np.zeros(ny)])),
        'bottom': (index[0, :], np.column_stack([np.zeros(nx), -wx])),
        'top': (index[-1, :], np.column_stack([np.zeros(nx), wx])),
    }
    names = {side: side for side in sides}
    names.update(marker_names or {})

    grouped: Dict[str, List[Tuple[np.ndarray, np.ndarray]]] = {}
    for side, (vertices, normals) in sides.items():
        grouped.setdefault(names[side], []).append((vertices, normals))
    markers = {
        name: MarkerGeometry(name,
                             np.concatenate([v for v, _ in parts]),
                             np.vstack([n for _, n in parts]))
        for name, parts in grouped.items()
    }

    if periodic_x:
        left, right = markers[names['left']], markers[names['right']]
        if left is right:
            raise ConfigurationError("Periodic pairing needs distinct left and right markers")
        left.donors = index[:, -1].copy()
        right.donors = index[:, 0].copy()

    mesh = DualMesh(coordinates, volumes, edges, edge_normals, list(markers.values()))
    logger.debug(f"Built {nx}x{ny} Cartesian dual mesh with {mesh.n_edges} edges")
    return mesh
