"""
Block-Sparse System Assembly and Linear Solver Backend

BlockSparseSystem stores one nVar×nVar block per point (diagonal) and two
per edge (ij and ji), with extra off-diagonal pairs for boundary
conditions that couple matched points. The assembled blocks are converted
to a scipy sparse matrix and handed to a LinearSolver, which returns the
solution increment together with a convergence diagnostic.
"""

import numpy as np
from typing import Dict, Iterable, Optional, Sequence, Tuple
from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging
from scipy.sparse import coo_matrix, csr_matrix
from scipy.sparse.linalg import LinearOperator, bicgstab, gmres, spilu, spsolve

from .core.exceptions import LinearSolverError

logger = logging.getLogger(__name__)


class BlockSparseSystem:
    """
    Sparse block matrix whose pattern mirrors the mesh connectivity.

    Block k < n_points is the diagonal block of point k; edge e owns the
    blocks n_points + 2e (row i, column j) and n_points + 2e + 1 (row j,
    column i).
    """

    def __init__(self, n_points: int, n_var: int, edges: np.ndarray,
                 extra_pairs: Optional[Iterable[Tuple[int, int]]] = None):
        """
        Initialize the block pattern.

        Args:
            n_points: Number of block rows
            n_var: Block size
            edges: Edge endpoint pairs (n_edges, 2)
            extra_pairs: Additional (row, column) couplings, e.g. periodic donors
        """
        self.n_points = n_points
        self.n_var = n_var
        self.edges = np.asarray(edges, dtype=np.int64).reshape(-1, 2)
        n_edges = len(self.edges)

        rows = [np.arange(n_points), np.empty(2 * n_edges, dtype=np.int64)]
        cols = [np.arange(n_points), np.empty(2 * n_edges, dtype=np.int64)]
        rows[1][0::2], rows[1][1::2] = self.edges[:, 0], self.edges[:, 1]
        cols[1][0::2], cols[1][1::2] = self.edges[:, 1], self.edges[:, 0]
        self.block_rows = np.concatenate(rows)
        self.block_cols = np.concatenate(cols)

        self._lookup: Dict[Tuple[int, int], int] = {
            (int(r), int(c)): k for k, (r, c) in enumerate(zip(self.block_rows, self.block_cols))
        }
        extra_rows, extra_cols = [], []
        for row, col in extra_pairs or ():
            for key in ((int(row), int(col)), (int(col), int(row))):
                if key not in self._lookup:
                    self._lookup[key] = len(self.block_rows) + len(extra_rows)
                    extra_rows.append(key[0])
                    extra_cols.append(key[1])
        if extra_rows:
            self.block_rows = np.concatenate([self.block_rows, extra_rows])
            self.block_cols = np.concatenate([self.block_cols, extra_cols])

        self.blocks = np.zeros((len(self.block_rows), n_var, n_var))

    @property
    def n_blocks(self) -> int:
        return len(self.block_rows)

    def reset(self) -> None:
        self.blocks[:] = 0.0

    def diagonal_blocks(self) -> np.ndarray:
        return self.blocks[:self.n_points]

    def add_diagonal_blocks(self, points: np.ndarray, blocks: np.ndarray) -> None:
        np.add.at(self.blocks, np.asarray(points, dtype=np.int64), blocks)

    def add_diagonal_scalar(self, points: np.ndarray, values: np.ndarray) -> None:
        """Add values[k] * I to the diagonal block of points[k]."""
        points = np.asarray(points, dtype=np.int64)
        for var in range(self.n_var):
            np.add.at(self.blocks[:, var, var], points, values)

    def add_edge_blocks(self, edge_ids: np.ndarray, jac_ii: np.ndarray, jac_ij: np.ndarray,
                        jac_ji: np.ndarray, jac_jj: np.ndarray) -> None:
        """Scatter the four blocks of each edge into the matrix."""
        edge_ids = np.asarray(edge_ids, dtype=np.int64)
        i, j = self.edges[edge_ids, 0], self.edges[edge_ids, 1]
        np.add.at(self.blocks, i, jac_ii)
        np.add.at(self.blocks, j, jac_jj)
        np.add.at(self.blocks, self.n_points + 2 * edge_ids, jac_ij)
        np.add.at(self.blocks, self.n_points + 2 * edge_ids + 1, jac_ji)

    def add_blocks(self, rows: Sequence[int], cols: Sequence[int], blocks: np.ndarray) -> None:
        """Add blocks at arbitrary (row, column) positions of the pattern."""
        try:
            index = np.array([self._lookup[(int(r), int(c))] for r, c in zip(rows, cols)], dtype=np.int64)
        except KeyError as exc:
            raise ValueError(f"Block {exc.args[0]} is not part of the sparsity pattern") from None
        np.add.at(self.blocks, index, blocks)

    def set_identity_rows(self, points: np.ndarray, variables: Optional[Sequence[int]] = None) -> None:
        """Replace the rows of the given variables at the given points by identity rows."""
        variables = np.arange(self.n_var) if variables is None else np.asarray(variables, dtype=np.int64)
        mask = np.isin(self.block_rows, np.asarray(points, dtype=np.int64))
        selected = np.flatnonzero(mask)
        for var in variables:
            self.blocks[selected, var, :] = 0.0
        for point in np.unique(points):
            self.blocks[point, variables, variables] = 1.0

    def to_scipy(self) -> csr_matrix:
        """Assemble the blocks into a scalar CSR matrix."""
        nv = self.n_var
        local = np.arange(nv)
        rows = (self.block_rows[:, None, None] * nv + local[None, :, None]) + np.zeros((1, 1, nv), dtype=np.int64)
        cols = (self.block_cols[:, None, None] * nv + local[None, None, :]) + np.zeros((1, nv, 1), dtype=np.int64)
        size = self.n_points * nv
        return coo_matrix((self.blocks.ravel(), (rows.ravel(), cols.ravel())), shape=(size, size)).tocsr()

    def matvec(self, x: np.ndarray) -> np.ndarray:
        """Block product y = A x with x shaped (n_points, n_var)."""
        y = np.zeros((self.n_points, self.n_var))
        np.add.at(y, self.block_rows, np.einsum("bij,bj->bi", self.blocks, x[self.block_cols]))
        return y


@dataclass
class LinearSolveInfo:
    """Convergence diagnostic returned by a linear solve."""
    iterations: int
    residual: float  # ||b - A x|| / ||b||
    converged: bool
    method: str = ""


class LinearSolver(ABC):
    """Black-box linear-algebra backend: solve A x = b and report diagnostics."""

    @abstractmethod
    def solve(self, matrix: csr_matrix, rhs: np.ndarray) -> Tuple[np.ndarray, LinearSolveInfo]:
        pass


class ScipyLinearSolver(LinearSolver):
    """Direct or Krylov solves through scipy.sparse.linalg."""

    def __init__(self, method: str = "gmres", preconditioner: str = "ilu",
                 tolerance: float = 1e-8, max_iterations: int = 200, restart: int = 50):
        self.method = method
        self.preconditioner = preconditioner
        self.tolerance = tolerance
        self.max_iterations = max_iterations
        self.restart = restart

    @classmethod
    def from_config(cls, config) -> 'ScipyLinearSolver':
        return cls(config.method, config.preconditioner, config.tolerance,
                   config.max_iterations, config.restart)

    def _build_preconditioner(self, matrix: csr_matrix) -> Optional[LinearOperator]:
        if self.preconditioner == "jacobi":
            diagonal = matrix.diagonal()
            inverse = 1.0 / np.where(diagonal != 0.0, diagonal, 1.0)
            return LinearOperator(matrix.shape, matvec=lambda v: inverse * v)
        if self.preconditioner == "ilu":
            try:
                factor = spilu(matrix.tocsc(), drop_tol=1e-6, fill_factor=10)
            except RuntimeError as exc:
                logger.warning(f"ILU factorization failed ({exc}); solving without preconditioner")
                return None
            return LinearOperator(matrix.shape, matvec=factor.solve)
        return None

    def solve(self, matrix: csr_matrix, rhs: np.ndarray) -> Tuple[np.ndarray, LinearSolveInfo]:
        rhs = np.asarray(rhs, dtype=float).ravel()
        rhs_norm = np.linalg.norm(rhs)
        if rhs_norm == 0.0:
            return np.zeros_like(rhs), LinearSolveInfo(0, 0.0, True, self.method)

        if self.method == "direct":
            x = spsolve(matrix.tocsc(), rhs)
            iterations, info = 1, 0
        else:
            counter = {"iterations": 0}

            def count(*_):
                counter["iterations"] += 1

            preconditioner = self._build_preconditioner(matrix)
            if self.method == "gmres":
                x, info = gmres(matrix, rhs, rtol=self.tolerance, atol=0.0, restart=self.restart,
                                maxiter=self.max_iterations, M=preconditioner,
                                callback=count, callback_type="pr_norm")
            elif self.method == "bicgstab":
                x, info = bicgstab(matrix, rhs, rtol=self.tolerance, atol=0.0,
                                   maxiter=self.max_iterations, M=preconditioner, callback=count)
            else:
                raise LinearSolverError(f"Unknown linear solver method: {self.method}")
            iterations = counter["iterations"]

        if info < 0:
            raise LinearSolverError(f"{self.method} rejected the system (info={info})")
        if not np.all(np.isfinite(x)):
            raise LinearSolverError(f"{self.method} produced a non-finite solution")

        residual = np.linalg.norm(rhs - matrix @ x) / rhs_norm
        converged = info == 0
        if not converged:
            logger.warning(f"Linear solver {self.method} not converged: "
                           f"relative residual {residual:.3e} after {iterations} iterations")
        return x, LinearSolveInfo(iterations, float(residual), bool(converged), self.method)
