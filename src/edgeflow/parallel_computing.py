"""
Partition Halo Exchange and Global Reductions

Implements the communication layer between mesh partitions:
- HaloPattern: which owned points are sent to, and which halo points are
  received from, every neighbouring partition
- SerialCommunicator: single partition, no halo
- InProcessExchange: reference exchange between several partitions held
  in one process
- MPICommunicator: distributed exchange and reductions through mpi4py

A mismatch between what one side sends and the other side expects is a
fatal HaloExchangeError: a silently inconsistent halo breaks conservation.
"""

import numpy as np
from typing import Any, Dict, List, Optional, Sequence, Tuple
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
import logging

from .core.exceptions import HaloExchangeError

logger = logging.getLogger(__name__)

REDUCTION_OPERATIONS = ("sum", "max", "min")


@dataclass
class HaloPattern:
    """Exchange pattern of one partition."""
    rank: int
    send_indices: Dict[int, np.ndarray] = field(default_factory=dict)  # neighbor -> owned points
    recv_indices: Dict[int, np.ndarray] = field(default_factory=dict)  # neighbor -> halo points

    def __post_init__(self):
        self.send_indices = {int(r): np.asarray(v, dtype=np.int64) for r, v in self.send_indices.items()}
        self.recv_indices = {int(r): np.asarray(v, dtype=np.int64) for r, v in self.recv_indices.items()}

    @property
    def neighbor_ranks(self) -> List[int]:
        return sorted(set(self.send_indices) | set(self.recv_indices))

    def validate(self, n_owned: int, n_points: int) -> None:
        """Check that sends come from owned points and every halo point is received exactly once."""
        for neighbor, indices in self.send_indices.items():
            if len(indices) and (indices.min() < 0 or indices.max() >= n_owned):
                raise HaloExchangeError(
                    f"Rank {self.rank} sends non-owned points to rank {neighbor}"
                )
        received = np.concatenate(list(self.recv_indices.values())) if self.recv_indices else np.zeros(0, int)
        expected = np.arange(n_owned, n_points)
        if len(received) != len(expected) or not np.array_equal(np.sort(received), expected):
            raise HaloExchangeError(
                f"Rank {self.rank}: halo points [{n_owned}, {n_points}) are not each received exactly once"
            )


def _check_operation(operation: str) -> None:
    if operation not in REDUCTION_OPERATIONS:
        raise ValueError(f"Unsupported reduction operation: {operation}")


class Communicator(ABC):
    """Abstract communication backend of one partition."""

    rank = 0
    size = 1

    @abstractmethod
    def exchange_halo(self, array: np.ndarray, pattern: Optional[HaloPattern]) -> np.ndarray:
        """Refresh the halo rows of a per-point array in place and return it."""

    @abstractmethod
    def global_reduction(self, local_value, operation: str = "sum"):
        """Reduce a scalar or array over all partitions."""

    @abstractmethod
    def allgather(self, local_value: Any) -> List[Any]:
        """Gather one object from every partition on every partition."""

    def global_max_location(self, value: float, payload: Any) -> Tuple[float, Any]:
        """Largest value over all partitions together with the payload recorded beside it."""
        candidates = self.allgather((value, payload))
        return max(candidates, key=lambda item: item[0])


class SerialCommunicator(Communicator):
    """Communicator for a single, unpartitioned mesh."""

    def exchange_halo(self, array: np.ndarray, pattern: Optional[HaloPattern]) -> np.ndarray:
        if pattern is not None and pattern.neighbor_ranks:
            raise HaloExchangeError(
                f"Serial run cannot exchange with neighbor ranks {pattern.neighbor_ranks}"
            )
        return array

    def global_reduction(self, local_value, operation: str = "sum"):
        _check_operation(operation)
        return local_value

    def allgather(self, local_value: Any) -> List[Any]:
        return [local_value]


class InProcessExchange:
    """
    Halo exchange between partitions that all live in the current process.

    Used to verify decomposed runs against serial ones without an MPI
    launcher: each call moves data for every partition at once.
    """

    def __init__(self, patterns: Sequence[HaloPattern]):
        self.patterns = {pattern.rank: pattern for pattern in patterns}

    def exchange(self, arrays: Sequence[np.ndarray]) -> None:
        """
        Copy owned rows into the matching halo rows of every partition.

        Args:
            arrays: One per-point array per rank, indexed by rank
        """
        for rank, pattern in self.patterns.items():
            for neighbor, send in pattern.send_indices.items():
                if neighbor not in self.patterns:
                    raise HaloExchangeError(f"Rank {rank} sends to unknown rank {neighbor}")
                recv = self.patterns[neighbor].recv_indices.get(rank)
                if recv is None or len(recv) != len(send):
                    expected = 0 if recv is None else len(recv)
                    raise HaloExchangeError(
                        f"Rank {rank} sends {len(send)} points to rank {neighbor}, "
                        f"which expects {expected}"
                    )
                arrays[neighbor][recv] = arrays[rank][send]
        for rank, pattern in self.patterns.items():
            for neighbor in pattern.recv_indices:
                if rank not in self.patterns.get(neighbor, HaloPattern(neighbor)).send_indices:
                    raise HaloExchangeError(f"Rank {rank} expects data that rank {neighbor} never sends")

    @staticmethod
    def reduce(values: Sequence, operation: str = "sum"):
        _check_operation(operation)
        stacked = np.asarray(values, dtype=float)
        if operation == "sum":
            return np.sum(stacked, axis=0)
        if operation == "max":
            return np.max(stacked, axis=0)
        return np.min(stacked, axis=0)


class MPICommunicator(Communicator):
    """Distributed communicator backed by mpi4py (install the 'mpi' extra)."""

    def __init__(self, comm=None):
        from mpi4py import MPI

        self._MPI = MPI
        self.comm = comm if comm is not None else MPI.COMM_WORLD
        self.rank = self.comm.Get_rank()
        self.size = self.comm.Get_size()
        logger.info(f"MPI communicator ready: rank {self.rank} of {self.size}")

    def exchange_halo(self, array: np.ndarray, pattern: Optional[HaloPattern]) -> np.ndarray:
        if pattern is None or not pattern.neighbor_ranks:
            return array
        MPI = self._MPI

        # Agree on message sizes first so a mismatched pattern fails loudly
        for neighbor in pattern.neighbor_ranks:
            n_send = len(pattern.send_indices.get(neighbor, ()))
            n_expected = len(pattern.recv_indices.get(neighbor, ()))
            n_incoming = self.comm.sendrecv(n_send, dest=neighbor, source=neighbor)
            if n_incoming != n_expected:
                raise HaloExchangeError(
                    f"Rank {self.rank} expects {n_expected} halo points from rank {neighbor}, "
                    f"which sends {n_incoming}"
                )

        row_shape = array.shape[1:]
        requests = []
        recv_buffers = {}
        for neighbor, indices in pattern.recv_indices.items():
            recv_buffers[neighbor] = np.empty((len(indices),) + row_shape, dtype=array.dtype)
            requests.append(self.comm.Irecv(recv_buffers[neighbor], source=neighbor))
        send_buffers = []
        for neighbor, indices in pattern.send_indices.items():
            buffer = np.ascontiguousarray(array[indices])
            send_buffers.append(buffer)
            requests.append(self.comm.Isend(buffer, dest=neighbor))
        MPI.Request.Waitall(requests)

        for neighbor, indices in pattern.recv_indices.items():
            array[indices] = recv_buffers[neighbor]
        logger.debug(f"Rank {self.rank} exchanged halo with {pattern.neighbor_ranks}")
        return array

    def global_reduction(self, local_value, operation: str = "sum"):
        _check_operation(operation)
        op = {"sum": self._MPI.SUM, "max": self._MPI.MAX, "min": self._MPI.MIN}[operation]
        return self.comm.allreduce(local_value, op=op)

    def allgather(self, local_value: Any) -> List[Any]:
        return self.comm.allgather(local_value)
