"""Exception types raised by the edgeflow solver core."""


class EdgeflowError(Exception):
    """Base class for all edgeflow errors."""


class ConfigurationError(EdgeflowError, ValueError):
    """Raised for malformed configuration or an unrecognized boundary-condition kind."""


class MeshError(EdgeflowError, ValueError):
    """Raised when mesh arrays are inconsistent with each other."""


class HaloExchangeError(EdgeflowError, RuntimeError):
    """Raised when partition halo data is stale or the exchange pattern does not match."""


class LinearSolverError(EdgeflowError, RuntimeError):
    """Raised when the linear-algebra backend rejects its input."""
