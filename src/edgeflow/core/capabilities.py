"""
Optional Solver Capabilities

A solver exposes a small core contract (assemble residual, apply boundary
conditions, advance time). Quantities that only some equation sets or
cases provide, such as aerodynamic coefficients or turbomachinery
performance, are attached as capability objects when the solver is
configured and looked up by name instead of being stubbed out on every
solver.
"""

from typing import Any, Dict, List, Optional

from .exceptions import ConfigurationError

AERODYNAMICS = "aerodynamics"
TURBOMACHINERY = "turbomachinery"


class SolverCapabilities:
    """Registry of the capabilities one solver instance opted into."""

    def __init__(self):
        self._capabilities: Dict[str, Any] = {}

    def add(self, name: str, capability: Any) -> None:
        self._capabilities[name] = capability

    def has(self, name: str) -> bool:
        return name in self._capabilities

    def get(self, name: str) -> Optional[Any]:
        return self._capabilities.get(name)

    def require(self, name: str) -> Any:
        """Return the capability or raise if the solver was not configured with it."""
        if name not in self._capabilities:
            available = ", ".join(sorted(self._capabilities)) or "none"
            raise ConfigurationError(f"Solver has no '{name}' capability (available: {available})")
        return self._capabilities[name]

    @property
    def names(self) -> List[str]:
        return sorted(self._capabilities)
