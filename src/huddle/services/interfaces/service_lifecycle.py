"""Abstract interfaces for service lifecycle management.

Defines the IServiceLifecycle interface for services that hold resources
for the lifetime of the process.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict


class IServiceLifecycle(ABC):
    """Interface for service lifecycle management."""

    @abstractmethod
    async def initialize(self) -> None:
        """Acquire service resources. Called once per process."""
        pass

    @abstractmethod
    async def shutdown(self) -> None:
        """Release resources and flush pending work."""
        pass

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Perform service health check."""
        pass
