"""Container lifecycle management for ralph execution units."""

from ralph.deploy.container import ContainerManager, ContainerState

__all__ = ["ContainerManager", "ContainerState"]
