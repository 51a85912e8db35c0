"""Clone, sync and deploy PHP repositories as Docker Swarm services."""

__version__ = "0.1.0"
