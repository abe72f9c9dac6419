"""IDEHub control plane for ephemeral IDE instances on Docker Swarm."""

__version__ = "0.1.0"
