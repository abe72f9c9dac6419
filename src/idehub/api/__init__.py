"""Control plane HTTP API."""
