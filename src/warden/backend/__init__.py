"""Outbound calls to the agent backend."""

from warden.backend.client import AgentBackend, AgentBackendClient, BackendError

__all__ = ["AgentBackend", "AgentBackendClient", "BackendError"]
