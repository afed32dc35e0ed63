"""Exception hierarchy for the session orchestration engine.

Specific exceptions for each failure mode. Transport failures inside a
running session are converted to events by the session runner; these
exceptions only cross the supervisor boundary at spawn/config time.
"""
from __future__ import annotations


class OrchestrationError(Exception):
    """Base exception for all orchestration errors."""


class BackendStartError(OrchestrationError):
    """Failed to launch or connect the agent backend."""
    def __init__(self, process_id: str, reason: str):
        self.process_id = process_id
        self.reason = reason
        super().__init__(
            f"Failed to start backend for session {process_id}: {reason}"
        )


class BackendNotAvailableError(OrchestrationError):
    """Requested backend kind is unknown or its runtime is missing."""
    def __init__(self, backend: str, reason: str):
        self.backend = backend
        self.reason = reason
        super().__init__(f"Backend '{backend}' is not available: {reason}")


class SessionNotFoundError(OrchestrationError):
    """No live session is registered under the given process id."""
    def __init__(self, process_id: str):
        self.process_id = process_id
        super().__init__(f"No active session: {process_id}")


class ConfigError(OrchestrationError):
    """Configuration file could not be parsed into engine settings."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid config {path}: {reason}")


class ControlRequestError(OrchestrationError):
    """The agent rejected or never received an outbound control request."""
    def __init__(self, request_id: str, reason: str):
        self.request_id = request_id
        self.reason = reason
        super().__init__(f"Control request {request_id} failed: {reason}")
