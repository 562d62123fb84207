"""Exception hierarchy for the respawn supervisor."""

from __future__ import annotations


class RespawnError(Exception):
    """Base exception for all respawn supervisor errors."""


class ConfigValidationError(RespawnError, ValueError):
    """A respawn config update was rejected before being applied."""
    def __init__(self, field_name: str, reason: str):
        self.field_name = field_name
        self.reason = reason
        super().__init__(f"Invalid respawn config field '{field_name}': {reason}")


class CheckInvocationError(RespawnError):
    """An ephemeral verdict invocation failed to spawn or finish."""
    def __init__(self, invocation_name: str, reason: str):
        self.invocation_name = invocation_name
        self.reason = reason
        super().__init__(reason)


class SessionNotFoundError(RespawnError, KeyError):
    """No supervised session is registered under the given id."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")

    def __str__(self) -> str:
        return f"Session not found: {self.session_id}"
