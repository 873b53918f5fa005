"""Error taxonomy for the dispatch console."""
from __future__ import annotations

from typing import Optional


class DispatchError(Exception):
    """Base class for every failure the console reports to an operator."""

    def __init__(self, message: str, remote_message: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.remote_message = remote_message

    def user_message(self, fallback: str) -> str:
        """Remote message when the server sent one, else ``fallback``."""
        return self.remote_message or fallback


class NetworkFailure(DispatchError):
    """Transport error, timeout, server fault or unreadable response."""


class RemoteRejected(DispatchError):
    """The dispatch service refused the request with a business error."""

    def __init__(self, message: str, remote_message: Optional[str] = None, status_code: int = 0):
        super().__init__(message, remote_message)
        self.status_code = status_code

    def user_message(self, fallback: str) -> str:
        return self.remote_message or self.message or fallback


class InvalidTransition(DispatchError):
    """A local state change was refused before any network call."""


class AlreadyInFlight(DispatchError):
    """A mutation for the same entity is still waiting on the server."""
