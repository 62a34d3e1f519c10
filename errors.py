"""
Error taxonomy for the session orchestrator.

Every error carries the HTTP status it maps to so the API layer can render
it without a lookup table.
"""

from typing import Optional


class SessionError(Exception):
    """Base class for all orchestrator errors."""

    status_code = 500

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(SessionError):
    """Missing or malformed request fields. Nothing was changed."""

    status_code = 400


class AuthenticationError(SessionError):
    status_code = 401


class InsufficientCreditsError(SessionError):
    status_code = 402


class AuthorizationError(SessionError):
    """The session exists but belongs to another user."""

    status_code = 403


class NotFoundError(SessionError):
    status_code = 404


class ConflictError(SessionError):
    status_code = 409


class SessionClosedError(ConflictError):
    """The session already reached a terminal status."""

    def __init__(self, session_id: str, status: str):
        super().__init__(f"Session {session_id} is {status}")
        self.session_id = session_id
        self.status = status


class UpstreamServiceError(SessionError):
    """The judge or the evaluation service was unreachable or failed."""

    status_code = 502


class ParseError(SessionError):
    """The evaluation service answered with something we could not parse."""

    status_code = 502


class PollTimeoutError(SessionError):
    """Polling ran out of attempts. Used as a status, partial results stay valid."""

    status_code = 504


class PersistenceError(SessionError):
    """A store write failed after the remote computation succeeded."""

    status_code = 500
