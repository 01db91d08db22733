"""Call session error types."""

from __future__ import annotations


class SessionError(Exception):
    """Base class for call session errors."""


class SignalingError(SessionError):
    """The signaling service could not register us or dropped the connection."""


class DialRejected(SessionError):
    """A dial attempt violated a precondition; nothing was changed."""
