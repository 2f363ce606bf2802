"""
Error taxonomy for the relay.

Every error carries the HTTP status it maps to, so the API layer can render
it with one handler when it surfaces before the SSE transport opens. Once the
transport is open the same errors travel in-band as an error frame.

Malformed upstream lines are not represented here: the line framer drops them
and logs, they never escape.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base error with the HTTP status it should surface as."""

    status_code: int = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ClientInputError(RelayError):
    """Missing/invalid parameters, or an unknown conversation/model."""

    status_code = 400


class NotFoundError(ClientInputError):
    """A referenced conversation, model or endpoint does not exist."""

    status_code = 404


class AuthError(RelayError):
    """Missing, invalid or inactive credentials."""

    status_code = 401


class UpstreamError(RelayError):
    """
    The inference server answered non-2xx, timed out or was unreachable.

    `upstream_status` is the upstream HTTP status when there was one; the
    error itself surfaces to our own clients as 502.
    """

    status_code = 502

    def __init__(self, message: str, upstream_status: int | None = None):
        super().__init__(message)
        self.upstream_status = upstream_status


class PersistenceError(RelayError):
    """A write or read against the conversation store failed."""

    status_code = 500
