"""
tabletop.errors — Domain Exception Taxonomy
============================================

Services raise these; :mod:`tabletop.api.main` renders them as JSON with the
HTTP status carried on the class.  :class:`AuthenticationError` is raised by
:mod:`tabletop.api.deps` only; services never see an unauthenticated caller.
"""

from __future__ import annotations


class TabletopError(Exception):
    """Base class for every error a service may raise."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthenticationError(TabletopError):
    """Missing or invalid bearer token."""

    status_code = 401


class ValidationError(TabletopError):
    """Bad input: no images, empty query, disallowed file type."""

    status_code = 400


class PermissionDeniedError(TabletopError):
    """The caller does not own the game."""

    status_code = 403


class NotFoundError(TabletopError):
    status_code = 404


class ImagesPendingError(TabletopError):
    """Rules for the game have not finished processing yet."""

    status_code = 409


class ExternalServiceError(TabletopError):
    """BoardGameGeek or an LLM provider failed on a synchronous path."""

    status_code = 502
