"""Exceptions raised by the forum store and the hosted-service clients."""

from __future__ import annotations

from typing import Optional


class ForumError(Exception):
    """Base class for errors that are shown to the user."""


class ValidationError(ForumError, ValueError):
    pass


class NotFoundError(ForumError):
    pass


class PermissionDenied(ForumError):
    pass


class IssueResolvedError(ForumError):
    pass


class BackendError(ForumError):
    """A hosted auth/storage call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
