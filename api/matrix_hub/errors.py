# matrix_hub/errors.py
from __future__ import annotations


class MatrixHubError(Exception):
    """Base class for pipeline and query errors."""


class ConfigError(MatrixHubError):
    pass


class BatchCommitError(MatrixHubError):
    """A bounded batch failed to commit; the run must stop."""

    def __init__(self, message: str, pending: int = 0):
        super().__init__(message)
        self.pending = pending


class QueryError(MatrixHubError):
    """Bad query request (mapped to HTTP 400 by the router)."""
