"""Custom exceptions for netlify-sync operations.

This module defines a hierarchy of exceptions for the failure modes of a poll
invocation, so the CLI can log them and render a visible error state.
"""


class SyncError(Exception):
    """Base exception for all netlify-sync errors."""


class ConfigError(SyncError):
    """Raised when configuration or credentials are invalid or missing."""


class DigestError(SyncError):
    """Raised when the watched directory cannot be fully read."""


class StateError(SyncError):
    """Raised when state operations fail (file I/O, serialization, etc.)."""


class StateLockedError(StateError):
    """Raised when another invocation holds the state lock."""


class DeployError(SyncError):
    """Raised when a deploy cannot be started or its result cannot be read."""
