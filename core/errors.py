"""
Exceptions raised by the camera core.

Transient capture failures are handled inside the workers and never
surface here; these are the identity/configuration conditions a caller
is expected to handle.
"""

from __future__ import annotations


class CameraError(Exception):
    """Base class for camera core errors."""


class CameraNotFoundError(CameraError):
    """Unknown camera id or index."""


class ManagerNotInitializedError(CameraError):
    """Manager was started before initialize()."""

    def __init__(self, message: str = "camera manager not initialized"):
        super().__init__(message)


class RestartLimitError(CameraError):
    """Too many restarts inside the restart window."""


class CameraStartError(CameraError):
    """A capture worker could not be started."""
