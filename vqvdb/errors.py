# Copyright Contributors to the OpenVDB Project
# SPDX-License-Identifier: Apache-2.0
#
"""
Exception hierarchy for VQVDB.

Every failure raised by the codec derives from :class:`VQVDBError` so a host can catch a
single type. The tiler and container layers only raise; the orchestrator is the only place
that catches (and only to retry after a device out-of-memory condition).
"""

from typing import Any


class VQVDBError(RuntimeError):
    """Base class for all codec errors."""


class ModelLoadError(VQVDBError):
    """The model file is missing or malformed, or the requested device is unavailable."""


class UnknownBackendError(VQVDBError):
    """The requested backend identifier is not registered in this installation."""


class ShapeMismatchError(VQVDBError):
    """
    A tensor does not have the shape the model declares.

    Attributes:
        expected: The expected shape (or shape description).
        actual: The shape that was received.
    """

    def __init__(self, message: str, expected: Any = None, actual: Any = None):
        if expected is not None or actual is not None:
            message = f"{message} (expected {expected}, got {actual})"
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class InvalidTokenError(VQVDBError):
    """A token lies outside the model's codebook range."""


class ContainerError(VQVDBError):
    """Base class for container validation failures."""


class UnsupportedVersionError(ContainerError):
    """The container was written with a format version this build does not know."""


class ModelMismatchError(ContainerError):
    """The container was encoded with a model incompatible with the resolved backend."""


class TruncatedFileError(ContainerError):
    """The container holds fewer bytes than its header declares."""


class CorruptContainerError(ContainerError):
    """The bytes are not a container, or fail an integrity check."""


class DeviceOutOfMemoryError(VQVDBError):
    """The inference device ran out of memory. Recoverable with a smaller batch."""


class ResourceExhaustedError(VQVDBError):
    """Out-of-memory persisted after reducing the batch size."""


class InferenceError(VQVDBError):
    """The inference engine failed while running the model."""


class BackendShutdownError(VQVDBError):
    """A backend handle was used after :meth:`shutdown`."""


class EmptyGridError(VQVDBError, ValueError):
    """The grid to encode has no active voxels."""


class CancelledError(VQVDBError):
    """The caller asked to stop between batches."""
