# Copyright Contributors to the OpenVDB Project
# SPDX-License-Identifier: Apache-2.0
#
"""
Registry mapping backend identifiers to :class:`CodecBackend` implementations.

Backend modules register themselves when imported; :mod:`vqvdb.backends` imports exactly the
backends whose inference engine is installed, so the registry only ever lists backends that
can actually run. This is the only place that knows which backends exist.
"""

from __future__ import annotations

import logging
import pathlib
from typing import Callable, TypeVar

from ..errors import UnknownBackendError
from ..types import DeviceIdentifier
from .base import CodecBackend

logger = logging.getLogger(__name__)

_BACKENDS: dict[str, type[CodecBackend]] = {}

B = TypeVar("B", bound=type[CodecBackend])


def register_backend(backend_id: str, *, replace: bool = False) -> Callable[[B], B]:
    """
    Class decorator registering a backend under ``backend_id``.

    Args:
        backend_id (str): Identifier used by :func:`create_backend` (e.g. ``"torch"``).
        replace (bool): Allow overriding an existing registration.
    """
    if not isinstance(backend_id, str) or not backend_id:
        raise ValueError(f"backend_id must be a non-empty string, but got {backend_id!r}")

    def _register(cls: B) -> B:
        if not (isinstance(cls, type) and issubclass(cls, CodecBackend)):
            raise TypeError(f"Backend '{backend_id}' must be a CodecBackend subclass, but got {cls!r}")
        existing = _BACKENDS.get(backend_id)
        if existing is not None and existing is not cls and not replace:
            raise ValueError(f"Backend '{backend_id}' is already registered to {existing.__name__}")
        cls.backend_id = backend_id
        _BACKENDS[backend_id] = cls
        logger.debug(f"Registered backend '{backend_id}' -> {cls.__name__}")
        return cls

    return _register


def unregister_backend(backend_id: str) -> None:
    """
    Remove a registration. Unknown identifiers are ignored.
    """
    _BACKENDS.pop(backend_id, None)


def available_backends() -> tuple[str, ...]:
    """
    Identifiers of the backends available in this installation, sorted.
    """
    return tuple(sorted(_BACKENDS))


def get_backend_class(backend_id: str) -> type[CodecBackend]:
    """
    Look up a backend class without loading any model.

    Raises:
        UnknownBackendError: If ``backend_id`` is not registered.
    """
    try:
        return _BACKENDS[backend_id]
    except (KeyError, TypeError):
        raise UnknownBackendError(
            f"Unknown backend {backend_id!r}. Available backends: {', '.join(available_backends()) or 'none'}"
        ) from None


def create_backend(
    backend_id: str, model_path: str | pathlib.Path, device: DeviceIdentifier = "cpu", **options
) -> CodecBackend:
    """
    Construct and initialize the backend ``backend_id`` for the model at ``model_path``.

    Args:
        backend_id (str): A registered backend identifier.
        model_path (str | pathlib.Path): Path to the serialized model.
        device (str | torch.device): Device to run inference on.
        **options: Backend-specific construction options.

    Returns:
        CodecBackend: A ready-to-run handle. The caller owns it and must shut it down.

    Raises:
        UnknownBackendError: If ``backend_id`` is not registered.
        ModelLoadError: If the model cannot be loaded on ``device``.
    """
    cls = get_backend_class(backend_id)
    backend = cls.initialize(model_path, device, **options)
    logger.info(f"Loaded model '{backend.describe().model_id}' with backend '{backend_id}' on {backend.device}")
    return backend
