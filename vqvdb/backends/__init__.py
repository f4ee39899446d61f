# Copyright Contributors to the OpenVDB Project
# SPDX-License-Identifier: Apache-2.0
#
import importlib.util

from .base import METADATA_FILENAME, CodecBackend, ModelInfo
from .registry import (
    available_backends,
    create_backend,
    get_backend_class,
    register_backend,
    unregister_backend,
)

# isort: off
# Importing a backend module registers it. PyTorch is a hard dependency, ONNX Runtime is an extra.
from . import torch_backend
from .torch_backend import TorchBackend

if importlib.util.find_spec("onnxruntime") is not None:
    from . import onnx_backend

# isort: on

__all__ = [
    "CodecBackend",
    "ModelInfo",
    "METADATA_FILENAME",
    "TorchBackend",
    "available_backends",
    "create_backend",
    "get_backend_class",
    "register_backend",
    "unregister_backend",
]
