# Copyright Contributors to the OpenVDB Project
# SPDX-License-Identifier: Apache-2.0
#
from __future__ import annotations

# isort: off
from .errors import (
    VQVDBError,
    ModelLoadError,
    UnknownBackendError,
    ShapeMismatchError,
    InvalidTokenError,
    ContainerError,
    UnsupportedVersionError,
    ModelMismatchError,
    TruncatedFileError,
    CorruptContainerError,
    DeviceOutOfMemoryError,
    ResourceExhaustedError,
    InferenceError,
    BackendShutdownError,
    EmptyGridError,
    CancelledError,
)
from .enums import RegionEncoding
from .grid import SparseGrid
from .tiler import GridTiler, PatchLayout, PatchMerger, TiledGrid

# Importing the backends package registers every backend available in this installation.
from .backends import (
    CodecBackend,
    ModelInfo,
    available_backends,
    create_backend,
    get_backend_class,
    register_backend,
    unregister_backend,
)
from .container import (
    FORMAT_VERSION,
    ContainerHeader,
    read_container,
    read_container_file,
    read_header,
    write_container,
    write_container_file,
)
from .config import CodecConfig
from .codec import VQVAECodec, decode, decode_file, encode, encode_file

# isort: on

from .version import __version__

__version_info__ = tuple(map(int, __version__.split(".")))

__all__ = [
    "SparseGrid",
    "GridTiler",
    "PatchLayout",
    "PatchMerger",
    "TiledGrid",
    "RegionEncoding",
    "CodecBackend",
    "ModelInfo",
    "available_backends",
    "create_backend",
    "get_backend_class",
    "register_backend",
    "unregister_backend",
    "FORMAT_VERSION",
    "ContainerHeader",
    "read_container",
    "read_container_file",
    "read_header",
    "write_container",
    "write_container_file",
    "CodecConfig",
    "VQVAECodec",
    "encode",
    "decode",
    "encode_file",
    "decode_file",
    "VQVDBError",
    "ModelLoadError",
    "UnknownBackendError",
    "ShapeMismatchError",
    "InvalidTokenError",
    "ContainerError",
    "UnsupportedVersionError",
    "ModelMismatchError",
    "TruncatedFileError",
    "CorruptContainerError",
    "DeviceOutOfMemoryError",
    "ResourceExhaustedError",
    "InferenceError",
    "BackendShutdownError",
    "EmptyGridError",
    "CancelledError",
]
