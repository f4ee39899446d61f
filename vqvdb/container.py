# Copyright Contributors to the OpenVDB Project
# SPDX-License-Identifier: Apache-2.0
#
"""
Reader and writer for the VQVDB binary container.

All integers are little-endian. Fields are written in this fixed order:

======  ==========================  ===================================================
Field   Encoding                    Notes
======  ==========================  ===================================================
magic   5 bytes ``b"VQVDB"``
version uint16                      :data:`FORMAT_VERSION`
model   uint16 length + UTF-8       model identifier
model   3 x uint32                  patch_size, token_length, alphabet_size
model   uint16, uint8, uint8        in_channels, token width in bytes, region encoding
grid    6 x float64                 voxel_size, origin
grid    2 x float32                 background, padding fill value
grid    uint16 length + UTF-8       grid name
count   uint64                      patch_count
region  see :class:`RegionEncoding` occupied patch cells, canonical order
masks   patch_count x ceil(N^3/8)   active voxels of each patch, little bit order
tokens  patch_count x token_length  unsigned, token width bytes each
crc     uint32                      CRC-32 of every preceding byte
======  ==========================  ===================================================

Patch order is the tiler's canonical order (lexicographic cell index), so patch origins are
derived from the region field and never stored per token array.
"""

from __future__ import annotations

import logging
import math
import os
import pathlib
import struct
import tempfile
import zlib
from dataclasses import dataclass
from typing import Any

import numpy as np
import torch

from .backends.base import ModelInfo
from .enums import RegionEncoding
from .errors import (
    CorruptContainerError,
    InvalidTokenError,
    ModelMismatchError,
    TruncatedFileError,
    UnsupportedVersionError,
)
from .grid import SparseGrid
from .tiler import PatchLayout

logger = logging.getLogger(__name__)

FORMAT_MAGIC = b"VQVDB"
FORMAT_VERSION = 1
SUPPORTED_VERSIONS = (1,)

FILE_EXTENSION = ".vqvdb"

_VERSION = struct.Struct("<H")
_STRING_LENGTH = struct.Struct("<H")
_MODEL = struct.Struct("<IIIHBB")
_GRID = struct.Struct("<6d2f")
_COUNT = struct.Struct("<Q")
_CELL_BOX = struct.Struct("<3i3I")
_CRC = struct.Struct("<I")

_TOKEN_DTYPES = {1: np.dtype("<u1"), 2: np.dtype("<u2"), 4: np.dtype("<u4")}


def token_width_for(alphabet_size: int) -> int:
    """
    Smallest width in bytes (1, 2 or 4) that holds every token of an alphabet of ``alphabet_size``.
    """
    if alphabet_size < 1:
        raise ValueError(f"alphabet_size must be positive, but got {alphabet_size}")
    largest = alphabet_size - 1
    for width in (1, 2, 4):
        if largest < 1 << (8 * width):
            return width
    raise ValueError(f"alphabet_size {alphabet_size} does not fit in 32-bit tokens")


def mask_bytes_per_patch(patch_size: int) -> int:
    return (patch_size**3 + 7) // 8


@dataclass(frozen=True)
class GridMetadata:
    """
    Topology parameters of the encoded grid, restored on decode.
    """

    name: str = ""
    voxel_size: tuple[float, float, float] = (1.0, 1.0, 1.0)
    origin: tuple[float, float, float] = (0.0, 0.0, 0.0)
    background: float = 0.0

    @classmethod
    def from_grid(cls, grid: SparseGrid) -> "GridMetadata":
        return cls(grid.name, grid.voxel_size, grid.origin, grid.background)

    def grid_kwargs(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "voxel_size": self.voxel_size,
            "origin": self.origin,
            "background": self.background,
        }


@dataclass(frozen=True)
class ContainerHeader:
    """
    Everything a container declares before its payload.

    Attributes:
        version (int): Format version the container was written with.
        model_id (str): Identifier of the model that produced the tokens.
        patch_size (int): Patch edge length.
        token_length (int): Tokens per patch.
        alphabet_size (int): Codebook size.
        in_channels (int): Value channels per voxel.
        token_width (int): Bytes per stored token.
        region_encoding (RegionEncoding): How occupied cells are stored.
        grid (GridMetadata): Topology parameters of the grid.
        fill_value (float): Value padding cells held when the patches were encoded.
        patch_count (int): Number of patches (and token arrays).
        region_size (int): Byte size of the region field.
        payload_offset (int): Offset of the first byte after the fixed-size header fields.
    """

    version: int
    model_id: str
    patch_size: int
    token_length: int
    alphabet_size: int
    in_channels: int
    token_width: int
    region_encoding: RegionEncoding
    grid: GridMetadata
    fill_value: float
    patch_count: int
    region_size: int
    payload_offset: int

    @property
    def masks_size(self) -> int:
        return self.patch_count * mask_bytes_per_patch(self.patch_size)

    @property
    def tokens_size(self) -> int:
        return self.patch_count * self.token_length * self.token_width

    @property
    def total_size(self) -> int:
        """Exact byte size of a well-formed container with this header."""
        return self.payload_offset + self.region_size + self.masks_size + self.tokens_size + _CRC.size

    def validate_model(self, info: ModelInfo) -> None:
        """
        Check that this container can be decoded by a model with capabilities ``info``.

        Raises:
            ModelMismatchError: If any model parameter differs.
        """
        mismatches = [
            f"{name}: container has {ours!r}, model has {theirs!r}"
            for name, ours, theirs in (
                ("model_id", self.model_id, info.model_id),
                ("patch_size", self.patch_size, info.patch_size),
                ("token_length", self.token_length, info.token_length),
                ("alphabet_size", self.alphabet_size, info.alphabet_size),
                ("in_channels", self.in_channels, info.in_channels),
            )
            if ours != theirs
        ]
        if mismatches:
            raise ModelMismatchError("Container was encoded with an incompatible model: " + "; ".join(mismatches))

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "model_id": self.model_id,
            "patch_size": self.patch_size,
            "token_length": self.token_length,
            "alphabet_size": self.alphabet_size,
            "in_channels": self.in_channels,
            "token_width": self.token_width,
            "region_encoding": self.region_encoding.name,
            "grid_name": self.grid.name,
            "voxel_size": list(self.grid.voxel_size),
            "origin": list(self.grid.origin),
            "background": self.grid.background,
            "fill_value": self.fill_value,
            "patch_count": self.patch_count,
            "total_size": self.total_size,
        }


@dataclass(frozen=True)
class Container:
    """
    A fully parsed container: header, patch layout and token arrays in canonical order.
    """

    header: ContainerHeader
    layout: PatchLayout
    tokens: torch.Tensor


class _ByteReader:
    """Sequential reader that reports running past the end as truncation."""

    def __init__(self, data: bytes | bytearray | memoryview):
        self.data = memoryview(data)
        self.offset = 0

    def take(self, size: int, what: str) -> memoryview:
        end = self.offset + size
        if end > len(self.data):
            raise TruncatedFileError(
                f"Container ends inside {what}: need {end} bytes, have {len(self.data)}"
            )
        view = self.data[self.offset : end]
        self.offset = end
        return view

    def unpack(self, fmt: struct.Struct, what: str) -> tuple:
        return fmt.unpack(self.take(fmt.size, what))

    def string(self, what: str) -> str:
        (length,) = self.unpack(_STRING_LENGTH, what)
        raw = self.take(length, what)
        try:
            return bytes(raw).decode("utf-8")
        except UnicodeDecodeError as e:
            raise CorruptContainerError(f"{what} is not valid UTF-8") from e


def _pack_string(value: str, what: str) -> bytes:
    encoded = value.encode("utf-8")
    if len(encoded) > 0xFFFF:
        raise ValueError(f"{what} is too long ({len(encoded)} bytes, maximum 65535)")
    return _STRING_LENGTH.pack(len(encoded)) + encoded


def _encode_region(cells: torch.Tensor) -> tuple[RegionEncoding, bytes]:
    """
    Encode occupied cells with whichever representation is smaller.
    """
    cells_np = cells.numpy().astype(np.int64)
    lo = cells_np.min(axis=0)
    dims = cells_np.max(axis=0) - lo + 1
    box_cells = int(dims[0]) * int(dims[1]) * int(dims[2])

    list_size = cells_np.shape[0] * 3 * 4
    mask_size = _CELL_BOX.size + (box_cells + 7) // 8
    if mask_size < list_size:
        occupancy = np.zeros(tuple(int(d) for d in dims), dtype=bool)
        local = cells_np - lo
        occupancy[local[:, 0], local[:, 1], local[:, 2]] = True
        packed = np.packbits(occupancy.reshape(-1), bitorder="little")
        header = _CELL_BOX.pack(*(int(v) for v in lo), *(int(v) for v in dims))
        return RegionEncoding.CELL_MASK, header + packed.tobytes()

    return RegionEncoding.CELL_LIST, cells_np.astype("<i4").tobytes()


def _check_cell_range(cells: torch.Tensor) -> None:
    info = np.iinfo(np.int32)
    if int(cells.min()) < info.min or int(cells.max()) > info.max:
        raise ValueError("Patch cell indices do not fit in 32 bits")


def write_container(
    info: ModelInfo,
    layout: PatchLayout,
    tokens: torch.Tensor,
    grid: GridMetadata,
    fill_value: float = 0.0,
) -> bytes:
    """
    Serialize a tiled, encoded grid.

    Args:
        info (ModelInfo): Capabilities of the model that produced ``tokens``.
        layout (PatchLayout): Canonical tiling of the grid.
        tokens (torch.Tensor): ``[patch_count, token_length]`` token arrays in canonical order.
        grid (GridMetadata): Topology parameters to restore on decode.
        fill_value (float): Padding value used when the patches were extracted.

    Returns:
        bytes: The container.
    """
    if layout.num_patches == 0:
        raise ValueError("Cannot write a container without patches")
    if layout.patch_size != info.patch_size:
        raise ValueError(f"Layout patch size {layout.patch_size} does not match model patch size {info.patch_size}")
    if not layout.is_canonical():
        raise ValueError("Layout cells are not in canonical order")
    if tuple(tokens.shape) != (layout.num_patches, info.token_length):
        raise ValueError(
            f"tokens must have shape {[layout.num_patches, info.token_length]}, but got {list(tokens.shape)}"
        )
    tokens = tokens.detach().to("cpu", torch.int64)
    if tokens.numel() and (int(tokens.min()) < 0 or int(tokens.max()) >= info.alphabet_size):
        raise InvalidTokenError(f"Token arrays hold values outside [0, {info.alphabet_size})")
    _check_cell_range(layout.cells)

    width = token_width_for(info.alphabet_size)
    encoding, region = _encode_region(layout.cells)
    masks = np.packbits(layout.voxel_masks.reshape(layout.num_patches, -1).numpy(), axis=1, bitorder="little")

    parts = [
        FORMAT_MAGIC,
        _VERSION.pack(FORMAT_VERSION),
        _pack_string(info.model_id, "model_id"),
        _MODEL.pack(info.patch_size, info.token_length, info.alphabet_size, info.in_channels, width, int(encoding)),
        _GRID.pack(*grid.voxel_size, *grid.origin, grid.background, fill_value),
        _pack_string(grid.name, "grid name"),
        _COUNT.pack(layout.num_patches),
        region,
        masks.tobytes(),
        tokens.numpy().astype(_TOKEN_DTYPES[width]).tobytes(),
    ]
    body = b"".join(parts)
    data = body + _CRC.pack(zlib.crc32(body))
    logger.debug(
        f"Wrote container: {layout.num_patches} patches, {width}-byte tokens, region {encoding.name}, {len(data)} bytes"
    )
    return data


def read_header(data: bytes | bytearray | memoryview) -> ContainerHeader:
    """
    Parse and validate the container header without touching the payload.

    Raises:
        CorruptContainerError: If ``data`` does not start with the container magic.
        UnsupportedVersionError: If the format version is not supported.
        TruncatedFileError: If ``data`` ends inside the header.
    """
    reader = _ByteReader(data)
    head = bytes(reader.data[: len(FORMAT_MAGIC)])
    if head != FORMAT_MAGIC:
        if len(head) < len(FORMAT_MAGIC) and FORMAT_MAGIC.startswith(head):
            raise TruncatedFileError(f"Container is only {len(head)} bytes long")
        raise CorruptContainerError("Data is not a VQVDB container (bad magic)")
    reader.take(len(FORMAT_MAGIC), "magic")

    (version,) = reader.unpack(_VERSION, "version")
    if version not in SUPPORTED_VERSIONS:
        newest = max(SUPPORTED_VERSIONS)
        qualifier = "newer than" if version > newest else "not one of"
        raise UnsupportedVersionError(
            f"Container format version {version} is {qualifier} the supported versions {SUPPORTED_VERSIONS}"
        )

    model_id = reader.string("model_id")
    patch_size, token_length, alphabet_size, in_channels, width, encoding = reader.unpack(_MODEL, "model parameters")
    if width not in _TOKEN_DTYPES or width != token_width_for(max(alphabet_size, 1)):
        raise CorruptContainerError(f"Invalid token width {width} for alphabet size {alphabet_size}")
    if patch_size < 1 or token_length < 1 or in_channels < 1:
        raise CorruptContainerError(
            f"Invalid model parameters: patch_size={patch_size}, token_length={token_length}, in_channels={in_channels}"
        )
    try:
        region_encoding = RegionEncoding(encoding)
    except ValueError as e:
        raise CorruptContainerError(f"Unknown region encoding {encoding}") from e

    grid_values = reader.unpack(_GRID, "grid metadata")
    name = reader.string("grid name")
    grid = GridMetadata(
        name=name,
        voxel_size=tuple(grid_values[0:3]),
        origin=tuple(grid_values[3:6]),
        background=float(grid_values[6]),
    )
    (patch_count,) = reader.unpack(_COUNT, "patch count")
    if patch_count == 0:
        raise CorruptContainerError("Container declares zero patches")

    payload_offset = reader.offset
    if region_encoding == RegionEncoding.CELL_LIST:
        region_size = patch_count * 3 * 4
    else:
        box = reader.unpack(_CELL_BOX, "region bounding box")
        region_size = _CELL_BOX.size + (math.prod(box[3:6]) + 7) // 8

    return ContainerHeader(
        version=version,
        model_id=model_id,
        patch_size=patch_size,
        token_length=token_length,
        alphabet_size=alphabet_size,
        in_channels=in_channels,
        token_width=width,
        region_encoding=region_encoding,
        grid=grid,
        fill_value=float(grid_values[7]),
        patch_count=patch_count,
        region_size=region_size,
        payload_offset=payload_offset,
    )


def _decode_region(header: ContainerHeader, region: memoryview) -> torch.Tensor:
    if header.region_encoding == RegionEncoding.CELL_LIST:
        cells = np.frombuffer(region, dtype="<i4").reshape(header.patch_count, 3).astype(np.int64)
    else:
        box = _CELL_BOX.unpack(region[: _CELL_BOX.size])
        lo = np.array(box[0:3], dtype=np.int64)
        dims = tuple(int(d) for d in box[3:6])
        bits = np.unpackbits(
            np.frombuffer(region[_CELL_BOX.size :], dtype=np.uint8), count=math.prod(dims), bitorder="little"
        )
        local = np.argwhere(bits.reshape(dims).astype(bool))
        if local.shape[0] != header.patch_count:
            raise CorruptContainerError(
                f"Region mask marks {local.shape[0]} cells but the header declares {header.patch_count} patches"
            )
        cells = local.astype(np.int64) + lo
    return torch.from_numpy(np.ascontiguousarray(cells))


def read_container(data: bytes | bytearray | memoryview, expected: ModelInfo | None = None) -> Container:
    """
    Parse and validate a container.

    Args:
        data (bytes): The container bytes.
        expected (ModelInfo | None): If given, the container must have been encoded with a
            model with these capabilities.

    Returns:
        Container: The header, patch layout and ``[patch_count, token_length]`` int64 tokens.

    Raises:
        UnsupportedVersionError: If the format version is not supported.
        ModelMismatchError: If ``expected`` does not match the container's model.
        TruncatedFileError: If ``data`` is shorter than the header declares.
        CorruptContainerError: On bad magic, trailing bytes, checksum failure or malformed fields.
    """
    header = read_header(data)
    if expected is not None:
        header.validate_model(expected)

    view = memoryview(data)
    if len(view) < header.total_size:
        raise TruncatedFileError(
            f"Container declares {header.patch_count} patches ({header.total_size} bytes) but holds {len(view)} bytes"
        )
    if len(view) > header.total_size:
        raise CorruptContainerError(f"Container has {len(view) - header.total_size} unexpected trailing bytes")

    body_end = header.total_size - _CRC.size
    (stored_crc,) = _CRC.unpack(view[body_end:])
    if zlib.crc32(view[:body_end]) != stored_crc:
        raise CorruptContainerError("Container checksum mismatch")

    reader = _ByteReader(view[:body_end])
    reader.offset = header.payload_offset
    cells = _decode_region(header, reader.take(header.region_size, "region"))

    n = header.patch_size
    packed = np.frombuffer(reader.take(header.masks_size, "voxel masks"), dtype=np.uint8)
    masks = np.unpackbits(
        packed.reshape(header.patch_count, mask_bytes_per_patch(n)), axis=1, count=n**3, bitorder="little"
    )
    voxel_masks = torch.from_numpy(masks.astype(bool).reshape(header.patch_count, n, n, n))
    if not bool(voxel_masks.reshape(header.patch_count, -1).any(dim=1).all()):
        raise CorruptContainerError("Container holds a patch without active voxels")

    layout = PatchLayout(n, cells, voxel_masks)
    if not layout.is_canonical():
        raise CorruptContainerError("Container patch cells are not in canonical order")

    raw_tokens = np.frombuffer(reader.take(header.tokens_size, "token stream"), dtype=_TOKEN_DTYPES[header.token_width])
    tokens = torch.from_numpy(raw_tokens.astype(np.int64).reshape(header.patch_count, header.token_length))
    return Container(header, layout, tokens)


def write_container_file(path: str | pathlib.Path, data: bytes) -> None:
    """
    Write container bytes to ``path`` atomically.

    The bytes go to a temporary file in the same directory which then replaces ``path``, so a
    failure never leaves a partial container behind.
    """
    path = pathlib.Path(path)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        pathlib.Path(tmp_name).unlink(missing_ok=True)
        raise


def read_container_file(path: str | pathlib.Path) -> bytes:
    return pathlib.Path(path).read_bytes()
