# Copyright Contributors to the OpenVDB Project
# SPDX-License-Identifier: Apache-2.0
#
"""
The VQ-VAE codec: tiling, batched inference and container serialization.

:class:`VQVAECodec` drives one backend handle. :func:`encode` and :func:`decode` are the two
calls a host application (e.g. a Houdini SOP) makes; each builds a fresh backend handle for
the call and releases it on every exit path.
"""

from __future__ import annotations

import logging
import pathlib
import warnings
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterator

import torch

from .backends import CodecBackend, ModelInfo, create_backend, get_backend_class
from .config import DEFAULT_BATCH_SIZE, CodecConfig
from .container import (
    GridMetadata,
    read_container,
    read_container_file,
    read_header,
    write_container,
    write_container_file,
)
from .errors import CancelledError, DeviceOutOfMemoryError, EmptyGridError, ResourceExhaustedError, ShapeMismatchError
from .grid import SparseGrid
from .tiler import GridTiler, iter_batch_ranges
from .types import DeviceIdentifier
from .utils.timer import ScopedTimer

logger = logging.getLogger(__name__)

# Called after every batch with (patches done, total patches). Returning False cancels the call.
ProgressCallback = Callable[[int, int], "bool | None"]


class VQVAECodec:
    """
    Compresses sparse grids into VQVDB containers and back with one backend handle.

    Calls on one codec run one at a time; the backend handle serializes inference unless it
    declares itself thread-safe. Use one codec (and one handle) per concurrent caller.

    Args:
        backend (CodecBackend): An initialized backend handle.
        config (CodecConfig | None): Batching configuration. Defaults to :class:`CodecConfig`.
        progress (ProgressCallback | None): Called after every batch.
        owns_backend (bool): If True, :meth:`close` shuts the backend down.
        **overrides: Field overrides applied on top of ``config`` (e.g. ``batch_size=16``).
    """

    def __init__(
        self,
        backend: CodecBackend,
        config: CodecConfig | None = None,
        *,
        progress: ProgressCallback | None = None,
        owns_backend: bool = False,
        **overrides,
    ):
        if not isinstance(backend, CodecBackend):
            raise TypeError(f"backend must be a CodecBackend, but got {type(backend)}")
        self.backend = backend
        self.config = (config or CodecConfig()).updated(**overrides)
        if not owns_backend and (config is not None or overrides.get("device") is not None):
            if torch.device(self.config.device).type != backend.device.type:
                warnings.warn(
                    f"You requested device '{self.config.device}', but the backend was created on "
                    f"'{backend.device}'. Using the backend's device."
                )
        self.progress = progress
        self.timings: dict[str, float] = {}
        self._owns_backend = owns_backend
        self._batch_size = self.config.batch_size
        self._oom_retried = False

    @classmethod
    def from_backend_id(
        cls,
        backend_id: str,
        model_path: str | pathlib.Path,
        config: CodecConfig | None = None,
        *,
        progress: ProgressCallback | None = None,
        **overrides,
    ) -> "VQVAECodec":
        """
        Create a codec that owns a new handle of backend ``backend_id``.

        Raises:
            UnknownBackendError: If ``backend_id`` is not available.
            ModelLoadError: If the model cannot be loaded.
        """
        config = (config or CodecConfig()).updated(**overrides)
        backend = create_backend(backend_id, model_path, config.device)
        return cls(backend, config, progress=progress, owns_backend=True)

    @property
    def model_info(self) -> ModelInfo:
        return self.backend.describe()

    @property
    def _on_cuda(self) -> bool:
        return self.backend.device.type == "cuda"

    def close(self) -> None:
        if self._owns_backend:
            self.backend.shutdown()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # ------------------------------------------------------------------------------------------
    # Encode
    # ------------------------------------------------------------------------------------------

    def compress(self, grid: SparseGrid) -> bytes:
        """
        Encode ``grid`` into container bytes.

        Args:
            grid (SparseGrid): The grid to compress. Its channel count must match the model.

        Returns:
            bytes: A complete VQVDB container.

        Raises:
            EmptyGridError: If the grid has no active voxels.
            ShapeMismatchError: If the grid's channel count does not match the model.
            ResourceExhaustedError: If the device runs out of memory even after a retry.
        """
        if not isinstance(grid, SparseGrid):
            raise TypeError(f"grid must be a SparseGrid, but got {type(grid)}")
        if grid.is_empty():
            raise EmptyGridError("Cannot encode a grid without active voxels")
        info = self.model_info
        if grid.num_channels != info.in_channels:
            raise ShapeMismatchError(
                f"Grid '{grid.name}' does not match the channels of model '{info.model_id}'",
                expected=info.in_channels,
                actual=grid.num_channels,
            )

        self._reset_call_state()
        tiler = GridTiler(info.patch_size)
        with ScopedTimer("tile", self.timings):
            tiled = tiler.tile(grid)

        chunks: list[torch.Tensor] = []
        with ScopedTimer("encode", self.timings, cuda=self._on_cuda):
            self._run_batches(self.backend.encode, tiled.extract, chunks.append, tiled.num_patches)

        with ScopedTimer("serialize", self.timings):
            data = write_container(
                info, tiled.layout, torch.cat(chunks), GridMetadata.from_grid(grid), fill_value=tiler.fill_value
            )

        raw_size = grid.num_voxels * (12 + 4 * grid.num_channels)
        logger.info(
            f"Encoded '{grid.name}': {grid.num_voxels} voxels in {tiled.num_patches} patches -> "
            f"{len(data)} bytes ({raw_size / len(data):.1f}x)"
        )
        return data

    def compress_to_file(self, grid: SparseGrid, path: str | pathlib.Path) -> int:
        """
        Encode ``grid`` and write the container to ``path`` atomically.

        Returns:
            int: Number of bytes written.
        """
        data = self.compress(grid)
        write_container_file(path, data)
        return len(data)

    # ------------------------------------------------------------------------------------------
    # Decode
    # ------------------------------------------------------------------------------------------

    def decompress(self, data: bytes | bytearray | memoryview) -> SparseGrid:
        """
        Decode container bytes into a new grid.

        Raises:
            UnsupportedVersionError: If the container format version is not supported.
            ModelMismatchError: If the container was encoded with a different model.
            TruncatedFileError: If the container is shorter than its header declares.
            CorruptContainerError: If the container fails validation.
            InvalidTokenError: If a stored token is outside the model's codebook.
        """
        info = self.model_info
        self._reset_call_state()

        with ScopedTimer("parse", self.timings):
            container = read_container(data, expected=info)

        header = container.header
        tiler = GridTiler(header.patch_size, fill_value=header.fill_value)
        merger = tiler.merger(container.layout, **header.grid.grid_kwargs())

        def _tokens(start: int, stop: int) -> torch.Tensor:
            return container.tokens[start:stop]

        with ScopedTimer("decode", self.timings, cuda=self._on_cuda):
            self._run_batches(self.backend.decode, _tokens, merger.add, header.patch_count)

        grid = merger.finish()
        logger.info(f"Decoded '{grid.name}': {header.patch_count} patches -> {grid.num_voxels} voxels")
        return grid

    def decompress_file(self, path: str | pathlib.Path) -> SparseGrid:
        return self.decompress(read_container_file(path))

    # ------------------------------------------------------------------------------------------
    # Batching
    # ------------------------------------------------------------------------------------------

    def _reset_call_state(self) -> None:
        self.timings = {}
        self._batch_size = self.config.batch_size
        self._oom_retried = False

    def _run_batches(
        self,
        infer: Callable[[torch.Tensor], torch.Tensor],
        prepare: Callable[[int, int], torch.Tensor],
        consume: Callable[[torch.Tensor], None],
        total: int,
    ) -> None:
        done = 0
        for start, stop, batch in self._prepared_batches(prepare, total):
            consume(self._infer(infer, batch))
            done = stop
            logger.debug(f"Processed patches [{start}, {stop}) of {total}")
            if self.progress is not None and self.progress(done, total) is False:
                raise CancelledError(f"Cancelled after {done} of {total} patches")

    def _prepared_batches(
        self, prepare: Callable[[int, int], torch.Tensor], total: int
    ) -> Iterator[tuple[int, int, torch.Tensor]]:
        ranges = iter_batch_ranges(total, self.config.batch_size)
        if self.config.num_workers == 0:
            for start, stop in ranges:
                yield start, stop, prepare(start, stop)
            return

        # Keep at most num_workers batches in flight ahead of the one being inferred.
        with ThreadPoolExecutor(max_workers=self.config.num_workers, thread_name_prefix="vqvdb") as pool:
            pending: deque = deque()
            for start, stop in ranges:
                pending.append((start, stop, pool.submit(prepare, start, stop)))
                if len(pending) > self.config.num_workers:
                    s, e, future = pending.popleft()
                    yield s, e, future.result()
            while pending:
                s, e, future = pending.popleft()
                yield s, e, future.result()

    def _infer(self, infer: Callable[[torch.Tensor], torch.Tensor], batch: torch.Tensor) -> torch.Tensor:
        """
        Run ``infer`` over ``batch`` in pieces of the current batch size.

        The first device out-of-memory error of a call halves the batch size and retries the
        failed piece; a second one is fatal.
        """
        outputs = []
        pos = 0
        while pos < batch.shape[0]:
            size = self._batch_size
            piece = batch[pos : pos + size]
            try:
                outputs.append(infer(piece))
            except DeviceOutOfMemoryError as e:
                if not self.config.retry_on_oom or self._oom_retried or size == 1:
                    raise ResourceExhaustedError(
                        f"Device {self.backend.device} ran out of memory with batch size {size}"
                    ) from e
                self._oom_retried = True
                self._batch_size = max(1, size // 2)
                logger.warning(f"Out of memory with batch size {size}, retrying with {self._batch_size}")
                continue
            pos += piece.shape[0]
        return outputs[0] if len(outputs) == 1 else torch.cat(outputs)


# ----------------------------------------------------------------------------------------------
# Host calls
# ----------------------------------------------------------------------------------------------


def encode(
    grid: SparseGrid,
    backend_id: str,
    model_path: str | pathlib.Path,
    device: DeviceIdentifier = "cpu",
    batch_size: int = DEFAULT_BATCH_SIZE,
    **kwargs,
) -> bytes:
    """
    Compress ``grid`` with the model at ``model_path`` run by backend ``backend_id``.

    Args:
        grid (SparseGrid): The grid to compress.
        backend_id (str): A backend from :func:`vqvdb.backends.available_backends`.
        model_path (str | pathlib.Path): The serialized model.
        device (str | torch.device): Inference device.
        batch_size (int): Maximum patches per inference call.
        **kwargs: Further :class:`CodecConfig` fields or ``progress``.

    Returns:
        bytes: The container. Nothing is returned if any step fails.
    """
    # Resolve the backend before touching the model file.
    get_backend_class(backend_id)
    progress = kwargs.pop("progress", None)
    with VQVAECodec.from_backend_id(
        backend_id, model_path, progress=progress, device=str(device), batch_size=batch_size, **kwargs
    ) as codec:
        return codec.compress(grid)


def decode(
    container_bytes: bytes | bytearray | memoryview,
    backend_id: str,
    model_path: str | pathlib.Path,
    device: DeviceIdentifier = "cpu",
    batch_size: int = DEFAULT_BATCH_SIZE,
    **kwargs,
) -> SparseGrid:
    """
    Decompress container bytes with the model at ``model_path`` run by backend ``backend_id``.

    The header is validated before the model is loaded, so an unsupported or malformed
    container fails without paying for model initialization.

    Returns:
        SparseGrid: The reconstructed grid. Nothing is returned if any step fails.
    """
    get_backend_class(backend_id)
    read_header(container_bytes)
    progress = kwargs.pop("progress", None)
    with VQVAECodec.from_backend_id(
        backend_id, model_path, progress=progress, device=str(device), batch_size=batch_size, **kwargs
    ) as codec:
        return codec.decompress(container_bytes)


def encode_file(
    grid: SparseGrid, path: str | pathlib.Path, backend_id: str, model_path: str | pathlib.Path, **kwargs
) -> int:
    """
    :func:`encode` and write the container to ``path`` atomically. Returns the bytes written.
    """
    data = encode(grid, backend_id, model_path, **kwargs)
    write_container_file(path, data)
    return len(data)


def decode_file(path: str | pathlib.Path, backend_id: str, model_path: str | pathlib.Path, **kwargs) -> SparseGrid:
    """
    Read the container at ``path`` and :func:`decode` it.
    """
    get_backend_class(backend_id)
    return decode(read_container_file(path), backend_id, model_path, **kwargs)
