# Copyright Contributors to the OpenVDB Project
# SPDX-License-Identifier: Apache-2.0
#
"""
Helpers shared by the unit tests and benchmarks.

The models built here are exact "quantizers": the encoder rounds every voxel value to the
nearest integer codebook index and the decoder maps each index back to its value. Grids whose
values are integers in ``[0, alphabet_size)`` therefore round-trip bit-exactly through every
backend, which makes them suitable for checking the codec plumbing independently of any
learned model.
"""

import functools
import json
import pathlib

import numpy as np
import torch
import torch.nn as nn
from parameterized import parameterized

from vqvdb.backends import METADATA_FILENAME, CodecBackend, ModelInfo, register_backend, unregister_backend
from vqvdb.backends.base import load_model_info, read_metadata_file
from vqvdb.errors import DeviceOutOfMemoryError, ModelLoadError
from vqvdb.grid import SparseGrid
from vqvdb.types import DeviceIdentifier
from vqvdb.utils.timer import ScopedTimer

STUB_BACKEND_ID = "stub"

# Hack parameterized to use the function name and the expand parameters as the test name
expand_tests = functools.partial(
    parameterized.expand,
    name_func=lambda f, n, p: f'{f.__name__}_{parameterized.to_safe_name("_".join(str(x) for x in p.args))}',
)


def quantizer_metadata(
    patch_size: int = 4,
    in_channels: int = 1,
    alphabet_size: int = 256,
    model_id: str = "quantizer-q8",
    latent_shape: bool = False,
) -> dict:
    token_length = in_channels * patch_size**3
    metadata = {
        "patch_size": patch_size,
        "token_length": token_length,
        "alphabet_size": alphabet_size,
        "model_id": model_id,
        "in_channels": in_channels,
    }
    if latent_shape:
        metadata["latent_shape"] = [in_channels * patch_size, patch_size, patch_size]
    return metadata


# ----------------------------------------------------------------------------------------------
# Stub backend
# ----------------------------------------------------------------------------------------------


class QuantizingStubBackend(CodecBackend):
    """
    An in-process quantizing backend configured by a JSON file.

    Besides the model metadata, the JSON file may hold ``"max_batch"``: batches larger than
    this raise :class:`DeviceOutOfMemoryError`, simulating a device that is too small.

    Every call's batch size is recorded in :attr:`calls` as ``(stage, batch)``.
    """

    thread_safe = False

    def __init__(self, model_path, device: DeviceIdentifier = "cpu"):
        super().__init__(model_path, device)
        if not self.model_path.is_file():
            raise ModelLoadError(f"Stub model {self.model_path} does not exist")
        self._device = torch.device(device)
        if self._device.type != "cpu":
            raise ModelLoadError(f"The stub backend only runs on the CPU, not {self._device}")
        metadata = read_metadata_file(self.model_path)
        self._info = load_model_info(metadata, self.model_path)
        self.max_batch = int(metadata.get("max_batch", 0))
        self.calls: list[tuple[str, int]] = []
        self.released = False

    def describe(self) -> ModelInfo:
        return self._info

    @property
    def device(self) -> torch.device:
        return self._device

    def _check_memory(self, stage: str, batch: int) -> None:
        self.calls.append((stage, batch))
        if self.max_batch and batch > self.max_batch:
            raise DeviceOutOfMemoryError(f"Stub device holds {self.max_batch} patches, asked for {batch}")

    def _encode_batch(self, patches: torch.Tensor) -> torch.Tensor:
        self._check_memory("encode", patches.shape[0])
        indices = torch.round(patches).clamp(0, self._info.alphabet_size - 1).to(torch.int64)
        return indices.reshape(patches.shape[0], -1)

    def _decode_batch(self, tokens: torch.Tensor) -> torch.Tensor:
        self._check_memory("decode", tokens.shape[0])
        return tokens.to(torch.float32).reshape(tokens.shape[0], *self._info.patch_shape)

    def _release(self) -> None:
        self.released = True


def register_stub_backend() -> None:
    register_backend(STUB_BACKEND_ID, replace=True)(QuantizingStubBackend)


def unregister_stub_backend() -> None:
    unregister_backend(STUB_BACKEND_ID)


def write_stub_model(path: pathlib.Path, max_batch: int = 0, **kwargs) -> pathlib.Path:
    """
    Write a stub model JSON file. ``kwargs`` are forwarded to :func:`quantizer_metadata`.
    """
    metadata = quantizer_metadata(**kwargs)
    if max_batch:
        metadata["max_batch"] = max_batch
    path = pathlib.Path(path)
    path.write_text(json.dumps(metadata), encoding="utf-8")
    return path


# ----------------------------------------------------------------------------------------------
# TorchScript model
# ----------------------------------------------------------------------------------------------


class QuantizingVQVAE(nn.Module):
    """
    A scriptable VQ-VAE stand-in whose codebook is the integers ``[0, alphabet_size)``.
    """

    def __init__(self, patch_size: int, in_channels: int, alphabet_size: int, latent_shape: bool = False):
        super().__init__()
        self.patch_size = patch_size
        self.in_channels = in_channels
        self.alphabet_size = alphabet_size
        self.token_length = in_channels * patch_size**3
        self.latent_c = in_channels * patch_size if latent_shape else self.token_length
        self.latent_hw = patch_size if latent_shape else 1
        self.use_latent_shape = latent_shape

    @torch.jit.export
    def encode(self, patches: torch.Tensor) -> torch.Tensor:
        indices = torch.round(patches).clamp(0, self.alphabet_size - 1).to(torch.int64)
        if self.use_latent_shape:
            return indices.reshape([patches.shape[0], self.latent_c, self.latent_hw, self.latent_hw])
        return indices.reshape([patches.shape[0], self.token_length])

    @torch.jit.export
    def decode(self, indices: torch.Tensor) -> torch.Tensor:
        n = self.patch_size
        return indices.to(torch.float32).reshape([indices.shape[0], self.in_channels, n, n, n])

    def forward(self, patches: torch.Tensor) -> torch.Tensor:
        return self.decode(self.encode(patches))


def save_torchscript_quantizer(
    path: pathlib.Path, embed_metadata: bool = True, latent_shape: bool = False, **kwargs
) -> pathlib.Path:
    """
    Script and save a :class:`QuantizingVQVAE`.

    Args:
        path: Output ``.pt`` path.
        embed_metadata: Store ``vqvdb.json`` inside the archive; otherwise the backend has to
            fall back to the module attributes.
        latent_shape: Produce ``[B, C*N, N, N]`` indices instead of flat ``[B, L]`` ones.
        **kwargs: Forwarded to :func:`quantizer_metadata`.
    """
    metadata = quantizer_metadata(latent_shape=latent_shape, **kwargs)
    module = torch.jit.script(
        QuantizingVQVAE(metadata["patch_size"], metadata["in_channels"], metadata["alphabet_size"], latent_shape)
    )
    extra_files = {METADATA_FILENAME: json.dumps(metadata)} if embed_metadata else {}
    path = pathlib.Path(path)
    torch.jit.save(module, str(path), _extra_files=extra_files)
    return path


# ----------------------------------------------------------------------------------------------
# ONNX model
# ----------------------------------------------------------------------------------------------


def save_onnx_quantizer(directory: pathlib.Path, fixed_batch: int = 0, **kwargs) -> pathlib.Path:
    """
    Build quantizing ``encoder.onnx`` / ``decoder.onnx`` graphs in ``directory``.

    Args:
        directory: Output directory (created if missing).
        fixed_batch: If positive, the graphs take exactly this many patches per run.
        **kwargs: Forwarded to :func:`quantizer_metadata`; stored as model metadata properties.
    """
    import onnx
    from onnx import TensorProto, helper

    metadata = quantizer_metadata(**kwargs)
    n, c, length = metadata["patch_size"], metadata["in_channels"], metadata["token_length"]
    batch = fixed_batch if fixed_batch > 0 else "batch"
    directory = pathlib.Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    def _finish(graph, name: str) -> None:
        model = helper.make_model(graph, opset_imports=[helper.make_opsetid("", 13)], producer_name="vqvdb-tests")
        model.ir_version = 8
        props = {k: json.dumps(v) if isinstance(v, list) else str(v) for k, v in metadata.items()}
        helper.set_model_props(model, props)
        onnx.checker.check_model(model)
        onnx.save(model, str(directory / name))

    encoder = helper.make_graph(
        [
            helper.make_node("Round", ["patches"], ["rounded"]),
            helper.make_node("Clip", ["rounded", "lo", "hi"], ["clipped"]),
            helper.make_node("Cast", ["clipped"], ["cast"], to=TensorProto.INT64),
            helper.make_node("Reshape", ["cast", "shape"], ["indices"]),
        ],
        "quantizer_encoder",
        [helper.make_tensor_value_info("patches", TensorProto.FLOAT, [batch, c, n, n, n])],
        [helper.make_tensor_value_info("indices", TensorProto.INT64, [batch, length])],
        initializer=[
            helper.make_tensor("lo", TensorProto.FLOAT, [], [0.0]),
            helper.make_tensor("hi", TensorProto.FLOAT, [], [float(metadata["alphabet_size"] - 1)]),
            helper.make_tensor("shape", TensorProto.INT64, [2], [-1, length]),
        ],
    )
    _finish(encoder, "encoder.onnx")

    decoder = helper.make_graph(
        [
            helper.make_node("Cast", ["indices"], ["values"], to=TensorProto.FLOAT),
            helper.make_node("Reshape", ["values", "shape"], ["patches"]),
        ],
        "quantizer_decoder",
        [helper.make_tensor_value_info("indices", TensorProto.INT64, [batch, length])],
        [helper.make_tensor_value_info("patches", TensorProto.FLOAT, [batch, c, n, n, n])],
        initializer=[helper.make_tensor("shape", TensorProto.INT64, [5], [-1, c, n, n, n])],
    )
    _finish(decoder, "decoder.onnx")
    return directory


# ----------------------------------------------------------------------------------------------
# Grids
# ----------------------------------------------------------------------------------------------


def make_random_sparse_grid(
    num_voxels: int,
    extent: int = 32,
    channels: int = 1,
    alphabet_size: int = 256,
    offset: int = 0,
    seed: int = 0,
    **grid_kwargs,
) -> SparseGrid:
    """
    A grid of ``num_voxels`` distinct random voxels in ``[offset, offset + extent)^3`` holding
    integer values in ``[0, alphabet_size)``.
    """
    generator = np.random.default_rng(seed)
    flat = generator.choice(extent**3, size=num_voxels, replace=False)
    ijk = np.stack(np.unravel_index(flat, (extent, extent, extent)), axis=-1).astype(np.int32) + offset
    values = generator.integers(0, alphabet_size, size=(num_voxels, channels)).astype(np.float32)
    return SparseGrid(ijk, torch.from_numpy(values), **grid_kwargs)


def make_sphere_shell_grid(
    radius: float,
    center: tuple[int, int, int] = (0, 0, 0),
    band: float = 2.0,
    alphabet_size: int = 256,
    **grid_kwargs,
) -> SparseGrid:
    """
    A narrow band around a sphere, the kind of active region a level set or a fog volume
    boundary has. Values quantize the distance to the surface into ``[0, alphabet_size)``.
    """
    r = int(np.ceil(radius + band))
    axis = torch.arange(-r, r + 1)
    i, j, k = torch.meshgrid(axis, axis, axis, indexing="ij")
    distance = torch.sqrt((i**2 + j**2 + k**2).to(torch.float32)) - radius
    mask = distance.abs() <= band
    ijk = torch.stack([i[mask], j[mask], k[mask]], dim=-1) + torch.tensor(center)
    scaled = (distance[mask] + band) / (2 * band) * (alphabet_size - 1)
    return SparseGrid(ijk.to(torch.int32), torch.round(scaled), **grid_kwargs)


__all__ = [
    "STUB_BACKEND_ID",
    "QuantizingStubBackend",
    "QuantizingVQVAE",
    "ScopedTimer",
    "expand_tests",
    "make_random_sparse_grid",
    "make_sphere_shell_grid",
    "quantizer_metadata",
    "register_stub_backend",
    "save_onnx_quantizer",
    "save_torchscript_quantizer",
    "unregister_stub_backend",
    "write_stub_model",
]
