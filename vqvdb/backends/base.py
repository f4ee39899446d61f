# Copyright Contributors to the OpenVDB Project
# SPDX-License-Identifier: Apache-2.0
#
"""
The inference contract every backend implements.

:class:`CodecBackend` validates inputs and outputs and serializes calls into handles that are
not thread-safe; concrete backends only implement the engine-specific ``_encode_batch``,
``_decode_batch`` and ``_release`` hooks.
"""

from __future__ import annotations

import contextlib
import json
import math
import pathlib
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Mapping

import torch

from ..errors import BackendShutdownError, InvalidTokenError, ModelLoadError, ShapeMismatchError
from ..types import DeviceIdentifier

METADATA_FILENAME = "vqvdb.json"


@dataclass(frozen=True)
class ModelInfo:
    """
    Capabilities of a loaded model, as reported by :meth:`CodecBackend.describe`.

    Attributes:
        patch_size (int): Edge length ``N`` of the cubic patches the encoder consumes.
        token_length (int): Number of tokens per patch.
        alphabet_size (int): Codebook size; every token lies in ``[0, alphabet_size)``.
        model_id (str): Identifier written into containers and checked on decode.
        in_channels (int): Number of value channels per voxel.
        latent_shape (tuple[int, ...]): Spatial shape of the token grid, when the model has one.
            Its product equals ``token_length``.
    """

    patch_size: int
    token_length: int
    alphabet_size: int
    model_id: str
    in_channels: int = 1
    latent_shape: tuple[int, ...] = field(default=())

    def __post_init__(self):
        # Container fields: patch_size, token_length and alphabet_size are uint32, in_channels is uint16.
        for name, limit in (("patch_size", 2**32), ("token_length", 2**32), ("in_channels", 2**16)):
            value = getattr(self, name)
            if not isinstance(value, int) or not 1 <= value < limit:
                raise ValueError(f"{name} must be an integer in [1, {limit}), but got {value!r}")
        if not isinstance(self.alphabet_size, int) or not 2 <= self.alphabet_size < 2**32:
            raise ValueError(f"alphabet_size must be an integer in [2, 2**32), but got {self.alphabet_size!r}")
        if not isinstance(self.model_id, str) or not self.model_id:
            raise ValueError("model_id must be a non-empty string")
        if self.latent_shape and math.prod(self.latent_shape) != self.token_length:
            raise ValueError(f"latent_shape {self.latent_shape} does not hold {self.token_length} tokens")

    @property
    def patch_shape(self) -> tuple[int, int, int, int]:
        """Shape of one patch, ``(C, N, N, N)``."""
        n = self.patch_size
        return (self.in_channels, n, n, n)

    @classmethod
    def from_mapping(cls, metadata: Mapping[str, Any]) -> "ModelInfo":
        """
        Build from a metadata mapping (JSON file, ONNX metadata map or module attributes).

        Values may be strings, as ONNX metadata maps only store strings. ``token_length`` is
        derived from ``latent_shape`` when only the latter is given.
        """

        def _int(key: str) -> int:
            return int(metadata[key])

        latent_shape: tuple[int, ...] = ()
        if metadata.get("latent_shape") not in (None, "", []):
            raw = metadata["latent_shape"]
            if isinstance(raw, str):
                raw = json.loads(raw)
            latent_shape = tuple(int(v) for v in raw)

        if "token_length" in metadata:
            token_length = _int("token_length")
        elif latent_shape:
            token_length = math.prod(latent_shape)
        else:
            raise KeyError("token_length")
        return cls(
            patch_size=_int("patch_size"),
            token_length=token_length,
            alphabet_size=_int("alphabet_size"),
            model_id=str(metadata["model_id"]),
            in_channels=_int("in_channels") if "in_channels" in metadata else 1,
            latent_shape=latent_shape,
        )

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["latent_shape"] = list(self.latent_shape)
        return d


def load_model_info(metadata: Mapping[str, Any], source: str | pathlib.Path) -> ModelInfo:
    """
    Parse model metadata, reporting any problem as a :class:`ModelLoadError`.
    """
    try:
        return ModelInfo.from_mapping(metadata)
    except KeyError as e:
        raise ModelLoadError(f"Model metadata in {source} is missing required key {e}") from e
    except (TypeError, ValueError) as e:
        raise ModelLoadError(f"Model metadata in {source} is invalid: {e}") from e


def read_metadata_file(path: pathlib.Path) -> dict[str, Any]:
    """
    Read a ``vqvdb.json`` metadata file.
    """
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ModelLoadError(f"Cannot read model metadata {path}: {e}") from e


class CodecBackend(ABC):
    """
    A loaded VQ-VAE model on one device.

    Handles own their model and device session exclusively. They are context managers:
    leaving the ``with`` block calls :meth:`shutdown`.

    Subclasses set :attr:`thread_safe` to True if concurrent ``encode``/``decode`` calls are
    safe; otherwise calls are serialized by a per-handle lock.
    """

    backend_id: str = ""
    thread_safe: bool = False

    def __init__(self, model_path: str | pathlib.Path, device: DeviceIdentifier = "cpu"):
        self.model_path = pathlib.Path(model_path)
        self._lock = threading.Lock()
        self._closed = False

    @classmethod
    def initialize(cls, model_path: str | pathlib.Path, device: DeviceIdentifier = "cpu", **options) -> "CodecBackend":
        """
        Load the model at ``model_path`` onto ``device``.

        Raises:
            ModelLoadError: If the model is missing or malformed, or the device is unavailable.
        """
        return cls(model_path, device, **options)

    @abstractmethod
    def describe(self) -> ModelInfo:
        """Return the capabilities of the loaded model."""

    @property
    @abstractmethod
    def device(self) -> torch.device:
        """The device inference runs on."""

    @abstractmethod
    def _encode_batch(self, patches: torch.Tensor) -> torch.Tensor:
        """Run the encoder on a validated ``[B, C, N, N, N]`` float32 CPU batch."""

    @abstractmethod
    def _decode_batch(self, tokens: torch.Tensor) -> torch.Tensor:
        """Run the decoder on a validated ``[B, L]`` int64 CPU batch."""

    @abstractmethod
    def _release(self) -> None:
        """Release the model and device session."""

    @property
    def is_closed(self) -> bool:
        return self._closed

    def encode(self, patches: torch.Tensor) -> torch.Tensor:
        """
        Map a batch of patches to token arrays.

        Args:
            patches (torch.Tensor): ``[B, C, N, N, N]`` float tensor.

        Returns:
            torch.Tensor: ``[B, token_length]`` int64 tensor on the CPU, row ``b`` holding the
                tokens of ``patches[b]``.

        Raises:
            ShapeMismatchError: If the batch does not match the model's patch shape.
        """
        info = self.describe()
        if not isinstance(patches, torch.Tensor):
            raise TypeError(f"patches must be a torch.Tensor, but got {type(patches)}")
        if patches.ndim != 5 or tuple(patches.shape[1:]) != info.patch_shape:
            raise ShapeMismatchError(
                f"Patch batch does not match model '{info.model_id}'",
                expected=["B", *info.patch_shape],
                actual=list(patches.shape),
            )
        batch = patches.shape[0]
        if batch == 0:
            return torch.empty(0, info.token_length, dtype=torch.int64)

        patches = patches.detach().to(device="cpu", dtype=torch.float32).contiguous()
        with self._guard():
            tokens = self._encode_batch(patches)

        tokens = tokens.detach().to("cpu")
        if tokens.numel() != batch * info.token_length:
            raise ShapeMismatchError(
                f"Encoder of model '{info.model_id}' returned an unexpected token shape",
                expected=[batch, info.token_length],
                actual=list(tokens.shape),
            )
        tokens = tokens.reshape(batch, info.token_length).to(torch.int64)
        self._check_token_range(tokens, info)
        return tokens

    def decode(self, tokens: torch.Tensor) -> torch.Tensor:
        """
        Map token arrays back to patches.

        Args:
            tokens (torch.Tensor): ``[B, token_length]`` integer tensor.

        Returns:
            torch.Tensor: ``[B, C, N, N, N]`` float32 tensor on the CPU.

        Raises:
            ShapeMismatchError: If the token arrays do not have the model's token length.
            InvalidTokenError: If a token lies outside ``[0, alphabet_size)``.
        """
        info = self.describe()
        if not isinstance(tokens, torch.Tensor):
            raise TypeError(f"tokens must be a torch.Tensor, but got {type(tokens)}")
        if tokens.is_floating_point() or tokens.is_complex() or tokens.dtype == torch.bool:
            raise TypeError(f"tokens must have an integer dtype, but got {tokens.dtype}")
        if tokens.ndim != 2 or tokens.shape[1] != info.token_length:
            raise ShapeMismatchError(
                f"Token arrays do not match model '{info.model_id}'",
                expected=["B", info.token_length],
                actual=list(tokens.shape),
            )
        batch = tokens.shape[0]
        if batch == 0:
            return torch.empty(0, *info.patch_shape, dtype=torch.float32)

        tokens = tokens.detach().to(device="cpu", dtype=torch.int64).contiguous()
        self._check_token_range(tokens, info)
        with self._guard():
            patches = self._decode_batch(tokens)

        patches = patches.detach().to(device="cpu", dtype=torch.float32)
        if patches.numel() != batch * math.prod(info.patch_shape):
            raise ShapeMismatchError(
                f"Decoder of model '{info.model_id}' returned an unexpected patch shape",
                expected=[batch, *info.patch_shape],
                actual=list(patches.shape),
            )
        return patches.reshape(batch, *info.patch_shape)

    def shutdown(self) -> None:
        """
        Release the model and device resources. Safe to call more than once.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._release()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()

    def __repr__(self) -> str:
        state = "closed" if self._closed else f"device={self.device}"
        return f"{self.__class__.__name__}(model_path='{self.model_path}', {state})"

    @staticmethod
    def _check_token_range(tokens: torch.Tensor, info: ModelInfo) -> None:
        if tokens.numel() == 0:
            return
        lo, hi = int(tokens.min().item()), int(tokens.max().item())
        if lo < 0 or hi >= info.alphabet_size:
            bad = int(((tokens < 0) | (tokens >= info.alphabet_size)).sum().item())
            raise InvalidTokenError(
                f"{bad} token(s) outside the codebook range [0, {info.alphabet_size}) of model "
                f"'{info.model_id}' (min {lo}, max {hi})"
            )

    def _guard(self):
        if self._closed:
            raise BackendShutdownError(f"{self.__class__.__name__} for '{self.model_path}' has been shut down")
        if self.thread_safe:
            return contextlib.nullcontext()
        return self._lock
