# Copyright Contributors to the OpenVDB Project
# SPDX-License-Identifier: Apache-2.0
#
"""
Backend running TorchScript VQ-VAE archives with PyTorch.

The archive must expose two methods:

- ``encode(patches: Tensor[B, C, N, N, N]) -> Tensor`` returning integer codebook indices,
  either ``[B, L]`` or ``[B, *latent_shape]``;
- ``decode(indices: Tensor) -> Tensor[B, C, N, N, N]`` taking indices in the same layout.

Model metadata is read from the ``vqvdb.json`` extra file embedded in the archive
(``torch.jit.save(module, path, _extra_files={"vqvdb.json": ...})``), else from a sidecar
``<model>.json`` file, else from integer attributes on the scripted module.
"""

from __future__ import annotations

import contextlib
import json
import logging
import pathlib
from typing import Any

import torch

from ..errors import DeviceOutOfMemoryError, InferenceError, ModelLoadError
from ..types import DeviceIdentifier, resolve_device
from .base import METADATA_FILENAME, CodecBackend, ModelInfo, load_model_info, read_metadata_file
from .registry import register_backend

logger = logging.getLogger(__name__)

_METADATA_ATTRIBUTES = ("patch_size", "token_length", "alphabet_size", "model_id", "in_channels", "latent_shape")


def _check_device(device: DeviceIdentifier) -> torch.device:
    try:
        resolved = resolve_device(device)
    except (TypeError, ValueError) as e:
        raise ModelLoadError(f"Invalid device {device!r}: {e}") from e
    if resolved.type not in ("cpu", "cuda", "mps"):
        raise ModelLoadError(f"Unsupported device type '{resolved.type}' for the torch backend")
    return resolved


@register_backend("torch")
class TorchBackend(CodecBackend):
    """
    VQ-VAE inference through a TorchScript archive.

    Args:
        model_path (str | pathlib.Path): Path to the ``.pt`` TorchScript archive.
        device (str | torch.device): ``"cpu"``, ``"cuda"``, ``"cuda:N"`` or ``"mps"``.
    """

    thread_safe = False

    def __init__(self, model_path: str | pathlib.Path, device: DeviceIdentifier = "cpu"):
        super().__init__(model_path, device)
        if not self.model_path.is_file():
            raise ModelLoadError(f"Model file {self.model_path} does not exist")
        self._device = _check_device(device)

        extra_files = {METADATA_FILENAME: ""}
        try:
            module = torch.jit.load(str(self.model_path), map_location=self._device, _extra_files=extra_files)
        except (RuntimeError, ValueError) as e:
            raise ModelLoadError(f"Cannot load TorchScript model {self.model_path}: {e}") from e

        for method in ("encode", "decode"):
            if not hasattr(module, method):
                raise ModelLoadError(f"TorchScript model {self.model_path} has no '{method}' method")

        self._info = load_model_info(self._find_metadata(module, extra_files[METADATA_FILENAME]), self.model_path)
        module.eval()
        self._module = module
        logger.debug(f"TorchScript model {self.model_path} loaded on {self._device}: {self._info}")

    def _find_metadata(self, module: torch.jit.ScriptModule, embedded: str | bytes) -> dict[str, Any]:
        if embedded:
            try:
                return json.loads(embedded)
            except json.JSONDecodeError as e:
                raise ModelLoadError(f"Embedded {METADATA_FILENAME} in {self.model_path} is not valid JSON") from e

        sidecar = self.model_path.with_suffix(".json")
        if sidecar.is_file():
            return read_metadata_file(sidecar)

        return {name: getattr(module, name) for name in _METADATA_ATTRIBUTES if hasattr(module, name)}

    def describe(self) -> ModelInfo:
        return self._info

    @property
    def device(self) -> torch.device:
        return self._device

    def _encode_batch(self, patches: torch.Tensor) -> torch.Tensor:
        with self._translate_errors("encode", patches.shape[0]):
            with torch.inference_mode():
                indices = self._module.encode(patches.to(self._device, non_blocking=True))
            return indices.reshape(patches.shape[0], -1).to("cpu")

    def _decode_batch(self, tokens: torch.Tensor) -> torch.Tensor:
        batch = tokens.shape[0]
        if self._info.latent_shape:
            tokens = tokens.reshape(batch, *self._info.latent_shape)
        with self._translate_errors("decode", batch):
            with torch.inference_mode():
                patches = self._module.decode(tokens.to(self._device, non_blocking=True))
            return patches.to("cpu")

    @contextlib.contextmanager
    def _translate_errors(self, stage: str, batch: int):
        try:
            yield
        except torch.cuda.OutOfMemoryError as e:
            torch.cuda.empty_cache()
            raise DeviceOutOfMemoryError(
                f"Out of memory on {self._device} during {stage} of a batch of {batch} patches"
            ) from e
        except RuntimeError as e:
            raise InferenceError(f"TorchScript {stage} failed for model {self.model_path}: {e}") from e

    def _release(self) -> None:
        del self._module
        if self._device.type == "cuda":
            torch.cuda.empty_cache()
        logger.debug(f"Released TorchScript model {self.model_path}")

