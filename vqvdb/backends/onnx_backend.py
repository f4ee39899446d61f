# Copyright Contributors to the OpenVDB Project
# SPDX-License-Identifier: Apache-2.0
#
"""
Backend running VQ-VAE encoder and decoder graphs with ONNX Runtime.

The model path is a directory holding ``encoder.onnx`` and ``decoder.onnx``. The encoder takes
one float input ``[B, C, N, N, N]`` and produces integer indices (``[B, L]`` or
``[B, *latent_shape]``); the decoder takes the indices and produces ``[B, C, N, N, N]``.

Model metadata is read from ``vqvdb.json`` in the directory if present, otherwise from the
encoder graph's custom metadata properties (``patch_size``, ``token_length``,
``alphabet_size``, ``model_id``, ...).
"""

from __future__ import annotations

import contextlib
import logging
import pathlib
from typing import Any

import numpy as np
import onnxruntime as ort
import torch

from ..errors import DeviceOutOfMemoryError, InferenceError, ModelLoadError
from ..types import DeviceIdentifier
from .base import METADATA_FILENAME, CodecBackend, ModelInfo, load_model_info, read_metadata_file
from .registry import register_backend

logger = logging.getLogger(__name__)

ENCODER_FILENAME = "encoder.onnx"
DECODER_FILENAME = "decoder.onnx"

_OOM_MARKERS = ("failed to allocate memory", "out of memory", "bfcarena")

_ONNX_TO_NUMPY: dict[str, type] = {
    "tensor(int64)": np.int64,
    "tensor(int32)": np.int32,
    "tensor(int16)": np.int16,
    "tensor(uint8)": np.uint8,
    "tensor(uint16)": np.uint16,
    "tensor(float)": np.float32,
    "tensor(float16)": np.float16,
    "tensor(double)": np.float64,
}


def _providers_for(device: torch.device) -> list[str | tuple[str, dict[str, Any]]]:
    if device.type == "cpu":
        return ["CPUExecutionProvider"]
    if device.type == "cuda":
        return [("CUDAExecutionProvider", {"device_id": device.index or 0})]
    raise ModelLoadError(f"Unsupported device type '{device.type}' for the onnx backend")


def _is_out_of_memory(error: Exception) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in _OOM_MARKERS)


@register_backend("onnx")
class OnnxBackend(CodecBackend):
    """
    VQ-VAE inference through two ONNX Runtime sessions.

    ONNX Runtime sessions support concurrent ``run`` calls, so this handle is thread-safe.

    Args:
        model_path (str | pathlib.Path): Directory with ``encoder.onnx`` and ``decoder.onnx``.
        device (str | torch.device): ``"cpu"``, ``"cuda"`` or ``"cuda:N"``.
        intra_op_num_threads (int): Threads per operator; 0 lets ONNX Runtime decide.
    """

    thread_safe = True

    def __init__(self, model_path: str | pathlib.Path, device: DeviceIdentifier = "cpu", intra_op_num_threads: int = 0):
        super().__init__(model_path, device)
        if not self.model_path.is_dir():
            raise ModelLoadError(f"ONNX model directory {self.model_path} does not exist")
        try:
            self._device = torch.device(device)
        except (RuntimeError, TypeError) as e:
            raise ModelLoadError(f"Invalid device {device!r}: {e}") from e

        providers = _providers_for(self._device)
        requested = providers[0] if isinstance(providers[0], str) else providers[0][0]
        if requested not in ort.get_available_providers():
            raise ModelLoadError(
                f"Device {self._device} needs {requested}, but this onnxruntime build only provides "
                f"{ort.get_available_providers()}"
            )

        options = ort.SessionOptions()
        options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        options.intra_op_num_threads = intra_op_num_threads

        self._encoder = self._open_session(self.model_path / ENCODER_FILENAME, options, providers, requested)
        self._decoder = self._open_session(self.model_path / DECODER_FILENAME, options, providers, requested)
        self._info = load_model_info(self._find_metadata(), self.model_path)

        self._encoder_input = self._encoder.get_inputs()[0]
        self._decoder_input = self._decoder.get_inputs()[0]
        self._encoder_chunk = self._fixed_batch(self._encoder_input)
        self._decoder_chunk = self._fixed_batch(self._decoder_input)
        self._token_dtype = _ONNX_TO_NUMPY.get(self._decoder_input.type, np.int64)
        logger.debug(
            f"ONNX model {self.model_path} loaded with {requested}: {self._info} "
            f"(encoder batch {self._encoder_chunk or 'dynamic'}, decoder batch {self._decoder_chunk or 'dynamic'})"
        )

    @staticmethod
    def _open_session(
        path: pathlib.Path, options: "ort.SessionOptions", providers: list, requested: str
    ) -> "ort.InferenceSession":
        if not path.is_file():
            raise ModelLoadError(f"ONNX model file {path} does not exist")
        try:
            session = ort.InferenceSession(str(path), sess_options=options, providers=providers)
        except Exception as e:
            raise ModelLoadError(f"Cannot load ONNX model {path}: {e}") from e
        # ONNX Runtime silently drops providers it cannot initialize.
        if session.get_providers()[0] != requested:
            raise ModelLoadError(f"{requested} could not be initialized for {path}; got {session.get_providers()}")
        return session

    def _find_metadata(self) -> dict[str, Any]:
        sidecar = self.model_path / METADATA_FILENAME
        if sidecar.is_file():
            return read_metadata_file(sidecar)
        return dict(self._encoder.get_modelmeta().custom_metadata_map)

    @staticmethod
    def _fixed_batch(node_arg) -> int:
        dim = node_arg.shape[0] if node_arg.shape else None
        return dim if isinstance(dim, int) and dim > 0 else 0

    def describe(self) -> ModelInfo:
        return self._info

    @property
    def device(self) -> torch.device:
        return self._device

    def _encode_batch(self, patches: torch.Tensor) -> torch.Tensor:
        array = patches.numpy().astype(_ONNX_TO_NUMPY.get(self._encoder_input.type, np.float32), copy=False)
        outputs = self._run_chunked(self._encoder, self._encoder_input.name, array, self._encoder_chunk, "encode")
        return torch.from_numpy(np.ascontiguousarray(outputs).reshape(patches.shape[0], -1).astype(np.int64))

    def _decode_batch(self, tokens: torch.Tensor) -> torch.Tensor:
        batch = tokens.shape[0]
        array = tokens.numpy().astype(self._token_dtype, copy=False)
        if self._info.latent_shape:
            array = array.reshape(batch, *self._info.latent_shape)
        outputs = self._run_chunked(self._decoder, self._decoder_input.name, array, self._decoder_chunk, "decode")
        return torch.from_numpy(np.ascontiguousarray(outputs, dtype=np.float32))

    def _run_chunked(
        self, session: "ort.InferenceSession", input_name: str, array: np.ndarray, chunk: int, stage: str
    ) -> np.ndarray:
        """
        Run ``session`` over ``array``, in chunks of the graph's fixed batch size if it has one.

        The last chunk of a fixed-batch graph is padded by repeating its final element, and the
        padding rows are dropped from the output.
        """
        batch = array.shape[0]
        if chunk == 0 or chunk == batch:
            return self._run(session, input_name, array, stage)

        results = []
        for start in range(0, batch, chunk):
            piece = array[start : start + chunk]
            valid = piece.shape[0]
            if valid < chunk:
                pad = np.repeat(piece[-1:], chunk - valid, axis=0)
                piece = np.concatenate([piece, pad], axis=0)
            results.append(self._run(session, input_name, piece, stage)[:valid])
        return np.concatenate(results, axis=0)

    def _run(self, session: "ort.InferenceSession", input_name: str, array: np.ndarray, stage: str) -> np.ndarray:
        with self._translate_errors(stage, array.shape[0]):
            return session.run(None, {input_name: array})[0]

    @contextlib.contextmanager
    def _translate_errors(self, stage: str, batch: int):
        try:
            yield
        except Exception as e:
            if _is_out_of_memory(e):
                raise DeviceOutOfMemoryError(
                    f"Out of memory on {self._device} during {stage} of a batch of {batch} patches"
                ) from e
            raise InferenceError(f"ONNX {stage} failed for model {self.model_path}: {e}") from e

    def _release(self) -> None:
        # Dropping the sessions frees their arenas.
        del self._encoder
        del self._decoder
        logger.debug(f"Released ONNX sessions for {self.model_path}")
