# Copyright Contributors to the OpenVDB Project
# SPDX-License-Identifier: Apache-2.0
#

from __future__ import annotations

from typing import Any, Sequence

import numpy
import numpy as np
import torch

Numeric = int | float

Vec3i = torch.Tensor | numpy.ndarray | list[int] | tuple[int, int, int] | torch.Size
Vec3d = torch.Tensor | numpy.ndarray | list[int | float] | tuple[int | float, int | float, int | float] | torch.Size
Vec3dOrScalar = Vec3d | float | int

# An [N, 3] collection of integer voxel coordinates
IjkBatch = torch.Tensor | numpy.ndarray | Sequence[Sequence[int]]

DeviceIdentifier = str | torch.device

_INT_TORCH_DTYPES = (torch.int8, torch.int16, torch.int32, torch.int64, torch.uint8)
_INT_NUMPY_DTYPES = (np.int8, np.int16, np.int32, np.int64, np.uint8, np.uint16, np.uint32)
_INT32_MIN, _INT32_MAX = -(2**31), 2**31 - 1


def is_Vec3i(x: Any) -> bool:
    if isinstance(x, torch.Size):
        return len(x) == 3
    if isinstance(x, (torch.Tensor, numpy.ndarray)):
        return x.shape == (3,) and x.dtype in (torch.int32, torch.int64, numpy.int32, numpy.int64)
    if isinstance(x, list):
        return len(x) == 3 and all(isinstance(i, (int, np.integer)) for i in x)
    if isinstance(x, tuple):
        return len(x) == 3 and all(isinstance(i, (int, np.integer)) for i in x)
    return False


def is_Vec3d(x: Any) -> bool:
    if isinstance(x, (torch.Tensor, numpy.ndarray)):
        return x.shape == (3,)
    if isinstance(x, (list, tuple)):
        return len(x) == 3 and all(isinstance(i, (int, float, np.integer, np.floating)) for i in x)
    if isinstance(x, torch.Size):
        return len(x) == 3
    return False


def resolve_device(device_id: DeviceIdentifier | None, inherit_from: Any = None) -> torch.device:
    """
    Resolve and validate the device a backend runs on.

    The device_id argument always takes precedence over the inherit_from argument.
    If device_id is None, the device is inherited from inherit_from, falling back to "cpu".
    CUDA devices are normalized to an explicit index.

    Args:
        device_id: Device specification or None to inherit from inherit_from.
        inherit_from: Object (e.g. a tensor) to inherit the device from when device_id is None.

    Returns:
        torch.device: The resolved device, with an explicit index for CUDA.

    Raises:
        TypeError: If device_id is not a string or torch.device.
        ValueError: If device_id cannot be parsed or names a device PyTorch cannot use here.

    Examples:
        >>> resolve_device("cuda")  # -> torch.device("cuda", 0)
        >>> resolve_device(None, torch.tensor([1, 2, 3]))  # -> inherits from tensor
        >>> resolve_device(None)  # -> torch.device("cpu")
    """
    if device_id is None:
        if hasattr(inherit_from, "device") and isinstance(inherit_from.device, torch.device):
            return inherit_from.device
        return torch.device("cpu")

    if not isinstance(device_id, (str, torch.device)):
        raise TypeError(f"Expected DeviceIdentifier, got {type(device_id)}")
    try:
        device = torch.device(device_id)
    except RuntimeError as e:
        raise ValueError(f"Cannot parse device {device_id!r}: {e}") from e

    if device.type == "cuda":
        if not torch.cuda.is_available():
            raise ValueError(f"Device {device} was requested but CUDA is not available")
        index = torch.cuda.current_device() if device.index is None else device.index
        if index >= torch.cuda.device_count():
            raise ValueError(f"Device {device} was requested but only {torch.cuda.device_count()} GPU(s) exist")
        return torch.device("cuda", index)
    if device.type == "mps" and not torch.backends.mps.is_available():
        raise ValueError("Device mps was requested but MPS is not available")
    return device


def to_Vec3i(x: Vec3i | int, name: str = "value") -> tuple[int, int, int]:
    """
    Convert a 3-vector (or a scalar broadcast to 3 components) of integers to a tuple of ints.
    """
    if isinstance(x, (int, np.integer)) and not isinstance(x, bool):
        return (int(x), int(x), int(x))
    if not is_Vec3i(x):
        raise TypeError(f"{name} must be an int or a 3-vector of ints, but got {x!r}")
    values = x.tolist() if isinstance(x, (torch.Tensor, numpy.ndarray)) else list(x)
    return (int(values[0]), int(values[1]), int(values[2]))


def to_Vec3d(x: Vec3dOrScalar, name: str = "value") -> tuple[float, float, float]:
    """
    Convert a 3-vector (or a scalar broadcast to 3 components) to a tuple of floats.
    """
    if isinstance(x, (int, float, np.integer, np.floating)) and not isinstance(x, bool):
        return (float(x), float(x), float(x))
    if not is_Vec3d(x):
        raise TypeError(f"{name} must be a number or a 3-vector of numbers, but got {x!r}")
    values = x.tolist() if isinstance(x, (torch.Tensor, numpy.ndarray)) else list(x)
    return (float(values[0]), float(values[1]), float(values[2]))


def to_IjkTensor(ijk: IjkBatch, name: str = "ijk") -> torch.Tensor:
    """
    Convert an [N, 3] collection of integer coordinates to a CPU int32 tensor.

    Args:
        ijk: A tensor, array, or nested sequence of shape [N, 3].
        name: Name used in error messages.

    Returns:
        torch.Tensor: A contiguous int32 tensor of shape [N, 3] on the CPU.
    """
    if isinstance(ijk, torch.Tensor):
        if ijk.dtype not in _INT_TORCH_DTYPES:
            raise TypeError(f"{name} must have an integer dtype, but got {ijk.dtype}")
        tensor = ijk.detach().to("cpu")
    elif isinstance(ijk, numpy.ndarray):
        if ijk.dtype.type not in _INT_NUMPY_DTYPES:
            raise TypeError(f"{name} must have an integer dtype, but got {ijk.dtype}")
        tensor = torch.from_numpy(np.ascontiguousarray(ijk).astype(np.int64))
    elif isinstance(ijk, Sequence):
        try:
            tensor = torch.as_tensor(ijk, dtype=torch.int64).reshape(-1, 3) if len(ijk) > 0 else torch.empty(0, 3)
        except (RuntimeError, OverflowError) as e:
            raise ValueError(f"{name} must be an [N, 3] collection of int32 coordinates: {e}") from e
    else:
        raise TypeError(f"{name} must be a torch.Tensor, numpy.ndarray or Sequence, but got {type(ijk)}")

    if tensor.ndim != 2 or tensor.shape[1] != 3:
        raise ValueError(f"{name} must have shape [N, 3], but got {list(tensor.shape)}")
    if tensor.numel() > 0:
        lo, hi = int(tensor.min()), int(tensor.max())
        if lo < _INT32_MIN or hi > _INT32_MAX:
            raise ValueError(f"{name} must fit in int32, but spans [{lo}, {hi}]")
    return tensor.to(torch.int32).contiguous()
