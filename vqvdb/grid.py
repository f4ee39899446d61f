# Copyright Contributors to the OpenVDB Project
# SPDX-License-Identifier: Apache-2.0
#
"""
Sparse voxel grid container used as the input and output of the codec.

A :class:`SparseGrid` is a single sparse grid in index space: an ``[N, 3]`` tensor of active
voxel coordinates and an ``[N, C]`` tensor of per-voxel values, plus the topology parameters
(name, voxel size, origin and background value) that describe how index space maps to
world space. Host applications convert to and from their own grid type (e.g. an OpenVDB
``FloatGrid``) through ``ijk``/``values`` or the dense helpers.
"""

from __future__ import annotations

import pathlib
from typing import Any

import torch

from .types import IjkBatch, Vec3dOrScalar, Vec3i, to_IjkTensor, to_Vec3d, to_Vec3i


class SparseGrid:
    """
    A sparse 3D scalar or vector field over the integer lattice.

    Only active voxels are stored. Coordinates are kept on the CPU as int32, values as
    float32 with a trailing channel dimension (``C == 1`` for scalar grids).

    Attributes:
        name (str): The grid name (e.g. ``"density"``).
        voxel_size (tuple[float, float, float]): World-space size of one voxel.
        origin (tuple[float, float, float]): World-space position of voxel ``(0, 0, 0)``.
        background (float): Value of inactive voxels.
    """

    def __init__(
        self,
        ijk: IjkBatch,
        values: torch.Tensor,
        name: str = "",
        voxel_size: Vec3dOrScalar = 1.0,
        origin: Vec3dOrScalar = 0.0,
        background: float = 0.0,
    ):
        """
        Create a sparse grid from active voxel coordinates and their values.

        Args:
            ijk (torch.Tensor | numpy.ndarray | Sequence): ``[N, 3]`` integer voxel coordinates.
            values (torch.Tensor): ``[N]`` or ``[N, C]`` voxel values.
            name (str): Grid name.
            voxel_size (float | 3-vector): World-space voxel size.
            origin (float | 3-vector): World-space origin.
            background (float): Value of inactive voxels.
        """
        self._ijk = to_IjkTensor(ijk)
        if not isinstance(values, torch.Tensor):
            values = torch.as_tensor(values)
        values = values.detach().to(device="cpu", dtype=torch.float32)
        if values.ndim == 1:
            values = values.unsqueeze(-1)
        if values.ndim != 2:
            raise ValueError(f"values must have shape [N] or [N, C], but got {list(values.shape)}")
        if values.shape[0] != self._ijk.shape[0]:
            raise ValueError(f"Got {self._ijk.shape[0]} coordinates but {values.shape[0]} values")
        if values.shape[1] < 1:
            raise ValueError("values must have at least one channel")
        self._values = values.contiguous()

        if not isinstance(name, str):
            raise TypeError(f"name must be a str, but got {type(name)}")
        self.name = name
        self.voxel_size = to_Vec3d(voxel_size, "voxel_size")
        if any(v <= 0.0 for v in self.voxel_size):
            raise ValueError(f"voxel_size must be positive, but got {self.voxel_size}")
        self.origin = to_Vec3d(origin, "origin")
        self.background = float(background)

    @classmethod
    def from_dense(
        cls,
        dense: torch.Tensor,
        ijk_min: Vec3i | int = 0,
        mask: torch.Tensor | None = None,
        **kwargs: Any,
    ) -> "SparseGrid":
        """
        Create a sparse grid from a dense ``[X, Y, Z]`` or ``[X, Y, Z, C]`` tensor.

        Args:
            dense (torch.Tensor): The dense voxel block. Axis order is ``(i, j, k)``.
            ijk_min (int | 3-vector): Index-space coordinate of ``dense[0, 0, 0]``.
            mask (torch.Tensor | None): ``[X, Y, Z]`` boolean activity mask. If None, voxels
                whose value differs from the background (in any channel) are active.
            **kwargs: Forwarded to the constructor (``name``, ``voxel_size``, ...).

        Returns:
            SparseGrid: The sparse grid.
        """
        if dense.ndim == 3:
            dense = dense.unsqueeze(-1)
        if dense.ndim != 4:
            raise ValueError(f"dense must have shape [X, Y, Z] or [X, Y, Z, C], but got {list(dense.shape)}")
        dense = dense.detach().to("cpu")
        if mask is None:
            background = float(kwargs.get("background", 0.0))
            mask = (dense != background).any(dim=-1)
        elif mask.shape != dense.shape[:3]:
            raise ValueError(f"mask shape {list(mask.shape)} does not match dense shape {list(dense.shape[:3])}")
        mask = mask.to(device="cpu", dtype=torch.bool)

        local_ijk = mask.nonzero()
        ijk = local_ijk + torch.tensor(to_Vec3i(ijk_min, "ijk_min"), dtype=local_ijk.dtype)
        values = dense[mask]
        return cls(ijk, values, **kwargs)

    def to_dense(self) -> tuple[torch.Tensor, torch.Tensor]:
        """
        Densify the grid over its bounding box.

        Returns:
            tuple[torch.Tensor, torch.Tensor]: A ``[X, Y, Z, C]`` tensor filled with the
                background outside the active region, and the index-space coordinate of its
                first voxel.
        """
        if self.num_voxels == 0:
            raise ValueError("Cannot densify an empty grid")
        bbox = self.bbox
        dims = (bbox[1] - bbox[0] + 1).tolist()
        dense = torch.full((*dims, self.num_channels), self.background, dtype=torch.float32)
        local = (self._ijk - bbox[0]).long()
        dense[local[:, 0], local[:, 1], local[:, 2]] = self._values
        return dense, bbox[0].clone()

    @property
    def ijk(self) -> torch.Tensor:
        """``[N, 3]`` int32 coordinates of the active voxels."""
        return self._ijk

    @property
    def values(self) -> torch.Tensor:
        """``[N, C]`` float32 values of the active voxels."""
        return self._values

    @property
    def num_voxels(self) -> int:
        return int(self._ijk.shape[0])

    @property
    def num_channels(self) -> int:
        return int(self._values.shape[1])

    @property
    def bbox(self) -> torch.Tensor:
        """
        Inclusive index-space bounding box of the active voxels.

        Returns:
            torch.Tensor: A ``[2, 3]`` int32 tensor holding the minimum and maximum coordinates.
        """
        if self.num_voxels == 0:
            raise ValueError("An empty grid has no bounding box")
        return torch.stack([self._ijk.min(dim=0).values, self._ijk.max(dim=0).values])

    def is_empty(self) -> bool:
        return self.num_voxels == 0

    def voxel_to_world(self, ijk: IjkBatch) -> torch.Tensor:
        """
        Map index-space coordinates to world-space voxel centers.
        """
        ijk_t = to_IjkTensor(ijk).to(torch.float64)
        return ijk_t * torch.tensor(self.voxel_size, dtype=torch.float64) + torch.tensor(
            self.origin, dtype=torch.float64
        )

    def sorted(self) -> "SparseGrid":
        """
        Return a copy whose voxels are in lexicographic ``(i, j, k)`` order.
        """
        if self.num_voxels == 0:
            return self._with(self._ijk, self._values)
        ijk64 = self._ijk.long()
        # Stable sorts from the least to the most significant axis give a lexicographic order.
        order = torch.arange(self.num_voxels)
        for axis in (2, 1, 0):
            order = order[torch.argsort(ijk64[order, axis], stable=True)]
        return self._with(self._ijk[order], self._values[order])

    def same_topology(self, other: "SparseGrid") -> bool:
        """
        True if both grids share name, transform, background and channel count.
        """
        return (
            self.name == other.name
            and self.voxel_size == other.voxel_size
            and self.origin == other.origin
            and self.background == other.background
            and self.num_channels == other.num_channels
        )

    def allclose(self, other: "SparseGrid", rtol: float = 1e-5, atol: float = 1e-8) -> bool:
        """
        Compare two grids over their active regions, independent of voxel order.
        """
        if self.num_voxels != other.num_voxels or self.num_channels != other.num_channels:
            return False
        a = self.sorted()
        b = other.sorted()
        return bool(torch.equal(a.ijk, b.ijk)) and bool(torch.allclose(a.values, b.values, rtol=rtol, atol=atol))

    def save(self, path: str | pathlib.Path) -> None:
        """
        Save the grid to ``path`` with :func:`torch.save`.
        """
        torch.save(self.state_dict(), pathlib.Path(path))

    @classmethod
    def load(cls, path: str | pathlib.Path) -> "SparseGrid":
        """
        Load a grid previously written with :meth:`save`.
        """
        state = torch.load(pathlib.Path(path), map_location="cpu", weights_only=True)
        return cls.from_state_dict(state)

    def state_dict(self) -> dict[str, Any]:
        return {
            "ijk": self._ijk,
            "values": self._values,
            "name": self.name,
            "voxel_size": list(self.voxel_size),
            "origin": list(self.origin),
            "background": self.background,
        }

    @classmethod
    def from_state_dict(cls, state: dict[str, Any]) -> "SparseGrid":
        missing = {"ijk", "values"} - set(state)
        if missing:
            raise KeyError(f"Grid state is missing keys: {sorted(missing)}")
        return cls(
            state["ijk"],
            state["values"],
            name=state.get("name", ""),
            voxel_size=state.get("voxel_size", 1.0),
            origin=state.get("origin", 0.0),
            background=state.get("background", 0.0),
        )

    def _with(self, ijk: torch.Tensor, values: torch.Tensor) -> "SparseGrid":
        return SparseGrid(
            ijk,
            values,
            name=self.name,
            voxel_size=self.voxel_size,
            origin=self.origin,
            background=self.background,
        )

    def __repr__(self) -> str:
        return (
            f"SparseGrid(name={self.name!r}, num_voxels={self.num_voxels}, num_channels={self.num_channels}, "
            f"voxel_size={self.voxel_size}, origin={self.origin})"
        )
