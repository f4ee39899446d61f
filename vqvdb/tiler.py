# Copyright Contributors to the OpenVDB Project
# SPDX-License-Identifier: Apache-2.0
#
"""
Partitioning of a sparse grid into fixed-size patches, and the inverse merge.

The lattice of patch cells is aligned to the index-space origin: voxel ``ijk`` belongs to cell
``floor(ijk / N)`` and the patch for cell ``c`` covers ``[c * N, c * N + N)`` on each axis.
Only cells holding at least one active voxel produce a patch. Patches are enumerated in
lexicographic cell order (``i`` slowest, ``k`` fastest), which is the canonical order used
by the container. Inside a patch, axis order is ``(i, j, k)`` after the channel axis.

Cells of a patch outside the active region hold the fill value. The padding is never stored:
each patch carries a voxel mask from which the active region is reconstructed exactly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator

import torch

from .grid import SparseGrid

logger = logging.getLogger(__name__)

DEFAULT_FILL_VALUE = 0.0


def _cell_coords(ijk: torch.Tensor, patch_size: int) -> torch.Tensor:
    return torch.div(ijk.long(), patch_size, rounding_mode="floor")


def iter_batch_ranges(total: int, batch_size: int) -> Iterator[tuple[int, int]]:
    """
    Yield ``(start, stop)`` ranges covering ``[0, total)`` in order, each at most ``batch_size`` long.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be positive, but got {batch_size}")
    for start in range(0, total, batch_size):
        yield start, min(start + batch_size, total)


@dataclass(frozen=True)
class PatchLayout:
    """
    The tiling of an active region: which cells exist, in canonical order, and which voxels
    of each cell are active.

    This is exactly the information a container stores to reconstruct the tiling without
    the original grid.

    Attributes:
        patch_size (int): Edge length ``N`` of a patch.
        cells (torch.Tensor): ``[P, 3]`` int64 cell indices in canonical order.
        voxel_masks (torch.Tensor): ``[P, N, N, N]`` bool activity mask of each patch.
    """

    patch_size: int
    cells: torch.Tensor
    voxel_masks: torch.Tensor

    def __post_init__(self):
        n = self.patch_size
        if self.cells.ndim != 2 or self.cells.shape[1] != 3:
            raise ValueError(f"cells must have shape [P, 3], but got {list(self.cells.shape)}")
        if tuple(self.voxel_masks.shape) != (self.cells.shape[0], n, n, n):
            raise ValueError(
                f"voxel_masks must have shape {[self.cells.shape[0], n, n, n]}, "
                f"but got {list(self.voxel_masks.shape)}"
            )

    @property
    def num_patches(self) -> int:
        return int(self.cells.shape[0])

    @property
    def num_active_voxels(self) -> int:
        return int(self.voxel_masks.sum().item())

    @property
    def patch_origins(self) -> torch.Tensor:
        """``[P, 3]`` index-space coordinate of the first voxel of each patch."""
        return self.cells * self.patch_size

    def is_canonical(self) -> bool:
        """
        True if the cells are unique and strictly increasing in lexicographic order.
        """
        if self.num_patches < 2:
            return True
        prev, curr = self.cells[:-1], self.cells[1:]
        diff = curr - prev
        # First non-zero component of each consecutive difference must be positive.
        nonzero = diff != 0
        first = torch.argmax(nonzero.to(torch.int8), dim=1)
        leading = diff.gather(1, first.unsqueeze(1)).squeeze(1)
        return bool((nonzero.any(dim=1) & (leading > 0)).all().item())

    def active_ijk(self, start: int = 0, stop: int | None = None) -> torch.Tensor:
        """
        Index-space coordinates of the active voxels of patches ``[start, stop)``.

        Voxels are ordered by patch, then lexicographically inside the patch.

        Returns:
            torch.Tensor: ``[M, 3]`` int64 coordinates.
        """
        stop = self.num_patches if stop is None else stop
        hits = self.voxel_masks[start:stop].nonzero()
        return self.cells[start:stop][hits[:, 0]] * self.patch_size + hits[:, 1:]


class TiledGrid:
    """
    A grid prepared for patch extraction.

    Voxels are pre-sorted by the patch they fall into, so any contiguous range of patches
    can be materialized without touching the rest of the grid.
    """

    def __init__(
        self, layout: PatchLayout, grid: SparseGrid, fill_value: float, order: torch.Tensor, offsets: torch.Tensor
    ):
        self.layout = layout
        self.grid = grid
        self.fill_value = fill_value
        self._order = order
        self._offsets = offsets

    @property
    def num_patches(self) -> int:
        return self.layout.num_patches

    def extract(self, start: int, stop: int) -> torch.Tensor:
        """
        Materialize patches ``[start, stop)``.

        Returns:
            torch.Tensor: A ``[stop - start, C, N, N, N]`` float32 tensor.
        """
        if not 0 <= start <= stop <= self.num_patches:
            raise IndexError(f"Patch range [{start}, {stop}) is outside [0, {self.num_patches})")
        n = self.layout.patch_size
        channels = self.grid.num_channels
        patches = torch.full((stop - start, n, n, n, channels), self.fill_value, dtype=torch.float32)

        lo, hi = int(self._offsets[start]), int(self._offsets[stop])
        voxel_ids = self._order[lo:hi]
        ijk = self.grid.ijk[voxel_ids].long()
        cells = _cell_coords(ijk, n)
        local = ijk - cells * n
        counts = self._offsets[start + 1 : stop + 1] - self._offsets[start:stop]
        patch_ids = torch.repeat_interleave(torch.arange(stop - start), counts)
        patches[patch_ids, local[:, 0], local[:, 1], local[:, 2]] = self.grid.values[voxel_ids]
        return patches.permute(0, 4, 1, 2, 3).contiguous()

    def batches(self, batch_size: int) -> Iterator[torch.Tensor]:
        for start, stop in iter_batch_ranges(self.num_patches, batch_size):
            yield self.extract(start, stop)


class GridTiler:
    """
    Tiles sparse grids into ``N x N x N`` patches and merges decoded patches back.

    Args:
        patch_size (int): Patch edge length ``N``.
        fill_value (float): Value written into patch cells outside the active region.
    """

    def __init__(self, patch_size: int, fill_value: float = DEFAULT_FILL_VALUE):
        if not isinstance(patch_size, int) or isinstance(patch_size, bool) or patch_size < 1:
            raise ValueError(f"patch_size must be a positive integer, but got {patch_size!r}")
        self.patch_size = patch_size
        self.fill_value = float(fill_value)

    def layout(self, grid: SparseGrid) -> PatchLayout:
        return self.tile(grid).layout

    def tile(self, grid: SparseGrid) -> TiledGrid:
        """
        Compute the canonical tiling of ``grid``.

        Args:
            grid (SparseGrid): A grid with unique voxel coordinates.

        Returns:
            TiledGrid: The layout plus a handle to extract patch batches lazily.
        """
        n = self.patch_size
        ijk = grid.ijk.long()
        if ijk.shape[0] == 0:
            empty = PatchLayout(n, torch.empty(0, 3, dtype=torch.int64), torch.empty(0, n, n, n, dtype=torch.bool))
            no_voxels = torch.empty(0, dtype=torch.int64)
            return TiledGrid(empty, grid, self.fill_value, no_voxels, torch.zeros(1, dtype=torch.int64))

        cells = _cell_coords(ijk, n)
        # torch.unique over rows sorts lexicographically, which defines the canonical order.
        unique_cells, patch_of_voxel, counts = torch.unique(cells, dim=0, return_inverse=True, return_counts=True)
        local = ijk - cells * n

        voxel_masks = torch.zeros(unique_cells.shape[0], n, n, n, dtype=torch.bool)
        voxel_masks[patch_of_voxel, local[:, 0], local[:, 1], local[:, 2]] = True
        if int(voxel_masks.sum().item()) != ijk.shape[0]:
            raise ValueError("Grid has duplicate voxel coordinates")

        order = torch.argsort(patch_of_voxel, stable=True)
        offsets = torch.zeros(unique_cells.shape[0] + 1, dtype=torch.int64)
        offsets[1:] = torch.cumsum(counts, dim=0)

        layout = PatchLayout(n, unique_cells, voxel_masks)
        logger.debug(f"Tiled {ijk.shape[0]} voxels into {layout.num_patches} patches of size {n}")
        return TiledGrid(layout, grid, self.fill_value, order, offsets)

    def merger(self, layout: PatchLayout, template: SparseGrid | None = None, **grid_kwargs) -> "PatchMerger":
        """
        Create a :class:`PatchMerger` that rebuilds a grid from ``layout``.
        """
        if layout.patch_size != self.patch_size:
            raise ValueError(
                f"Layout patch size {layout.patch_size} does not match tiler patch size {self.patch_size}"
            )
        if template is not None:
            grid_kwargs = dict(
                name=template.name,
                voxel_size=template.voxel_size,
                origin=template.origin,
                background=template.background,
            ) | grid_kwargs
        return PatchMerger(layout, **grid_kwargs)

    def merge(self, layout: PatchLayout, patches: torch.Tensor, **grid_kwargs) -> SparseGrid:
        """
        Write the active voxels of ``patches`` (in canonical order) into a new grid.

        Args:
            layout (PatchLayout): The layout the patches were produced from.
            patches (torch.Tensor): ``[P, C, N, N, N]`` patch values.
            **grid_kwargs: Topology parameters for the new grid.

        Returns:
            SparseGrid: A grid holding exactly the voxels of ``layout``.
        """
        merger = self.merger(layout, **grid_kwargs)
        merger.add(patches)
        return merger.finish()


class PatchMerger:
    """
    Incrementally rebuilds a grid from patch batches delivered in canonical order.

    Only voxels set in the layout's masks are kept; padding is dropped as each batch arrives,
    so memory is bounded by the active voxel count rather than by the patch volume.
    """

    def __init__(self, layout: PatchLayout, **grid_kwargs):
        self.layout = layout
        self._grid_kwargs = grid_kwargs
        self._next = 0
        self._ijk: list[torch.Tensor] = []
        self._values: list[torch.Tensor] = []
        self._channels: int | None = None

    @property
    def num_merged(self) -> int:
        return self._next

    def add(self, patches: torch.Tensor) -> None:
        """
        Merge the next batch of patches.

        Args:
            patches (torch.Tensor): ``[B, C, N, N, N]`` values for patches
                ``[num_merged, num_merged + B)``.
        """
        n = self.layout.patch_size
        if patches.ndim != 5 or tuple(patches.shape[2:]) != (n, n, n):
            raise ValueError(f"patches must have shape [B, C, {n}, {n}, {n}], but got {list(patches.shape)}")
        if self._channels is not None and patches.shape[1] != self._channels:
            raise ValueError(f"Expected {self._channels} channels, but got {patches.shape[1]}")
        start, stop = self._next, self._next + patches.shape[0]
        if stop > self.layout.num_patches:
            raise ValueError(f"Received {stop} patches but the layout only has {self.layout.num_patches}")

        hits = self.layout.voxel_masks[start:stop].nonzero()
        values = patches.detach().to(device="cpu", dtype=torch.float32)
        self._values.append(values[hits[:, 0], :, hits[:, 1], hits[:, 2], hits[:, 3]])
        self._ijk.append(self.layout.cells[start:stop][hits[:, 0]] * n + hits[:, 1:])
        self._channels = int(patches.shape[1])
        self._next = stop

    def finish(self) -> SparseGrid:
        """
        Build the output grid. All patches of the layout must have been merged.
        """
        if self._next != self.layout.num_patches:
            raise ValueError(f"Merged {self._next} of {self.layout.num_patches} patches")
        if not self._ijk:
            channels = self._channels or 1
            return SparseGrid(torch.empty(0, 3, dtype=torch.int32), torch.empty(0, channels), **self._grid_kwargs)
        return SparseGrid(torch.cat(self._ijk), torch.cat(self._values), **self._grid_kwargs)
