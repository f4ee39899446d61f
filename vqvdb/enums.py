# Copyright Contributors to the OpenVDB Project
# SPDX-License-Identifier: Apache-2.0
#

from enum import IntEnum


class RegionEncoding(IntEnum):
    """
    How the set of occupied patch cells is stored in a container.

    The writer chooses whichever encoding is smaller for the grid at hand. Both encodings
    reproduce the same canonical (lexicographic) patch order.
    """

    CELL_LIST = 0
    """
    An explicit ``[patch_count, 3]`` list of int32 cell indices, in canonical order.
    Compact for scattered grids.
    """

    CELL_MASK = 1
    """
    The bounding box of the occupied cells followed by one occupancy bit per cell in the box.
    Compact for dense grids.
    """
