# Copyright Contributors to the OpenVDB Project
# SPDX-License-Identifier: Apache-2.0
#
import logging
import time
from typing import MutableMapping

import torch

logger = logging.getLogger(__name__)


class ScopedTimer:
    """
    Times one stage of a codec call and stores the result in a timings table.

    When ``cuda`` is set and a GPU is present, the device is synchronized before the clock is read
    so queued kernels are charged to the stage that launched them.

    Examples:
        >>> timings = {}
        >>> with ScopedTimer("tile", timings):
        ...     tiled = tiler.tile(grid)
        >>> timings["tile"]
        0.0123

        Splitting a stage:
        >>> with ScopedTimer("inference", cuda=True) as timer:
        ...     tokens = backend.encode(patches)
        ...     timer.split()
        ...     patches = backend.decode(tokens)
        ...     timer.split()
        >>> len(timer.splits)
        2
    """

    def __init__(
        self,
        stage: str = "",
        timings: MutableMapping[str, float] | None = None,
        cuda: bool = False,
        level: int = logging.DEBUG,
    ):
        """
        Args:
            stage (str): Name of the timed stage. Used as the key in ``timings`` and in the log message.
                An empty name disables logging.
            timings (MutableMapping[str, float] | None): Table the elapsed seconds are written to on exit.
            cuda (bool): Synchronize CUDA around measurements. Ignored when CUDA is not available.
            level (int): Logging level of the exit message.
        """
        self.stage = stage
        self.timings = timings
        self.cuda = cuda and torch.cuda.is_available()
        self.level = level
        self.elapsed_time: float | None = None
        self.splits: list[float] = []
        self._start: float | None = None
        self._last: float | None = None

    def _now(self) -> float:
        if self.cuda:
            torch.cuda.synchronize()
        return time.perf_counter()

    def __enter__(self) -> "ScopedTimer":
        self._start = self._now()
        self._last = self._start
        self.splits = []
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        assert self._start is not None
        self.elapsed_time = self._now() - self._start
        if self.timings is not None and self.stage:
            self.timings[self.stage] = self.elapsed_time
        if self.stage:
            suffix = " (failed)" if exc_type is not None else ""
            logger.log(self.level, f"{self.stage}: {self.elapsed_time:.4f} seconds{suffix}")

    def split(self) -> float:
        """Return the seconds since the previous split (or the start) and append it to ``splits``."""
        if self._last is None:
            raise RuntimeError("ScopedTimer must be used within a 'with' block before calling split()")
        now = self._now()
        interval = now - self._last
        self._last = now
        self.splits.append(interval)
        return interval
