# Copyright Contributors to the OpenVDB Project
# SPDX-License-Identifier: Apache-2.0
#

from dataclasses import dataclass, replace
from typing import Any

DEFAULT_BATCH_SIZE = 64


@dataclass(frozen=True)
class CodecConfig:
    """
    Tunables of :class:`vqvdb.VQVAECodec`.

    None of these affect the bytes a codec produces; they only trade memory for throughput.

    Attributes:
        device (str): Device the backend is created on when the codec builds its own backend.
        batch_size (int): Maximum number of patches per inference call. Bound this so that the
            largest batch fits in device memory.
        num_workers (int): Threads used to prepare batches (patch extraction on encode, patch
            merging on decode) while inference runs. 0 prepares batches inline.
        retry_on_oom (bool): On device out-of-memory, retry once with half the batch size
            before failing.
    """

    device: str = "cpu"
    batch_size: int = DEFAULT_BATCH_SIZE
    num_workers: int = 0
    retry_on_oom: bool = True

    def __post_init__(self):
        if not isinstance(self.batch_size, int) or isinstance(self.batch_size, bool) or self.batch_size < 1:
            raise ValueError(f"batch_size must be a positive integer, but got {self.batch_size!r}")
        if not isinstance(self.num_workers, int) or self.num_workers < 0:
            raise ValueError(f"num_workers must be a non-negative integer, but got {self.num_workers!r}")
        if not isinstance(self.device, str) or not self.device:
            raise ValueError(f"device must be a non-empty string, but got {self.device!r}")

    def updated(self, **overrides: Any) -> "CodecConfig":
        """
        Return a copy with the non-None ``overrides`` applied.
        """
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})
