# Copyright Contributors to the OpenVDB Project
# SPDX-License-Identifier: Apache-2.0
#
import json
import logging
import pathlib

import tqdm
import tyro

from .backends import available_backends, get_backend_class
from .codec import VQVAECodec
from .config import DEFAULT_BATCH_SIZE, CodecConfig
from .container import FILE_EXTENSION, read_container_file, read_header, write_container_file
from .grid import SparseGrid


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format="%(levelname)s : %(message)s")


class _ProgressBar:
    def __init__(self, description: str):
        self._bar = tqdm.tqdm(desc=description, unit="patch")

    def __call__(self, done: int, total: int) -> None:
        self._bar.total = total
        self._bar.update(done - self._bar.n)

    def close(self) -> None:
        self._bar.close()


def encode(
    grid_path: pathlib.Path,
    model_path: pathlib.Path,
    output_path: pathlib.Path | None = None,
    backend: str = "torch",
    device: str = "cpu",
    batch_size: int = DEFAULT_BATCH_SIZE,
    num_workers: int = 0,
    verbose: bool = False,
):
    """
    Compress a grid saved with SparseGrid.save into a VQVDB container.

    Args:
        grid_path (pathlib.Path): Grid file written by SparseGrid.save.
        model_path (pathlib.Path): The serialized VQ-VAE model.
        output_path (pathlib.Path | None): Container path (default: grid path with .vqvdb suffix).
        backend (str): Inference backend.
        device (str): Inference device ("cpu", "cuda", "cuda:1", ...).
        batch_size (int): Patches per inference call.
        num_workers (int): Threads preparing batches ahead of inference.
        verbose (bool): Log per-batch details and timings.
    """
    _configure_logging(verbose)
    logger = logging.getLogger("vqvdb.encode")
    output_path = output_path or grid_path.with_suffix(FILE_EXTENSION)

    get_backend_class(backend)
    grid = SparseGrid.load(grid_path)
    config = CodecConfig(device=device, batch_size=batch_size, num_workers=num_workers)
    progress = _ProgressBar("encode")
    try:
        with VQVAECodec.from_backend_id(backend, model_path, config, progress=progress) as codec:
            data = codec.compress(grid)
    finally:
        progress.close()
    write_container_file(output_path, data)
    logger.info(f"Wrote {output_path} ({len(data)} bytes)")


def decode(
    container_path: pathlib.Path,
    model_path: pathlib.Path,
    output_path: pathlib.Path | None = None,
    backend: str = "torch",
    device: str = "cpu",
    batch_size: int = DEFAULT_BATCH_SIZE,
    num_workers: int = 0,
    verbose: bool = False,
):
    """
    Decompress a VQVDB container into a grid file readable with SparseGrid.load.

    Args:
        container_path (pathlib.Path): The .vqvdb container.
        model_path (pathlib.Path): The serialized VQ-VAE model the container was encoded with.
        output_path (pathlib.Path | None): Grid path (default: container path with .pt suffix).
        backend (str): Inference backend.
        device (str): Inference device.
        batch_size (int): Patches per inference call.
        num_workers (int): Threads preparing batches ahead of inference.
        verbose (bool): Log per-batch details and timings.
    """
    _configure_logging(verbose)
    logger = logging.getLogger("vqvdb.decode")
    output_path = output_path or container_path.with_suffix(".pt")

    get_backend_class(backend)
    data = read_container_file(container_path)
    read_header(data)
    config = CodecConfig(device=device, batch_size=batch_size, num_workers=num_workers)
    progress = _ProgressBar("decode")
    try:
        with VQVAECodec.from_backend_id(backend, model_path, config, progress=progress) as codec:
            grid = codec.decompress(data)
    finally:
        progress.close()
    grid.save(output_path)
    logger.info(f"Wrote {output_path} ({grid.num_voxels} voxels)")


def info(container_path: pathlib.Path):
    """
    Print the header of a VQVDB container as JSON.

    Args:
        container_path (pathlib.Path): The .vqvdb container.
    """
    header = read_header(read_container_file(container_path))
    print(json.dumps(header.to_dict(), indent=2))


def backends():
    """
    List the inference backends available in this installation.
    """
    for backend_id in available_backends():
        print(backend_id)


def main():
    tyro.extras.subcommand_cli_from_dict(
        {
            "encode": encode,
            "decode": decode,
            "info": info,
            "backends": backends,
        }
    )


if __name__ == "__main__":
    main()
