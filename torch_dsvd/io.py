"""
HDF5 input/output for row-distributed dense matrices.

Each process reads only its own contiguous row range (a hyperslab of the
2-D dataset), so the full matrix is never materialized on one process.

Example
-------
>>> import torch
>>> from torch_dsvd.io import save_matrix, load_row_slab
>>> from torch_dsvd.partition import partition_for_rank
>>> save_matrix("matrix.h5", "A", torch.randn(100, 20, dtype=torch.float64))
>>> part = partition_for_rank(100, world_size=4, rank=1)
>>> slab = load_row_slab("matrix.h5", "A", part, numcols=20)
>>> slab.shape
torch.Size([25, 20])
"""

import os
import warnings
from typing import Optional, Tuple, Union

import h5py
import numpy as np
import torch

from .check import DataLoadError
from .partition import Partition


def load_dataset_info(path: str, dataset: str) -> Tuple[Tuple[int, ...], np.dtype]:
    """
    Read the shape and dtype of a dataset without loading its data.

    Raises
    ------
    DataLoadError
        If the file cannot be opened or the dataset does not exist.
    """
    try:
        with h5py.File(path, 'r') as f:
            if dataset not in f:
                raise DataLoadError(f"dataset '{dataset}' not found in {path}")
            dset = f[dataset]
            if not isinstance(dset, h5py.Dataset):
                raise DataLoadError(f"'{dataset}' in {path} is not a dataset")
            return tuple(dset.shape), dset.dtype
    except DataLoadError:
        raise
    except OSError as e:
        raise DataLoadError(f"cannot open {path}: {e}") from e


def load_row_slab(
    path: str,
    dataset: str,
    partition: Partition,
    numcols: int,
    numrows: Optional[int] = None,
    device: Union[str, torch.device] = 'cpu',
    warn: bool = True,
) -> torch.Tensor:
    """
    Load the rows owned by ``partition`` as a float64 tensor.

    Parameters
    ----------
    path : str
        HDF5 file path.
    dataset : str
        Name of the 2-D dataset inside the file.
    partition : Partition
        Row range to read.
    numcols : int
        Expected column count; must match the dataset.
    numrows : int, optional
        Requested global row count. If the dataset holds more rows, the
        remainder is ignored and a warning is issued.
    device : str or torch.device
        Target device of the returned slab.
    warn : bool
        Whether to warn about ignored trailing rows.

    Returns
    -------
    slab : torch.Tensor
        [partition.localrows, numcols] float64 tensor.

    Raises
    ------
    DataLoadError
        If the file or dataset cannot be read, or its shape is incompatible
        with the requested one.
    """
    if not os.path.exists(path):
        raise DataLoadError(f"input file {path} does not exist")

    try:
        with h5py.File(path, 'r') as f:
            if dataset not in f:
                raise DataLoadError(f"dataset '{dataset}' not found in {path}")
            dset = f[dataset]
            if not isinstance(dset, h5py.Dataset):
                raise DataLoadError(f"'{dataset}' in {path} is not a dataset")
            if dset.ndim != 2:
                raise DataLoadError(
                    f"dataset '{dataset}' must be 2-D, got shape {dset.shape}")
            total_rows, total_cols = dset.shape
            if total_cols != numcols:
                raise DataLoadError(
                    f"dataset '{dataset}' has {total_cols} columns, expected {numcols}")
            if numrows is not None and numrows > total_rows:
                raise DataLoadError(
                    f"dataset '{dataset}' has {total_rows} rows, "
                    f"fewer than the requested {numrows}")
            if partition.endingrow > total_rows:
                raise DataLoadError(
                    f"rows {partition.startingrow}--{partition.endingrow - 1} "
                    f"are outside dataset '{dataset}' with {total_rows} rows")
            if warn and numrows is not None and numrows < total_rows:
                warnings.warn(
                    f"dataset '{dataset}' has {total_rows} rows; "
                    f"only the first {numrows} are used")

            local = np.asarray(dset[partition.startingrow:partition.endingrow, :], dtype=np.float64)
    except DataLoadError:
        raise
    except OSError as e:
        raise DataLoadError(f"cannot read {path}: {e}") from e

    return torch.from_numpy(local).to(device)


def save_matrix(path: str, dataset: str, matrix: Union[torch.Tensor, np.ndarray]):
    """
    Write a dense matrix into a float64 HDF5 dataset, replacing any existing
    dataset of the same name.
    """
    if isinstance(matrix, torch.Tensor):
        matrix = matrix.detach().cpu().numpy()
    matrix = np.asarray(matrix, dtype=np.float64)
    if matrix.ndim != 2:
        raise ValueError(f"matrix must be 2-D, got shape {matrix.shape}")

    dirname = os.path.dirname(path)
    if dirname:
        os.makedirs(dirname, exist_ok=True)

    with h5py.File(path, 'a') as f:
        if dataset in f:
            del f[dataset]
        f.create_dataset(dataset, data=matrix)
