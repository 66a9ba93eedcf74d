"""
Row-distributed dense matrix for large-scale truncated SVD / PCA.

The matrix A (numrows x numcols) is split into contiguous row slabs, one per
process. Nothing ever materializes A on a single process; the two
distributed primitives are

- the Gramian operator ``v -> A^T A v`` (local product + SUM all-reduce)
- the reconstruction ``V -> A V`` (local product + gather to the root)

Example
-------
>>> import torch.distributed as dist
>>> from torch_dsvd import DRowMatrix
>>>
>>> dist.init_process_group(backend='gloo')
>>> A = DRowMatrix.load("matrix.h5", "A", numrows=1000, numcols=50)
>>>
>>> # Collective: every rank must call with the same v
>>> w = A.gramian_matvec(v)
>>>
>>> # Collective: result on rank 0, None elsewhere
>>> AV = A.reconstruct(V)
"""

from typing import List, Optional, Union

import torch

from .check import DataLoadError, ShapeException, check_slab, check_vector
from .comm import Communicator
from .io import load_row_slab
from .partition import Partition, build_gather_plan, partition_rows


class DRowMatrix:
    """
    One process's share of a row-distributed dense matrix.

    This is the per-job context object: it holds the global dimensions, the
    full partition table, this rank's slab and the communicator, and is
    passed to every stage of the decomposition.

    Attributes
    ----------
    slab : torch.Tensor
        [localrows, numcols] rows owned by this process, read-only.
    partition : Partition
        This rank's row range.
    partitions : List[Partition]
        Row ranges of all ranks, in rank order.
    global_shape : Tuple[int, int]
        (numrows, numcols).
    comm : Communicator
        Collective channel shared by all ranks.
    device : torch.device
        Device where the slab resides.
    """

    def __init__(
        self,
        slab: torch.Tensor,
        partitions: List[Partition],
        numcols: int,
        comm: Optional[Communicator] = None,
        device: Union[str, torch.device] = 'cpu',
        verbose: bool = True
    ):
        if isinstance(device, str):
            device = torch.device(device)
        if comm is None:
            comm = Communicator(device=device)
        if len(partitions) != comm.world_size:
            raise ShapeException("partitions", len(partitions), f"[{comm.world_size}]")

        self.comm = comm
        self.partitions = partitions
        self.partition = partitions[comm.rank]
        self.numrows = sum(p.localrows for p in partitions)
        self.numcols = numcols
        self.device = device
        self._verbose = verbose

        check_slab(slab, self.partition.localrows, numcols)
        self.slab = slab.to(device=device, dtype=torch.float64)

        if verbose:
            print(self.partition, flush=True)

    @property
    def global_shape(self):
        return (self.numrows, self.numcols)

    @property
    def rank(self) -> int:
        return self.comm.rank

    @property
    def num_partitions(self) -> int:
        return self.comm.world_size

    @property
    def num_local(self) -> int:
        return self.partition.localrows

    @classmethod
    def from_global(
        cls,
        A: torch.Tensor,
        comm: Optional[Communicator] = None,
        device: Union[str, torch.device] = 'cpu',
        verbose: bool = False
    ) -> "DRowMatrix":
        """
        Take this rank's rows from a matrix every rank holds in full.

        Intended for tests and small problems; large inputs should use
        :meth:`load`.
        """
        if comm is None:
            comm = Communicator(device=device)
        if A.ndim != 2:
            raise ShapeException("A", tuple(A.shape), "[numrows, numcols]")
        numrows, numcols = A.shape
        partitions = partition_rows(numrows, comm.world_size)
        part = partitions[comm.rank]
        slab = A[part.startingrow:part.endingrow].clone()
        return cls(slab, partitions, numcols, comm=comm, device=device, verbose=verbose)

    @classmethod
    def load(
        cls,
        path: str,
        dataset: str,
        numrows: int,
        numcols: int,
        comm: Optional[Communicator] = None,
        device: Union[str, torch.device] = 'cpu',
        verbose: bool = True
    ) -> "DRowMatrix":
        """
        Load this rank's rows from an HDF5 dataset.

        Collective: every rank reads its own hyperslab, then all ranks agree
        on success before returning, so a failed read on any rank raises
        :class:`DataLoadError` on every rank.
        """
        if comm is None:
            comm = Communicator(device=device)
        partitions = partition_rows(numrows, comm.world_size)
        part = partitions[comm.rank]

        slab, error = None, None
        try:
            slab = load_row_slab(path, dataset, part, numcols, numrows=numrows,
                                 device=device, warn=comm.is_root)
        except DataLoadError as e:
            error = e

        if not comm.agree(error is None):
            if error is not None:
                raise error
            raise DataLoadError(f"another process failed to load '{dataset}' from {path}")

        matrix = cls(slab, partitions, numcols, comm=comm, device=device, verbose=verbose)
        if verbose:
            print(f"Rank {comm.rank}: loaded my data", flush=True)
        return matrix

    def _gramian_local(self, v: torch.Tensor) -> torch.Tensor:
        """This rank's contribution A_local^T (A_local v)."""
        scratch = self.slab @ v
        return self.slab.T @ scratch

    def gramian_matvec(self, v: torch.Tensor) -> torch.Tensor:
        """
        Apply the Gramian operator: ``A^T A v``.

        Collective: every rank must call this with the same ``v``.

        Parameters
        ----------
        v : torch.Tensor
            [numcols] vector, or [numcols, k] block of vectors.

        Returns
        -------
        w : torch.Tensor
            ``A^T A v``, identical on every rank.
        """
        if v.ndim == 1:
            check_vector(v, self.numcols)
        elif not (v.ndim == 2 and v.shape[0] == self.numcols):
            raise ShapeException("v", tuple(v.shape), f"[{self.numcols}] or [{self.numcols}, k]")
        v = v.to(device=self.device, dtype=self.slab.dtype)
        return self.comm.all_reduce_sum(self._gramian_local(v))

    def gather_global(self, x_local: torch.Tensor) -> Optional[torch.Tensor]:
        """
        Gather per-rank row blocks into global row order on the root.

        Parameters
        ----------
        x_local : torch.Tensor
            [localrows, k] rows of a row-distributed matrix.

        Returns
        -------
        x_global : torch.Tensor or None
            [numrows, k] on the root, None on other ranks.
        """
        if x_local.ndim == 1:
            x_local = x_local.unsqueeze(1)
        if x_local.shape[0] != self.num_local:
            raise ShapeException("x_local", tuple(x_local.shape), f"[{self.num_local}, k]")
        plan = build_gather_plan(self.partitions, x_local.shape[1])
        return self.comm.gatherv(x_local.contiguous(), plan)

    def reconstruct(self, V: torch.Tensor) -> Optional[torch.Tensor]:
        """
        Compute ``A V`` and gather it on the root.

        Collective: every rank must call this with the same ``V``.

        Parameters
        ----------
        V : torch.Tensor
            [numcols, numeigs] right singular vectors.

        Returns
        -------
        AV : torch.Tensor or None
            [numrows, numeigs] on the root, None on other ranks.
        """
        if not (V.ndim == 2 and V.shape[0] == self.numcols):
            raise ShapeException("V", tuple(V.shape), f"[{self.numcols}, numeigs]")
        V = V.to(device=self.device, dtype=self.slab.dtype)
        return self.gather_global(self.slab @ V)

    def print_rows(self):
        """Print every local entry with its global row index."""
        start = self.partition.startingrow
        values = self.slab.cpu().tolist()
        for i, row in enumerate(values):
            for j, x in enumerate(row):
                print(f"A[{i + start}][{j}] = {x:f} ")

    def __repr__(self) -> str:
        return (f"DRowMatrix(rank={self.rank}/{self.num_partitions}, "
                f"rows={self.partition.startingrow}:{self.partition.endingrow}, "
                f"global_shape={self.global_shape}, device={self.device})")
