"""
Row partitioning for dense row-distributed matrices.

The global matrix is split into contiguous row blocks, one per process.
When the row count does not divide evenly, the lowest ranks take one
extra row each so that all shares differ by at most one row.

Example
-------
>>> from torch_dsvd.partition import partition_rows, build_gather_plan
>>> parts = partition_rows(10, 4)
>>> [(p.localrows, p.startingrow) for p in parts]
[(3, 0), (3, 3), (2, 6), (2, 8)]
>>> plan = build_gather_plan(parts, numeigs=2)
>>> plan.counts, plan.offsets
([6, 6, 4, 4], [0, 6, 12, 16])
"""

from dataclasses import dataclass
from typing import List

from .check import check_matrix_shape, PartitionError


@dataclass(frozen=True)
class MatrixShape:
    """Global shape of a truncated SVD job, fixed for the job's duration."""
    numrows: int
    numcols: int
    numeigs: int

    def __post_init__(self):
        check_matrix_shape(self.numrows, self.numcols, self.numeigs)


@dataclass(frozen=True)
class Partition:
    """Contiguous row range owned by a single process"""
    rank: int
    localrows: int
    startingrow: int

    @property
    def endingrow(self) -> int:
        """One past the last owned row."""
        return self.startingrow + self.localrows

    def __str__(self) -> str:
        return (f"Rank {self.rank}: assigned {self.localrows} rows, "
                f"{self.startingrow}--{self.endingrow - 1}")


@dataclass(frozen=True)
class GatherPlan:
    """
    Per-process element counts and offsets into a gathered row-major buffer.

    Only the gathering (root) process uses it.
    """
    counts: List[int]
    offsets: List[int]
    row_counts: List[int]

    @property
    def total(self) -> int:
        return sum(self.counts)

    @property
    def max_rows(self) -> int:
        return max(self.row_counts)


def partition_rows(numrows: int, world_size: int) -> List[Partition]:
    """
    Split ``numrows`` rows into ``world_size`` contiguous shares.

    Parameters
    ----------
    numrows : int
        Global row count.
    world_size : int
        Number of processes.

    Returns
    -------
    partitions : List[Partition]
        One partition per rank, in rank order.

    Raises
    ------
    PartitionError
        If ``world_size`` is not positive or some rank would own no rows.
    """
    if world_size < 1:
        raise PartitionError(f"world_size must be positive, got {world_size}")
    if numrows < world_size:
        raise PartitionError(
            f"cannot split {numrows} rows across {world_size} processes "
            f"without leaving a process empty")

    q, r = divmod(numrows, world_size)
    partitions = []
    start = 0
    for rank in range(world_size):
        localrows = q + 1 if rank < r else q
        partitions.append(Partition(rank, localrows, start))
        start += localrows
    return partitions


def partition_for_rank(numrows: int, world_size: int, rank: int) -> Partition:
    """Partition owned by ``rank``."""
    if not 0 <= rank < world_size:
        raise PartitionError(f"rank {rank} out of range for world_size {world_size}")
    return partition_rows(numrows, world_size)[rank]


def build_gather_plan(partitions: List[Partition], numeigs: int) -> GatherPlan:
    """
    Compute where each rank's ``localrows x numeigs`` block lands in the
    gathered ``numrows x numeigs`` buffer.
    """
    counts = [p.localrows * numeigs for p in partitions]
    offsets = [p.startingrow * numeigs for p in partitions]
    return GatherPlan(counts, offsets, [p.localrows for p in partitions])
