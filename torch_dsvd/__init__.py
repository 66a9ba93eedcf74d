"""
torch-dsvd: Distributed truncated SVD for PyTorch

Top-k singular values and vectors of a large dense matrix whose rows are
sharded across processes, for PCA-style dimensionality reduction.

Pipeline
--------
- Row partitioning: contiguous shares differing by at most one row
- Gramian operator: v -> A^T A v via local products and a SUM all-reduce
- Reverse-communication eigensolver driven in lockstep on all ranks
- Reconstruction of A V gathered on rank 0, refined by a small dense SVD

Usage
-----
>>> import torch.distributed as dist
>>> from torch_dsvd import DRowMatrix, distributed_svd
>>>
>>> dist.init_process_group(backend='gloo')   # e.g. under torchrun
>>> A = DRowMatrix.load("matrix.h5", "A", numrows=100000, numcols=200)
>>> result = distributed_svd(A, numeigs=10)
>>> result.singular_values                     # descending, every rank
>>> result.left_singular_vectors               # rank 0 only
>>>
>>> # Command line
>>> # torchrun --standalone --nproc_per_node=4 -m torch_dsvd matrix.h5 A 100000 200 10
"""

from .check import (
    DSVDError,
    ShapeException,
    PartitionError,
    DataLoadError,
    SolverError,
    NotConvergedError,
)

from .partition import (
    MatrixShape,
    Partition,
    GatherPlan,
    partition_rows,
    partition_for_rank,
    build_gather_plan,
)

from .comm import (
    Communicator,
    ContinueSignal,
    OperatorRequest,
)

from .io import (
    load_row_slab,
    load_dataset_info,
    save_matrix,
)

from .distributed import DRowMatrix

from .lanczos import LanczosSolver, default_ncv

from .eigsh import (
    DriverState,
    DriverResult,
    transition,
    drive_eigensolver,
    extract_ritz,
    eigsh,
)

from .svd import (
    ResultSet,
    refine_svd,
    distributed_svd,
    print_results,
)

__version__ = "0.1.0"

__all__ = [
    # Errors
    "DSVDError",
    "ShapeException",
    "PartitionError",
    "DataLoadError",
    "SolverError",
    "NotConvergedError",
    # Partitioning
    "MatrixShape",
    "Partition",
    "GatherPlan",
    "partition_rows",
    "partition_for_rank",
    "build_gather_plan",
    # Communication
    "Communicator",
    "ContinueSignal",
    "OperatorRequest",
    # I/O
    "load_row_slab",
    "load_dataset_info",
    "save_matrix",
    # Distributed matrix
    "DRowMatrix",
    # Eigensolver
    "LanczosSolver",
    "default_ncv",
    "DriverState",
    "DriverResult",
    "transition",
    "drive_eigensolver",
    "extract_ritz",
    "eigsh",
    # SVD
    "ResultSet",
    "refine_svd",
    "distributed_svd",
    "print_results",
    # Version
    "__version__",
]
