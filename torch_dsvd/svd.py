"""
Truncated SVD of a row-distributed dense matrix.

Pipeline
--------
1. Top-k eigenpairs of ``A^T A`` with the distributed eigensolver driver.
2. ``A V`` computed slab by slab and gathered on the root.
3. A small dense SVD of ``A V`` on the root refines the singular triple.

Example
-------
>>> A = DRowMatrix.load("matrix.h5", "A", numrows=1000, numcols=50)
>>> result = distributed_svd(A, numeigs=5)
>>> result.singular_values            # every rank, descending
>>> result.left_singular_vectors      # rank 0 only
"""

import warnings
from dataclasses import dataclass
from typing import Optional, Tuple

import torch

from .distributed import DRowMatrix
from .eigsh import eigsh, DriverResult
from .partition import MatrixShape


@dataclass
class ResultSet:
    """
    Final singular triple of a job.

    Attributes
    ----------
    singular_values : torch.Tensor
        [numeigs], descending. Every rank.
    right_singular_vectors : torch.Tensor
        [numcols, numeigs]. Every rank.
    left_singular_vectors : torch.Tensor or None
        [numrows, numeigs]. Root only.
    eigenvalues : torch.Tensor
        [numeigs] eigenvalues of ``A^T A``, descending. Every rank.
    eigenvectors : torch.Tensor
        [numcols, numeigs] eigenvectors of ``A^T A``. Every rank.
    low_rank : torch.Tensor or None
        [numrows, numeigs] projection ``A V``. Root only.
    refined_right : torch.Tensor
        [numeigs, numeigs] right factor of the refinement SVD.
    driver : DriverResult
        Convergence diagnostics.
    """
    singular_values: torch.Tensor
    right_singular_vectors: torch.Tensor
    left_singular_vectors: Optional[torch.Tensor]
    eigenvalues: torch.Tensor
    eigenvectors: torch.Tensor
    low_rank: Optional[torch.Tensor]
    refined_right: torch.Tensor
    driver: DriverResult


def refine_svd(AV: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """
    Dense SVD of the small ``A V`` matrix.

    Parameters
    ----------
    AV : torch.Tensor
        [numrows, numeigs].

    Returns
    -------
    U : torch.Tensor
        [numrows, numeigs] left singular vectors.
    S : torch.Tensor
        [numeigs] singular values, descending.
    Wt : torch.Tensor
        [numeigs, numeigs] right singular vectors (transposed) in the basis
        of the eigenvectors ``V``.
    """
    U, S, Wt = torch.linalg.svd(AV, full_matrices=False)
    if S.numel() > 0 and S[-1] <= torch.finfo(S.dtype).eps * S[0]:
        warnings.warn("A V is numerically rank deficient; trailing singular "
                      "values are at round-off level")
    return U, S, Wt


def distributed_svd(
    A: DRowMatrix,
    numeigs: int,
    ncv: Optional[int] = None,
    which: str = 'LM',
    tol: float = 1e-13,
    maxiter: int = 30,
    v0: Optional[torch.Tensor] = None,
    seed: int = 0,
    solver=None,
    verbose: bool = False
) -> ResultSet:
    """
    Top-``numeigs`` singular triples of a distributed matrix.

    Collective: every rank must call this with the same arguments (``solver``
    is only read on the root).

    Parameters
    ----------
    A : DRowMatrix
        Distributed matrix.
    numeigs : int
        Number of singular triples, ``1 <= numeigs < numcols``.
    ncv, which, tol, maxiter, v0, seed, solver
        Eigensolver settings, see :func:`torch_dsvd.eigsh.eigsh`.
    verbose : bool
        Print diagnostics on the root.

    Returns
    -------
    result : ResultSet

    Raises
    ------
    PartitionError
        If ``numeigs`` is out of range for the matrix shape.
    NotConvergedError
        If the eigensolver did not converge; no partial result is returned.
    """
    shape = MatrixShape(A.numrows, A.numcols, numeigs)
    comm = A.comm

    eigenvalues, V, driver = eigsh(
        A, shape.numeigs, ncv=ncv, which=which, tol=tol, maxiter=maxiter,
        v0=v0, seed=seed, solver=solver, verbose=verbose)

    AV = A.reconstruct(V)

    U = S = Wt = None
    if comm.is_root:
        U, S, Wt = refine_svd(AV)
    S = comm.broadcast(S, (numeigs,))
    Wt = comm.broadcast(Wt, (numeigs, numeigs))

    return ResultSet(
        singular_values=S,
        right_singular_vectors=V @ Wt.T,
        left_singular_vectors=U,
        eigenvalues=eigenvalues,
        eigenvectors=V,
        low_rank=AV,
        refined_right=Wt,
        driver=driver,
    )


def print_results(result: ResultSet, print_matrices: bool = False):
    """Print the singular values and, optionally, the factors. Root only."""
    values = ", ".join(f"{s:.15g}" for s in result.singular_values.tolist())
    print(f"Singular values (descending): [{values}]")
    if not print_matrices:
        return
    _print_matrix("Low-rank approximation A*V", result.low_rank)
    _print_matrix("Left singular vectors U", result.left_singular_vectors)
    _print_matrix("Refined right factor W^T", result.refined_right)
    _print_matrix("Right singular vectors V*W", result.right_singular_vectors)


def _print_matrix(title: str, M: Optional[torch.Tensor]):
    if M is None:
        return
    print(f"{title} [{M.shape[0]}x{M.shape[1]}]:")
    for i, row in enumerate(M.tolist()):
        print(f"  {i:4d}: " + " ".join(f"{x: .6e}" for x in row))
