"""
Distributed driver for a reverse-communication symmetric eigensolver.

Only the coordinating rank owns the solver. Each iteration it advances the
solver and broadcasts a ``ContinueSignal``; while the solver asks for an
operator application the root also broadcasts the input vector as an
``OperatorRequest`` and every rank joins the Gramian all-reduce. All ranks
step the same state machine on the broadcast request code, so they issue
identical collective sequences:

    INIT --(ido=-1/1)--> OP_REQUEST --(ido=-1/1)--> OP_REQUEST
      |                       |
      +------(ido=99)-------> DONE

The solver is any object following the ``saupd``/``seupd`` protocol of
:class:`torch_dsvd.lanczos.LanczosSolver`, which makes it easy to replace
with a scripted stand-in in tests.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Tuple

import torch

from .check import DSVDError, SolverError, NotConvergedError
from .comm import ContinueSignal, OperatorRequest
from .distributed import DRowMatrix
from .lanczos import LanczosSolver, INFO_MESSAGES


class DriverState(Enum):
    INIT = 'init'
    OP_REQUEST = 'op_request'
    DONE = 'done'


OP_CODES = (-1, 1)
DONE_CODE = 99
# sent instead of a request code when the root solver raised
ABORT_CODE = -99


def transition(state: DriverState, ido: int) -> DriverState:
    """
    Next driver state after the solver returned request code ``ido``.

    Raises
    ------
    SolverError
        On a request code the driver cannot serve, or when the solver is
        resumed after it already finished.
    """
    if state is DriverState.DONE:
        raise SolverError(ido, "solver resumed after completion")
    if ido == ABORT_CODE:
        raise SolverError(ido, "eigensolver aborted on the coordinating process")
    if ido == DONE_CODE:
        return DriverState.DONE
    if ido in OP_CODES:
        return DriverState.OP_REQUEST
    raise SolverError(ido, "unsupported reverse-communication request")


@dataclass(frozen=True)
class DriverResult:
    """Outcome of a driver run, identical on every rank."""
    info: int
    iterations: int
    nconv: int
    num_op: int

    @property
    def converged(self) -> bool:
        return self.info == 0

    @property
    def status(self) -> str:
        if self.info == 0:
            return 'converged'
        if self.info == 1:
            return 'not converged'
        return 'failed'

    def raise_for_status(self, nev: int):
        """Raise the matching :class:`SolverError` unless the run converged."""
        if self.info == 1:
            raise NotConvergedError(self.iterations, self.nconv, nev)
        if self.info != 0:
            raise SolverError(self.info, INFO_MESSAGES.get(self.info, "eigensolver failed"))


def drive_eigensolver(
    A: DRowMatrix,
    solver=None,
    operator: Optional[Callable[[torch.Tensor], torch.Tensor]] = None,
    verbose: bool = False
) -> DriverResult:
    """
    Run the reverse-communication loop until the solver is done.

    Collective: every rank must call this. The root must pass ``solver``;
    other ranks pass ``None``.

    Parameters
    ----------
    A : DRowMatrix
        Distributed matrix; its communicator carries the collectives.
    solver : object, optional
        Reverse-communication solver, root only.
    operator : callable, optional
        Collective operator applied on request. Default: ``A.gramian_matvec``.
    verbose : bool
        Print convergence diagnostics on the root.

    Returns
    -------
    result : DriverResult
        Solver status, iterations, converged count and operator applications.
        The driver never retries; callers decide what a non-zero status means.
    """
    comm = A.comm
    n = A.numcols
    if operator is None:
        operator = A.gramian_matvec
    if comm.is_root and solver is None:
        raise DSVDError("the coordinating rank must own a solver")

    state = DriverState.INIT
    num_op = 0
    while True:
        signal = failure = None
        if comm.is_root:
            try:
                ido = solver.saupd()
            except Exception as e:
                failure, ido = e, ABORT_CODE
            signal = ContinueSignal(ido in OP_CODES, ido)
        signal = comm.broadcast_signal(signal)
        if failure is not None:
            if isinstance(failure, DSVDError):
                raise failure
            raise SolverError(ABORT_CODE, f"eigensolver failed on the coordinating "
                                          f"process: {failure}") from failure
        state = transition(state, signal.ido)
        if state is DriverState.DONE:
            break

        request = None
        if comm.is_root:
            x0 = solver.ipntr[0]
            request = OperatorRequest(solver.workd[x0:x0 + n])
        request = comm.broadcast_request(request, n)

        y = operator(request.vector)

        if comm.is_root:
            y0 = solver.ipntr[1]
            solver.workd[y0:y0 + n] = y.to(solver.workd.device)
        num_op += 1

    status = None
    if comm.is_root:
        status = (solver.info, solver.iparam[2], solver.iparam[4])
    info, iterations, nconv = comm.broadcast_status(status, size=3)
    result = DriverResult(info, iterations, nconv, num_op)

    if verbose and comm.is_root:
        print(f"Eigensolver {result.status}: info={info} ({INFO_MESSAGES.get(info, 'unknown')}), "
              f"iterations={iterations}, converged={nconv}, operator applications={num_op}",
              flush=True)
    return result


def extract_ritz(solver) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Recover converged eigenpairs from a finished solver, root only.

    The solver returns eigenvalues in ascending order and eigenvectors one
    per row; this reverses them to descending order and transposes the
    vectors into columns.

    Returns
    -------
    eigenvalues : torch.Tensor
        [nev], descending.
    eigenvectors : torch.Tensor
        [n, nev], column ``i`` belongs to ``eigenvalues[i]``.
    """
    d, z = solver.seupd()
    eigenvalues = torch.flip(d, dims=[0])
    eigenvectors = torch.flip(z.T, dims=[1]).contiguous()
    return eigenvalues, eigenvectors


def eigsh(
    A: DRowMatrix,
    k: int,
    ncv: Optional[int] = None,
    which: str = 'LM',
    tol: float = 1e-13,
    maxiter: int = 30,
    v0: Optional[torch.Tensor] = None,
    seed: int = 0,
    solver=None,
    verbose: bool = False
) -> Tuple[torch.Tensor, torch.Tensor, DriverResult]:
    """
    Top-``k`` eigenpairs of the Gramian ``A^T A`` of a distributed matrix.

    Collective. The solver lives on the root only; the converged
    eigenpairs are broadcast so that every rank returns the same values.

    Parameters
    ----------
    A : DRowMatrix
        Distributed matrix.
    k : int
        Number of eigenpairs.
    ncv : int, optional
        Krylov subspace size. Default: ``min(max(2k, k+1), numcols)``.
    which : str
        'LM' (largest magnitude) or 'LA' (largest algebraic).
    tol : float
        Relative residual tolerance.
    maxiter : int
        Maximum number of restart cycles.
    v0 : torch.Tensor, optional
        Starting vector.
    seed : int
        Seed of the random starting vector.
    solver : object, optional
        Pre-built reverse-communication solver for the root; replaces the
        default :class:`LanczosSolver`.
    verbose : bool
        Print convergence diagnostics on the root.

    Returns
    -------
    eigenvalues : torch.Tensor
        [k], descending.
    eigenvectors : torch.Tensor
        [numcols, k].
    result : DriverResult
        Convergence diagnostics.

    Raises
    ------
    NotConvergedError
        On every rank, if the solver hit ``maxiter``.
    SolverError
        On every rank, for any other solver failure.
    """
    comm = A.comm
    n = A.numcols
    if comm.is_root and solver is None:
        solver = LanczosSolver(n, k, ncv=ncv, which=which, tol=tol,
                               maxiter=maxiter, v0=v0, seed=seed)
    if not comm.is_root:
        solver = None

    result = drive_eigensolver(A, solver, verbose=verbose)
    result.raise_for_status(k)

    eigenvalues = eigenvectors = None
    if comm.is_root:
        eigenvalues, eigenvectors = extract_ritz(solver)
    eigenvalues = comm.broadcast(eigenvalues, (k,))
    eigenvectors = comm.broadcast(eigenvectors, (n, k))
    return eigenvalues, eigenvectors, result
