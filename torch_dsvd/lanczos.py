"""
Reverse-communication symmetric eigensolver.

``LanczosSolver`` never calls the operator itself. Like ARPACK's
``dsaupd``/``dseupd`` pair it returns control to the caller with a request
code ``ido`` whenever it needs ``y = OP x``:

- ``ido = -1`` or ``1``: ``x`` is at ``workd[ipntr[0]:ipntr[0]+n]``; write
  ``OP x`` to ``workd[ipntr[1]:ipntr[1]+n]`` and call :meth:`saupd` again.
- ``ido = 99``: finished; ``info`` holds the exit status.

Method
------
Thick-restart Lanczos (Krylov-Schur for symmetric operators) with full
DGKS re-orthogonalization. Each restart cycle extends the basis to ``ncv``
vectors, computes Ritz pairs of the projected matrix, and keeps the best
``nev + (ncv - nev) // 2`` of them for the next cycle.

Status codes
------------
====  =============================================
 0    normal exit, ``nev`` Ritz values converged
 1    maximum number of restart cycles reached
-1    ``n`` must be positive
-2    ``nev`` must be positive
-3    ``ncv`` must satisfy ``nev < ncv <= n``
-4    ``maxiter`` must be positive
-5    ``which`` must be one of 'LM', 'LA'
-6    ``tol`` must be non-negative
-8    error in the projected eigenvalue problem, or a non-finite
      operator result
-9    starting vector is zero
====  =============================================

Example
-------
>>> solver = LanczosSolver(n=A.shape[0], nev=3)
>>> while solver.saupd() != 99:
...     x = solver.workd[solver.ipntr[0]:solver.ipntr[0] + solver.n]
...     solver.workd[solver.ipntr[1]:solver.ipntr[1] + solver.n] = A @ x
>>> eigenvalues, eigenvectors = solver.seupd()   # ascending, [nev], [nev, n]
"""

from typing import Optional, Tuple

import torch

from .check import SolverError, NotConvergedError, check_vector

WHICH = ('LM', 'LA')

INFO_MESSAGES = {
    0: "normal exit",
    1: "maximum number of iterations reached",
    -1: "n must be positive",
    -2: "nev must be positive",
    -3: "ncv must satisfy nev < ncv <= n",
    -4: "maxiter must be positive",
    -5: "which must be one of 'LM', 'LA'",
    -6: "tol must be non-negative",
    -8: "operator result is not finite or the projected eigenproblem failed",
    -9: "starting vector is zero",
}


def default_ncv(n: int, nev: int) -> int:
    """Subspace size used when none is given: twice ``nev``, capped at ``n``."""
    return min(max(2 * nev, nev + 1), n)


class LanczosSolver:
    """
    Thick-restart Lanczos eigensolver driven by reverse communication.

    Parameters
    ----------
    n : int
        Operator dimension.
    nev : int
        Number of eigenpairs wanted.
    ncv : int, optional
        Krylov subspace size, ``nev < ncv <= n``. Default: :func:`default_ncv`.
    which : str
        'LM' (largest magnitude) or 'LA' (largest algebraic).
    tol : float
        Relative residual tolerance; ``0`` means machine precision.
    maxiter : int
        Maximum number of restart cycles.
    v0 : torch.Tensor, optional
        Starting vector. Random (seeded) if not given.
    seed : int
        Seed of the random starting vector.

    Attributes
    ----------
    ido : int
        Last request code returned by :meth:`saupd`.
    info : int
        Exit status, valid once ``ido == 99``.
    workd : torch.Tensor
        [3 * n] exchange buffer shared with the caller.
    ipntr : list of int
        Offsets of the operator input (``ipntr[0]``) and output
        (``ipntr[1]``) inside ``workd``.
    iparam : list of int
        ``iparam[2]`` restart cycles performed, ``iparam[4]`` converged Ritz
        values, ``iparam[8]`` operator applications.
    """

    def __init__(
        self,
        n: int,
        nev: int,
        ncv: Optional[int] = None,
        which: str = 'LM',
        tol: float = 0.0,
        maxiter: int = 30,
        v0: Optional[torch.Tensor] = None,
        seed: int = 0,
        dtype: torch.dtype = torch.float64
    ):
        self.n = n
        self.nev = nev
        self.ncv = default_ncv(n, nev) if ncv is None else ncv
        self.which = which
        self.tol = tol
        self.maxiter = maxiter
        self.seed = seed
        self.dtype = dtype

        self.ido = 0
        self.info = 0
        self.workd = torch.zeros(3 * max(n, 0), dtype=dtype)
        self.ipntr = [0] * 11
        self.iparam = [1, 0, maxiter, 1, 0, 0, 1, 0, 0, 0, 0]
        self.resid = None if v0 is None else v0.to(dtype).clone()

        self._steps = None
        self._basis = None
        self._ritz_values = None
        self._ritz_coeffs = None

    @property
    def iterations(self) -> int:
        return self.iparam[2]

    @property
    def nconv(self) -> int:
        return self.iparam[4]

    @property
    def num_op(self) -> int:
        return self.iparam[8]

    @property
    def message(self) -> str:
        return INFO_MESSAGES.get(self.info, "unknown error")

    def _check_params(self) -> int:
        if self.n <= 0:
            return -1
        if self.nev <= 0:
            return -2
        if not self.nev < self.ncv <= self.n:
            return -3
        if self.maxiter <= 0:
            return -4
        if self.which not in WHICH:
            return -5
        if self.tol < 0:
            return -6
        if self.resid is not None:
            check_vector(self.resid, self.n, "v0")
            if self.resid.norm() == 0:
                return -9
        return 0

    def saupd(self) -> int:
        """
        Advance the solver to its next request.

        Returns
        -------
        ido : int
            ``-1``/``1`` when an operator application is requested,
            ``99`` when finished.
        """
        if self.ido == 99:
            return self.ido

        if self._steps is None:
            self.info = self._check_params()
            if self.info != 0:
                self.ido = 99
                return self.ido
            self._steps = self._iterate()

        try:
            self.ido = next(self._steps)
        except StopIteration:
            self.ido = 99
        return self.ido

    def seupd(self) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Extract the converged Ritz pairs.

        Does not modify the solver state; repeated calls give identical
        results.

        Returns
        -------
        eigenvalues : torch.Tensor
            [nev] in ascending order.
        eigenvectors : torch.Tensor
            [nev, n], one eigenvector per row, in the same order.

        Raises
        ------
        NotConvergedError
            If the solver stopped at the iteration limit.
        SolverError
            If the solver has not finished or exited with an error.
        """
        if self.ido != 99:
            raise SolverError(self.info, f"extraction requested before completion (ido={self.ido})")
        if self.info == 1:
            raise NotConvergedError(self.iterations, self.nconv, self.nev)
        if self.info != 0:
            raise SolverError(self.info, self.message)

        theta = self._ritz_values
        order = torch.argsort(theta)
        Y = self._ritz_coeffs[:, order]
        Z = self._basis @ Y
        return theta[order].clone(), Z.T.contiguous()

    def _random_vector(self, generator: torch.Generator) -> torch.Tensor:
        return torch.rand(self.n, generator=generator, dtype=self.dtype) * 2 - 1

    def _apply(self, x: torch.Tensor):
        """Place ``x`` in workd, request OP x, return the caller's answer."""
        n = self.n
        self.workd[:n] = x
        self.ipntr[0] = 0
        self.ipntr[1] = n
        yield -1 if self.iparam[8] == 0 else 1
        self.iparam[8] += 1
        return self.workd[n:2 * n].clone()

    def _select(self, theta: torch.Tensor) -> torch.Tensor:
        """Indices of Ritz values, most wanted first."""
        if self.which == 'LM':
            return torch.argsort(theta.abs(), descending=True)
        return torch.argsort(theta, descending=True)

    def _iterate(self):
        n, k, m = self.n, self.nev, self.ncv
        eps = torch.finfo(self.dtype).eps
        eps23 = eps ** (2.0 / 3.0)
        tol = self.tol if self.tol > 0 else eps
        generator = torch.Generator().manual_seed(self.seed)

        V = torch.zeros(n, m + 1, dtype=self.dtype)
        T = torch.zeros(m, m, dtype=self.dtype)

        v = self.resid if self.resid is not None else self._random_vector(generator)
        V[:, 0] = v / v.norm()
        start = 0

        for cycle in range(1, self.maxiter + 1):
            self.iparam[2] = cycle
            beta = torch.zeros((), dtype=self.dtype)

            for j in range(start, m):
                w = yield from self._apply(V[:, j])
                if not torch.isfinite(w).all():
                    self.info = -8
                    return
                wnorm = w.norm()
                Vj = V[:, :j + 1]
                # classical Gram-Schmidt with one DGKS correction
                h = Vj.T @ w
                w = w - Vj @ h
                c = Vj.T @ w
                w = w - Vj @ c
                h = h + c
                T[:j + 1, j] = h
                T[j, :j + 1] = h

                beta = w.norm()
                if beta > 1e3 * eps * wnorm:
                    q = w / beta
                    q = q - Vj @ (Vj.T @ q)
                    V[:, j + 1] = q / q.norm()
                    continue

                # invariant subspace found
                beta = torch.zeros((), dtype=self.dtype)
                if j < m - 1:
                    r = self._random_vector(generator)
                    for _ in range(2):
                        r = r - Vj @ (Vj.T @ r)
                    V[:, j + 1] = r / r.norm()

            try:
                theta, S = torch.linalg.eigh(T)
            except RuntimeError:
                self.info = -8
                return
            order = self._select(theta)
            residuals = (beta * S[m - 1, :]).abs()
            wanted = order[:k]
            threshold = tol * theta[wanted].abs().clamp(min=eps23)
            nconv = int((residuals[wanted] <= threshold).sum())
            self.iparam[4] = nconv

            if nconv >= k:
                self.info = 0
                self._basis = V[:, :m].clone()
                self._ritz_values = theta[wanted].clone()
                self._ritz_coeffs = S[:, wanted].clone()
                self.resid = beta * V[:, m]
                return

            if cycle == self.maxiter:
                self.info = 1
                self.resid = beta * V[:, m]
                return

            # thick restart: keep the best Ritz vectors plus the residual direction
            keep = min(k + (m - k) // 2, m - 1)
            kept = order[:keep]
            V[:, :keep] = V[:, :m] @ S[:, kept]
            V[:, keep] = V[:, m]
            V[:, keep + 1:] = 0
            T.zero_()
            T[:keep, :keep] = torch.diag(theta[kept])
            start = keep
