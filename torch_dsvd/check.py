import torch 


class DSVDError(Exception):
    """Base class for errors raised by a distributed SVD job."""


class ShapeException(DSVDError, ValueError):
    def __init__(self, name, shape, expected_shape):
        self.name = name
        self.shape = shape
        self.expected_shape = expected_shape
        super().__init__(f"{name} has shape {shape} expected {expected_shape}")


class PartitionError(DSVDError, ValueError):
    """Degenerate matrix shape or row partition."""


class DataLoadError(DSVDError, IOError):
    """The input file or dataset could not be opened or read."""


class SolverError(DSVDError, RuntimeError):
    """
    The reverse-communication eigensolver reported a non-success status.

    Parameters
    ----------
    info: int
        status code reported by the solver
    message: str
        human readable description
    """
    def __init__(self, info: int, message: str):
        self.info = info
        super().__init__(f"{message} (info={info})")


class NotConvergedError(SolverError):
    """The solver exhausted its iteration budget before converging."""
    def __init__(self, iterations: int, nconv: int, nev: int):
        self.iterations = iterations
        self.nconv = nconv
        self.nev = nev
        super().__init__(
            1, f"eigensolver did not converge after {iterations} iterations: "
               f"{nconv}/{nev} Ritz values converged")


def check_matrix_shape(numrows: int, numcols: int, numeigs: int):
    """
    Check the global shape of a truncated SVD job

    Parameters
    ----------
    numrows: int
        number of matrix rows
    numcols: int
        number of matrix columns
    numeigs: int
        number of singular triples requested, must satisfy 1 <= numeigs < numcols
    """
    if not (numrows > 0 and numcols > 0):
        raise ShapeException("matrix", (numrows, numcols), "(m>0,n>0)")
    if numeigs < 1:
        raise PartitionError(f"numeigs must be at least 1, got {numeigs}")
    if numeigs >= numcols:
        raise PartitionError(
            f"numeigs must be less than numcols = {numcols}, got {numeigs}")
    if numeigs > numrows:
        raise PartitionError(
            f"numeigs must not exceed numrows = {numrows}, got {numeigs}")


def check_slab(slab: torch.Tensor, localrows: int, numcols: int):
    """
    Check a row slab

    Parameters
    ----------
    slab: torch.Tensor
        [localrows, numcols] rows owned by one process
    """
    if not (slab.ndim == 2 and slab.shape[0] == localrows and slab.shape[1] == numcols):
        raise ShapeException("slab", tuple(slab.shape), f"[{localrows}, {numcols}]")


def check_vector(v: torch.Tensor, n: int, name: str = "v"):
    """Check a length-n vector."""
    if not (v.ndim == 1 and v.shape[0] == n):
        raise ShapeException(name, tuple(v.shape), f"[{n}]")
