#!/usr/bin/env python
"""
Command-line truncated SVD of a row-distributed HDF5 matrix.

Usage:
    torchrun --standalone --nproc_per_node=4 -m torch_dsvd matrix.h5 A 1000 50 5

Or, as a single process:
    python -m torch_dsvd matrix.h5 A 1000 50 5
"""

import argparse
import os
import sys

import torch
import torch.distributed as dist

from .check import DSVDError
from .comm import Communicator
from .distributed import DRowMatrix
from .partition import MatrixShape
from .svd import distributed_svd, print_results


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="torch_dsvd",
        description="Top-k SVD of a dense matrix whose rows are distributed "
                    "across processes.")
    parser.add_argument("input_path", help="HDF5 file holding the matrix")
    parser.add_argument("dataset_name", help="name of the 2-D dataset")
    parser.add_argument("numrows", type=int, help="number of rows to use")
    parser.add_argument("numcols", type=int, help="number of columns")
    parser.add_argument("numeigs", type=int, help="number of singular triples")
    parser.add_argument("--maxiter", type=int, default=30,
                        help="maximum eigensolver restart cycles (default: 30)")
    parser.add_argument("--tol", type=float, default=1e-13,
                        help="eigensolver relative tolerance (default: 1e-13)")
    parser.add_argument("--ncv", type=int, default=None,
                        help="Krylov subspace size "
                             "(default: min(max(2*numeigs, numeigs+1), numcols))")
    parser.add_argument("--which", choices=["LM", "LA"], default="LM")
    parser.add_argument("--seed", type=int, default=0,
                        help="seed of the random starting vector")
    parser.add_argument("--backend", default="gloo",
                        help="torch.distributed backend (default: gloo)")
    parser.add_argument("--device", default="cpu")
    parser.add_argument("--print-matrices", action="store_true",
                        help="also print A*V and the refined SVD factors")
    parser.add_argument("--debug", action="store_true",
                        help="print loaded rows and probe the Gramian operator")
    parser.add_argument("--quiet", action="store_true",
                        help="only print the singular values")
    return parser


def _launched_distributed() -> bool:
    return "WORLD_SIZE" in os.environ and "RANK" in os.environ


def _debug_probe(A: DRowMatrix):
    """Print local entries, then A^T A [1, 2, ..., numcols] on ranks 0 and 1."""
    A.print_rows()
    probe = torch.arange(1, A.numcols + 1, dtype=torch.float64)
    product = A.gramian_matvec(probe)
    if A.rank < 2:
        for idx, x in enumerate(product.tolist()):
            print(f"A'*A x[{idx + 1}]= {x:f} ")


def run(args) -> int:
    """Run one job on this process; returns the process exit status."""
    verbose = not args.quiet
    comm = Communicator(device=args.device)
    try:
        MatrixShape(args.numrows, args.numcols, args.numeigs)
        A = DRowMatrix.load(args.input_path, args.dataset_name,
                            args.numrows, args.numcols,
                            comm=comm, device=args.device, verbose=verbose)
        if args.debug:
            _debug_probe(A)
        result = distributed_svd(A, args.numeigs, ncv=args.ncv, which=args.which,
                                 tol=args.tol, maxiter=args.maxiter, seed=args.seed,
                                 verbose=verbose)
    except DSVDError as e:
        print(f"[Rank {comm.rank}] Error: {e}", file=sys.stderr, flush=True)
        return 1

    if comm.is_root:
        print_results(result, print_matrices=args.print_matrices)
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    initialized = False
    if _launched_distributed() and not dist.is_initialized():
        dist.init_process_group(backend=args.backend)
        initialized = True
    try:
        return run(args)
    finally:
        if initialized:
            dist.destroy_process_group()


if __name__ == "__main__":
    sys.exit(main())
