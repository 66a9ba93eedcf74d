#!/usr/bin/env python
"""
Distributed Truncated SVD Example

Usage:
    torchrun --standalone --nproc_per_node=4 distributed_svd.py
"""

import os
import tempfile

import torch
import torch.distributed as dist
from torch_dsvd import Communicator, DRowMatrix, distributed_svd, save_matrix


def main():
    # Initialize distributed
    dist.init_process_group(backend='gloo')
    comm = Communicator()
    rank = comm.rank
    world_size = comm.world_size

    if rank == 0:
        print("=" * 60)
        print("Distributed SVD: A = U S V^T (top k)")
        print(f"  World size: {world_size}")
        print("=" * 60)

    # Problem size
    m, n, k = 1000, 40, 5
    path = os.path.join(tempfile.gettempdir(), "torch_dsvd_example.h5")

    # Low-rank signal plus noise, written once by rank 0
    if rank == 0:
        g = torch.Generator().manual_seed(0)
        signal = torch.randn(m, k, generator=g, dtype=torch.float64) @ \
            torch.randn(k, n, generator=g, dtype=torch.float64)
        noise = 0.01 * torch.randn(m, n, generator=g, dtype=torch.float64)
        save_matrix(path, "A", signal + noise)
    comm.barrier()

    # Each rank reads only its own rows
    A = DRowMatrix.load(path, "A", numrows=m, numcols=n, comm=comm)
    comm.barrier()

    if rank == 0:
        print(f"\nComputing {k} largest singular values...")

    result = distributed_svd(A, numeigs=k, verbose=True)

    if rank == 0:
        print(f"\nSingular values: {[f'{s:.4f}' for s in result.singular_values.tolist()]}")
        print(f"U shape: {tuple(result.left_singular_vectors.shape)}")

    print(f"[Rank {rank}] V shape: {tuple(result.right_singular_vectors.shape)}")

    if rank == 0:
        print("\n" + "=" * 60)
        print("Distributed SVD completed!")
        print("=" * 60)

    dist.destroy_process_group()


if __name__ == "__main__":
    main()
