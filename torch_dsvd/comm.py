"""
Typed collective communication between the processes of one job.

Every process must issue the same collectives in the same order. The
coordinating process (rank 0) decides what happens next and tells the
others through two message types:

- ``ContinueSignal``: whether another operator application follows, and the
  solver request code that caused it.
- ``OperatorRequest``: the vector the next operator application acts on.

When ``torch.distributed`` is not initialized the communicator acts as a
single-process group and every collective is a local no-op.
"""

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

import torch

from .partition import GatherPlan
from .check import DSVDError, ShapeException, check_vector

try:
    import torch.distributed as dist
    DIST_AVAILABLE = True
except ImportError:
    DIST_AVAILABLE = False


@dataclass(frozen=True)
class ContinueSignal:
    """Loop-continuation message broadcast by the root every iteration."""
    proceed: bool
    ido: int = 0


@dataclass(frozen=True)
class OperatorRequest:
    """Operator input broadcast by the root before each Gramian application."""
    vector: torch.Tensor


class Communicator:
    """
    Blocking collectives over the default ``torch.distributed`` process group.

    Parameters
    ----------
    device : str or torch.device
        Device that communication buffers live on. The ``nccl`` backend
        requires CUDA tensors.
    root : int
        Rank of the coordinating process.

    Attributes
    ----------
    sequence : int
        Number of collectives issued so far by this process. All processes of
        a healthy job agree on this value at every synchronization point.
    """

    def __init__(self, device: Union[str, torch.device] = 'cpu', root: int = 0):
        if isinstance(device, str):
            device = torch.device(device)
        self.device = device
        self.root = root
        self.sequence = 0
        if self.is_distributed:
            self.rank = dist.get_rank()
            self.world_size = dist.get_world_size()
        else:
            self.rank = 0
            self.world_size = 1
        if not 0 <= root < self.world_size:
            raise DSVDError(f"root {root} out of range for world_size {self.world_size}")

    @property
    def is_distributed(self) -> bool:
        return DIST_AVAILABLE and dist.is_initialized()

    @property
    def is_root(self) -> bool:
        return self.rank == self.root

    def _to_comm_device(self, tensor: torch.Tensor) -> torch.Tensor:
        # NCCL requires CUDA tensors
        if self.is_distributed and dist.get_backend() == 'nccl' and not tensor.is_cuda:
            return tensor.to(self.device)
        return tensor

    def broadcast_signal(self, signal: Optional[ContinueSignal] = None) -> ContinueSignal:
        """
        Broadcast the continuation signal from the root.

        The root passes the signal; other ranks pass ``None`` and receive it.
        """
        self.sequence += 1
        if self.is_root:
            if signal is None:
                raise DSVDError("root must provide a ContinueSignal")
            buf = torch.tensor([int(signal.proceed), signal.ido], dtype=torch.int64)
        else:
            buf = torch.zeros(2, dtype=torch.int64)
        if self.is_distributed:
            buf = self._to_comm_device(buf)
            dist.broadcast(buf, src=self.root)
        proceed, ido = buf.tolist()
        return ContinueSignal(bool(proceed), int(ido))

    def broadcast_request(self, request: Optional[OperatorRequest], n: int,
                          dtype: torch.dtype = torch.float64) -> OperatorRequest:
        """
        Broadcast the operator input vector of length ``n`` from the root.
        """
        if self.is_root:
            if request is None:
                raise DSVDError("root must provide an OperatorRequest")
            check_vector(request.vector, n, "request.vector")
            return OperatorRequest(self.broadcast(request.vector, (n,), dtype))
        return OperatorRequest(self.broadcast(None, (n,), dtype))

    def broadcast(self, tensor: Optional[torch.Tensor], shape: Tuple[int, ...],
                  dtype: torch.dtype = torch.float64) -> torch.Tensor:
        """
        Broadcast a dense tensor of known ``shape`` from the root.

        The root passes the tensor; other ranks pass ``None``.
        """
        self.sequence += 1
        if self.is_root:
            if tuple(tensor.shape) != tuple(shape):
                raise ShapeException("tensor", tuple(tensor.shape), list(shape))
            buf = tensor.to(dtype=dtype, device=self.device).contiguous().clone()
        else:
            buf = torch.zeros(shape, dtype=dtype, device=self.device)
        if self.is_distributed:
            buf = self._to_comm_device(buf)
            dist.broadcast(buf, src=self.root)
        return buf.to(self.device)

    def broadcast_status(self, status: Optional[Sequence[int]] = None,
                         size: int = 1) -> Tuple[int, ...]:
        """Broadcast ``size`` integer status fields from the root."""
        self.sequence += 1
        if self.is_root:
            buf = torch.tensor(list(status), dtype=torch.int64)
        else:
            buf = torch.zeros(size, dtype=torch.int64)
        if self.is_distributed:
            buf = self._to_comm_device(buf)
            dist.broadcast(buf, src=self.root)
        return tuple(int(x) for x in buf.tolist())

    def all_reduce_sum(self, value: torch.Tensor) -> torch.Tensor:
        """Element-wise SUM across all ranks; every rank receives the result."""
        self.sequence += 1
        result = self._to_comm_device(value.clone())
        if self.is_distributed:
            dist.all_reduce(result, op=dist.ReduceOp.SUM)
        return result.to(value.device)

    def agree(self, ok: bool) -> bool:
        """
        True on every rank only if ``ok`` holds on every rank.

        Used after fallible per-rank work so that all ranks take the same
        branch before the next collective.
        """
        self.sequence += 1
        flag = torch.tensor([0 if ok else 1], dtype=torch.int64)
        if self.is_distributed:
            flag = self._to_comm_device(flag)
            dist.all_reduce(flag, op=dist.ReduceOp.MAX)
        return int(flag.item()) == 0

    def gatherv(self, block: torch.Tensor, plan: GatherPlan) -> Optional[torch.Tensor]:
        """
        Gather variable-sized row blocks onto the root in rank order.

        Parameters
        ----------
        block : torch.Tensor
            This rank's ``[localrows, k]`` block.
        plan : GatherPlan
            Element counts and offsets of every rank's block.

        Returns
        -------
        gathered : torch.Tensor or None
            ``[sum(localrows), k]`` on the root, ``None`` elsewhere.
        """
        self.sequence += 1
        k = block.shape[1]
        dtype = block.dtype
        if not self.is_distributed:
            return block.clone()

        # torch.distributed.gather needs equal shapes: pad to the largest share
        max_rows = plan.max_rows
        padded = torch.zeros(max_rows, k, dtype=dtype, device=self.device)
        padded[:block.shape[0]] = block
        padded = self._to_comm_device(padded)

        if not self.is_root:
            dist.gather(padded, dst=self.root)
            return None

        gathered = [torch.zeros_like(padded) for _ in range(self.world_size)]
        dist.gather(padded, gather_list=gathered, dst=self.root)

        out = torch.empty(plan.total, dtype=dtype, device=self.device)
        for r, buf in enumerate(gathered):
            count, offset = plan.counts[r], plan.offsets[r]
            out[offset:offset + count] = buf.reshape(-1)[:count].to(self.device)
        return out.reshape(-1, k)

    def barrier(self):
        self.sequence += 1
        if self.is_distributed:
            dist.barrier()
