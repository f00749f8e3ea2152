"""pyhdg.parallel.mpi
:class:`Communicator` on top of mpi4py (lower-case, pickle based API).
"""
from __future__ import annotations

from typing import Any, List, Sequence

from mpi4py import MPI

from pyhdg.parallel.comm import Communicator, Request

__all__ = ["MPIComm"]

_MPI_OPS = {"sum": MPI.SUM, "max": MPI.MAX, "min": MPI.MIN}
_TAG_BASE = 7100


class _MPIRequest(Request):
    def __init__(self, comm: "MPIComm", tag: int, own: Any, sends: List[MPI.Request]):
        self._comm = comm
        self._tag = tag
        self._own = own
        self._sends = sends
        self._received: List[Any] | None = None

    def wait(self) -> List[Any]:
        if self._received is not None:
            return self._received
        c = self._comm
        out: List[Any] = [None] * c.size
        out[c.rank] = self._own
        # sends are already posted, so blocking receives cannot deadlock
        for src in range(c.size):
            if src != c.rank:
                out[src] = c.mpi.recv(source=src, tag=self._tag)
        MPI.Request.waitall(self._sends)
        self._received = out
        return out


class MPIComm(Communicator):
    """Wraps an ``mpi4py.MPI.Comm`` (``COMM_WORLD`` by default)."""

    linalg_engine = "petsc"

    def __init__(self, comm: MPI.Comm | None = None):
        self.mpi = MPI.COMM_WORLD if comm is None else comm
        self.rank = self.mpi.Get_rank()
        self.size = self.mpi.Get_size()
        self._seq = 0

    def barrier(self) -> None:
        self.mpi.Barrier()

    def allgather(self, obj):
        return self.mpi.allgather(obj)

    def allreduce(self, value, op: str = "sum"):
        try:
            mpi_op = _MPI_OPS[op]
        except KeyError:
            raise ValueError(f"Unsupported reduction '{op}'.") from None
        return self.mpi.allreduce(value, op=mpi_op)

    def exscan(self, value, op: str = "sum"):
        out = self.mpi.exscan(value, op=_MPI_OPS[op])
        return 0 if out is None else out

    def bcast(self, obj, root: int = 0):
        return self.mpi.bcast(obj, root=root)

    def alltoall(self, sendobjs: Sequence[Any]):
        self._check_sendobjs(sendobjs)
        return self.mpi.alltoall(list(sendobjs))

    def ialltoall(self, sendobjs: Sequence[Any]) -> Request:
        self._check_sendobjs(sendobjs)
        self._seq = (self._seq + 1) % 20000
        tag = _TAG_BASE + self._seq
        sends = [self.mpi.isend(sendobjs[dest], dest=dest, tag=tag)
                 for dest in range(self.size) if dest != self.rank]
        return _MPIRequest(self, tag, sendobjs[self.rank], sends)

    def wtime(self) -> float:
        return MPI.Wtime()
