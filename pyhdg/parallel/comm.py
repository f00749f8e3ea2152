"""pyhdg.parallel.comm
Message-passing layer used by every distributed object in pyhdg.

All collective operations go through a :class:`Communicator`. Three
implementations are provided:

* :class:`SerialComm`  – a single process, every collective is trivial.
* :class:`ThreadComm`  – an in-process SPMD simulation: one thread per rank,
  sharing a rendezvous. Used by the test-suite to run multi-rank scenarios
  without ``mpiexec``.
* :class:`~pyhdg.parallel.mpi.MPIComm` – the real thing, on top of mpi4py.

Collectives must be called by every rank in the same order. Nothing here
times out: a rank that skips a collective stalls its peers.
"""
from __future__ import annotations

import functools
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Sequence

import numpy as np

__all__ = [
    "Communicator",
    "Request",
    "SerialComm",
    "ThreadComm",
    "CommAbortedError",
    "run_spmd",
]


_REDUCERS: dict[str, Callable[[Any, Any], Any]] = {
    "sum": np.add,
    "max": np.maximum,
    "min": np.minimum,
}


def _reduce(values: Sequence[Any], op: str):
    try:
        fn = _REDUCERS[op]
    except KeyError:
        raise ValueError(f"Unsupported reduction '{op}'. Use one of {sorted(_REDUCERS)}.") from None
    out = functools.reduce(fn, values)
    # keep plain python scalars plain
    if isinstance(out, np.generic):
        return out.item()
    return out


class CommAbortedError(RuntimeError):
    """Raised on every simulated rank once one rank has failed."""


class Request(ABC):
    """Handle of a posted non-blocking exchange."""

    @abstractmethod
    def wait(self) -> List[Any]:
        """Block until the exchange completes; returns the received objects by source rank."""


class Communicator(ABC):
    """Minimal collective interface (mirrors the subset of MPI that pyhdg uses)."""

    rank: int
    size: int
    #: linear-algebra engine this communicator works with, see pyhdg.linalg.engine
    linalg_engine = "numpy"

    @property
    def is_coordinator(self) -> bool:
        return self.rank == 0

    @abstractmethod
    def barrier(self) -> None: ...

    @abstractmethod
    def allgather(self, obj: Any) -> List[Any]: ...

    @abstractmethod
    def alltoall(self, sendobjs: Sequence[Any]) -> List[Any]: ...

    @abstractmethod
    def ialltoall(self, sendobjs: Sequence[Any]) -> Request: ...

    def allreduce(self, value: Any, op: str = "sum"):
        return _reduce(self.allgather(value), op)

    def exscan(self, value: Any, op: str = "sum"):
        """Exclusive prefix reduction; rank 0 receives ``0``."""
        vals = self.allgather(value)
        if self.rank == 0:
            return 0
        return _reduce(vals[: self.rank], op)

    def bcast(self, obj: Any, root: int = 0):
        return self.allgather(obj if self.rank == root else None)[root]

    def wtime(self) -> float:
        return time.perf_counter()

    def _check_sendobjs(self, sendobjs: Sequence[Any]) -> None:
        if len(sendobjs) != self.size:
            raise ValueError(f"alltoall needs one entry per rank ({self.size}), got {len(sendobjs)}.")

    def __repr__(self) -> str:
        return f"<{type(self).__name__} rank={self.rank} size={self.size}>"


# ---------------------------------------------------------------------------
# single process
# ---------------------------------------------------------------------------
class _CompletedRequest(Request):
    def __init__(self, received: List[Any]):
        self._received = received

    def wait(self) -> List[Any]:
        return self._received


class SerialComm(Communicator):
    """Communicator of size one."""

    def __init__(self):
        self.rank = 0
        self.size = 1

    def barrier(self) -> None:
        return None

    def allgather(self, obj):
        return [obj]

    def alltoall(self, sendobjs):
        self._check_sendobjs(sendobjs)
        return [sendobjs[0]]

    def ialltoall(self, sendobjs):
        self._check_sendobjs(sendobjs)
        return _CompletedRequest([sendobjs[0]])


# ---------------------------------------------------------------------------
# in-process SPMD simulation
# ---------------------------------------------------------------------------
class _Rendezvous:
    """State shared by all ranks of one simulated world."""

    def __init__(self, size: int):
        self.size = size
        self.barrier = threading.Barrier(size)
        self.slots: List[Any] = [None] * size
        self.lock = threading.Lock()
        self.mailboxes: dict[int, List[Any]] = {}

    def abort(self) -> None:
        self.barrier.abort()


class _ThreadRequest(Request):
    def __init__(self, comm: "ThreadComm", seq: int):
        self._comm = comm
        self._seq = seq
        self._received: List[Any] | None = None

    def wait(self) -> List[Any]:
        if self._received is not None:
            return self._received
        comm, rv = self._comm, self._comm._rv
        comm._wait()  # every rank has posted
        with rv.lock:
            box = rv.mailboxes[self._seq]
            self._received = [box[src][comm.rank] for src in range(rv.size)]
        comm._wait()  # every rank has read
        if comm.rank == 0:
            with rv.lock:
                del rv.mailboxes[self._seq]
        return self._received


class ThreadComm(Communicator):
    """One rank of a thread-backed world. Build worlds with :func:`run_spmd`."""

    def __init__(self, rank: int, rendezvous: _Rendezvous):
        self.rank = rank
        self.size = rendezvous.size
        self._rv = rendezvous
        self._seq = 0

    def _wait(self) -> None:
        try:
            self._rv.barrier.wait()
        except threading.BrokenBarrierError:
            raise CommAbortedError(f"rank {self.rank}: a peer rank failed, world aborted") from None

    def _exchange(self, obj):
        rv = self._rv
        rv.slots[self.rank] = obj
        self._wait()
        out = list(rv.slots)
        self._wait()
        return out

    def barrier(self) -> None:
        self._wait()

    def allgather(self, obj):
        return self._exchange(obj)

    def alltoall(self, sendobjs):
        self._check_sendobjs(sendobjs)
        table = self._exchange(list(sendobjs))
        return [table[src][self.rank] for src in range(self.size)]

    def ialltoall(self, sendobjs):
        self._check_sendobjs(sendobjs)
        self._seq += 1
        with self._rv.lock:
            box = self._rv.mailboxes.setdefault(self._seq, [None] * self.size)
            box[self.rank] = list(sendobjs)
        return _ThreadRequest(self, self._seq)


def run_spmd(nprocs: int, target: Callable[..., Any], *args, **kwargs) -> List[Any]:
    """Run ``target(comm, *args, **kwargs)`` on ``nprocs`` simulated ranks.

    Returns the per-rank return values. If any rank raises, the world is
    aborted (peers fail with :class:`CommAbortedError`) and the first
    original exception is re-raised here.
    """
    if nprocs < 1:
        raise ValueError("nprocs must be >= 1")
    rv = _Rendezvous(nprocs)
    results: List[Any] = [None] * nprocs
    errors: List[BaseException | None] = [None] * nprocs

    def _body(rank: int):
        comm = ThreadComm(rank, rv)
        try:
            results[rank] = target(comm, *args, **kwargs)
        except BaseException as exc:  # noqa: BLE001 - re-raised in the caller thread
            errors[rank] = exc
            rv.abort()

    threads = [threading.Thread(target=_body, args=(r,), name=f"spmd-rank-{r}") for r in range(nprocs)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    primary = [e for e in errors if e is not None and not isinstance(e, CommAbortedError)]
    if primary:
        raise primary[0]
    aborted = [e for e in errors if e is not None]
    if aborted:
        raise aborted[0]
    return results
