"""pyhdg.linalg.scatter
Index-set driven scatter from a distributed vector into a process-local buffer.

A :class:`ScatterMap` is the plain description (which global entry goes to
which buffer slot) and can be checked without any communication. A
:class:`VecScatter` is the communication plan built from it: construction
is collective and exchanges the request lists once; afterwards every
``begin``/``end`` pair only moves values.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, List

import numpy as np

from pyhdg.linalg.errors import OrderError, OutOfRangeError, SizeMismatchError, WrongStateError
from pyhdg.linalg.types import InsertMode

if TYPE_CHECKING:
    from pyhdg.linalg.distributed import DistVector

logger = logging.getLogger(__name__)

__all__ = ["IndexSet", "ScatterMap", "VecScatter", "gather_local_solution"]


class IndexSet:
    """General index set; the indices are copied on construction."""

    def __init__(self, indices):
        self.indices = np.array(indices, dtype=np.int64, copy=True).ravel()
        self.indices.setflags(write=False)

    @property
    def size(self) -> int:
        return int(self.indices.size)

    def __len__(self) -> int:
        return self.size

    def __repr__(self) -> str:
        return f"IndexSet(size={self.size})"


@dataclass(frozen=True)
class ScatterMap:
    """Pairs ``scatter_from[k] -> scatter_to[k]`` (global index -> local slot)."""

    scatter_from: np.ndarray
    scatter_to: np.ndarray

    def __post_init__(self):
        src = np.array(self.scatter_from, dtype=np.int64, copy=True).ravel()
        dst = np.array(self.scatter_to, dtype=np.int64, copy=True).ravel()
        if src.shape != dst.shape:
            raise ValueError(f"scatter_from has {src.size} entries but scatter_to has {dst.size}.")
        src.setflags(write=False)
        dst.setflags(write=False)
        object.__setattr__(self, "scatter_from", src)
        object.__setattr__(self, "scatter_to", dst)

    @property
    def size(self) -> int:
        return int(self.scatter_from.size)

    def is_identity(self) -> bool:
        ar = np.arange(self.size)
        return bool(np.array_equal(self.scatter_from, ar) and np.array_equal(self.scatter_to, ar))

    def inverse(self) -> "ScatterMap":
        return ScatterMap(self.scatter_to, self.scatter_from)

    def apply(self, source: np.ndarray, out: np.ndarray | None = None) -> np.ndarray:
        """In-memory scatter: ``out[scatter_to] = source[scatter_from]``."""
        if out is None:
            n = int(self.scatter_to.max()) + 1 if self.size else 0
            out = np.zeros(n, dtype=np.asarray(source).dtype)
        out[self.scatter_to] = np.asarray(source)[self.scatter_from]
        return out

    def index_sets(self) -> tuple[IndexSet, IndexSet]:
        return IndexSet(self.scatter_from), IndexSet(self.scatter_to)


class VecScatter:
    """Forward scatter ``y[iy[k]] = x[ix[k]]`` with ``x`` distributed and ``y`` local.

    Construction is collective over ``x.comm``.
    """

    def __init__(self, x: "DistVector", ix: IndexSet, y: np.ndarray, iy: IndexSet):
        if ix.size != iy.size:
            raise SizeMismatchError(f"index sets differ in size ({ix.size} vs {iy.size})", rank=x.comm.rank)
        self.comm = x.comm
        self.layout = x.layout
        src, dst = ix.indices, iy.indices
        if src.size and (src.min() < 0 or src.max() >= self.layout.global_size):
            raise OutOfRangeError(
                f"scatter source index out of range [0, {self.layout.global_size})", rank=self.comm.rank)
        if dst.size and (dst.min() < 0 or dst.max() >= len(y)):
            raise OutOfRangeError(f"scatter target index out of range [0, {len(y)})", rank=self.comm.rank)

        owners = self.layout.owner_of(src)
        requests: List[np.ndarray] = []
        self._recv_pos: List[np.ndarray] = []
        for r in range(self.comm.size):
            sel = owners == r
            requests.append(src[sel])
            self._recv_pos.append(dst[sel])
        wanted = self.comm.alltoall(requests)
        lo = self.layout.lo
        self._send_local: List[np.ndarray] = [np.asarray(w, dtype=np.int64) - lo for w in wanted]
        self._pending = None
        self._destroyed = False
        logger.debug("rank %d: scatter plan sends %d / receives %d values",
                     self.comm.rank, sum(s.size for s in self._send_local), src.size)

    def begin(self, x: "DistVector", y: np.ndarray, addv=None) -> None:
        """Post the sends. Local work may overlap until :meth:`end`."""
        if self._destroyed:
            raise WrongStateError("scatter used after destroy()", rank=self.comm.rank)
        if self._pending is not None:
            raise OrderError("scatter begin() called twice without end()", rank=self.comm.rank)
        if not x.layout.compatible(self.layout):
            raise SizeMismatchError("vector layout differs from the scatter's", rank=self.comm.rank)
        arr = x.get_array()
        sends = [arr[idx].copy() for idx in self._send_local]
        self._pending = (self.comm.ialltoall(sends), addv or InsertMode.INSERT_VALUES)

    def end(self, x: "DistVector", y: np.ndarray, addv=None) -> None:
        """Complete the exchange; afterwards ``y`` is ready."""
        if self._pending is None:
            raise OrderError("scatter end() called without begin()", rank=self.comm.rank)
        request, mode = self._pending
        if addv is not None and addv is not mode:
            raise WrongStateError("scatter end() insert mode differs from begin()", rank=self.comm.rank)
        received = request.wait()
        self._pending = None
        for pos, vals in zip(self._recv_pos, received):
            if not pos.size:
                continue
            if mode is InsertMode.ADD_VALUES:
                np.add.at(y, pos, vals)
            else:
                y[pos] = vals

    def destroy(self) -> None:
        self._send_local = []
        self._recv_pos = []
        self._destroyed = True


def gather_local_solution(vec: "DistVector", smap: ScatterMap, local_size: int | None = None) -> np.ndarray:
    """Scatter ``vec`` into a fresh local buffer laid out by ``smap`` (collective)."""
    n = smap.size if local_size is None else int(local_size)
    buf = np.zeros(n)
    ix, iy = smap.index_sets()
    scatter = VecScatter(vec, ix, buf, iy)
    scatter.begin(vec, buf)
    scatter.end(vec, buf)
    scatter.destroy()
    return buf
