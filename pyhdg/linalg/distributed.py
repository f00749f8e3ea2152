"""pyhdg.linalg.distributed
Row-distributed vectors and sparse matrices with buffered insertion.

Both objects follow the same life cycle:

1. ``set_values`` – entries for locally owned rows are stored right away,
   entries for rows owned elsewhere are stashed;
2. ``assembly_begin`` – the stash is posted to the owning ranks;
3. ``assembly_end`` – contributions are received and summed (or inserted).

Steps 2 and 3 are collective and must be called by every rank, also by
ranks that contributed nothing. A matrix cannot be read before a final
assembly. Negative row/column indices are ignored by the matrix; the vector
ignores them only with ``VecOption.IGNORE_NEGATIVE_INDICES``.
"""
from __future__ import annotations

import logging
from typing import List, Tuple

import numpy as np
import scipy.sparse as sp

from pyhdg.linalg.errors import (AllocationError, OrderError, OutOfRangeError,
                                 SizeMismatchError, WrongStateError)
from pyhdg.linalg.layout import Layout
from pyhdg.linalg.scatter import IndexSet, VecScatter
from pyhdg.linalg.types import InsertMode, MatOption, NormType, VecOption
from pyhdg.parallel.comm import Communicator

logger = logging.getLogger(__name__)

__all__ = ["DistVector", "DistMatrix"]


def _check_mode(current: InsertMode | None, addv: InsertMode, rank: int) -> InsertMode:
    if current is not None and current is not addv:
        raise WrongStateError("cannot mix ADD_VALUES and INSERT_VALUES before assembly", rank=rank)
    return addv


# ---------------------------------------------------------------------------
# vectors
# ---------------------------------------------------------------------------
class DistVector:
    """Vector distributed by contiguous row blocks."""

    def __init__(self, comm: Communicator, local_size: int | None = None,
                 global_size: int | None = None, *, layout: Layout | None = None):
        self.comm = comm
        self.layout = layout if layout is not None else Layout.create(comm, local_size, global_size)
        self._array = np.zeros(self.layout.local_size)
        self._options = {VecOption.IGNORE_NEGATIVE_INDICES: False,
                         VecOption.IGNORE_OFF_PROC_ENTRIES: False}
        self._stash_idx: List[np.ndarray] = []
        self._stash_val: List[np.ndarray] = []
        self._mode: InsertMode | None = None
        self._pending = None
        self._destroyed = False

    # -- layout -------------------------------------------------------------
    @property
    def ownership_range(self) -> Tuple[int, int]:
        return self.layout.lo, self.layout.hi

    @property
    def local_size(self) -> int:
        return self.layout.local_size

    @property
    def global_size(self) -> int:
        return self.layout.global_size

    def set_option(self, option: VecOption, flag: bool = True) -> None:
        self._options[option] = bool(flag)

    def _alive(self) -> None:
        if self._destroyed:
            raise WrongStateError("vector used after destroy()", rank=self.comm.rank)

    def get_array(self) -> np.ndarray:
        """Owned entries (a view; writes go straight into the vector)."""
        self._alive()
        return self._array

    # -- insertion ----------------------------------------------------------
    def set_values(self, indices, values, addv: InsertMode = InsertMode.ADD_VALUES) -> None:
        self._alive()
        idx = np.asarray(indices, dtype=np.int64).ravel()
        vals = np.asarray(values, dtype=float).ravel()
        if idx.size != vals.size:
            raise SizeMismatchError(f"{idx.size} indices but {vals.size} values", rank=self.comm.rank)
        self._mode = _check_mode(self._mode, addv, self.comm.rank)

        neg = idx < 0
        if neg.any():
            if not self._options[VecOption.IGNORE_NEGATIVE_INDICES]:
                raise OutOfRangeError(f"negative index {int(idx[neg][0])}", rank=self.comm.rank)
            idx, vals = idx[~neg], vals[~neg]
        if idx.size and idx.max() >= self.global_size:
            raise OutOfRangeError(f"index {int(idx.max())} >= global size {self.global_size}",
                                  rank=self.comm.rank)

        lo, hi = self.ownership_range
        owned = (idx >= lo) & (idx < hi)
        self._apply(idx[owned] - lo, vals[owned], addv)
        if not owned.all() and not self._options[VecOption.IGNORE_OFF_PROC_ENTRIES]:
            self._stash_idx.append(idx[~owned])
            self._stash_val.append(vals[~owned])

    def _apply(self, local_idx: np.ndarray, vals: np.ndarray, addv: InsertMode) -> None:
        if addv is InsertMode.ADD_VALUES:
            np.add.at(self._array, local_idx, vals)
        else:
            self._array[local_idx] = vals

    def assembly_begin(self) -> None:
        """Post stashed off-process entries to their owners (collective)."""
        self._alive()
        if self._pending is not None:
            raise OrderError("vector assembly_begin() called twice", rank=self.comm.rank)
        sends: List[object] = [None] * self.comm.size
        if self._stash_idx:
            idx = np.concatenate(self._stash_idx)
            vals = np.concatenate(self._stash_val)
            owners = self.layout.owner_of(idx)
            for r in np.unique(owners):
                sel = owners == r
                sends[int(r)] = (self._mode, idx[sel], vals[sel])
        self._stash_idx, self._stash_val = [], []
        self._pending = self.comm.ialltoall(sends)

    def assembly_end(self) -> None:
        self._alive()
        if self._pending is None:
            raise OrderError("vector assembly_end() called without assembly_begin()", rank=self.comm.rank)
        received = self._pending.wait()
        self._pending = None
        lo = self.layout.lo
        for payload in received:
            if payload is None:
                continue
            mode, idx, vals = payload
            self._apply(idx - lo, vals, mode)
        self._mode = None

    # -- algebra ------------------------------------------------------------
    def duplicate(self) -> "DistVector":
        """New zero vector with the same layout and options."""
        self._alive()
        out = DistVector(self.comm, layout=self.layout)
        out._options = dict(self._options)
        return out

    def copy(self) -> "DistVector":
        out = self.duplicate()
        out._array[:] = self._array
        return out

    def set(self, value: float) -> None:
        self._alive()
        self._array[:] = value

    def _same_layout(self, other: "DistVector") -> None:
        if not self.layout.compatible(other.layout):
            raise SizeMismatchError("incompatible vector layouts", rank=self.comm.rank)

    def axpy(self, alpha: float, x: "DistVector") -> None:
        """``self += alpha * x``"""
        self._alive()
        self._same_layout(x)
        self._array += alpha * x._array

    def aypx(self, beta: float, x: "DistVector") -> None:
        """``self = x + beta * self``"""
        self._alive()
        self._same_layout(x)
        self._array *= beta
        self._array += x._array

    def dot(self, x: "DistVector") -> float:
        self._same_layout(x)
        return float(self.comm.allreduce(float(self._array @ x._array)))

    def norm(self, norm_type: NormType = NormType.NORM_2) -> float:
        self._alive()
        a = self._array
        if norm_type is NormType.NORM_2:
            return float(np.sqrt(self.comm.allreduce(float(a @ a))))
        if norm_type is NormType.NORM_1:
            return float(self.comm.allreduce(float(np.abs(a).sum())))
        if norm_type is NormType.NORM_INFINITY:
            return float(self.comm.allreduce(float(np.abs(a).max()) if a.size else 0.0, op="max"))
        raise ValueError(f"Unknown norm type {norm_type!r}")

    def allgather_array(self) -> np.ndarray:
        """Whole vector on every rank (collective, for diagnostics and tests)."""
        return np.concatenate(self.comm.allgather(self._array.copy()))

    def destroy(self) -> None:
        self._array = np.zeros(0)
        self._stash_idx, self._stash_val = [], []
        self._destroyed = True

    def __repr__(self) -> str:
        lo, hi = self.ownership_range
        return f"<DistVector rank={self.comm.rank} rows=[{lo},{hi}) of {self.global_size}>"


# ---------------------------------------------------------------------------
# matrices
# ---------------------------------------------------------------------------
class DistMatrix:
    """Square sparse matrix distributed by rows (MPIAIJ-like).

    Locally owned rows are kept as two CSR blocks after assembly: the
    *diagonal* block (columns owned by this rank) and the *off-diagonal*
    block (columns owned elsewhere, compressed through ``garray``).
    """

    def __init__(self, comm: Communicator, local_rows: int | None = None,
                 global_rows: int | None = None, *, d_nnz=None, o_nnz=None):
        self.comm = comm
        self.layout = Layout.create(comm, local_rows, global_rows)
        self._options = {MatOption.ROW_ORIENTED: True,
                         MatOption.SPD: False,
                         MatOption.SYMMETRIC: False,
                         MatOption.NEW_NONZERO_ALLOCATION_ERR: True}
        self.d_nnz = self.o_nnz = None
        if d_nnz is not None or o_nnz is not None:
            self.set_preallocation(d_nnz, o_nnz)
        self._entries: List[Tuple[np.ndarray, np.ndarray, np.ndarray]] = []
        self._stash: List[Tuple[np.ndarray, np.ndarray, np.ndarray]] = []
        self._mode: InsertMode | None = None
        self._pending = None
        self._local: sp.csr_matrix | None = None  # owned rows x all columns
        self._diag: sp.csr_matrix | None = None
        self._offd: sp.csr_matrix | None = None
        self.garray = np.zeros(0, dtype=np.int64)
        self._mvctx: VecScatter | None = None
        self._ghost_buf = np.zeros(0)
        self._assembled = False
        self._destroyed = False

    # -- setup --------------------------------------------------------------
    @property
    def ownership_range(self) -> Tuple[int, int]:
        return self.layout.lo, self.layout.hi

    @property
    def shape(self) -> Tuple[int, int]:
        n = self.layout.global_size
        return n, n

    @property
    def assembled(self) -> bool:
        return self._assembled

    @property
    def is_spd(self) -> bool:
        return self._options[MatOption.SPD]

    def set_option(self, option: MatOption, flag: bool = True) -> None:
        self._options[option] = bool(flag)
        if option is MatOption.SPD and flag:
            self._options[MatOption.SYMMETRIC] = True

    def set_preallocation(self, d_nnz, o_nnz) -> None:
        """Per-row nonzero counts of the diagonal and off-diagonal blocks."""
        n = self.layout.local_size
        d = np.zeros(n, dtype=np.int64) if d_nnz is None else np.asarray(d_nnz, dtype=np.int64).ravel()
        o = np.zeros(n, dtype=np.int64) if o_nnz is None else np.asarray(o_nnz, dtype=np.int64).ravel()
        if d.size != n or o.size != n:
            raise SizeMismatchError(
                f"preallocation arrays have {d.size}/{o.size} entries for {n} local rows", rank=self.comm.rank)
        self.d_nnz, self.o_nnz = d, o

    def _alive(self) -> None:
        if self._destroyed:
            raise WrongStateError("matrix used after destroy()", rank=self.comm.rank)

    # -- insertion ----------------------------------------------------------
    def set_values(self, rows, cols, values, addv: InsertMode = InsertMode.ADD_VALUES) -> None:
        """Insert the dense block ``values`` at ``rows x cols``.

        ``values`` is read as a flat array, row-major unless the
        ``ROW_ORIENTED`` option was switched off (then column-major).
        """
        self._alive()
        r = np.asarray(rows, dtype=np.int64).ravel()
        c = np.asarray(cols, dtype=np.int64).ravel()
        v = np.asarray(values, dtype=float).ravel()
        if v.size != r.size * c.size:
            raise SizeMismatchError(f"block {r.size}x{c.size} but {v.size} values", rank=self.comm.rank)
        self._mode = _check_mode(self._mode, addv, self.comm.rank)
        if self._options[MatOption.ROW_ORIENTED]:
            block = v.reshape(r.size, c.size)
        else:
            block = v.reshape(c.size, r.size).T

        n = self.layout.global_size
        if (r >= n).any() or (c >= n).any():
            raise OutOfRangeError(f"index out of range for global size {n}", rank=self.comm.rank)
        rr, cc = np.meshgrid(r, c, indexing="ij")
        keep = (rr >= 0) & (cc >= 0)
        rr, cc, vv = rr[keep], cc[keep], block[keep]
        if not rr.size:
            return
        self._assembled = False
        lo, hi = self.ownership_range
        owned = (rr >= lo) & (rr < hi)
        self._entries.append((rr[owned], cc[owned], vv[owned]))
        if not owned.all():
            self._stash.append((rr[~owned], cc[~owned], vv[~owned]))

    # -- assembly -----------------------------------------------------------
    def assembly_begin(self) -> None:
        self._alive()
        if self._pending is not None:
            raise OrderError("matrix assembly_begin() called twice", rank=self.comm.rank)
        sends: List[object] = [None] * self.comm.size
        if self._stash:
            rr = np.concatenate([s[0] for s in self._stash])
            cc = np.concatenate([s[1] for s in self._stash])
            vv = np.concatenate([s[2] for s in self._stash])
            owners = self.layout.owner_of(rr)
            for dest in np.unique(owners):
                sel = owners == dest
                sends[int(dest)] = (self._mode, rr[sel], cc[sel], vv[sel])
        self._stash = []
        self._pending = self.comm.ialltoall(sends)

    def assembly_end(self) -> None:
        self._alive()
        if self._pending is None:
            raise OrderError("matrix assembly_end() called without assembly_begin()", rank=self.comm.rank)
        received = self._pending.wait()
        self._pending = None
        mode = self._mode
        for payload in received:
            if payload is None:
                continue
            src_mode, rr, cc, vv = payload
            mode = _check_mode(mode, src_mode, self.comm.rank)
            self._entries.append((rr, cc, vv))
        self._merge_entries(mode or InsertMode.ADD_VALUES)
        self._mode = None
        self._check_preallocation()
        self._split_blocks()
        self._assembled = True

    def _merge_entries(self, mode: InsertMode) -> None:
        lo, hi = self.ownership_range
        n_loc, n = hi - lo, self.layout.global_size
        if self._local is None:
            self._local = sp.csr_matrix((n_loc, n))
        if not self._entries:
            return
        rr = np.concatenate([e[0] for e in self._entries]) - lo
        cc = np.concatenate([e[1] for e in self._entries])
        vv = np.concatenate([e[2] for e in self._entries])
        self._entries = []
        if mode is InsertMode.ADD_VALUES:
            new = sp.coo_matrix((vv, (rr, cc)), shape=(n_loc, n)).tocsr()
            self._local = (self._local + new).tocsr()
            return
        # INSERT_VALUES: last write wins
        keys = rr * n + cc
        _, first_rev = np.unique(keys[::-1], return_index=True)
        last = keys.size - 1 - first_rev
        new = sp.coo_matrix((vv[last], (rr[last], cc[last])), shape=(n_loc, n)).tocsr()
        pattern = new.copy()
        pattern.data[:] = 1.0
        self._local = (self._local - self._local.multiply(pattern) + new).tocsr()

    def _check_preallocation(self) -> None:
        bad = 0
        detail = ""
        if self.d_nnz is not None and self._options[MatOption.NEW_NONZERO_ALLOCATION_ERR]:
            lo, hi = self.ownership_range
            loc = self._local
            row_of = np.repeat(np.arange(loc.shape[0]), np.diff(loc.indptr))
            in_diag = (loc.indices >= lo) & (loc.indices < hi)
            d_cnt = np.bincount(row_of[in_diag], minlength=loc.shape[0])
            o_cnt = np.bincount(row_of[~in_diag], minlength=loc.shape[0])
            over = np.flatnonzero((d_cnt > self.d_nnz) | (o_cnt > self.o_nnz))
            if over.size:
                bad = 1
                i = int(over[0])
                detail = (f"row {lo + i}: {d_cnt[i]}/{o_cnt[i]} diagonal/off-diagonal nonzeros, "
                          f"preallocated {self.d_nnz[i]}/{self.o_nnz[i]}")
        if self.comm.allreduce(bad, op="max"):
            msg = f"new nonzero caused a malloc: {detail}" if bad else "preallocation exceeded on another rank"
            raise AllocationError(msg, rank=self.comm.rank)

    def _split_blocks(self) -> None:
        lo, hi = self.ownership_range
        loc = self._local.tocsc()
        self._diag = loc[:, lo:hi].tocsr()
        col_ids = np.concatenate([np.arange(0, lo), np.arange(hi, self.layout.global_size)]).astype(np.int64)
        off = loc[:, col_ids].tocsc()
        used = np.flatnonzero(np.diff(off.indptr) > 0)
        self.garray = col_ids[used].astype(np.int64)
        self._offd = off[:, used].tocsr()
        self._ghost_buf = np.zeros(self.garray.size)
        if self._mvctx is not None:
            self._mvctx.destroy()
        template = DistVector(self.comm, layout=self.layout)
        self._mvctx = VecScatter(template, IndexSet(self.garray), self._ghost_buf,
                                 IndexSet(np.arange(self.garray.size)))

    # -- reading ------------------------------------------------------------
    def _require_assembled(self) -> None:
        self._alive()
        if not self._assembled:
            raise WrongStateError("matrix is not assembled; call assembly_begin/assembly_end first",
                                  rank=self.comm.rank)

    def get_values(self, rows, cols) -> np.ndarray:
        """Dense ``rows x cols`` block; rows must be locally owned."""
        self._require_assembled()
        r = np.asarray(rows, dtype=np.int64).ravel()
        c = np.asarray(cols, dtype=np.int64).ravel()
        lo, hi = self.ownership_range
        if ((r < lo) | (r >= hi)).any():
            raise OutOfRangeError(f"only rows [{lo},{hi}) are readable on this rank", rank=self.comm.rank)
        return self._local[r - lo][:, c].toarray()

    def diagonal_block(self) -> sp.csr_matrix:
        self._require_assembled()
        return self._diag

    @property
    def nnz(self) -> int:
        """Locally stored nonzeros."""
        self._require_assembled()
        return int(self._local.nnz)

    def mult(self, x: DistVector, y: DistVector) -> None:
        """``y = A x`` (collective)."""
        self._require_assembled()
        if not (x.layout.compatible(self.layout) and y.layout.compatible(self.layout)):
            raise SizeMismatchError("vector layout does not match matrix rows", rank=self.comm.rank)
        self._mvctx.begin(x, self._ghost_buf)
        y_loc = self._diag @ x.get_array()
        self._mvctx.end(x, self._ghost_buf)
        y_loc += self._offd @ self._ghost_buf
        y.get_array()[:] = y_loc

    def destroy(self) -> None:
        if self._mvctx is not None:
            self._mvctx.destroy()
        self._entries, self._stash = [], []
        self._local = self._diag = self._offd = None
        self._mvctx = None
        self._assembled = False
        self._destroyed = True

    def __repr__(self) -> str:
        lo, hi = self.ownership_range
        state = "assembled" if self._assembled else "unassembled"
        return f"<DistMatrix rank={self.comm.rank} rows=[{lo},{hi}) of {self.layout.global_size}, {state}>"
