"""pyhdg.linalg.layout
Row ownership of a distributed object: rank ``r`` owns ``[ranges[r], ranges[r+1])``.
"""
from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from pyhdg.linalg.errors import SizeMismatchError
from pyhdg.parallel.comm import Communicator


@dataclass(frozen=True)
class Layout:
    rank: int
    ranges: np.ndarray

    @classmethod
    def create(cls, comm: Communicator, local_size: int | None = None,
               global_size: int | None = None) -> "Layout":
        """Collective. ``local_size=None`` splits ``global_size`` evenly (lower ranks get the remainder)."""
        if local_size is None:
            if global_size is None:
                raise ValueError("Either local_size or global_size must be given.")
            base, rem = divmod(int(global_size), comm.size)
            local_size = base + (1 if comm.rank < rem else 0)
        if local_size < 0:
            raise SizeMismatchError(f"negative local size {local_size}", rank=comm.rank)
        sizes = comm.allgather(int(local_size))
        ranges = np.zeros(comm.size + 1, dtype=np.int64)
        ranges[1:] = np.cumsum(sizes)
        if global_size is not None and ranges[-1] != global_size:
            raise SizeMismatchError(
                f"sum of local sizes {int(ranges[-1])} does not match global size {global_size}",
                rank=comm.rank)
        ranges.setflags(write=False)
        return cls(rank=comm.rank, ranges=ranges)

    @property
    def lo(self) -> int:
        return int(self.ranges[self.rank])

    @property
    def hi(self) -> int:
        return int(self.ranges[self.rank + 1])

    @property
    def local_size(self) -> int:
        return self.hi - self.lo

    @property
    def global_size(self) -> int:
        return int(self.ranges[-1])

    def owner_of(self, indices) -> np.ndarray:
        """Owning rank of each global index (indices must be in range)."""
        return np.searchsorted(self.ranges, np.asarray(indices, dtype=np.int64), side="right") - 1

    def compatible(self, other: "Layout") -> bool:
        return np.array_equal(self.ranges, other.ranges)
