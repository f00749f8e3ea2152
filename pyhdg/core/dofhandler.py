# dofhandler.py

from __future__ import annotations

import logging
import numpy as np
from typing import Dict, Iterable, List, Tuple

from pyhdg.core.mesh import MeshPartition
from pyhdg.linalg.scatter import ScatterMap
from pyhdg.parallel.comm import Communicator

logger = logging.getLogger(__name__)


class TraceDofHandler:
    """Distributed numbering of the face (trace) unknowns of an HDG space."""

    def __init__(self, partition: MeshPartition, order: int, comm: Communicator,
                 dirichlet_ids: Iterable[int] = ()):
        """
        Number the trace DOFs of ``partition`` consistently across ``comm``.

        Parameters
        ----------
        partition : MeshPartition
            This rank's elements and halo.
        order : int
            Polynomial order of the face space; every active face carries
            ``order + 1`` DOFs.
        comm : Communicator
            The construction is collective: one ``exscan``/``allreduce``
            round for the offsets and one ``alltoall`` round for the ghost
            faces.
        dirichlet_ids : iterable of int
            Boundary ids whose faces are eliminated. They get global index
            ``-1`` and no storage in the global system.
        """
        if order < 0:
            raise ValueError(f"Polynomial order must be >= 0, got {order}")
        self.partition = partition
        self.order = int(order)
        self.comm = comm
        self.dirichlet_ids = frozenset(int(b) for b in dirichlet_ids)
        self.dofs_per_face = self.order + 1

        # owned / ghost active faces of the owned elements
        self.local_active_faces: List[int] = [g for g in partition.local_faces() if self.is_active(g)]
        self.owned_faces: List[int] = [g for g in self.local_active_faces
                                       if partition.face_owner(g) == comm.rank]

        self.n_owned = len(self.owned_faces) * self.dofs_per_face
        self.offset = int(comm.exscan(self.n_owned))
        self.n_global = int(comm.allreduce(self.n_owned))

        self._first_dof: Dict[int, int] = {
            gid: self.offset + k * self.dofs_per_face for k, gid in enumerate(self.owned_faces)
        }
        self._resolve_ghost_faces()
        self._slot: Dict[int, int] = {
            gid: k * self.dofs_per_face for k, gid in enumerate(self.local_active_faces)
        }
        self.n_local_connected, self.n_nonlocal_connected = self._count_connectivity()

        logger.debug("rank %d: %s", comm.rank, self.info())

    # ------------------------------------------------------------------
    # construction steps
    # ------------------------------------------------------------------
    def is_active(self, gid: int) -> bool:
        """Interior and Neumann faces carry global unknowns, Dirichlet faces do not."""
        bid = self.partition.boundary_id(gid)
        return bid is None or bid not in self.dirichlet_ids

    def _resolve_ghost_faces(self) -> None:
        """Ask the owners of ghost faces for their first global DOF (one alltoall)."""
        comm, part = self.comm, self.partition
        requests: List[List[int]] = [[] for _ in range(comm.size)]
        for gid in self.local_active_faces:
            if gid not in self._first_dof:
                requests[part.face_owner(gid)].append(gid)
        incoming = comm.alltoall([np.asarray(r, dtype=np.int64) for r in requests])
        replies = []
        for src, gids in enumerate(incoming):
            try:
                replies.append(np.array([self._first_dof[int(g)] for g in gids], dtype=np.int64))
            except KeyError as exc:
                raise RuntimeError(f"rank {src} asked rank {comm.rank} for face {exc.args[0]}, "
                                   "which it does not own") from None
        answers = comm.alltoall(replies)
        for owner, first in enumerate(answers):
            for gid, f in zip(requests[owner], first):
                self._first_dof[gid] = int(f)

    def _coupled_faces(self, gid: int) -> set[int]:
        """Active faces of every element adjacent to ``gid`` (itself included)."""
        out = set()
        for eid in self.partition.face_elements(gid):
            if eid is None:
                continue
            out.update(g for g in self.partition.element(eid).faces if self.is_active(g))
        return out

    def _count_connectivity(self) -> Tuple[np.ndarray, np.ndarray]:
        d_nnz = np.zeros(self.n_owned, dtype=np.int64)
        o_nnz = np.zeros(self.n_owned, dtype=np.int64)
        p = self.dofs_per_face
        rank = self.comm.rank
        for k, gid in enumerate(self.owned_faces):
            n_loc = n_off = 0
            for g in self._coupled_faces(gid):
                if self.partition.face_owner(g) == rank:
                    n_loc += p
                else:
                    n_off += p
            d_nnz[k * p:(k + 1) * p] = n_loc
            o_nnz[k * p:(k + 1) * p] = n_off
        return d_nnz, o_nnz

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    @property
    def ownership_range(self) -> Tuple[int, int]:
        return self.offset, self.offset + self.n_owned

    @property
    def n_local_buffer(self) -> int:
        """Length of the local solution buffer (all active faces of owned elements)."""
        return len(self.local_active_faces) * self.dofs_per_face

    def count_local_connected_dofs(self) -> Tuple[int, np.ndarray, np.ndarray]:
        """(owned count, local connectivity, nonlocal connectivity) per owned DOF."""
        return self.n_owned, self.n_local_connected, self.n_nonlocal_connected

    def global_dofs(self, gid: int) -> np.ndarray:
        """Global indices of one face's DOFs; ``-1`` for a Dirichlet face."""
        if not self.is_active(gid):
            return np.full(self.dofs_per_face, -1, dtype=np.int64)
        try:
            first = self._first_dof[int(gid)]
        except KeyError:
            raise KeyError(f"face {gid} is not a face of an element owned by rank {self.comm.rank}") from None
        return np.arange(first, first + self.dofs_per_face, dtype=np.int64)

    def element_dofs(self, eid: int) -> np.ndarray:
        """Global indices of the 4*(order+1) trace DOFs of an owned element, in local face order."""
        return np.concatenate([self.global_dofs(g) for g in self.partition.element(eid).faces])

    def element_slots(self, eid: int) -> np.ndarray:
        """Positions of the element's trace DOFs in the local solution buffer (-1: Dirichlet)."""
        p = self.dofs_per_face
        out = []
        for g in self.partition.element(eid).faces:
            if self.is_active(g):
                out.append(np.arange(self._slot[g], self._slot[g] + p, dtype=np.int64))
            else:
                out.append(np.full(p, -1, dtype=np.int64))
        return np.concatenate(out)

    def scatter_map(self) -> ScatterMap:
        """Global solution index -> local buffer slot for every active face of the owned elements."""
        p = self.dofs_per_face
        if not self.local_active_faces:
            return ScatterMap(np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.int64))
        src = np.concatenate([self.global_dofs(g) for g in self.local_active_faces])
        dst = np.arange(len(self.local_active_faces) * p, dtype=np.int64)
        return ScatterMap(src, dst)

    def info(self) -> str:
        lo, hi = self.ownership_range
        return (f"order {self.order}: owns DOFs [{lo}, {hi}) of {self.n_global}, "
                f"{len(self.owned_faces)} owned / {len(self.local_active_faces)} local active faces")

    def __repr__(self):
        return f"<TraceDofHandler rank={self.comm.rank} {self.info()}>"
