import logging
import numpy as np
from typing import Dict, List, Optional, Tuple

from pyhdg.core.topology import (Face, Element, BOUNDARY_X_MIN, BOUNDARY_X_MAX,
                                 BOUNDARY_Y_MIN, BOUNDARY_Y_MAX)
from pyhdg.parallel.comm import Communicator

logger = logging.getLogger(__name__)


class MeshPartition:
    """
    One rank's view of a structured ``nx x ny`` quadrilateral mesh of a rectangle.

    The partition holds full topology (``Element`` and ``Face`` objects) only
    for the locally owned elements and a one-layer halo of ghost elements;
    the global element-owner table is replicated so that face ownership can
    be decided without communication.

    Numbering
    ---------
    * element ``eid = j*nx + i`` for cell ``(i, j)``;
    * vertical face left of cell ``(i, j)``: ``j*(nx+1) + i``;
    * horizontal face below cell ``(i, j)``: ``(nx+1)*ny + j*nx + i``.

    A face is owned by the lowest rank among the owners of its adjacent
    elements.
    """

    def __init__(self,
                 rank: int,
                 level: int,
                 bounds: Tuple[float, float, float, float],
                 nx: int,
                 ny: int,
                 element_owner: np.ndarray,
                 *,
                 adaptive: bool = False):
        self.rank = rank
        self.level = level
        self.bounds = tuple(float(b) for b in bounds)
        self.nx, self.ny = int(nx), int(ny)
        self.adaptive = adaptive
        self.element_owner = np.asarray(element_owner, dtype=np.int64)
        self.element_owner.setflags(write=False)
        if self.element_owner.size != self.nx * self.ny:
            raise ValueError(f"owner table has {self.element_owner.size} entries for {self.nx*self.ny} elements")
        self.n_vertical_faces = (self.nx + 1) * self.ny
        self.n_faces = self.n_vertical_faces + self.nx * (self.ny + 1)

        x0, x1, y0, y1 = self.bounds
        self._xs = np.linspace(x0, x1, self.nx + 1)
        self._ys = np.linspace(y0, y1, self.ny + 1)

        self.owned_elements = np.flatnonzero(self.element_owner == rank)
        self._elements: Dict[int, Element] = {}
        self._faces: Dict[int, Face] = {}
        self._build_topology()

    # ------------------------------------------------------------------
    # numbering helpers
    # ------------------------------------------------------------------
    @property
    def n_elements(self) -> int:
        return self.nx * self.ny

    def element_id(self, i: int, j: int) -> Optional[int]:
        if 0 <= i < self.nx and 0 <= j < self.ny:
            return j * self.nx + i
        return None

    def vertical_face_gid(self, i: int, j: int) -> int:
        return j * (self.nx + 1) + i

    def horizontal_face_gid(self, i: int, j: int) -> int:
        return self.n_vertical_faces + j * self.nx + i

    def _element_faces(self, i: int, j: int) -> Tuple[int, int, int, int]:
        return (self.vertical_face_gid(i, j), self.vertical_face_gid(i + 1, j),
                self.horizontal_face_gid(i, j), self.horizontal_face_gid(i, j + 1))

    def _face_cell(self, gid: int) -> Tuple[int, int, int]:
        """(axis, i, j) of a face: axis 0 is the vertical face left of cell (i, j)."""
        if not 0 <= gid < self.n_faces:
            raise IndexError(f"face id {gid} out of range [0, {self.n_faces})")
        if gid < self.n_vertical_faces:
            j, i = divmod(gid, self.nx + 1)
            return 0, i, j
        j, i = divmod(gid - self.n_vertical_faces, self.nx)
        return 1, i, j

    def face_elements(self, gid: int) -> Tuple[Optional[int], Optional[int]]:
        """(low side, high side) element ids of a face; ``None`` outside the domain."""
        axis, i, j = self._face_cell(gid)
        if axis == 0:
            return self.element_id(i - 1, j), self.element_id(i, j)
        return self.element_id(i, j - 1), self.element_id(i, j)

    def boundary_id(self, gid: int) -> Optional[int]:
        axis, i, j = self._face_cell(gid)
        if axis == 0:
            return BOUNDARY_X_MIN if i == 0 else BOUNDARY_X_MAX if i == self.nx else None
        return BOUNDARY_Y_MIN if j == 0 else BOUNDARY_Y_MAX if j == self.ny else None

    def _make_face(self, gid: int) -> Face:
        axis, i, j = self._face_cell(gid)
        if axis == 0:
            verts = ((self._xs[i], self._ys[j]), (self._xs[i], self._ys[j + 1]))
        else:
            verts = ((self._xs[i], self._ys[j]), (self._xs[i + 1], self._ys[j]))
        left, right = self.face_elements(gid)
        return Face(gid=gid, axis=axis, vertices=verts, left=left, right=right,
                    boundary_id=self.boundary_id(gid))

    def _make_element(self, eid: int) -> Element:
        j, i = divmod(eid, self.nx)
        return Element(
            id=eid,
            ij=(i, j),
            bounds=(self._xs[i], self._xs[i + 1], self._ys[j], self._ys[j + 1]),
            faces=self._element_faces(i, j),
            neighbors=(self.element_id(i - 1, j), self.element_id(i + 1, j),
                       self.element_id(i, j - 1), self.element_id(i, j + 1)),
            owner=int(self.element_owner[eid]),
        )

    def _build_topology(self):
        """Owned elements, their halo neighbours and every face touching an owned element."""
        for eid in self.owned_elements:
            elem = self._make_element(int(eid))
            self._elements[elem.id] = elem
            for gid in elem.faces:
                if gid not in self._faces:
                    self._faces[gid] = self._make_face(gid)
        ghosts = set()
        for eid in self.owned_elements:
            for nb in self._elements[int(eid)].neighbors:
                if nb is not None and self.element_owner[nb] != self.rank:
                    ghosts.add(nb)
        self.ghost_elements = np.array(sorted(ghosts), dtype=np.int64)
        for eid in self.ghost_elements:
            self._elements[int(eid)] = self._make_element(int(eid))

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    def element(self, eid: int) -> Element:
        try:
            return self._elements[int(eid)]
        except KeyError:
            raise KeyError(f"element {eid} is neither owned nor a ghost on rank {self.rank}") from None

    def face(self, gid: int) -> Face:
        try:
            return self._faces[int(gid)]
        except KeyError:
            raise KeyError(f"face {gid} does not touch an element owned by rank {self.rank}") from None

    def face_owner(self, gid: int) -> int:
        return min(int(self.element_owner[e]) for e in self.face_elements(gid) if e is not None)

    def local_faces(self) -> List[int]:
        """Global ids of all faces of owned elements, ascending."""
        return sorted(self._faces)

    def element_size(self) -> float:
        """Largest cell diameter."""
        hx = (self.bounds[1] - self.bounds[0]) / self.nx
        hy = (self.bounds[3] - self.bounds[2]) / self.ny
        return float(np.hypot(hx, hy))

    def __repr__(self):
        return (f"<MeshPartition rank={self.rank}, level={self.level}, {self.nx}x{self.ny} cells, "
                f"owned={self.owned_elements.size}, ghosts={self.ghost_elements.size}>")


class StructuredMeshProvider:
    """Uniformly refined rectangle, ``n_base * 2**level`` cells per direction.

    Elements are distributed over the ranks of ``comm`` in contiguous blocks of
    the lexicographic ordering, so ranks beyond the element count own nothing.
    ``adaptive`` is recorded on the partitions; refinement itself stays uniform.
    """

    def __init__(self, comm: Communicator, bounds=(0.0, 1.0, 0.0, 1.0), n_base: int = 1,
                 adaptive: bool = False):
        if n_base < 1:
            raise ValueError("n_base must be >= 1")
        x0, x1, y0, y1 = bounds
        if not (x1 > x0 and y1 > y0):
            raise ValueError(f"Degenerate rectangle {bounds}")
        self.comm = comm
        self.bounds = tuple(float(b) for b in bounds)
        self.n_base = int(n_base)
        self.adaptive = bool(adaptive)
        if self.adaptive and comm.is_coordinator:
            logger.warning("Adaptive refinement (-amr 1) is not available; every level is refined uniformly.")

    def refine(self, level: int) -> MeshPartition:
        if level < 0:
            raise ValueError("refinement level must be >= 0")
        n = self.n_base * 2 ** level
        owner = np.empty(n * n, dtype=np.int64)
        for r, block in enumerate(np.array_split(np.arange(n * n), self.comm.size)):
            owner[block] = r
        part = MeshPartition(self.comm.rank, level, self.bounds, n, n, owner, adaptive=self.adaptive)
        logger.debug("rank %d: %r", self.comm.rank, part)
        return part
