"""pyhdg.linalg.engine
Which linear-algebra engine a communicator works with.

MPI runs assemble and solve with PETSc through petsc4py
(:mod:`pyhdg.linalg.petsc`). The in-process communicators (serial and the
simulated ranks of :func:`pyhdg.parallel.comm.run_spmd`) use the numpy/scipy
engine of this package, which follows the same call sequence. Both engines
expose ``create_matrix``, ``create_vector``, ``create_solver`` and
``gather_local_solution``.
"""
from __future__ import annotations

import numpy as np

from pyhdg.linalg.distributed import DistMatrix, DistVector
from pyhdg.linalg.krylov import KrylovSolver
from pyhdg.linalg.scatter import ScatterMap, gather_local_solution
from pyhdg.parallel.comm import Communicator

__all__ = ["NumpyEngine", "select_engine"]


class NumpyEngine:
    """In-process engine on numpy + scipy.sparse with pyamg preconditioning."""

    name = "numpy"

    def create_matrix(self, comm: Communicator, local_rows: int | None, global_rows: int | None,
                      d_nnz=None, o_nnz=None) -> DistMatrix:
        return DistMatrix(comm, local_rows, global_rows, d_nnz=d_nnz, o_nnz=o_nnz)

    def create_vector(self, comm: Communicator, local_size: int | None,
                      global_size: int | None) -> DistVector:
        return DistVector(comm, local_size, global_size)

    def create_solver(self, comm: Communicator) -> KrylovSolver:
        return KrylovSolver(comm)

    def gather_local_solution(self, vec: DistVector, smap: ScatterMap,
                              local_size: int | None = None) -> np.ndarray:
        return gather_local_solution(vec, smap, local_size)

    def __repr__(self):
        return "NumpyEngine()"


def select_engine(comm: Communicator):
    """Engine named by ``comm.linalg_engine`` (``"numpy"`` or ``"petsc"``)."""
    name = getattr(comm, "linalg_engine", "numpy")
    if name == "numpy":
        return NumpyEngine()
    if name == "petsc":
        # petsc4py initialises PETSc on import; only MPI runs pay for it
        from pyhdg.linalg.petsc import PetscEngine
        return PetscEngine()
    raise ValueError(f"Unknown linear-algebra engine '{name}'.")
