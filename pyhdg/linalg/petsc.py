"""pyhdg.linalg.petsc
PETSc engine (petsc4py) for MPI runs.

Thin wrappers around ``PETSc.Vec``, ``PETSc.Mat`` (MPIAIJ), ``PETSc.KSP``
and ``PETSc.Scatter`` exposing the calls of the numpy engine, so the
assembler, the solver driver and the cycle orchestrator run unchanged on
either. ``PETSc.Error`` is re-raised as the :class:`EngineError` subclass
with the same error number.

Solver options go through the PETSc options database under a per-solver
prefix, so ``-ksp_*`` / ``-pc_*`` options of one solve do not leak into the
next.
"""
from __future__ import annotations

import itertools
import logging
from contextlib import contextmanager
from typing import Mapping

import numpy as np
from petsc4py import PETSc

from pyhdg.linalg.errors import (AllocationError, EngineError, OrderError, OutOfRangeError,
                                 SizeMismatchError, WrongStateError)
from pyhdg.linalg.krylov import ConvergedReason
from pyhdg.linalg.scatter import ScatterMap
from pyhdg.linalg.types import InsertMode, MatOption, NormType, VecOption
from pyhdg.parallel.comm import Communicator

logger = logging.getLogger(__name__)

__all__ = ["PetscEngine", "PetscVector", "PetscMatrix", "PetscKrylovSolver",
           "PetscPreconditioner", "gather_local_solution"]

_ERRORS = {cls.code: cls for cls in (AllocationError, OrderError, SizeMismatchError,
                                     OutOfRangeError, WrongStateError)}
_INSERT = {
    InsertMode.ADD_VALUES: PETSc.InsertMode.ADD_VALUES,
    InsertMode.INSERT_VALUES: PETSc.InsertMode.INSERT_VALUES,
}
_NORM = {
    NormType.NORM_1: PETSc.NormType.NORM_1,
    NormType.NORM_2: PETSc.NormType.NORM_2,
    NormType.NORM_INFINITY: PETSc.NormType.NORM_INFINITY,
}
_VEC_OPTIONS = {
    VecOption.IGNORE_NEGATIVE_INDICES: PETSc.Vec.Option.IGNORE_NEGATIVE_INDICES,
    VecOption.IGNORE_OFF_PROC_ENTRIES: PETSc.Vec.Option.IGNORE_OFF_PROC_ENTRIES,
}
_MAT_OPTIONS = {
    MatOption.ROW_ORIENTED: PETSc.Mat.Option.ROW_ORIENTED,
    MatOption.SPD: PETSc.Mat.Option.SPD,
    MatOption.SYMMETRIC: PETSc.Mat.Option.SYMMETRIC,
    MatOption.NEW_NONZERO_ALLOCATION_ERR: PETSc.Mat.Option.NEW_NONZERO_ALLOCATION_ERR,
}
# options the cycle forces on the preconditioner after the database is read
_FORCED_PC_KEYS = ("pc_type", "pc_gamg_type")

_solver_ids = itertools.count()


@contextmanager
def _translated(rank: int):
    try:
        yield
    except PETSc.Error as exc:
        cls = _ERRORS.get(exc.ierr, EngineError)
        raise cls(f"PETSc error {exc.ierr}", rank=rank) from exc


def _size(n):
    return PETSc.DECIDE if n is None else int(n)


def _indices(idx) -> np.ndarray:
    return np.ascontiguousarray(np.asarray(idx).ravel(), dtype=PETSc.IntType)


def _scalars(vals) -> np.ndarray:
    return np.ascontiguousarray(np.asarray(vals).ravel(), dtype=PETSc.ScalarType)


# ---------------------------------------------------------------------------
# vectors and matrices
# ---------------------------------------------------------------------------
class PetscVector:
    """``PETSc.Vec`` of type MPI on ``comm.mpi``."""

    def __init__(self, comm: Communicator, local_size: int | None = None,
                 global_size: int | None = None, *, vec: PETSc.Vec | None = None):
        self.comm = comm
        if vec is None:
            with _translated(comm.rank):
                vec = PETSc.Vec().createMPI((_size(local_size), _size(global_size)), comm=comm.mpi)
                vec.set(0.0)
        self.vec = vec
        self._options: dict = {}

    @property
    def ownership_range(self):
        return tuple(self.vec.getOwnershipRange())

    @property
    def local_size(self) -> int:
        return self.vec.getLocalSize()

    @property
    def global_size(self) -> int:
        return self.vec.getSize()

    def set_option(self, option: VecOption, flag: bool = True) -> None:
        self.vec.setOption(_VEC_OPTIONS[option], flag)
        self._options[option] = flag

    def get_array(self) -> np.ndarray:
        return self.vec.getArray()

    def set_values(self, indices, values, addv: InsertMode = InsertMode.ADD_VALUES) -> None:
        with _translated(self.comm.rank):
            self.vec.setValues(_indices(indices), _scalars(values), addv=_INSERT[addv])

    def assembly_begin(self) -> None:
        with _translated(self.comm.rank):
            self.vec.assemblyBegin()

    def assembly_end(self) -> None:
        with _translated(self.comm.rank):
            self.vec.assemblyEnd()

    def duplicate(self) -> "PetscVector":
        """Same layout and options, zero values."""
        out = PetscVector(self.comm, vec=self.vec.duplicate())
        for option, flag in self._options.items():
            out.set_option(option, flag)
        out.set(0.0)
        return out

    def copy(self) -> "PetscVector":
        out = self.duplicate()
        self.vec.copy(out.vec)
        return out

    def set(self, alpha: float) -> None:
        self.vec.set(alpha)

    def axpy(self, alpha: float, x: "PetscVector") -> None:
        self.vec.axpy(alpha, x.vec)

    def dot(self, x: "PetscVector") -> float:
        return float(self.vec.dot(x.vec))

    def norm(self, norm_type: NormType = NormType.NORM_2) -> float:
        return float(self.vec.norm(_NORM[norm_type]))

    def destroy(self) -> None:
        self.vec.destroy()


class PetscMatrix:
    """MPIAIJ matrix preallocated with per-row diagonal / off-diagonal counts."""

    def __init__(self, comm: Communicator, local_rows: int | None = None,
                 global_rows: int | None = None, *, d_nnz=None, o_nnz=None):
        self.comm = comm
        n, N = _size(local_rows), _size(global_rows)
        with _translated(comm.rank):
            if d_nnz is None:
                self.mat = PETSc.Mat().createAIJ(size=((n, N), (n, N)), comm=comm.mpi)
                self.mat.setUp()
            else:
                nnz = (_indices(d_nnz), _indices(o_nnz if o_nnz is not None else np.zeros_like(d_nnz)))
                self.mat = PETSc.Mat().createAIJ(size=((n, N), (n, N)), nnz=nnz, comm=comm.mpi)
        self.mat.setOption(PETSc.Mat.Option.NEW_NONZERO_ALLOCATION_ERR, True)

    @property
    def ownership_range(self):
        return tuple(self.mat.getOwnershipRange())

    def set_option(self, option: MatOption, flag: bool = True) -> None:
        self.mat.setOption(_MAT_OPTIONS[option], flag)

    def set_values(self, rows, cols, values, addv: InsertMode = InsertMode.ADD_VALUES) -> None:
        """Negative row / column indices are skipped by PETSc."""
        with _translated(self.comm.rank):
            self.mat.setValues(_indices(rows), _indices(cols), _scalars(values), addv=_INSERT[addv])

    def assembly_begin(self) -> None:
        with _translated(self.comm.rank):
            self.mat.assemblyBegin(PETSc.Mat.AssemblyType.FINAL)

    def assembly_end(self) -> None:
        with _translated(self.comm.rank):
            self.mat.assemblyEnd(PETSc.Mat.AssemblyType.FINAL)

    def get_values(self, rows, cols) -> np.ndarray:
        return self.mat.getValues(_indices(rows), _indices(cols))

    def mult(self, x: PetscVector, y: PetscVector) -> None:
        self.mat.mult(x.vec, y.vec)

    def destroy(self) -> None:
        self.mat.destroy()


# ---------------------------------------------------------------------------
# solver
# ---------------------------------------------------------------------------
class PetscPreconditioner:
    def __init__(self, pc: PETSc.PC):
        self.pc = pc

    def set_type(self, pc_type: str) -> None:
        self.pc.setType(pc_type.lower())

    def set_gamg_type(self, gamg_type: str) -> None:
        self.pc.setGAMGType(gamg_type)

    def set_gamg_agg_nsmooths(self, n: int) -> None:
        self.pc.setGAMGSmooths(int(n))

    @property
    def type(self) -> str:
        return self.pc.getType()


class PetscKrylovSolver:
    """``PETSc.KSP`` with its own options prefix."""

    def __init__(self, comm: Communicator):
        self.comm = comm
        self.ksp = PETSc.KSP().create(comm=comm.mpi)
        self.prefix = f"pyhdg_{next(_solver_ids)}_"
        self.ksp.setOptionsPrefix(self.prefix)
        self.pc = PetscPreconditioner(self.ksp.getPC())
        self._keys: list[str] = []

    def set_operators(self, A: PetscMatrix) -> None:
        self.ksp.setOperators(A.mat)

    def get_pc(self) -> PetscPreconditioner:
        return self.pc

    def set_type(self, ksp_type: str) -> None:
        self.ksp.setType(ksp_type.lower())

    def set_tolerances(self, rtol: float | None = None, atol: float | None = None,
                       divtol: float | None = None, max_it: int | None = None) -> None:
        self.ksp.setTolerances(rtol=rtol, atol=atol, divtol=divtol, max_it=max_it)

    def set_from_options(self, options: Mapping[str, str] | None) -> None:
        """Insert ``options`` under this solver's prefix and let PETSc read them."""
        opts = PETSc.Options(self.prefix)
        for key, value in (options or {}).items():
            opts[key] = value
            self._keys.append(key)
        try:
            self.ksp.setFromOptions()
        except PETSc.Error as exc:
            raise ValueError(f"PETSc rejected the solver options (error {exc.ierr})") from exc

    def _read_pc_options(self) -> None:
        # gamg options are only read once the pc has its final type
        opts = PETSc.Options(self.prefix)
        for key in _FORCED_PC_KEYS:
            if opts.hasName(key):
                opts.delValue(key)
        self.pc.pc.setFromOptions()

    def solve(self, b: PetscVector, x: PetscVector) -> None:
        with _translated(self.comm.rank):
            self._read_pc_options()
            self.ksp.solve(b.vec, x.vec)
        logger.debug("rank %d: KSP %s / PC %s, reason %d after %d iterations", self.comm.rank,
                     self.ksp.getType(), self.pc.type, self.ksp.getConvergedReason(),
                     self.ksp.getIterationNumber())

    @property
    def converged_reason(self) -> ConvergedReason:
        return ConvergedReason(self.ksp.getConvergedReason())

    @property
    def iteration_number(self) -> int:
        return self.ksp.getIterationNumber()

    def destroy(self) -> None:
        opts = PETSc.Options(self.prefix)
        for key in self._keys:
            if opts.hasName(key):
                opts.delValue(key)
        self._keys = []
        self.ksp.destroy()


def gather_local_solution(vec: PetscVector, smap: ScatterMap, local_size: int | None = None) -> np.ndarray:
    """Scatter ``vec`` into a fresh sequential buffer laid out by ``smap`` (collective)."""
    n = smap.size if local_size is None else int(local_size)
    seq = PETSc.Vec().createSeq(n, comm=PETSc.COMM_SELF)
    seq.set(0.0)
    ix = PETSc.IS().createGeneral(_indices(smap.scatter_from), comm=PETSc.COMM_SELF)
    iy = PETSc.IS().createGeneral(_indices(smap.scatter_to), comm=PETSc.COMM_SELF)
    with _translated(vec.comm.rank):
        scatter = PETSc.Scatter().create(vec.vec, ix, seq, iy)
        scatter.begin(vec.vec, seq, addv=PETSc.InsertMode.INSERT_VALUES, mode=PETSc.ScatterMode.FORWARD)
        scatter.end(vec.vec, seq, addv=PETSc.InsertMode.INSERT_VALUES, mode=PETSc.ScatterMode.FORWARD)
    buf = seq.getArray().copy()
    for obj in (scatter, ix, iy, seq):
        obj.destroy()
    return buf


class PetscEngine:
    """PETSc through petsc4py; communicators must carry an mpi4py ``mpi`` handle."""

    name = "petsc"

    def create_matrix(self, comm: Communicator, local_rows, global_rows, d_nnz=None, o_nnz=None) -> PetscMatrix:
        return PetscMatrix(comm, local_rows, global_rows, d_nnz=d_nnz, o_nnz=o_nnz)

    def create_vector(self, comm: Communicator, local_size, global_size) -> PetscVector:
        return PetscVector(comm, local_size, global_size)

    def create_solver(self, comm: Communicator) -> PetscKrylovSolver:
        return PetscKrylovSolver(comm)

    def gather_local_solution(self, vec: PetscVector, smap: ScatterMap,
                              local_size: int | None = None) -> np.ndarray:
        return gather_local_solution(vec, smap, local_size)

    def __repr__(self):
        return "PetscEngine()"
