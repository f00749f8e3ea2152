"""pyhdg.linalg.krylov
Preconditioned conjugate gradients on :class:`DistMatrix` operators.

The solver mirrors the small part of PETSc's KSP/PC interface that the
driver needs: tolerances, an options dictionary applied after the
programmatic settings, and convergence reasons with PETSc's numbering.

Preconditioners act on the rank-local diagonal block only (block Jacobi
across ranks). ``gamg`` builds a smoothed-aggregation hierarchy of that
block with :mod:`pyamg`.
"""
from __future__ import annotations

import logging
from enum import IntEnum
from typing import Callable, Mapping

import numpy as np
import pyamg

from pyhdg.linalg.distributed import DistMatrix, DistVector
from pyhdg.linalg.errors import SizeMismatchError, WrongStateError
from pyhdg.parallel.comm import Communicator

logger = logging.getLogger(__name__)

__all__ = ["ConvergedReason", "Preconditioner", "KrylovSolver"]


class ConvergedReason(IntEnum):
    """Same integers as PETSc's ``KSPConvergedReason``."""

    CONVERGED_RTOL_NORMAL = 1
    CONVERGED_ATOL_NORMAL = 9
    CONVERGED_RTOL = 2
    CONVERGED_ATOL = 3
    CONVERGED_ITS = 4
    CONVERGED_NEG_CURVE = 5
    CONVERGED_STEP_LENGTH = 6
    CONVERGED_HAPPY_BREAKDOWN = 7
    CONVERGED_ITERATING = 0
    DIVERGED_NULL = -2
    DIVERGED_ITS = -3
    DIVERGED_DTOL = -4
    DIVERGED_BREAKDOWN = -5
    DIVERGED_BREAKDOWN_BICG = -6
    DIVERGED_NONSYMMETRIC = -7
    DIVERGED_INDEFINITE_PC = -8
    DIVERGED_NANORINF = -9
    DIVERGED_INDEFINITE_MAT = -10
    DIVERGED_PC_FAILED = -11

    @property
    def converged(self) -> bool:
        return self.value > 0


# ---------------------------------------------------------------------------
# preconditioners
# ---------------------------------------------------------------------------
class Preconditioner:
    """``none`` | ``jacobi`` | ``gamg`` on the local diagonal block."""

    TYPES = ("none", "jacobi", "gamg")

    def __init__(self, comm: Communicator):
        self.comm = comm
        self.type = "none"
        self.gamg_type = "agg"
        self.agg_nsmooths = 1
        self.threshold = 0.0
        self._apply: Callable[[np.ndarray], np.ndarray] | None = None
        self.levels = 0

    def set_type(self, pc_type: str) -> None:
        pc_type = pc_type.lower()
        if pc_type not in self.TYPES:
            raise ValueError(f"Unknown preconditioner '{pc_type}'. Choose from {self.TYPES}.")
        self.type = pc_type
        self._apply = None

    def set_gamg_type(self, gamg_type: str) -> None:
        if gamg_type != "agg":
            raise ValueError(f"Only aggregation GAMG ('agg') is available, got '{gamg_type}'.")
        self.gamg_type = gamg_type

    def set_gamg_agg_nsmooths(self, n: int) -> None:
        if n < 0:
            raise ValueError("number of prolongator smoothing steps must be >= 0")
        self.agg_nsmooths = int(n)

    def set_gamg_threshold(self, threshold: float) -> None:
        """Strength-of-connection drop tolerance; negative values keep every edge, as 0 does."""
        self.threshold = max(float(threshold), 0.0)

    def set_from_options(self, options: Mapping[str, str]) -> None:
        if "pc_type" in options:
            self.set_type(options["pc_type"])
        if "pc_gamg_agg_nsmooths" in options:
            self.set_gamg_agg_nsmooths(int(options["pc_gamg_agg_nsmooths"]))
        if "pc_gamg_threshold" in options:
            self.set_gamg_threshold(float(options["pc_gamg_threshold"]))

    def set_up(self, mat: DistMatrix) -> None:
        block = mat.diagonal_block()
        n = block.shape[0]
        self.levels = 0
        if self.type == "none" or n == 0:
            self._apply = lambda r: r.copy()
            return
        if self.type == "jacobi" or n == 1:
            diag = block.diagonal().copy()
            diag[diag == 0.0] = 1.0
            self._apply = lambda r: r / diag
            return

        smooth = ("jacobi", {"degree": self.agg_nsmooths}) if self.agg_nsmooths > 0 else None
        ml = pyamg.smoothed_aggregation_solver(
            block.tocsr(),
            strength=("symmetric", {"theta": self.threshold}),
            smooth=smooth,
        )
        self.levels = len(ml.levels)
        M = ml.aspreconditioner(cycle="V")
        self._apply = lambda r: np.asarray(M @ r).ravel()
        logger.debug("rank %d: GAMG hierarchy with %d levels on %d local rows",
                     self.comm.rank, self.levels, n)

    def apply(self, r: DistVector, z: DistVector) -> None:
        if self._apply is None:
            raise WrongStateError("preconditioner applied before set_up()", rank=self.comm.rank)
        z.get_array()[:] = self._apply(r.get_array())

    def destroy(self) -> None:
        self._apply = None


# ---------------------------------------------------------------------------
# Krylov solver
# ---------------------------------------------------------------------------
class KrylovSolver:
    """CG with PETSc's default convergence test on the preconditioned residual norm."""

    def __init__(self, comm: Communicator):
        self.comm = comm
        self.ksp_type = "cg"
        self.rtol = 1e-5
        self.atol = 1e-50
        self.divtol = 1e5
        self.max_it = 10_000
        self.pc = Preconditioner(comm)
        self._A: DistMatrix | None = None
        self.iteration_number = 0
        self.converged_reason = ConvergedReason.CONVERGED_ITERATING
        self.residual_norms: list[float] = []

    def set_operators(self, A: DistMatrix) -> None:
        self._A = A

    def get_pc(self) -> Preconditioner:
        return self.pc

    def set_type(self, ksp_type: str) -> None:
        if ksp_type.lower() != "cg":
            raise ValueError(f"Unsupported Krylov method '{ksp_type}'; only 'cg' is available.")
        self.ksp_type = "cg"

    def set_tolerances(self, rtol: float | None = None, atol: float | None = None,
                       divtol: float | None = None, max_it: int | None = None) -> None:
        """``None`` leaves a setting unchanged."""
        if rtol is not None:
            self.rtol = float(rtol)
        if atol is not None:
            self.atol = float(atol)
        if divtol is not None:
            self.divtol = float(divtol)
        if max_it is not None:
            self.max_it = int(max_it)

    def set_from_options(self, options: Mapping[str, str] | None) -> None:
        """Apply ``ksp_*`` and ``pc_*`` keys (leading dashes already stripped)."""
        if not options:
            return
        if "ksp_type" in options:
            self.set_type(options["ksp_type"])
        self.set_tolerances(
            rtol=options.get("ksp_rtol"),
            atol=options.get("ksp_atol"),
            divtol=options.get("ksp_divtol"),
            max_it=int(options["ksp_max_it"]) if "ksp_max_it" in options else None,
        )
        self.pc.set_from_options(options)

    # -- convergence test ---------------------------------------------------
    def _test(self, it: int, rnorm: float, rnorm0: float) -> ConvergedReason:
        if not np.isfinite(rnorm):
            return ConvergedReason.DIVERGED_NANORINF
        ttol = max(self.rtol * rnorm0, self.atol)
        if rnorm <= ttol:
            return ConvergedReason.CONVERGED_ATOL if rnorm < self.atol else ConvergedReason.CONVERGED_RTOL
        if it > 0 and rnorm >= self.divtol * rnorm0:
            return ConvergedReason.DIVERGED_DTOL
        return ConvergedReason.CONVERGED_ITERATING

    def solve(self, b: DistVector, x: DistVector) -> None:
        """Solve ``A x = b`` from a zero initial guess (collective)."""
        A = self._A
        if A is None:
            raise WrongStateError("solve() called before set_operators()", rank=self.comm.rank)
        if not (b.layout.compatible(A.layout) and x.layout.compatible(A.layout)):
            raise SizeMismatchError("right-hand side / solution layout does not match the operator",
                                    rank=self.comm.rank)
        self.pc.set_up(A)
        self.residual_norms = []
        self.iteration_number = 0

        x.set(0.0)
        r = b.copy()
        z = b.duplicate()
        p = b.duplicate()
        w = b.duplicate()

        self.pc.apply(r, z)
        rnorm0 = z.norm()
        self.residual_norms.append(rnorm0)
        reason = self._test(0, rnorm0, rnorm0)
        beta = r.dot(z)
        if reason == ConvergedReason.CONVERGED_ITERATING and beta < 0.0:
            reason = ConvergedReason.DIVERGED_INDEFINITE_PC

        beta_old = 1.0
        it = 0
        while reason == ConvergedReason.CONVERGED_ITERATING:
            if it >= self.max_it:
                reason = ConvergedReason.DIVERGED_ITS
                break
            if it == 0:
                p.get_array()[:] = z.get_array()
            else:
                p.aypx(beta / beta_old, z)
            A.mult(p, w)
            dpi = p.dot(w)
            if dpi <= 0.0:
                reason = (ConvergedReason.DIVERGED_NANORINF if not np.isfinite(dpi)
                          else ConvergedReason.DIVERGED_INDEFINITE_MAT)
                break
            alpha = beta / dpi
            x.axpy(alpha, p)
            r.axpy(-alpha, w)
            self.pc.apply(r, z)
            rnorm = z.norm()
            it += 1
            self.residual_norms.append(rnorm)
            logger.debug("%4d KSP preconditioned resid norm %.12e", it, rnorm)
            reason = self._test(it, rnorm, rnorm0)
            if reason != ConvergedReason.CONVERGED_ITERATING:
                break
            beta_old, beta = beta, r.dot(z)
            if beta < 0.0:
                reason = ConvergedReason.DIVERGED_INDEFINITE_PC
            elif beta == 0.0:
                reason = ConvergedReason.DIVERGED_BREAKDOWN

        for v in (r, z, p, w):
            v.destroy()
        self.iteration_number = it
        self.converged_reason = reason

    def destroy(self) -> None:
        self.pc.destroy()
        self._A = None
