"""pyhdg.solvers.linear_solver
Configures and runs the Krylov solve of the condensed trace system.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from pyhdg.assembly.hdg_global import GlobalSystem
from pyhdg.linalg.distributed import DistVector
from pyhdg.linalg.errors import WrongStateError
from pyhdg.linalg.krylov import ConvergedReason, KrylovSolver
from pyhdg.linalg.engine import select_engine
from pyhdg.linalg.types import NormType

logger = logging.getLogger(__name__)


@dataclass
class LinearSolverParameters:
    """Programmatic solver settings, applied before the command-line options."""

    ksp_type: str = "cg"
    rtol: float = 1e-8
    pc_type: str = "gamg"
    gamg_type: str = "agg"
    agg_nsmooths: int = 1


@dataclass
class SolveReport:
    solution: DistVector
    reason: ConvergedReason
    iterations: int
    rhs_norm: float
    solution_norm: float
    accuracy: float               # ||exact - x||_2
    wall_time: float = 0.0

    @property
    def converged(self) -> bool:
        return self.reason.converged


class LinearSolverDriver:
    """CG preconditioned with aggregation AMG; non-convergence is reported, not raised."""

    def __init__(self, params: Optional[LinearSolverParameters] = None,
                 options: Optional[Mapping[str, str]] = None):
        self.params = params or LinearSolverParameters()
        self.options = dict(options or {})

    def _configure(self, ksp: KrylovSolver) -> None:
        p = self.params
        ksp.set_tolerances(rtol=p.rtol)
        ksp.set_type(p.ksp_type)
        try:
            ksp.set_from_options(self.options)
        except ValueError as exc:
            logger.warning("Ignoring invalid solver option: %s", exc)
        # the preconditioner is forced after the options
        pc = ksp.get_pc()
        pc.set_type(p.pc_type)
        pc.set_gamg_type(p.gamg_type)
        if "pc_gamg_agg_nsmooths" not in self.options:
            pc.set_gamg_agg_nsmooths(p.agg_nsmooths)

    def solve(self, system: GlobalSystem) -> SolveReport:
        """Solve ``A x = b`` of a finalized system (collective, also on ranks without rows)."""
        if not system.finalized:
            raise WrongStateError("system must be finalized before the solve", rank=system.matrix.comm.rank)
        comm = system.matrix.comm
        rhs_norm = system.rhs.norm(NormType.NORM_2)

        ksp = (system.engine or select_engine(comm)).create_solver(comm)
        ksp.set_operators(system.matrix)
        self._configure(ksp)
        t0 = comm.wtime()
        ksp.solve(system.rhs, system.solution)
        wall = comm.wtime() - t0
        reason, its = ksp.converged_reason, ksp.iteration_number
        ksp.destroy()

        solution_norm = system.solution.norm(NormType.NORM_2)
        diff = system.exact.copy()
        diff.axpy(-1.0, system.solution)
        accuracy = diff.norm(NormType.NORM_2)
        diff.destroy()

        if reason.converged:
            logger.info("KSP converged (%s) in %d iterations, ||b|| = %.6e, ||x|| = %.6e",
                        reason.name, its, rhs_norm, solution_norm)
        else:
            logger.warning("KSP did not converge: reason %d (%s) after %d iterations",
                           int(reason), reason.name, its)
        return SolveReport(solution=system.solution, reason=reason, iterations=its,
                           rhs_norm=rhs_norm, solution_norm=solution_norm,
                           accuracy=accuracy, wall_time=wall)
