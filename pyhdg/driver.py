"""pyhdg.driver
Cycle orchestration and command line of the HDG diffusion solver.

For every polynomial order in ``[p_0, p_n)`` and refinement level in
``[h_0, h_n)`` one cycle runs

    refine -> count DOFs -> assemble -> solve -> scatter -> reconstruct -> output

and yields a :class:`CycleResult`. Failures of one cycle are logged and the
loop moves on.

Usage::

    mpiexec -n 8 pyhdg-diffusion -h_0 2 -h_n 6 -p_0 1 -p_n 3 -amr 0 -face_basis legendre
"""
from __future__ import annotations

import argparse
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from pyhdg.assembly.hdg_global import GlobalSystem, HDGGlobalAssembler
from pyhdg.assembly.hdg_local import DiffusionProblem, HDGDiffusionOperator
from pyhdg.core.dofhandler import TraceDofHandler
from pyhdg.core.mesh import MeshPartition, StructuredMeshProvider
from pyhdg.fem.basis import FACE_BASES
from pyhdg.io.logfiles import ResultFiles, configure_logging
from pyhdg.io.vtk import export_vtk
from pyhdg.linalg.errors import EngineError
from pyhdg.parallel.comm import CommAbortedError, Communicator
from pyhdg.solvers.linear_solver import LinearSolverDriver
from pyhdg.solvers.static_condensation import LocalReconstructor, field_errors

logger = logging.getLogger(__name__)

HELP_LINE = "mpiexec -n 8 pyhdg-diffusion -h_0 2 -h_n 12 -p_0 1 -p_n 2 -amr 1"
FORWARDED_PREFIXES = ("ksp_", "pc_")
THREAD_LIMIT_VARS = ("OMP_NUM_THREADS", "OPENBLAS_NUM_THREADS", "MKL_NUM_THREADS")


# ----------------------------------------------------------------------------
#  Configuration
# ----------------------------------------------------------------------------
@dataclass(frozen=True)
class RunConfig:
    p_0: int = 1
    p_n: int = 2
    h_0: int = 2
    h_n: int = 4
    amr: bool = False
    face_basis: str = "legendre"
    vtk: bool = False
    output_dir: str = "."
    log_level: str = "INFO"
    solver_options: Dict[str, str] = field(default_factory=dict)

    def cycles(self) -> List[Tuple[int, int]]:
        """(order, level) pairs in execution order."""
        return [(p, h) for p in range(self.p_0, self.p_n) for h in range(self.h_0, self.h_n)]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pyhdg-diffusion",
        description="HDG solver for the mixed diffusion problem on refined meshes.",
        epilog=HELP_LINE,
        allow_abbrev=False,
    )
    # integers are read as strings so that bad values fall back to defaults
    parser.add_argument("-p_0", default=None, help="first polynomial order (default 1)")
    parser.add_argument("-p_n", default=None, help="end of the order range, exclusive (default 2)")
    parser.add_argument("-h_0", default=None, help="first refinement level (default 2)")
    parser.add_argument("-h_n", default=None, help="end of the level range, exclusive (default 4)")
    parser.add_argument("-amr", default=None, help="adaptive refinement flag 0/1 (default 0)")
    parser.add_argument("-face_basis", default=None, help="legendre (modal, default) or lagrange (nodal)")
    parser.add_argument("-vtk", default=None, help="write VTK output 0/1 (default 0)")
    parser.add_argument("-output_dir", default=".", help="directory of the result files")
    parser.add_argument("-log_level", default="INFO", help="logging level")
    return parser


def _int_option(value: Optional[str], name: str, default: int, rank: int) -> int:
    if value is None:
        return default
    try:
        out = int(value)
    except ValueError:
        out = -1
    if out < 0:
        if rank == 0:
            logger.warning("Option -%s expects a non-negative integer, got %r; using %d.", name, value, default)
        return default
    if rank == 0:
        logger.info("Used -%s option; value is: %d", name, out)
    return out


def _forwarded_options(extras: Sequence[str], rank: int) -> Dict[str, str]:
    """Collect ``-ksp_*`` / ``-pc_*`` options (with their values) left over by argparse."""
    out: Dict[str, str] = {}
    i = 0
    while i < len(extras):
        token = extras[i]
        key = token.lstrip("-")
        if token.startswith("-") and key.startswith(FORWARDED_PREFIXES):
            nxt = extras[i + 1] if i + 1 < len(extras) else None
            if nxt is not None and not (nxt.startswith("-") and nxt.lstrip("-")[:1].isalpha()):
                out[key] = nxt
                i += 2
                continue
            out[key] = ""
        elif rank == 0:
            logger.warning("Ignoring unrecognised option %r.", token)
        i += 1
    return out


def parse_options(argv: Optional[Sequence[str]] = None, rank: int = 0) -> RunConfig:
    """Command line -> :class:`RunConfig`. Unusable values are replaced by defaults with a warning."""
    args, extras = _build_parser().parse_known_args(argv)
    d = RunConfig()
    face_basis = d.face_basis
    if args.face_basis is not None:
        if args.face_basis in FACE_BASES:
            face_basis = args.face_basis
        elif rank == 0:
            logger.warning("The face basis type should either be <lagrange> (nodal) or <legendre> (modal, "
                           "default); got %r, using %s.\n%s", args.face_basis, d.face_basis, HELP_LINE)
    amr = _int_option(args.amr, "amr", 0, rank)
    if amr not in (0, 1):
        if rank == 0:
            logger.warning("Option -amr must be 0 or 1, got %d; adaptive refinement is off.", amr)
        amr = 0
    return RunConfig(
        p_0=_int_option(args.p_0, "p_0", d.p_0, rank),
        p_n=_int_option(args.p_n, "p_n", d.p_n, rank),
        h_0=_int_option(args.h_0, "h_0", d.h_0, rank),
        h_n=_int_option(args.h_n, "h_n", d.h_n, rank),
        amr=bool(amr),
        face_basis=face_basis,
        vtk=bool(_int_option(args.vtk, "vtk", 0, rank)),
        output_dir=args.output_dir,
        log_level=args.log_level,
        solver_options=_forwarded_options(extras, rank),
    )


# ----------------------------------------------------------------------------
#  Results
# ----------------------------------------------------------------------------
@dataclass
class CycleResult:
    order: int
    level: int
    n_dofs: int = 0
    n_owned: int = 0
    reason: Optional[int] = None
    iterations: int = 0
    converged: bool = False
    rhs_norm: float = float("nan")
    solution_norm: float = float("nan")
    accuracy: float = float("nan")
    u_error: float = float("nan")
    q_error: float = float("nan")
    h: float = float("nan")
    timings: Dict[str, float] = field(default_factory=dict)
    vtk_file: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def summary(self) -> str:
        if self.error is not None:
            return f"p {self.order:3d} h {self.level:3d} FAILED: {self.error}"
        return (f"p {self.order:3d} h {self.level:3d} dofs {self.n_dofs:9d} reason {self.reason:3d} "
                f"its {self.iterations:5d} accuracy {self.accuracy:.6e} "
                f"u_err {self.u_error:.6e} q_err {self.q_error:.6e}")


# ----------------------------------------------------------------------------
#  Orchestrator
# ----------------------------------------------------------------------------
class DiffusionDriver:
    """Runs the (order, level) cycles on one rank of ``comm``; every rank runs the same sequence."""

    def __init__(self, comm: Communicator, config: Optional[RunConfig] = None,
                 problem: Optional[DiffusionProblem] = None, *,
                 bounds=(0.0, 1.0, 0.0, 1.0), n_base: int = 1):
        self.comm = comm
        self.config = config or RunConfig()
        self.problem = problem or DiffusionProblem()
        self.provider = StructuredMeshProvider(comm, bounds, n_base, adaptive=self.config.amr)
        self.operator = HDGDiffusionOperator(self.problem, face_basis=self.config.face_basis)
        self.assembler = HDGGlobalAssembler(self.operator)
        self.solver = LinearSolverDriver(options=self.config.solver_options)
        self.files: Optional[ResultFiles] = None

    def _phase(self, text: str, level: int) -> None:
        if self.files is not None:
            self.files.phase(f"Rank {self.comm.rank:5d} is in cycle {level:5d} and {text}")

    def setup_system(self, order: int, level: int) -> Tuple[MeshPartition, TraceDofHandler]:
        """Refine and number the trace DOFs (collective)."""
        partition = self.provider.refine(level)
        self._phase("is entering counter", level)
        dh = TraceDofHandler(partition, order, self.comm, self.problem.dirichlet_ids)
        self._phase("has exited  counter", level)
        return partition, dh

    def run_cycle(self, order: int, level: int) -> CycleResult:
        result = CycleResult(order=order, level=level)
        system: Optional[GlobalSystem] = None
        files = self.files
        t = self.comm.wtime
        try:
            partition, dh = self.setup_system(order, level)
            result.n_dofs, result.n_owned = dh.n_global, dh.n_owned
            result.h = partition.element_size()

            system = self.assembler.create_system(dh)
            if files:
                files.phase("Entering assembly")
            t0 = t()
            self.assembler.assemble(system)
            self.assembler.finalize(system)
            result.timings["assembly"] = t() - t0
            if files:
                files.phase("Has finished assembly")
                files.phase("Entering solver")

            report = self.solver.solve(system)
            result.timings["solve"] = report.wall_time
            result.reason, result.iterations = int(report.reason), report.iterations
            result.converged = report.converged
            result.rhs_norm, result.solution_norm = report.rhs_norm, report.solution_norm
            result.accuracy = report.accuracy
            if files:
                files.note(f"Converged reason is: {int(report.reason)}")
                files.note(f"Number of iterations is: {report.iterations}")
                files.phase("Finished solver")

            buffer = system.engine.gather_local_solution(system.solution, dh.scatter_map(), dh.n_local_buffer)

            if files:
                files.phase("Entering local solver")
            t0 = t()
            fld = LocalReconstructor(dh).reconstruct(buffer, system.eliminations)
            result.timings["local_solve"] = t() - t0
            if files:
                files.phase("Finished local solver")

            result.u_error, result.q_error = field_errors(fld, self.operator, dh, self.comm)
            if self.config.vtk:
                fname = os.path.join(self.config.output_dir,
                                     f"solution-p{order}-h{level}-rank{self.comm.rank:04d}.vtu")
                result.vtk_file = export_vtk(fname, partition, fld)
        except CommAbortedError:
            raise
        except Exception as exc:
            # any failure ends this cycle only; the next one starts from a fresh system
            result.error = f"{type(exc).__name__}: {exc}"
            if isinstance(exc, EngineError):
                logger.error("cycle (order %d, level %d) failed: %s", order, level, result.error)
            else:
                logger.exception("cycle (order %d, level %d) failed: %s", order, level, result.error)
        finally:
            if system is not None:
                system.destroy()

        if files:
            files.result(result.summary())
        if self.comm.is_coordinator:
            logger.info("%s", result.summary())
        return result

    def run(self) -> List[CycleResult]:
        """All cycles; the result files are rewritten on the coordinator."""
        cfg = self.config
        results: List[CycleResult] = []
        with ResultFiles(self.comm.rank, cfg.output_dir) as files:
            self.files = files
            if self.comm.is_coordinator:
                logger.info("%d ranks, orders [%d, %d), levels [%d, %d), face basis %s",
                            self.comm.size, cfg.p_0, cfg.p_n, cfg.h_0, cfg.h_n, cfg.face_basis)
            try:
                for order, level in cfg.cycles():
                    results.append(self.run_cycle(order, level))
            finally:
                self.files = None
        return results


def limit_thread_pools() -> None:
    """Keep BLAS / OpenMP pools at one thread unless the user set them."""
    for var in THREAD_LIMIT_VARS:
        os.environ.setdefault(var, "1")


def main(argv: Optional[Sequence[str]] = None, comm: Optional[Communicator] = None) -> int:
    limit_thread_pools()
    if comm is None:
        from pyhdg.parallel.mpi import MPIComm
        comm = MPIComm()
    pre = argparse.ArgumentParser(add_help=False, allow_abbrev=False)
    pre.add_argument("-log_level", default=None)
    level = pre.parse_known_args(argv)[0].log_level
    configure_logging(comm.rank, level)
    if comm.is_coordinator:
        logger.info("%s", HELP_LINE)

    config = parse_options(argv, comm.rank)
    DiffusionDriver(comm, config).run()
    return 0
