import numpy as np
import pytest

from pyhdg.assembly import DiffusionProblem, HDGDiffusionOperator, HDGGlobalAssembler
from pyhdg.core import StructuredMeshProvider, TraceDofHandler
from pyhdg.linalg import gather_local_solution
from pyhdg.parallel.comm import SerialComm, run_spmd
from pyhdg.solvers import LinearSolverDriver, LocalReconstructor, field_errors


def solve_and_reconstruct(comm, problem, order, level, face_basis="legendre"):
    """One full cycle without the driver: number, assemble, solve, scatter, reconstruct."""
    part = StructuredMeshProvider(comm).refine(level)
    dh = TraceDofHandler(part, order, comm, problem.dirichlet_ids)
    op = HDGDiffusionOperator(problem, face_basis=face_basis)
    assembler = HDGGlobalAssembler(op)
    system = assembler.create_system(dh)
    assembler.assemble(system)
    assembler.finalize(system)
    report = LinearSolverDriver().solve(system)
    buffer = gather_local_solution(system.solution, dh.scatter_map(), dh.n_local_buffer)
    fld = LocalReconstructor(dh).reconstruct(buffer, system.eliminations)
    errors = field_errors(fld, op, dh, comm)
    system.destroy()
    return report, fld, errors


def test_rerun_is_bit_identical():
    problem = DiffusionProblem()

    def body(comm):
        _, first, _ = solve_and_reconstruct(comm, problem, 2, 2)
        _, second, _ = solve_and_reconstruct(comm, problem, 2, 2)
        return all(np.array_equal(first.u[e], second.u[e]) and np.array_equal(first.q[e], second.q[e])
                   for e in first.element_ids)

    assert all(run_spmd(2, body))


@pytest.mark.parametrize("nprocs", [1, 3])
def test_linear_solution_is_recovered(linear_solution, nprocs):
    problem = DiffusionProblem(exact=linear_solution)

    def body(comm):
        report, _, (eu, eq) = solve_and_reconstruct(comm, problem, 1, 2)
        return report.converged, eu, eq

    for converged, eu, eq in run_spmd(nprocs, body):
        assert converged
        assert eu < 1e-6
        assert eq < 1e-5


def test_face_bases_agree_after_the_global_solve(smooth_solution):
    problem = DiffusionProblem(exact=smooth_solution)
    comm = SerialComm()
    _, _, modal = solve_and_reconstruct(comm, problem, 2, 2, "legendre")
    _, _, nodal = solve_and_reconstruct(comm, problem, 2, 2, "lagrange")
    assert modal == pytest.approx(nodal, rel=1e-5)


def test_every_owned_element_is_reconstructed():
    def body(comm):
        _, fld, _ = solve_and_reconstruct(comm, DiffusionProblem(), 1, 1)
        return fld.element_ids

    ids = run_spmd(3, body)
    assert sorted(e for part in ids for e in part) == [0, 1, 2, 3]


def test_buffer_size_mismatch():
    comm = SerialComm()
    part = StructuredMeshProvider(comm).refine(1)
    dh = TraceDofHandler(part, 1, comm, (0, 1, 2))
    with pytest.raises(ValueError):
        LocalReconstructor(dh).reconstruct(np.zeros(dh.n_local_buffer + 1), {})
