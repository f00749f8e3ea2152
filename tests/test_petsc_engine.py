import numpy as np
import pytest

pytest.importorskip("mpi4py")
pytest.importorskip("petsc4py")

from pyhdg.driver import DiffusionDriver, RunConfig
from pyhdg.linalg import EngineError, InsertMode, MatOption, NormType, ScatterMap, VecOption
from pyhdg.linalg.engine import select_engine
from pyhdg.linalg.petsc import PetscEngine, PetscKrylovSolver
from pyhdg.parallel.comm import SerialComm
from pyhdg.parallel.mpi import MPIComm


@pytest.fixture
def mpi_comm():
    comm = MPIComm()
    if comm.size != 1:
        pytest.skip("runs on a single MPI process")
    return comm


def laplacian_1d(engine, comm, n):
    d_nnz = np.full(n, 3)
    A = engine.create_matrix(comm, n, n, d_nnz=d_nnz, o_nnz=np.zeros(n, dtype=int))
    A.set_option(MatOption.ROW_ORIENTED, False)
    A.set_option(MatOption.SPD, True)
    ke = np.array([[1.0, -1.0], [-1.0, 1.0]])
    for e in range(-1, n):
        idx = np.array([e, e + 1 if e + 1 < n else -1])
        A.set_values(idx, idx, ke.ravel(order="F"), InsertMode.ADD_VALUES)
    A.assembly_begin()
    A.assembly_end()
    return A


def test_mpi_communicators_use_petsc(mpi_comm):
    assert isinstance(select_engine(mpi_comm), PetscEngine)


def test_matrix_assembly_skips_negative_indices(mpi_comm):
    A = laplacian_1d(PetscEngine(), mpi_comm, 5)
    dense = A.get_values(np.arange(5), np.arange(5))
    expected = 2 * np.eye(5) - np.eye(5, k=1) - np.eye(5, k=-1)
    assert np.allclose(dense, expected)


def test_insertion_beyond_preallocation_raises(mpi_comm):
    engine = PetscEngine()
    A = engine.create_matrix(mpi_comm, 3, 3, d_nnz=np.ones(3, dtype=int), o_nnz=np.zeros(3, dtype=int))
    A.set_values([0], [0], [1.0], InsertMode.ADD_VALUES)
    with pytest.raises(EngineError):
        A.set_values([0], [2], [1.0], InsertMode.ADD_VALUES)


def test_vector_duplicate_keeps_negative_index_option(mpi_comm):
    b = PetscEngine().create_vector(mpi_comm, 4, 4)
    b.set_option(VecOption.IGNORE_NEGATIVE_INDICES, True)
    x = b.duplicate()
    x.set_values([-1, 2], [5.0, 3.0], InsertMode.ADD_VALUES)
    x.assembly_begin()
    x.assembly_end()
    assert np.allclose(x.get_array(), [0.0, 0.0, 3.0, 0.0])
    assert x.norm(NormType.NORM_1) == pytest.approx(3.0)


def test_cg_with_gamg_and_options(mpi_comm):
    engine = PetscEngine()
    n = 30
    A = laplacian_1d(engine, mpi_comm, n)
    b = engine.create_vector(mpi_comm, n, n)
    b.set(1.0)
    x = b.duplicate()
    ksp = engine.create_solver(mpi_comm)
    assert isinstance(ksp, PetscKrylovSolver)
    ksp.set_operators(A)
    ksp.set_tolerances(rtol=1e-10)
    ksp.set_type("cg")
    ksp.set_from_options({"pc_gamg_threshold": "-1", "ksp_max_it": "200"})
    pc = ksp.get_pc()
    pc.set_type("gamg")
    pc.set_gamg_type("agg")
    pc.set_gamg_agg_nsmooths(1)
    ksp.solve(b, x)
    assert ksp.converged_reason.converged
    assert pc.type == "gamg"
    # x_i = (i + 1)(n - i) / 2 solves the Dirichlet Laplacian with unit load
    i = np.arange(n)
    assert np.allclose(x.get_array(), (i + 1) * (n - i) / 2.0, rtol=1e-6)
    ksp.destroy()


def test_scatter_into_local_buffer(mpi_comm):
    v = PetscEngine().create_vector(mpi_comm, 6, 6)
    v.set_values(np.arange(6), np.arange(6) * 10.0)
    v.assembly_begin()
    v.assembly_end()
    buf = PetscEngine().gather_local_solution(v, ScatterMap([5, 0, 3], [0, 1, 2]), 4)
    assert np.allclose(buf, [50.0, 0.0, 30.0, 0.0])


def test_cycles_agree_with_the_numpy_engine(mpi_comm, tmp_path):
    cfg = RunConfig(p_0=1, p_n=3, h_0=1, h_n=3, output_dir=str(tmp_path))

    petsc_results = DiffusionDriver(mpi_comm, cfg).run()
    numpy_results = DiffusionDriver(SerialComm(), cfg).run()

    for ours, ref in zip(petsc_results, numpy_results):
        assert ours.ok and ours.converged
        assert ours.n_dofs == ref.n_dofs
        assert ours.u_error == pytest.approx(ref.u_error, rel=1e-4)
        assert ours.q_error == pytest.approx(ref.q_error, rel=1e-4)
