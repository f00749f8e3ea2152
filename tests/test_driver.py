import logging
import os

import numpy as np
import pytest

from pyhdg.assembly.hdg_local import HDGDiffusionOperator
from pyhdg.core.dofhandler import TraceDofHandler
from pyhdg.driver import DiffusionDriver, RunConfig, main, parse_options
from pyhdg.io.logfiles import CONVERGENCE_FILE, EXECUTION_TIME_FILE
from pyhdg.parallel.comm import SerialComm, run_spmd


# --- Command line ---

class TestParseOptions:
    def test_defaults(self):
        cfg = parse_options([])
        assert (cfg.p_0, cfg.p_n, cfg.h_0, cfg.h_n) == (1, 2, 2, 4)
        assert cfg.face_basis == "legendre"
        assert not cfg.amr and not cfg.vtk
        assert cfg.cycles() == [(1, 2), (1, 3)]

    def test_values_and_forwarded_solver_options(self):
        cfg = parse_options(["-p_0", "2", "-p_n", "4", "-h_0", "1", "-h_n", "2", "-amr", "1",
                             "-face_basis", "lagrange", "-ksp_rtol", "1e-10", "-ksp_monitor"])
        assert cfg.cycles() == [(2, 1), (3, 1)]
        assert cfg.amr
        assert cfg.face_basis == "lagrange"
        assert cfg.solver_options == {"ksp_rtol": "1e-10", "ksp_monitor": ""}

    def test_bad_values_fall_back_with_a_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger="pyhdg.driver"):
            cfg = parse_options(["-face_basis", "hermite", "-h_0", "two", "-p_n", "-3", "-amr", "5"])
        assert cfg.face_basis == "legendre"
        assert (cfg.h_0, cfg.p_n) == (2, 2)
        assert not cfg.amr
        text = caplog.text
        assert "hermite" in text and "lagrange" in text
        assert "-h_0" in text

    def test_only_coordinator_warns(self, caplog):
        with caplog.at_level(logging.WARNING, logger="pyhdg.driver"):
            parse_options(["-face_basis", "hermite"], rank=3)
        assert caplog.records == []


# --- Cycles ---

class TestDiffusionDriver:
    def test_two_ranks_converge_under_refinement(self, tmp_path):
        cfg = RunConfig(p_0=1, p_n=2, h_0=2, h_n=4, output_dir=str(tmp_path))

        out = run_spmd(2, lambda comm: DiffusionDriver(comm, cfg).run())

        for results in out:
            assert [(r.order, r.level) for r in results] == [(1, 2), (1, 3)]
            assert all(r.ok and r.converged for r in results)
            coarse, fine = results
            assert fine.u_error < coarse.u_error
            assert fine.q_error < coarse.q_error
            assert fine.n_dofs > coarse.n_dofs
            assert np.isfinite(fine.accuracy)
            assert fine.accuracy < coarse.accuracy
        # collective quantities agree across ranks
        assert out[0][1].u_error == out[1][1].u_error
        assert sum(r[1].n_owned for r in out) == out[0][1].n_dofs

    def test_single_rank_single_cycle(self, tmp_path):
        cfg = RunConfig(p_0=1, p_n=2, h_0=1, h_n=2, output_dir=str(tmp_path))
        (result,) = DiffusionDriver(SerialComm(), cfg).run()
        assert result.ok and result.converged
        assert result.n_dofs == result.n_owned == 12

    def test_more_ranks_than_elements(self, tmp_path):
        cfg = RunConfig(p_0=1, p_n=2, h_0=1, h_n=2, output_dir=str(tmp_path))

        out = run_spmd(6, lambda comm: DiffusionDriver(comm, cfg).run()[0])

        assert all(r.ok and r.converged for r in out)
        assert [r.n_owned for r in out] == [4, 2, 4, 2, 0, 0]
        assert len({r.u_error for r in out}) == 1

    def test_failed_cycle_does_not_stop_the_run(self, monkeypatch, tmp_path):
        # no preallocation at all: every cycle fails during the final assembly
        def no_room(self):
            return self.n_owned, np.zeros(self.n_owned, dtype=np.int64), np.zeros(self.n_owned, dtype=np.int64)

        monkeypatch.setattr(TraceDofHandler, "count_local_connected_dofs", no_room)
        cfg = RunConfig(p_0=1, p_n=2, h_0=1, h_n=3, output_dir=str(tmp_path))

        out = run_spmd(2, lambda comm: DiffusionDriver(comm, cfg).run())

        for results in out:
            assert len(results) == 2
            assert all(not r.ok and r.error.startswith("AllocationError") for r in results)

    def test_vtk_output(self, tmp_path):
        pytest.importorskip("meshio")
        cfg = RunConfig(p_0=1, p_n=2, h_0=1, h_n=2, vtk=True, output_dir=str(tmp_path))
        (result,) = DiffusionDriver(SerialComm(), cfg).run()
        assert result.vtk_file is not None
        assert os.path.exists(result.vtk_file)


# --- Entry point ---

def test_main_writes_the_result_files(tmp_path):
    rc = main(["-h_0", "1", "-h_n", "3", "-output_dir", str(tmp_path)], comm=SerialComm())

    assert rc == 0
    execution = (tmp_path / EXECUTION_TIME_FILE).read_text()
    convergence = (tmp_path / CONVERGENCE_FILE).read_text()
    assert "Entering assembly" in execution
    assert "Converged reason is:" in execution
    assert "Number of iterations is:" in execution
    lines = [ln for ln in convergence.splitlines() if ln.strip()]
    assert len(lines) == 2
    assert "FAILED" not in convergence


def test_result_files_are_truncated_per_run(tmp_path):
    for _ in range(2):
        main(["-h_0", "1", "-h_n", "2", "-output_dir", str(tmp_path)], comm=SerialComm())
    convergence = (tmp_path / CONVERGENCE_FILE).read_text()
    assert len([ln for ln in convergence.splitlines() if ln.strip()]) == 1


def test_unexpected_error_fails_only_its_cycle(monkeypatch, tmp_path):
    original = HDGDiffusionOperator.compute_local_block

    def broken_for_order_two(self, elem, order):
        if order == 2:
            raise RuntimeError("element kernel failed")
        return original(self, elem, order)

    monkeypatch.setattr(HDGDiffusionOperator, "compute_local_block", broken_for_order_two)

    rc = main(["-p_0", "1", "-p_n", "4", "-h_0", "1", "-h_n", "2", "-output_dir", str(tmp_path)],
              comm=SerialComm())

    assert rc == 0
    lines = [ln for ln in (tmp_path / CONVERGENCE_FILE).read_text().splitlines() if ln.strip()]
    assert len(lines) == 3
    failed = [ln for ln in lines if "FAILED" in ln]
    assert len(failed) == 1
    assert "p   2" in failed[0] and "RuntimeError: element kernel failed" in failed[0]


def test_negative_gamg_threshold_option(tmp_path):
    rc = main(["-h_0", "1", "-h_n", "3", "-pc_gamg_threshold", "-1", "-output_dir", str(tmp_path)],
              comm=SerialComm())

    assert rc == 0
    convergence = (tmp_path / CONVERGENCE_FILE).read_text()
    assert "FAILED" not in convergence
