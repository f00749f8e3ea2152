import pytest
import numpy as np

from pyhdg.core import StructuredMeshProvider, TraceDofHandler
from pyhdg.parallel.comm import SerialComm, run_spmd

DIRICHLET = (0, 1, 2)


def build(comm, level, order=1):
    part = StructuredMeshProvider(comm).refine(level)
    return TraceDofHandler(part, order, comm, DIRICHLET)


# --- Test Cases for TraceDofHandler ---

class TestTraceDofHandlerSerial:
    """
    Single process: everything is owned and the local layout is the global one.
    """

    def test_owned_equals_total_and_identity_scatter(self):
        # 1. ARRANGE / ACT: 2x2 mesh, order 1 (two DOFs per face)
        dh = build(SerialComm(), level=1)

        # 3. ASSERT: 4 interior + 2 Neumann faces are active
        assert dh.owned_faces == [1, 4, 8, 9, 10, 11]
        assert dh.n_owned == dh.n_global == 12
        assert dh.ownership_range == (0, 12)
        assert dh.n_local_buffer == 12
        assert dh.scatter_map().is_identity()

    def test_element_dofs_mark_dirichlet_faces(self):
        dh = build(SerialComm(), level=1)
        # element 0 has faces (0, 1, 6, 8); faces 0 and 6 are Dirichlet
        assert dh.element_dofs(0).tolist() == [-1, -1, 0, 1, -1, -1, 4, 5]
        assert dh.element_slots(0).tolist() == [-1, -1, 0, 1, -1, -1, 4, 5]
        assert dh.global_dofs(6).tolist() == [-1, -1]

    def test_connectivity_counts(self):
        dh = build(SerialComm(), level=1)
        n_owned, local, nonlocal_ = dh.count_local_connected_dofs()
        assert n_owned == 12
        assert not nonlocal_.any()
        # face 1 couples to itself, face 8 (element 0) and face 9 (element 1)
        assert local[:2].tolist() == [6, 6]
        # face 10 is on the top boundary next to element 2 only: faces 4, 8, 10
        k = dh.owned_faces.index(10)
        assert local[2 * k] == 6

    def test_negative_order(self):
        part = StructuredMeshProvider(SerialComm()).refine(1)
        with pytest.raises(ValueError):
            TraceDofHandler(part, -1, SerialComm(), DIRICHLET)


class TestTraceDofHandlerParallel:
    """
    Several simulated ranks: ranges, numbering consistency and determinism.
    """

    @pytest.mark.parametrize("nprocs", [1, 2, 3, 4])
    @pytest.mark.parametrize("level", [1, 2])
    def test_owned_ranges_partition_the_global_space(self, nprocs, level):
        # 1. ARRANGE / ACT
        out = run_spmd(nprocs, lambda comm: (build(comm, level).ownership_range, build(comm, level).n_global))

        # 3. ASSERT: contiguous, gap-free, overlap-free, same total everywhere
        ranges = [r for r, _ in out]
        totals = {t for _, t in out}
        assert len(totals) == 1
        total = totals.pop()
        assert ranges[0][0] == 0 and ranges[-1][1] == total
        for (lo0, hi0), (lo1, hi1) in zip(ranges, ranges[1:]):
            assert hi0 == lo1 and lo0 <= hi0
        serial_total = build(SerialComm(), level).n_global
        assert total == serial_total

    def test_shared_faces_have_the_same_numbers_everywhere(self):
        def body(comm):
            dh = build(comm, level=2, order=2)
            return {g: tuple(dh.global_dofs(g)) for g in dh.local_active_faces}

        seen = {}
        for numbering in run_spmd(3, body):
            for gid, dofs in numbering.items():
                assert seen.setdefault(gid, dofs) == dofs
        all_dofs = sorted(d for dofs in seen.values() for d in dofs)
        assert all_dofs == list(range(len(all_dofs)))

    def test_numbering_is_deterministic(self):
        def body(comm):
            part = StructuredMeshProvider(comm).refine(2)
            a = TraceDofHandler(part, 1, comm, DIRICHLET)
            b = TraceDofHandler(part, 1, comm, DIRICHLET)
            return (a.scatter_map().scatter_from.tolist() == b.scatter_map().scatter_from.tolist()
                    and np.array_equal(a.n_local_connected, b.n_local_connected))

        assert all(run_spmd(2, body))

    def test_ranks_without_elements(self):
        def body(comm):
            dh = build(comm, level=1)
            return dh.n_owned, dh.scatter_map().size, dh.n_global

        out = run_spmd(6, body)
        assert [o[0] for o in out[4:]] == [0, 0]
        assert [o[1] for o in out[4:]] == [0, 0]
        assert sum(o[0] for o in out) == out[0][2] == 12
