import numpy as np
import pytest

from pyhdg.linalg import (DistVector, IndexSet, OrderError, OutOfRangeError, ScatterMap, VecScatter,
                          gather_local_solution)
from pyhdg.parallel.comm import SerialComm, run_spmd


class TestScatterMap:
    def test_identity_detection(self):
        assert ScatterMap(np.arange(4), np.arange(4)).is_identity()
        assert not ScatterMap([1, 0], [0, 1]).is_identity()
        assert ScatterMap([], []).is_identity()

    def test_apply_is_a_pure_permutation(self):
        src = np.array([10.0, 11.0, 12.0, 13.0])
        smap = ScatterMap(scatter_from=[3, 0, 2], scatter_to=[0, 1, 2])
        out = smap.apply(src)
        assert out.tolist() == [13.0, 10.0, 12.0]
        # back into a zero array at the original positions
        back = smap.inverse().apply(out, np.zeros(4))
        assert back.tolist() == [10.0, 0.0, 12.0, 13.0]

    def test_arrays_are_frozen_copies(self):
        frm = np.array([0, 1])
        smap = ScatterMap(frm, [1, 0])
        frm[0] = 7
        assert smap.scatter_from.tolist() == [0, 1]
        with pytest.raises(ValueError):
            smap.scatter_to[0] = 3

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            ScatterMap([0, 1], [0])


class TestVecScatter:
    def test_round_trip_equals_owner_values(self):
        n = 23

        def body(comm):
            v = DistVector(comm, global_size=n)
            lo, hi = v.ownership_range
            v.get_array()[:] = np.arange(lo, hi) * 1.5 + 1.0 / 3.0
            rng = np.random.default_rng(comm.rank)
            wanted = rng.choice(n, size=9, replace=False)
            buf = gather_local_solution(v, ScatterMap(wanted, np.arange(wanted.size)))
            return wanted, buf, v.allgather_array()

        for wanted, buf, full in run_spmd(3, body):
            # exact equality, values are copied not recomputed
            assert np.array_equal(buf, full[wanted])

    def test_begin_end_order(self):
        comm = SerialComm()
        v = DistVector(comm, 3)
        buf = np.zeros(3)
        sc = VecScatter(v, IndexSet([0, 1, 2]), buf, IndexSet([2, 1, 0]))
        with pytest.raises(OrderError):
            sc.end(v, buf)
        v.get_array()[:] = [1.0, 2.0, 3.0]
        sc.begin(v, buf)
        with pytest.raises(OrderError):
            sc.begin(v, buf)
        sc.end(v, buf)
        assert buf.tolist() == [3.0, 2.0, 1.0]

    def test_out_of_range_source(self):
        comm = SerialComm()
        v = DistVector(comm, 3)
        with pytest.raises(OutOfRangeError):
            VecScatter(v, IndexSet([5]), np.zeros(1), IndexSet([0]))

    def test_empty_rank_still_takes_part(self):
        def body(comm):
            v = DistVector(comm, 4 if comm.rank == 0 else 0)
            v.get_array()[:] = np.arange(v.local_size) + 100.0
            smap = ScatterMap([3, 1], [0, 1]) if comm.rank == 1 else ScatterMap([], [])
            return gather_local_solution(v, smap)

        first, second = run_spmd(2, body)
        assert first.size == 0
        assert second.tolist() == [103.0, 101.0]
