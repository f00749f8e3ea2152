import numpy as np
import pytest

from pyhdg.parallel.comm import CommAbortedError, SerialComm, run_spmd


def test_serial_collectives_are_trivial():
    comm = SerialComm()
    assert (comm.rank, comm.size) == (0, 1)
    assert comm.allgather(3) == [3]
    assert comm.allreduce(2.5) == 2.5
    assert comm.exscan(7) == 0
    assert comm.alltoall(["a"]) == ["a"]
    assert comm.ialltoall([np.arange(3)]).wait()[0].tolist() == [0, 1, 2]
    with pytest.raises(ValueError):
        comm.alltoall(["a", "b"])


def test_thread_world_collectives():
    def body(comm):
        gathered = comm.allgather(comm.rank * 10)
        total = comm.allreduce(comm.rank + 1)
        biggest = comm.allreduce(float(comm.rank), op="max")
        offset = comm.exscan(comm.rank + 1)
        # rank r sends (r, dest) to every dest
        got = comm.alltoall([(comm.rank, d) for d in range(comm.size)])
        req = comm.ialltoall([comm.rank * 100 + d for d in range(comm.size)])
        late = req.wait()
        return gathered, total, biggest, offset, got, late, comm.bcast("root" if comm.rank == 0 else None)

    out = run_spmd(3, body)
    for rank, (gathered, total, biggest, offset, got, late, root) in enumerate(out):
        assert gathered == [0, 10, 20]
        assert total == 6
        assert biggest == 2.0
        assert offset == sum(range(1, rank + 1))
        assert got == [(src, rank) for src in range(3)]
        assert late == [src * 100 + rank for src in range(3)]
        assert root == "root"


def test_overlapping_nonblocking_exchanges_complete_in_order():
    def body(comm):
        a = comm.ialltoall([("a", comm.rank)] * comm.size)
        b = comm.ialltoall([("b", comm.rank)] * comm.size)
        comm.barrier()
        return a.wait(), b.wait()

    for a, b in run_spmd(2, body):
        assert a == [("a", 0), ("a", 1)]
        assert b == [("b", 0), ("b", 1)]


def test_failure_on_one_rank_aborts_the_world():
    def body(comm):
        if comm.rank == 1:
            raise ZeroDivisionError("boom")
        comm.barrier()  # would deadlock without the abort

    with pytest.raises(ZeroDivisionError, match="boom"):
        run_spmd(3, body)


def test_peers_see_comm_aborted():
    seen = []

    def body(comm):
        if comm.rank == 0:
            raise RuntimeError("rank 0 died")
        try:
            comm.allgather(comm.rank)
        except CommAbortedError:
            seen.append(comm.rank)
            raise

    with pytest.raises(RuntimeError, match="rank 0 died"):
        run_spmd(2, body)
    assert seen == [1]


def test_run_spmd_rejects_empty_world():
    with pytest.raises(ValueError):
        run_spmd(0, lambda comm: None)
