"""
Parallel: communicators (serial, in-process SPMD simulation, MPI).

``MPIComm`` lives in :mod:`pyhdg.parallel.mpi` so that importing this package
does not initialise MPI.
"""

from .comm import Communicator, Request, SerialComm, ThreadComm, CommAbortedError, run_spmd

__all__ = ["Communicator", "Request", "SerialComm", "ThreadComm", "CommAbortedError", "run_spmd"]
