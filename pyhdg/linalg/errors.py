"""pyhdg.linalg.errors
Error types of the linear-algebra engine. Each carries an integer ``code``
with the same meaning as the corresponding PETSc error number.
"""


class EngineError(RuntimeError):
    """Base class for linear-algebra engine failures."""

    code = 76  # PETSC_ERR_PLIB

    def __init__(self, message: str, *, rank: int | None = None):
        self.rank = rank
        prefix = f"[rank {rank}] " if rank is not None else ""
        super().__init__(f"{prefix}{message} (error code {self.code})")


class AllocationError(EngineError):
    """An insertion exceeded the preallocated sparsity pattern."""

    code = 55  # PETSC_ERR_MEM


class OrderError(EngineError):
    """Operations were called in the wrong order (e.g. end before begin)."""

    code = 58  # PETSC_ERR_ORDER


class SizeMismatchError(EngineError):
    code = 60  # PETSC_ERR_ARG_SIZ


class OutOfRangeError(EngineError):
    code = 63  # PETSC_ERR_ARG_OUTOFRANGE


class WrongStateError(EngineError):
    """Object used in a state that does not allow the operation (unassembled, destroyed, ...)."""

    code = 73  # PETSC_ERR_ARG_WRONGSTATE
