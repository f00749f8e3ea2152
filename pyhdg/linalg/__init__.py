from .errors import (EngineError, AllocationError, OrderError, SizeMismatchError,
                     OutOfRangeError, WrongStateError)
from .types import InsertMode, NormType, VecOption, MatOption
from .layout import Layout
from .distributed import DistVector, DistMatrix
from .scatter import IndexSet, ScatterMap, VecScatter, gather_local_solution
from .krylov import ConvergedReason, Preconditioner, KrylovSolver
from .engine import NumpyEngine, select_engine

__all__ = [
    'EngineError', 'AllocationError', 'OrderError', 'SizeMismatchError', 'OutOfRangeError',
    'WrongStateError', 'InsertMode', 'NormType', 'VecOption', 'MatOption',
    'Layout', 'DistVector', 'DistMatrix', 'IndexSet', 'ScatterMap', 'VecScatter',
    'gather_local_solution', 'ConvergedReason', 'Preconditioner', 'KrylovSolver',
    'NumpyEngine', 'select_engine',
]
