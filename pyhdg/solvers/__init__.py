from .linear_solver import LinearSolverDriver, LinearSolverParameters, SolveReport
from .static_condensation import LocalReconstructor, ReconstructedField, field_errors
__all__ = ['LinearSolverDriver', 'LinearSolverParameters', 'SolveReport',
           'LocalReconstructor', 'ReconstructedField', 'field_errors']
