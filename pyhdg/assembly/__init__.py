from .hdg_local import DiffusionProblem, HDGDiffusionOperator, LocalBlock, EliminationOperator
from .hdg_global import GlobalSystem, HDGGlobalAssembler
__all__ = ['DiffusionProblem', 'HDGDiffusionOperator', 'LocalBlock', 'EliminationOperator',
           'GlobalSystem', 'HDGGlobalAssembler']
