"""pyhdg.assembly.hdg_global
Distributed assembly of the condensed HDG trace system.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict

import numpy as np

from pyhdg.assembly.hdg_local import EliminationOperator, HDGDiffusionOperator
from pyhdg.core.dofhandler import TraceDofHandler
from pyhdg.linalg.distributed import DistMatrix, DistVector
from pyhdg.linalg.engine import select_engine
from pyhdg.linalg.types import InsertMode, MatOption, VecOption

logger = logging.getLogger(__name__)


@dataclass
class GlobalSystem:
    """Matrix and vectors of one (order, level) cycle. Destroy it at the end of the cycle."""

    dof_handler: TraceDofHandler
    matrix: DistMatrix
    rhs: DistVector
    solution: DistVector
    exact: DistVector
    eliminations: Dict[int, EliminationOperator] = field(default_factory=dict)
    finalized: bool = False
    engine: Any = None

    def destroy(self) -> None:
        for obj in (self.matrix, self.rhs, self.solution, self.exact):
            obj.destroy()
        self.eliminations.clear()
        self.finalized = False


class HDGGlobalAssembler:
    """Drives the element operator over the owned elements and fills a :class:`GlobalSystem`."""

    def __init__(self, operator: HDGDiffusionOperator, engine=None):
        self.operator = operator
        self.engine = engine

    def create_system(self, dof_handler: TraceDofHandler) -> GlobalSystem:
        """
        Allocate the cycle's matrix and vectors (collective).

        The matrix is preallocated from the connectivity counts of
        ``dof_handler``, takes column-major value blocks and is flagged SPD.
        The right-hand side ignores negative (Dirichlet) indices; solution and
        exact vectors are duplicates of it. Objects come from the assembler's
        engine, or from the engine of the communicator when none was given.
        """
        comm = dof_handler.comm
        engine = self.engine or select_engine(comm)
        n_owned, d_nnz, o_nnz = dof_handler.count_local_connected_dofs()
        A = engine.create_matrix(comm, n_owned, dof_handler.n_global, d_nnz=d_nnz, o_nnz=o_nnz)
        A.set_option(MatOption.ROW_ORIENTED, False)
        A.set_option(MatOption.SPD, True)

        b = engine.create_vector(comm, n_owned, dof_handler.n_global)
        b.set_option(VecOption.IGNORE_NEGATIVE_INDICES, True)
        x = b.duplicate()
        exact = b.duplicate()
        logger.debug("rank %d: system rows [%d, %d) of %d", comm.rank, *A.ownership_range,
                     dof_handler.n_global)
        return GlobalSystem(dof_handler=dof_handler, matrix=A, rhs=b, solution=x, exact=exact,
                            engine=engine)

    def assemble(self, system: GlobalSystem) -> Dict[int, EliminationOperator]:
        """Insert every owned element's contributions; off-process entries are stashed."""
        dh = system.dof_handler
        order = dh.order
        for eid in dh.partition.owned_elements:
            elem = dh.partition.element(eid)
            block = self.operator.compute_local_block(elem, order)
            dofs = dh.element_dofs(elem.id)
            # column-major flattening matches ROW_ORIENTED=False
            system.matrix.set_values(dofs, dofs, block.coupling.ravel(order="F"), InsertMode.ADD_VALUES)
            system.rhs.set_values(dofs, block.rhs, InsertMode.ADD_VALUES)
            system.exact.set_values(dofs, self.operator.exact_trace(elem, order), InsertMode.INSERT_VALUES)
            system.eliminations[elem.id] = block.elimination
        return system.eliminations

    def finalize(self, system: GlobalSystem) -> None:
        """Assembly begin/end on the matrix and vectors; every rank must call it."""
        system.matrix.assembly_begin()
        system.rhs.assembly_begin()
        system.exact.assembly_begin()
        system.matrix.assembly_end()
        system.rhs.assembly_end()
        system.exact.assembly_end()
        system.finalized = True
