"""pyhdg.solvers.static_condensation
Back-substitution of the volume unknowns once the trace system is solved.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Tuple

import numpy as np

from pyhdg.assembly.hdg_local import EliminationOperator, HDGDiffusionOperator
from pyhdg.core.dofhandler import TraceDofHandler
from pyhdg.parallel.comm import Communicator

logger = logging.getLogger(__name__)


@dataclass
class ReconstructedField:
    """Volume coefficients per owned element: ``u[eid]`` (n_vol,) and ``q[eid]`` (2, n_vol)."""

    order: int
    u: Dict[int, np.ndarray] = field(default_factory=dict)
    q: Dict[int, np.ndarray] = field(default_factory=dict)
    trace: Dict[int, np.ndarray] = field(default_factory=dict)

    @property
    def element_ids(self):
        return sorted(self.u)


class LocalReconstructor:
    """Purely local: no communication, deterministic for fixed inputs."""

    def __init__(self, dof_handler: TraceDofHandler):
        self.dof_handler = dof_handler

    def element_trace(self, buffer: np.ndarray, eid: int) -> np.ndarray:
        """Trace values of one element from the local buffer; Dirichlet slots are left at zero."""
        slots = self.dof_handler.element_slots(eid)
        trace = np.zeros(slots.size)
        active = slots >= 0
        trace[active] = buffer[slots[active]]
        return trace

    def reconstruct(self, buffer: np.ndarray,
                    eliminations: Mapping[int, EliminationOperator]) -> ReconstructedField:
        buffer = np.asarray(buffer, dtype=float)
        if buffer.size != self.dof_handler.n_local_buffer:
            raise ValueError(f"local buffer has {buffer.size} entries, "
                             f"expected {self.dof_handler.n_local_buffer}")
        out = ReconstructedField(order=self.dof_handler.order)
        for eid in self.dof_handler.partition.owned_elements:
            eid = int(eid)
            elim = eliminations[eid]
            trace = self.element_trace(buffer, eid)
            u, q = elim.reconstruct(trace)
            out.u[eid] = u
            out.q[eid] = q
            out.trace[eid] = np.where(elim.dirichlet_mask, elim.dirichlet_values, trace)
        return out


def field_errors(fld: ReconstructedField, operator: HDGDiffusionOperator,
                 dof_handler: TraceDofHandler, comm: Communicator) -> Tuple[float, float]:
    """Global L2 errors of ``u`` and ``q`` against the exact solution (collective)."""
    eu2 = eq2 = 0.0
    for eid in fld.element_ids:
        elem = dof_handler.partition.element(eid)
        a, b = operator.l2_errors(elem, fld.order, fld.u[eid], fld.q[eid])
        eu2 += a
        eq2 += b
    eu2 = comm.allreduce(eu2)
    eq2 = comm.allreduce(eq2)
    return float(np.sqrt(eu2)), float(np.sqrt(eq2))
