import os
import numpy as np
import meshio

from pyhdg.core.mesh import MeshPartition
from pyhdg.fem.basis import VolumeBasis
from pyhdg.solvers.static_condensation import ReconstructedField

# reference corners in VTK quad order
_CORNERS_XI = np.array([-1.0, 1.0, 1.0, -1.0])
_CORNERS_ETA = np.array([-1.0, -1.0, 1.0, 1.0])


def export_vtk(
    filename: str,
    partition: MeshPartition,
    fld: ReconstructedField,
):
    """
    Export the reconstructed field of the owned elements to a VTK (.vtu) file.

    The field is discontinuous, so every element gets its own four points:
    ``u`` and ``q`` are point data evaluated at the element corners, the cell
    averages of ``u`` and the owning rank are cell data.

    Args:
        filename: Output path, e.g. 'results/solution-p1-h3-rank0000.vtu'.
        partition: This rank's mesh partition.
        fld: Volume coefficients from the local reconstructor.
    """
    basis = VolumeBasis(fld.order)
    V = basis.tabulate(_CORNERS_XI, _CORNERS_ETA)[0]          # (n_vol, 4)

    eids = fld.element_ids
    points = np.zeros((4 * len(eids), 3))
    cells = np.arange(4 * len(eids), dtype=np.int64).reshape(-1, 4)
    u_pt = np.zeros(4 * len(eids))
    q_pt = np.zeros((4 * len(eids), 3))
    u_cell = np.zeros(len(eids))
    for k, eid in enumerate(eids):
        elem = partition.element(eid)
        points[4 * k:4 * k + 4, :2] = elem.map_to_physical(_CORNERS_XI, _CORNERS_ETA)
        u_pt[4 * k:4 * k + 4] = fld.u[eid] @ V
        q_pt[4 * k:4 * k + 4, :2] = (fld.q[eid] @ V).T
        # cell average of a Legendre expansion is its constant coefficient
        u_cell[k] = fld.u[eid][0]

    mesh = meshio.Mesh(
        points,
        [meshio.CellBlock("quad", cells)],
        point_data={"u": u_pt, "q": q_pt},
        cell_data={"u_mean": [u_cell], "rank": [np.full(len(eids), partition.rank, dtype=np.int64)]},
    )
    os.makedirs(os.path.dirname(filename) or ".", exist_ok=True)
    mesh.write(filename)
    return filename
