import numpy as np
from dataclasses import dataclass, field
from typing import Tuple, Optional

# Outward unit normals of the four local faces of a quad: x-, x+, y-, y+
LOCAL_FACE_NORMALS = np.array([[-1.0, 0.0], [1.0, 0.0], [0.0, -1.0], [0.0, 1.0]])
# Boundary ids of the four sides of the rectangle, same order as the local faces
BOUNDARY_X_MIN, BOUNDARY_X_MAX, BOUNDARY_Y_MIN, BOUNDARY_Y_MAX = 0, 1, 2, 3


@dataclass(slots=True)
class Face:
    gid: int
    axis: int                           # 0: vertical face (normal along x), 1: horizontal face
    vertices: Tuple[Tuple[float, float], Tuple[float, float]]
    left: Optional[int]                 # Element on the low side (x- or y-)
    right: Optional[int]                # Element on the high side (x+ or y+)
    boundary_id: Optional[int] = None   # Set for faces on the rectangle boundary
    normal: np.ndarray = field(init=False, default=None)  # Unit normal, left -> right

    def __post_init__(self):
        self.normal = np.array([1.0, 0.0]) if self.axis == 0 else np.array([0.0, 1.0])

    @property
    def length(self) -> float:
        (x0, y0), (x1, y1) = self.vertices
        return float(np.hypot(x1 - x0, y1 - y0))


@dataclass(slots=True)
class Element:
    id: int                             # Lexicographic element id, j*nx + i
    ij: Tuple[int, int]                 # Cell indices in the structured grid
    bounds: Tuple[float, float, float, float]  # (x0, x1, y0, y1)
    faces: Tuple[int, int, int, int]    # Global face ids in local order x-, x+, y-, y+
    neighbors: Tuple[Optional[int], ...] = field(default_factory=tuple)
    owner: int = 0                      # Rank owning the element

    @property
    def hx(self) -> float:
        return self.bounds[1] - self.bounds[0]

    @property
    def hy(self) -> float:
        return self.bounds[3] - self.bounds[2]

    def map_to_physical(self, xi: np.ndarray, eta: np.ndarray) -> np.ndarray:
        """Affine map of reference points in [-1, 1]^2 to the cell."""
        x0, x1, y0, y1 = self.bounds
        xi = np.asarray(xi, dtype=float)
        eta = np.asarray(eta, dtype=float)
        return np.column_stack([x0 + 0.5 * (xi + 1.0) * (x1 - x0),
                                y0 + 0.5 * (eta + 1.0) * (y1 - y0)])

    def boundary_id(self, lf: int) -> Optional[int]:
        """Boundary id of local face ``lf``, or ``None`` for an interior face."""
        return lf if self.neighbors[lf] is None else None
