from .basis import FaceBasis, VolumeBasis, gauss_legendre, gauss_lobatto_points
from .analytic import ManufacturedSolution
__all__ = ['FaceBasis', 'VolumeBasis', 'gauss_legendre', 'gauss_lobatto_points', 'ManufacturedSolution']
