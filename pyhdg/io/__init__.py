from .logfiles import configure_logging, ResultFiles, CoordinatorFilter, timestamp
from .vtk import export_vtk
__all__ = ['configure_logging', 'ResultFiles', 'CoordinatorFilter', 'timestamp', 'export_vtk']
