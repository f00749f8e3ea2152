from .topology import Face, Element, LOCAL_FACE_NORMALS
from .mesh import MeshPartition, StructuredMeshProvider
from .dofhandler import TraceDofHandler
__all__=['Face','Element','LOCAL_FACE_NORMALS','MeshPartition','StructuredMeshProvider','TraceDofHandler']
