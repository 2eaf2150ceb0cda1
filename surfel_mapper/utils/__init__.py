from .profiler import MappingProfiler
from .fusion import weighted_fusion, fuse_normals
from .io import CodeTimer
from .pcd import save_pcd

__all__ = ['MappingProfiler', 'weighted_fusion', 'fuse_normals', 'CodeTimer', 'save_pcd']
