"""
Backend of the graph SLAM library: rigid transforms, the pose graph, its
spatial index and the optimizers that refine it.
"""

from .neighbor_index import NeighborIndex
from .pose_graph import Edge, PoseGraph, Vertex
from .se3 import SE3

__all__ = [
    "SE3",
    "NeighborIndex",
    "PoseGraph",
    "Vertex",
    "Edge",
]
