"""
PyTorch Graph SLAM backend

A concurrently fed, incrementally optimized pose graph for visual SLAM.
Frontends push frames made of visual clusters; a consumer thread turns them
into graph vertices, loop closing queries nearby vertices and adds verified
edges, and the graph is periodically refined by nonlinear least squares.

Major Components:
- Cluster / Frame: the data produced by the frontend
- FrameQueue: thread-safe FIFO between frontend and graph
- PoseGraph: vertices, edges, cluster/frame index, optimization, ingestion loop
- NeighborIndex: loop closure candidate search
- Persistence: JSON and g2o snapshots of the graph
"""
from graphslam.backend import SE3, NeighborIndex, PoseGraph
from graphslam.backend.optimization import OptimizationResult
from graphslam.camera import PinholeCameraModel
from graphslam.cluster import Cluster, KeyPoint, make_cluster
from graphslam.config import DEFAULT_CONFIG, load_config, merge_config
from graphslam.errors import GraphSLAMError, InvalidVertexReference, OptimizationDivergence
from graphslam.frame import Frame
from graphslam.frame_queue import FrameQueue
from graphslam.loop_closing import LoopClosing
from graphslam.persistence import GraphSnapshot, load_graph, save_graph
from graphslam.version import __version__

__all__ = [
    "SE3",
    "Cluster",
    "KeyPoint",
    "make_cluster",
    "Frame",
    "FrameQueue",
    "PoseGraph",
    "NeighborIndex",
    "OptimizationResult",
    "LoopClosing",
    "PinholeCameraModel",
    "GraphSnapshot",
    "save_graph",
    "load_graph",
    "DEFAULT_CONFIG",
    "load_config",
    "merge_config",
    "GraphSLAMError",
    "InvalidVertexReference",
    "OptimizationDivergence",
    "__version__",
]
