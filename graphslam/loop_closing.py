"""
Interface between the pose graph and loop closing.

Loop closing decides whether two places match (descriptor matching, geometric
verification) and is not part of this package. The pose graph only hands it
every cluster it inserts; loop closing queries the graph for candidates and
commits verified edges back through `PoseGraph.add_edge`.
"""
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from .cluster import Cluster

if TYPE_CHECKING:
    from .backend.pose_graph import PoseGraph


class LoopClosing(ABC):
    """
    Base class for loop closing collaborators.

    Loop closing owns a reference to the graph; the graph only keeps a weak
    reference back, so whoever creates both controls their lifetime.
    """

    def __init__(self, graph: "PoseGraph" = None):
        self.graph = graph

    def set_graph(self, graph: "PoseGraph"):
        self.graph = graph

    @abstractmethod
    def add_cluster_to_queue(self, cluster: Cluster):
        """
        Receive a cluster that was just inserted into the graph.

        Called from the graph's ingestion thread; implementations must not
        block for long.

        Args:
            cluster: Cluster whose `id` is its vertex id
        """
