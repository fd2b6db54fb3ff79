"""
Concurrent pose graph.

Frames are queued by the frontend, turned into vertices by a single consumer
thread and linked by odometry and intra-frame edges. Loop closing queries the
graph for candidates and adds verified edges. The whole graph is optimized in
batch every few frames or seconds.
"""
import logging
import threading
import time
import weakref
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import numpy as np
import torch

from ..camera import PinholeCameraModel
from ..cluster import Cluster
from ..config import merge_config
from ..errors import InvalidVertexReference, OptimizationDivergence
from ..frame import Frame
from ..frame_queue import FrameQueue
from ..loop_closing import LoopClosing
from ..persistence import GraphSnapshot, load_graph, save_graph
from .neighbor_index import NeighborIndex
from .optimization.base import OptimizationResult
from .optimization.pose_graph import PoseGraphOptimization, information_from_inliers
from .se3 import SE3


@dataclass
class Vertex:
    """One pose of the graph."""

    vertex_id: int
    pose_estimate: torch.Tensor  # reduced pose [x, y, z, yaw] used as seed
    optimized_pose: SE3  # written only by optimization


@dataclass
class Edge:
    """Relative transform constraint between two vertices."""

    from_id: int
    to_id: int
    relative_transform: SE3
    inlier_count: int


class PoseGraph:
    """
    Pose graph backend.

    Two locks are used. The frame queue has its own lock, held only while a
    frame is pushed or popped. The graph lock guards vertices, edges, the
    cluster/frame index and the optimizer, and is held for the whole of every
    graph operation, including optimization. The graph lock is re-entrant so
    frame processing can compose the public operations.
    """

    def __init__(self, loop_closing: Optional[LoopClosing] = None, config: Dict = None):
        """
        Args:
            loop_closing: Loop closing collaborator. Only a weak reference is kept.
            config: Configuration dictionary (see `graphslam.config.DEFAULT_CONFIG`)
        """
        self.config = merge_config(config)
        self.device = torch.device(self.config["device"])
        self.logger = logging.getLogger(self.__class__.__name__)

        self._loop_closing_ref = weakref.ref(loop_closing) if loop_closing is not None else None

        self._graph_lock = threading.RLock()
        self.frame_queue = FrameQueue()

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.camera2odom = SE3.identity(device=self.device)
        self.camera_matrix: Optional[np.ndarray] = None
        self.camera_model: Optional[PinholeCameraModel] = None

        self.init()

    def init(self):
        """Reset the graph, the optimizer state and the counters."""
        with self._graph_lock:
            self.vertices: List[Vertex] = []
            self.edges: List[Edge] = []
            self.cluster_frame: List[Tuple[int, int]] = []  # (vertex_id, frame_id)
            self._frame_vertices: Dict[int, List[int]] = {}
            self._vertex_frame: Dict[int, int] = {}
            self.neighbor_index = NeighborIndex()
            self.optimizer: Optional[PoseGraphOptimization] = None
            self.last_result: Optional[OptimizationResult] = None

            self.frames_counter = 0
            self._prev_frame_poses: Dict[int, SE3] = {}
            self._frames_since_update = 0
            self._last_update_time = time.time()

        self.logger.info(f"Pose graph initialized on device: {self.device}")

    # ------------------------------------------------------------------
    # Collaborators and configuration pass-through
    # ------------------------------------------------------------------

    @property
    def loop_closing(self) -> Optional[LoopClosing]:
        return self._loop_closing_ref() if self._loop_closing_ref is not None else None

    def set_loop_closing(self, loop_closing: Optional[LoopClosing]):
        self._loop_closing_ref = weakref.ref(loop_closing) if loop_closing is not None else None

    def set_camera2odom(self, camera2odom: SE3):
        self.camera2odom = camera2odom

    def get_camera2odom(self) -> SE3:
        return self.camera2odom

    def set_camera_matrix(self, camera_matrix: np.ndarray):
        self.camera_matrix = camera_matrix

    def get_camera_matrix(self) -> Optional[np.ndarray]:
        return self.camera_matrix

    def set_camera_model(self, camera_model: PinholeCameraModel):
        self.camera_model = camera_model

    def get_camera_model(self) -> Optional[PinholeCameraModel]:
        return self.camera_model

    # ------------------------------------------------------------------
    # Graph mutation
    # ------------------------------------------------------------------

    def add_frame_to_queue(self, frame: Frame):
        """Queue a frame for insertion. Only takes the queue lock."""
        self.frame_queue.enqueue(frame)

    def add_vertex(self, pose_estimate: Union[SE3, torch.Tensor, np.ndarray]) -> int:
        """
        Add a vertex to the graph.

        Args:
            pose_estimate: Reduced seed pose [x, y, z, yaw], or a full SE3 pose.
                A full pose is used as is for the optimizer; only its reduced
                form is kept as the seed.

        Returns:
            The new vertex id
        """
        if isinstance(pose_estimate, SE3):
            initial_pose = pose_estimate.detach().to(device=self.device, dtype=torch.float64).clone()
            seed = initial_pose.to_reduced_pose()
        else:
            if isinstance(pose_estimate, torch.Tensor):
                seed = pose_estimate.detach().to(device=self.device, dtype=torch.float64)
            else:
                seed = torch.as_tensor(np.asarray(pose_estimate, dtype=np.float64), device=self.device)
            initial_pose = SE3.from_reduced_pose(seed)

        with self._graph_lock:
            vertex_id = len(self.vertices)
            self.vertices.append(Vertex(vertex_id, seed.clone(), initial_pose))
            self.neighbor_index.add(vertex_id, initial_pose.t.cpu().numpy())

        return vertex_id

    def add_edge(
        self,
        i: int,
        j: int,
        relative_transform: Union[SE3, torch.Tensor, np.ndarray],
        inlier_count: int,
    ):
        """
        Add an edge to the graph. Does not optimize.

        Args:
            i: Index of vertex 1
            j: Index of vertex 2
            relative_transform: Transform from vertex i to vertex j
            inlier_count: Number of inliers supporting the edge (its weight)
        """
        if inlier_count < 0:
            raise ValueError(f"inlier_count must be >= 0, got {inlier_count}")
        if not isinstance(relative_transform, SE3):
            relative_transform = SE3.from_matrix(relative_transform)
        relative_transform = relative_transform.to(device=self.device, dtype=torch.float64)

        with self._graph_lock:
            for vertex_id in (i, j):
                self._check_vertex(vertex_id)
            self.edges.append(Edge(i, j, relative_transform, int(inlier_count)))

        self.logger.debug(f"Added edge {i} -> {j} with {inlier_count} inliers")

    def _check_vertex(self, vertex_id: int):
        if (
            isinstance(vertex_id, bool)
            or not isinstance(vertex_id, (int, np.integer))
            or not 0 <= vertex_id < len(self.vertices)
        ):
            raise InvalidVertexReference(vertex_id)

    # ------------------------------------------------------------------
    # Optimization
    # ------------------------------------------------------------------

    def _connected_components(self) -> List[int]:
        """Lowest vertex id of every connected component touched by edges."""
        parent: Dict[int, int] = {}

        def find(v: int) -> int:
            parent.setdefault(v, v)
            while parent[v] != v:
                parent[v] = parent[parent[v]]
                v = parent[v]
            return v

        for edge in self.edges:
            a, b = find(edge.from_id), find(edge.to_id)
            if a != b:
                parent[max(a, b)] = min(a, b)

        return sorted({find(v) for v in list(parent)})

    def update(self) -> OptimizationResult:
        """
        Optimize the whole graph.

        Current optimized poses are the initial guess and every edge is a
        constraint. The lowest vertex of each connected component is held
        fixed. On success the optimized poses are overwritten.

        Raises:
            OptimizationDivergence: the solve hit the iteration cap or produced
                non-finite values. Previous poses are kept.
        """
        with self._graph_lock:
            self.optimizer = PoseGraphOptimization(
                max_iterations=self.config["max_iterations"],
                convergence_threshold=self.config["convergence_threshold"],
                initial_lambda=self.config["initial_lambda"],
                lambda_factor=self.config["lambda_factor"],
                device=self.device,
            )
            self._frames_since_update = 0
            self._last_update_time = time.time()

            if not self.edges:
                self.last_result = OptimizationResult(
                    success=True,
                    initial_cost=0.0,
                    final_cost=0.0,
                    variables={},
                    num_iterations=0,
                    time_seconds=0.0,
                    message="no edges to optimize",
                )
                return self.last_result

            touched = sorted({e.from_id for e in self.edges} | {e.to_id for e in self.edges})
            for vertex_id in touched:
                self.optimizer.add_pose(vertex_id, self.vertices[vertex_id].optimized_pose)
            for root in self._connected_components():
                self.optimizer.set_fixed_pose(root)
            for edge in self.edges:
                self.optimizer.add_relative_pose_constraint(
                    edge.from_id,
                    edge.to_id,
                    edge.relative_transform,
                    information_from_inliers(edge.inlier_count, device=self.device),
                )

            result = self.optimizer.optimize()
            self.last_result = result

            new_poses = {}
            if result.success:
                new_poses = {v: self.optimizer.get_pose(v) for v in touched}
                if not all(pose.is_finite() for pose in new_poses.values()):
                    result.success = False
                    result.message = "optimizer produced non-finite poses"

            if not result.success:
                self.logger.warning(
                    f"Graph optimization failed ({result.message}); keeping previous poses"
                )
                raise OptimizationDivergence(result.message, result)

            for vertex_id, pose in new_poses.items():
                self.vertices[vertex_id].optimized_pose = pose
            self.neighbor_index.update(
                {v: pose.t.cpu().numpy() for v, pose in new_poses.items()}
            )

        self.logger.info(
            f"Graph optimized: {len(touched)} vertices, {len(self.edges)} edges, "
            f"cost {result.initial_cost:.6f} -> {result.final_cost:.6f} "
            f"in {result.num_iterations} iterations ({result.time_seconds:.3f}s)"
        )
        return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find_closest_vertices(
        self, vertex_id: int, window_center: int, window: int, best_n: int
    ) -> List[int]:
        """
        Get the closest neighbors by distance.

        Args:
            vertex_id: The vertex id to retrieve its neighbors
            window_center: The vertex where the discard window is centered
            window: Half size of the discarded window of vertex ids
            best_n: Number of neighbors to be retrieved

        Returns:
            Up to `best_n` vertex ids by ascending translation distance, ties
            broken by lower id. Ids in [window_center - window,
            window_center + window] are never returned.
        """
        with self._graph_lock:
            self._check_vertex(vertex_id)
            return self.neighbor_index.query(
                vertex_id, best_n, (window_center - window, window_center + window)
            )

    def get_frame_vertices(self, frame_id: int) -> List[int]:
        """Vertex ids of a frame in insertion order; empty for unknown frames."""
        with self._graph_lock:
            return list(self._frame_vertices.get(frame_id, []))

    def get_vertex_frame(self, vertex_id: int) -> int:
        """Frame id a vertex was created from."""
        with self._graph_lock:
            self._check_vertex(vertex_id)
            if vertex_id not in self._vertex_frame:
                raise InvalidVertexReference(
                    vertex_id, f"Vertex {vertex_id} is not associated with a frame"
                )
            return self._vertex_frame[vertex_id]

    def get_vertex_pose(self, vertex_id: int) -> SE3:
        with self._graph_lock:
            self._check_vertex(vertex_id)
            return self.vertices[vertex_id].optimized_pose.clone()

    def get_edges(self) -> List[Edge]:
        with self._graph_lock:
            return list(self.edges)

    def num_vertices(self) -> int:
        with self._graph_lock:
            return len(self.vertices)

    def num_edges(self) -> int:
        with self._graph_lock:
            return len(self.edges)

    # ------------------------------------------------------------------
    # Frame ingestion
    # ------------------------------------------------------------------

    @staticmethod
    def _closest_pair(
        poses_a: Dict[int, SE3], poses_b: Dict[int, SE3]
    ) -> Tuple[int, int]:
        best = None
        for a, pose_a in poses_a.items():
            for b, pose_b in poses_b.items():
                distance = pose_a.translation_distance(pose_b)
                if best is None or distance < best[0]:
                    best = (distance, a, b)
        return best[1], best[2]

    def process_new_frame(self, frame: Frame) -> List[int]:
        """
        Convert a frame into graph vertices.

        One vertex per cluster, seeded with the reduced form of the cluster
        pose. Vertices of the same frame are linked by rigid edges, and the
        frame is linked to the previous one through its closest pair of
        vertices. Edge transforms come from the full frontend poses.

        Returns:
            The new vertex ids
        """
        cluster_poses = [
            pose.to(device=self.device, dtype=torch.float64) for pose in frame.cluster_poses()
        ]

        with self._graph_lock:
            vertex_ids = []
            for pose in cluster_poses:
                vertex_id = self.add_vertex(pose)
                self.cluster_frame.append((vertex_id, frame.id))
                self._frame_vertices.setdefault(frame.id, []).append(vertex_id)
                self._vertex_frame[vertex_id] = frame.id
                vertex_ids.append(vertex_id)
            frame_poses = dict(zip(vertex_ids, cluster_poses))

            intra_inliers = self.config["intra_frame_inliers"]
            for a in range(len(vertex_ids)):
                for b in range(a + 1, len(vertex_ids)):
                    edge = cluster_poses[a].relative_to(cluster_poses[b])
                    self.add_edge(vertex_ids[a], vertex_ids[b], edge, intra_inliers)

            if self._prev_frame_poses and frame.inliers_with_prev > 0:
                a, b = self._closest_pair(self._prev_frame_poses, frame_poses)
                edge = self._prev_frame_poses[a].relative_to(frame_poses[b])
                self.add_edge(a, b, edge, frame.inliers_with_prev)

            self._prev_frame_poses = frame_poses
            self.frames_counter += 1
            self._frames_since_update += 1

        loop_closing = self.loop_closing
        if loop_closing is not None:
            for k, vertex_id in enumerate(vertex_ids):
                if k < len(frame.clusters):
                    cluster = frame.clusters[k].with_id(vertex_id, frame.id)
                else:
                    cluster = Cluster(id=vertex_id, frame_id=frame.id, pose=frame.camera_pose)
                loop_closing.add_cluster_to_queue(cluster)

        self.logger.debug(f"Frame {frame.id} inserted as vertices {vertex_ids}")
        return vertex_ids

    def _update_due(self) -> bool:
        every_n = self.config["update_every_n_frames"]
        every_s = self.config["update_every_seconds"]
        with self._graph_lock:
            if self._frames_since_update == 0:
                return False
            if every_n > 0 and self._frames_since_update >= every_n:
                return True
            return every_s > 0 and time.time() - self._last_update_time >= every_s

    def _try_update(self):
        try:
            self.update()
        except OptimizationDivergence as e:
            self.logger.warning(f"Optimization diverged, will retry later: {e}")

    def process_pending_frames(self) -> int:
        """
        Drain the frame queue, applying the update policy.

        Returns:
            Number of frames processed
        """
        frames = self.frame_queue.try_dequeue_all()
        for frame in frames:
            self.process_new_frame(frame)
            if self._update_due():
                self._try_update()
        return len(frames)

    def run(self):
        """Ingestion loop. Returns once `stop` is requested."""
        self.logger.info("Pose graph ingestion loop started")
        poll_interval = self.config["poll_interval"]

        while not self._stop_event.is_set():
            if self.frame_queue.wait_for_frames(timeout=poll_interval):
                self.process_pending_frames()
            elif self._update_due():
                self._try_update()

        self.logger.info("Pose graph ingestion loop stopped")

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("Pose graph thread already running")
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, name="PoseGraph", daemon=True)
        self._thread.start()

    def stop(self, drain: Optional[bool] = None, timeout: Optional[float] = None) -> bool:
        """
        Stop the ingestion loop.

        Args:
            drain: Process pending frames and run a final optimization before
                returning. Defaults to the `drain_on_shutdown` option.
            timeout: Seconds to wait for the thread to exit

        Returns:
            False if the consumer thread is still running after `timeout`. In
            that case the thread is kept and pending frames are not touched,
            so `start` refuses until a later `stop` sees the thread exit.
        """
        drain = self.config["drain_on_shutdown"] if drain is None else drain

        self._stop_event.set()
        self.frame_queue.wake()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                self.logger.warning(f"Ingestion thread did not exit within {timeout} s")
                return False
            self._thread = None

        if drain:
            processed = self.process_pending_frames()
            if self._frames_since_update > 0:
                self._try_update()
            self.logger.info(f"Drained {processed} pending frames on shutdown")
        else:
            dropped = self.frame_queue.clear()
            if dropped:
                self.logger.warning(f"Discarded {dropped} pending frames on shutdown")
        return True

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> GraphSnapshot:
        """Consistent copy of the graph record, taken under the graph lock."""
        with self._graph_lock:
            return GraphSnapshot.from_graph(
                self.vertices, self.edges, self._vertex_frame, self._prev_frame_poses
            )

    def save_to_file(self, path: Union[str, Path, None] = None, fmt: Optional[str] = None) -> Path:
        """
        Save the graph to file.

        Args:
            path: Output file; defaults to `<output_dir>/graph.<fmt>`
            fmt: "json" or "g2o"; defaults to the `save_format` option

        Returns:
            The written path
        """
        fmt = fmt or self.config["save_format"]
        if path is None:
            path = Path(self.config["output_dir"]) / f"graph.{fmt}"

        snapshot = self.snapshot()
        written = save_graph(path, snapshot, fmt)
        self.logger.info(
            f"Saved graph with {len(snapshot.vertices)} vertices and "
            f"{len(snapshot.edges)} edges to {written}"
        )
        return written

    @classmethod
    def load_from_file(
        cls,
        path: Union[str, Path],
        loop_closing: Optional[LoopClosing] = None,
        config: Dict = None,
    ) -> "PoseGraph":
        """Rebuild a graph from a JSON record written by `save_to_file`."""
        snapshot = load_graph(path)
        graph = cls(loop_closing=loop_closing, config=config)
        with graph._graph_lock:
            for record in snapshot.vertices:
                vertex_id = graph.add_vertex(record.pose)
                if record.frame_id is not None:
                    graph.cluster_frame.append((vertex_id, record.frame_id))
                    graph._frame_vertices.setdefault(record.frame_id, []).append(vertex_id)
                    graph._vertex_frame[vertex_id] = record.frame_id
            for record in snapshot.edges:
                graph.add_edge(record.from_id, record.to_id, record.relative_transform, record.inliers)
            if snapshot.prev_frame_poses:
                graph._prev_frame_poses = {
                    v: pose.to(device=graph.device, dtype=torch.float64)
                    for v, pose in snapshot.prev_frame_poses.items()
                }
            elif graph.cluster_frame:
                # Records without frontend poses fall back to the optimized ones
                last_frame = graph.cluster_frame[-1][1]
                graph._prev_frame_poses = {
                    v: graph.vertices[v].optimized_pose for v in graph._frame_vertices[last_frame]
                }
        return graph

    def __repr__(self) -> str:
        return f"PoseGraph(vertices={self.num_vertices()}, edges={self.num_edges()})"
