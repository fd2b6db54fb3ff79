import json
import threading
import time
import unittest

import numpy as np
import pytest
import torch

from conftest import build_frame
from graphslam.backend.pose_graph import PoseGraph
from graphslam.backend.se3 import SE3
from graphslam.camera import PinholeCameraModel
from graphslam.errors import GraphSLAMError, InvalidVertexReference, OptimizationDivergence
from graphslam.loop_closing import LoopClosing

CONFIG = {"device": "cpu", "update_every_n_frames": 0}


class RecordingLoopClosing(LoopClosing):
    def __init__(self, graph=None):
        super().__init__(graph)
        self.clusters = []

    def add_cluster_to_queue(self, cluster):
        self.clusters.append(cluster)


class TestPoseGraph(unittest.TestCase):
    def setUp(self):
        self.graph = PoseGraph(config=CONFIG)

    def _straight_line(self, n=10):
        for k in range(n):
            self.graph.add_vertex([float(k), 0.0, 0.0, 0.0])

    def test_vertex_ids_are_dense(self):
        ids = [self.graph.add_vertex([k, 0.0, 0.0, 0.0]) for k in range(5)]
        self.assertEqual(ids, [0, 1, 2, 3, 4])
        self.assertEqual(self.graph.num_vertices(), 5)

    def test_vertex_is_seeded_from_reduced_pose(self):
        vertex_id = self.graph.add_vertex(np.array([1.0, 2.0, 3.0, np.pi / 2]))
        pose = self.graph.get_vertex_pose(vertex_id)

        self.assertTrue(torch.allclose(pose.t, torch.tensor([1.0, 2.0, 3.0], dtype=torch.float64)))
        self.assertTrue(torch.allclose(pose.to_reduced_pose()[3], torch.tensor(np.pi / 2, dtype=torch.float64)))

    def test_add_edge_rejects_unknown_vertices(self):
        self._straight_line(3)
        with self.assertRaises(InvalidVertexReference) as ctx:
            self.graph.add_edge(0, 7, SE3.identity(), 10)
        self.assertEqual(ctx.exception.vertex_id, 7)
        self.assertIsInstance(ctx.exception, GraphSLAMError)
        with self.assertRaises(InvalidVertexReference):
            self.graph.add_edge(-1, 1, SE3.identity(), 10)
        self.assertEqual(self.graph.num_edges(), 0)

    def test_add_edge_rejects_bool_vertex_ids(self):
        self._straight_line(2)
        with self.assertRaises(InvalidVertexReference):
            self.graph.add_edge(True, 0, SE3.identity(), 10)
        with self.assertRaises(InvalidVertexReference):
            self.graph.add_edge(0, False, SE3.identity(), 10)
        self.assertEqual(self.graph.num_edges(), 0)

    def test_add_edge_rejects_negative_inliers(self):
        self._straight_line(2)
        with self.assertRaises(ValueError):
            self.graph.add_edge(0, 1, SE3.identity(), -1)

    def test_add_edge_accepts_matrix(self):
        self._straight_line(2)
        matrix = np.eye(4)
        matrix[0, 3] = 1.0
        self.graph.add_edge(0, 1, matrix, 25)

        edge = self.graph.get_edges()[0]
        self.assertEqual((edge.from_id, edge.to_id, edge.inlier_count), (0, 1, 25))
        self.assertTrue(edge.relative_transform.allclose(SE3.from_translation([1.0, 0.0, 0.0])))

    def test_find_closest_vertices_straight_line(self):
        self._straight_line(10)
        self.assertEqual(self.graph.find_closest_vertices(9, 9, 2, 3), [6, 5, 4])

    def test_find_closest_vertices_window_elsewhere(self):
        self._straight_line(10)
        # Window around vertex 5 hides 3..7; 0 and 8 are tied at distance 4
        self.assertEqual(self.graph.find_closest_vertices(4, 5, 2, 3), [2, 1, 0])
        self.assertEqual(self.graph.find_closest_vertices(4, 5, 2, 4), [2, 1, 0, 8])

    def test_find_closest_vertices_ties_by_lower_id(self):
        for position in ([1.0, 0.0, 0.0], [-1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [2.0, 0.0, 0.0], [0.0, 0.0, 0.0]):
            self.graph.add_vertex(position + [0.0])

        self.assertEqual(self.graph.find_closest_vertices(4, 4, 0, 2), [0, 1])
        self.assertEqual(self.graph.find_closest_vertices(4, 4, 0, 4), [0, 1, 2, 3])

    def test_find_closest_vertices_never_returns_window(self):
        rng = np.random.default_rng(0)
        for position in rng.uniform(-5.0, 5.0, size=(40, 3)):
            self.graph.add_vertex(list(position) + [0.0])

        for anchor in range(0, 40, 7):
            result = self.graph.find_closest_vertices(anchor, anchor, 3, 5)
            self.assertEqual(len(result), 5)
            self.assertTrue(all(abs(v - anchor) > 3 for v in result))

            center = self.graph.get_vertex_pose(anchor).t
            distances = [self.graph.get_vertex_pose(v).t.sub(center).norm().item() for v in result]
            self.assertEqual(distances, sorted(distances))
            eligible = [v for v in range(40) if abs(v - anchor) > 3]
            brute = sorted(eligible, key=lambda v: (self.graph.get_vertex_pose(v).t.sub(center).norm().item(), v))
            self.assertEqual(result, brute[:5])

    def test_find_closest_vertices_degenerate_requests(self):
        self._straight_line(5)
        self.assertEqual(self.graph.find_closest_vertices(2, 2, 0, 0), [])
        self.assertEqual(self.graph.find_closest_vertices(2, 2, 10, 3), [])
        with self.assertRaises(InvalidVertexReference):
            self.graph.find_closest_vertices(12, 2, 1, 3)

    def test_update_without_edges(self):
        self._straight_line(3)
        result = self.graph.update()
        self.assertTrue(result.success)
        self.assertEqual(result.num_iterations, 0)

    def test_update_corrects_drift(self):
        for x, y in [(0.0, 0.0), (1.0, 0.1), (2.0, 0.3), (3.0, 0.6)]:
            self.graph.add_vertex([x, y, 0.0, 0.0])
        for k in range(3):
            self.graph.add_edge(k, k + 1, SE3.from_translation([1.0, 0.0, 0.0]), 50)
        self.graph.add_edge(0, 3, SE3.from_translation([3.0, 0.0, 0.0]), 50)

        result = self.graph.update()
        self.assertTrue(result.success)
        for k in range(4):
            pose = self.graph.get_vertex_pose(k)
            self.assertTrue(torch.allclose(pose.t, torch.tensor([float(k), 0.0, 0.0], dtype=torch.float64), atol=1e-5))
        # The neighbor index follows the optimized poses
        self.assertTrue(np.allclose(self.graph.neighbor_index.position(1), [1.0, 0.0, 0.0], atol=1e-5))

    def test_update_fixes_one_vertex_per_component(self):
        for x in [0.0, 1.0, 10.0, 11.0]:
            self.graph.add_vertex([x, 0.0, 0.0, 0.0])
        self.graph.add_edge(0, 1, SE3.from_translation([2.0, 0.0, 0.0]), 10)
        self.graph.add_edge(2, 3, SE3.from_translation([2.0, 0.0, 0.0]), 10)

        self.assertTrue(self.graph.update().success)
        self.assertEqual(self.graph.get_vertex_pose(0).t[0].item(), 0.0)
        self.assertEqual(self.graph.get_vertex_pose(2).t[0].item(), 10.0)
        self.assertAlmostEqual(self.graph.get_vertex_pose(1).t[0].item(), 2.0, places=5)
        self.assertAlmostEqual(self.graph.get_vertex_pose(3).t[0].item(), 12.0, places=5)

    def test_divergence_keeps_previous_poses(self):
        graph = PoseGraph(config={**CONFIG, "max_iterations": 1})
        for k in range(3):
            graph.add_vertex([float(k), 0.0, 0.0, 0.0])
        graph.add_edge(0, 1, SE3.from_translation([1.0, 0.0, 0.0]), 10)
        graph.add_edge(1, 2, SE3.from_translation([1.0, 0.0, 0.0]), 10)
        graph.add_edge(0, 2, SE3.from_translation([5.0, 0.0, 0.0]), 10)
        before = [graph.get_vertex_pose(k) for k in range(3)]

        with self.assertRaises(OptimizationDivergence) as ctx:
            graph.update()

        self.assertFalse(ctx.exception.result.success)
        self.assertIs(graph.last_result, ctx.exception.result)
        for k in range(3):
            self.assertTrue(graph.get_vertex_pose(k).allclose(before[k], atol=0.0))

    def test_non_finite_edge_diverges(self):
        self._straight_line(2)
        self.graph.add_edge(0, 1, SE3.from_translation([float("nan"), 0.0, 0.0]), 10)

        with self.assertRaises(OptimizationDivergence):
            self.graph.update()
        self.assertTrue(self.graph.get_vertex_pose(1).is_finite())

    def test_get_vertex_pose_returns_copy(self):
        self._straight_line(1)
        pose = self.graph.get_vertex_pose(0)
        pose.t[0] = 42.0
        self.assertEqual(self.graph.get_vertex_pose(0).t[0].item(), 0.0)

    def test_init_resets_graph(self):
        self._straight_line(3)
        self.graph.add_edge(0, 1, SE3.identity(), 1)
        self.graph.init()
        self.assertEqual(self.graph.num_vertices(), 0)
        self.assertEqual(self.graph.num_edges(), 0)
        self.assertEqual(self.graph.add_vertex([0.0, 0.0, 0.0, 0.0]), 0)

    def test_camera_pass_through(self):
        camera2odom = SE3.from_translation([0.1, 0.0, 0.2])
        K = np.array([[500.0, 0.0, 320.0], [0.0, 500.0, 240.0], [0.0, 0.0, 1.0]])
        model = PinholeCameraModel.from_camera_info(K, width=640, height=480)

        self.graph.set_camera2odom(camera2odom)
        self.graph.set_camera_matrix(K)
        self.graph.set_camera_model(model)

        self.assertIs(self.graph.get_camera2odom(), camera2odom)
        self.assertIs(self.graph.get_camera_matrix(), K)
        self.assertIs(self.graph.get_camera_model(), model)


class TestFrameProcessing(unittest.TestCase):
    def setUp(self):
        self.loop_closing = RecordingLoopClosing()
        self.graph = PoseGraph(loop_closing=self.loop_closing, config=CONFIG)
        self.loop_closing.set_graph(self.graph)

    def test_frame_becomes_one_vertex_per_cluster(self):
        ids = self.graph.process_new_frame(build_frame(7, 0.0))

        self.assertEqual(ids, [0, 1])
        self.assertEqual(self.graph.get_frame_vertices(7), [0, 1])
        self.assertEqual(self.graph.get_vertex_frame(1), 7)
        self.assertEqual(self.graph.get_frame_vertices(99), [])
        # Rigid link between the two clusters of the frame
        self.assertEqual(self.graph.num_edges(), 1)
        self.assertEqual(self.graph.get_edges()[0].inlier_count, 100)

    def test_vertex_seed_is_cluster_pose(self):
        self.graph.process_new_frame(build_frame(0, 2.0))
        # Camera at x=2, cluster centroids (0, 0, 2) and (1, 0, 2)
        self.assertTrue(torch.allclose(self.graph.get_vertex_pose(0).t, torch.tensor([2.0, 0.0, 2.0], dtype=torch.float64)))
        self.assertTrue(torch.allclose(self.graph.get_vertex_pose(1).t, torch.tensor([3.0, 0.0, 2.0], dtype=torch.float64)))

    def test_consecutive_frames_are_linked(self):
        self.graph.process_new_frame(build_frame(0, 0.0))
        self.graph.process_new_frame(
            build_frame(1, 1.0, cluster_points=[[[0.0, 0.0, 2.0]], [[2.0, 0.0, 2.0]], [[-1.5, 0.0, 2.0]]], inliers_with_prev=30)
        )

        edges = self.graph.get_edges()
        # 1 + 3 intra-frame edges and one odometry link
        self.assertEqual(len(edges), 5)
        link = edges[-1]
        self.assertEqual(link.inlier_count, 30)
        # Closest pair: vertex 1 at (1, 0, 2) and vertex 2 at (1, 0, 2)
        self.assertEqual((link.from_id, link.to_id), (1, 2))
        self.assertTrue(link.relative_transform.allclose(SE3.identity()))

    def test_frame_without_odometry_inliers_is_not_linked(self):
        self.graph.process_new_frame(build_frame(0, 0.0))
        self.graph.process_new_frame(build_frame(1, 1.0, inliers_with_prev=0))
        self.assertEqual(self.graph.num_edges(), 2)

    def test_frame_without_clusters_adds_camera_vertex(self):
        ids = self.graph.process_new_frame(build_frame(3, 5.0, cluster_points=[]))
        self.assertEqual(ids, [0])
        self.assertTrue(torch.allclose(self.graph.get_vertex_pose(0).t, torch.tensor([5.0, 0.0, 0.0], dtype=torch.float64)))

    def test_clusters_are_handed_to_loop_closing(self):
        frame = build_frame(4, 0.0)
        self.graph.process_new_frame(frame)

        self.assertEqual([c.id for c in self.loop_closing.clusters], [0, 1])
        self.assertTrue(all(c.frame_id == 4 for c in self.loop_closing.clusters))
        # The frame keeps its unset clusters
        self.assertTrue(all(not c.is_set for c in frame.clusters))

    def test_loop_closing_is_not_owned(self):
        graph = PoseGraph(loop_closing=RecordingLoopClosing(), config=CONFIG)
        self.assertIsNone(graph.loop_closing)
        graph.process_new_frame(build_frame(0, 0.0))
        self.assertEqual(graph.num_vertices(), 2)

    def test_get_vertex_frame_without_frame(self):
        vertex_id = self.graph.add_vertex([0.0, 0.0, 0.0, 0.0])
        with self.assertRaises(InvalidVertexReference):
            self.graph.get_vertex_frame(vertex_id)

    def test_update_after_consistent_frames(self):
        for k in range(4):
            self.graph.process_new_frame(build_frame(k, float(k)))
        result = self.graph.update()
        self.assertTrue(result.success)
        self.assertTrue(self.graph.get_vertex_pose(6).allclose(SE3.from_translation([3.0, 0.0, 2.0]), atol=1e-6))

    def test_tilted_camera_keeps_map_consistent(self):
        # Camera pitched to look along +y, clusters 1 m and 5 m in front of it
        tilt = torch.tensor([[1.0, 0.0, 0.0], [0.0, 0.0, 1.0], [0.0, -1.0, 0.0]], dtype=torch.float64)
        frames = [
            build_frame(k, float(k), cluster_points=[[[0.0, 0.0, 1.0]], [[0.0, 0.0, 5.0]]], rotation=tilt)
            for k in range(2)
        ]
        for frame in frames:
            self.graph.process_new_frame(frame)

        self.assertTrue(self.graph.get_vertex_pose(1).allclose(frames[0].cluster_poses()[1]))
        before = [self.graph.get_vertex_pose(v) for v in range(self.graph.num_vertices())]

        result = self.graph.update()
        self.assertTrue(result.success)
        self.assertLess(result.initial_cost, 1e-12)
        for v, pose in enumerate(before):
            self.assertTrue(self.graph.get_vertex_pose(v).allclose(pose, atol=1e-6))


def test_concurrent_producers_keep_frames_whole():
    graph = PoseGraph(config=CONFIG)
    producers = 3
    frames_per_producer = 20

    def produce(p):
        for k in range(frames_per_producer):
            graph.add_frame_to_queue(build_frame(p * 1000 + k, float(k)))

    threads = [threading.Thread(target=produce, args=(p,)) for p in range(producers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert graph.process_pending_frames() == producers * frames_per_producer
    assert graph.num_vertices() == 2 * producers * frames_per_producer

    seen = []
    for p in range(producers):
        first_ids = []
        for k in range(frames_per_producer):
            vertices = graph.get_frame_vertices(p * 1000 + k)
            assert len(vertices) == 2
            assert vertices[1] == vertices[0] + 1
            assert all(graph.get_vertex_frame(v) == p * 1000 + k for v in vertices)
            first_ids.append(vertices[0])
            seen.extend(vertices)
        # Frames of one producer are inserted in submission order
        assert first_ids == sorted(first_ids)

    assert sorted(seen) == list(range(graph.num_vertices()))


def test_update_policy_every_n_frames():
    graph = PoseGraph(config={"device": "cpu", "update_every_n_frames": 2})
    graph.add_frame_to_queue(build_frame(0, 0.0))
    graph.process_pending_frames()
    assert graph.last_result is None

    graph.add_frame_to_queue(build_frame(1, 1.0))
    graph.process_pending_frames()
    assert graph.last_result is not None
    assert graph.last_result.success


def test_update_policy_disabled():
    graph = PoseGraph(config=CONFIG)
    for k in range(5):
        graph.add_frame_to_queue(build_frame(k, float(k)))
    graph.process_pending_frames()
    assert graph.last_result is None


def test_start_and_stop_with_drain():
    graph = PoseGraph(config={"device": "cpu", "update_every_n_frames": 3, "poll_interval": 0.005})
    graph.start()
    assert graph.is_running
    with pytest.raises(RuntimeError):
        graph.start()

    for k in range(5):
        graph.add_frame_to_queue(build_frame(k, float(k)))
    graph.stop(timeout=10.0)

    assert not graph.is_running
    assert graph.frames_counter == 5
    assert graph.num_vertices() == 10
    # Final optimization of the drained frames
    assert graph.last_result is not None and graph.last_result.success


def test_stop_without_drain_discards_pending():
    graph = PoseGraph(config={"device": "cpu", "drain_on_shutdown": False})
    for k in range(3):
        graph.add_frame_to_queue(build_frame(k, float(k)))
    graph.stop()

    assert graph.num_vertices() == 0
    assert len(graph.frame_queue) == 0


def test_failed_update_does_not_change_saved_graph(tmp_path):
    graph = PoseGraph(config={**CONFIG, "max_iterations": 1})
    for k in range(3):
        graph.add_vertex([float(k), 0.0, 0.0, 0.0])
    graph.add_edge(0, 1, SE3.from_translation([1.0, 0.0, 0.0]), 10)
    graph.add_edge(1, 2, SE3.from_translation([1.0, 0.0, 0.0]), 10)
    graph.add_edge(0, 2, SE3.from_translation([5.0, 0.0, 0.0]), 10)

    before = json.loads(graph.save_to_file(tmp_path / "before.json").read_text())
    with pytest.raises(OptimizationDivergence):
        graph.update()
    after = json.loads(graph.save_to_file(tmp_path / "after.json").read_text())

    assert before == after


def test_save_and_load_round_trip(tmp_path):
    graph = PoseGraph(config=CONFIG)
    for k in range(3):
        graph.process_new_frame(build_frame(10 + k, float(k)))
    graph.update()

    path = graph.save_to_file(tmp_path / "graph.json")
    loop_closing = RecordingLoopClosing()
    restored = PoseGraph.load_from_file(path, loop_closing=loop_closing, config=CONFIG)

    assert restored.num_vertices() == graph.num_vertices()
    assert restored.num_edges() == graph.num_edges()
    assert restored.loop_closing is loop_closing
    for v in range(graph.num_vertices()):
        assert restored.get_vertex_frame(v) == graph.get_vertex_frame(v)
        assert restored.get_vertex_pose(v).allclose(graph.get_vertex_pose(v), atol=1e-9)
    for original, loaded in zip(graph.get_edges(), restored.get_edges()):
        assert (loaded.from_id, loaded.to_id, loaded.inlier_count) == (
            original.from_id,
            original.to_id,
            original.inlier_count,
        )
        assert loaded.relative_transform.allclose(original.relative_transform, atol=1e-9)

    # Ingestion continues where the saved graph stopped
    assert restored.process_new_frame(build_frame(13, 3.0)) == [6, 7]
    assert restored.get_edges()[-1].from_id in restored.get_frame_vertices(12)


def test_save_to_file_defaults(tmp_path):
    graph = PoseGraph(config={"device": "cpu", "output_dir": str(tmp_path / "out"), "save_format": "g2o"})
    graph.add_vertex([0.0, 0.0, 0.0, 0.0])

    path = graph.save_to_file()
    assert path == tmp_path / "out" / "graph.g2o"
    assert path.read_text().startswith("VERTEX_SE3:QUAT 0 ")


def test_reload_links_next_frame_like_the_original(tmp_path):
    graph = PoseGraph(config=CONFIG)
    frames = [build_frame(10 + k, float(k)) for k in range(3)]
    for frame in frames:
        graph.process_new_frame(frame)
    # Loop edge disagreeing with odometry, so optimization moves the last frame
    graph.add_edge(0, 5, SE3.from_translation([2.5, 0.0, 0.0]), 200)
    assert graph.update().success
    assert not graph.get_vertex_pose(5).allclose(frames[-1].cluster_poses()[1], atol=1e-3)

    restored = PoseGraph.load_from_file(graph.save_to_file(tmp_path / "graph.json"), config=CONFIG)

    next_frame = build_frame(13, 3.0)
    graph.process_new_frame(next_frame)
    restored.process_new_frame(next_frame)
    original_link = graph.get_edges()[-1]
    restored_link = restored.get_edges()[-1]
    assert (restored_link.from_id, restored_link.to_id) == (original_link.from_id, original_link.to_id)
    assert restored_link.relative_transform.allclose(original_link.relative_transform, atol=1e-9)


class SlowPoseGraph(PoseGraph):
    """Pose graph whose frame processing blocks for a while."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.started = threading.Event()

    def process_new_frame(self, frame):
        self.started.set()
        time.sleep(0.3)
        return super().process_new_frame(frame)


def test_stop_timeout_keeps_single_consumer():
    graph = SlowPoseGraph(config={"device": "cpu", "update_every_n_frames": 0, "poll_interval": 0.005})
    for k in range(3):
        graph.add_frame_to_queue(build_frame(k, float(k)))
    graph.start()
    assert graph.started.wait(5.0)

    assert graph.stop(timeout=0.05, drain=False) is False
    assert graph.is_running
    with pytest.raises(RuntimeError):
        graph.start()

    assert graph.stop(timeout=10.0, drain=False) is True
    assert not graph.is_running
    assert graph.frames_counter == 3
