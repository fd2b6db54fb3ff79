"""
Graph snapshots on disk.

Two record formats are written:

- JSON (default, reloadable): vertices by ascending id with their frame id and
  optimized pose as translation + [w, x, y, z] quaternion, then edges in
  insertion order with their relative transform and inlier count. An optional
  "prev_frame" list keeps the frontend poses of the last ingested frame so the
  next odometry edge is measured against them after a reload.
- g2o text (`VERTEX_SE3:QUAT` / `EDGE_SE3:QUAT`), for use with external
  tooling. The information matrix written for each edge is inliers * I6.
"""
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

import numpy as np

from .backend.se3 import SE3

RECORD_VERSION = 1

logger = logging.getLogger(__name__)


@dataclass
class VertexRecord:
    vertex_id: int
    pose: SE3
    frame_id: Optional[int] = None


@dataclass
class EdgeRecord:
    from_id: int
    to_id: int
    relative_transform: SE3
    inliers: int


@dataclass
class GraphSnapshot:
    """Detached copy of the persisted part of a pose graph."""

    vertices: List[VertexRecord] = field(default_factory=list)
    edges: List[EdgeRecord] = field(default_factory=list)
    prev_frame_poses: Dict[int, SE3] = field(default_factory=dict)

    @classmethod
    def from_graph(
        cls,
        vertices,
        edges,
        vertex_frame: Dict[int, int],
        prev_frame_poses: Optional[Dict[int, SE3]] = None,
    ) -> "GraphSnapshot":
        """Copy vertices and edges; the caller holds the graph lock."""
        return cls(
            vertices=[
                VertexRecord(
                    v.vertex_id,
                    v.optimized_pose.detach().to(device="cpu").clone(),
                    vertex_frame.get(v.vertex_id),
                )
                for v in sorted(vertices, key=lambda v: v.vertex_id)
            ],
            edges=[
                EdgeRecord(
                    e.from_id,
                    e.to_id,
                    e.relative_transform.detach().to(device="cpu").clone(),
                    e.inlier_count,
                )
                for e in edges
            ],
            prev_frame_poses={
                vertex_id: pose.detach().to(device="cpu").clone()
                for vertex_id, pose in (prev_frame_poses or {}).items()
            },
        )

    def to_dict(self) -> Dict:
        return {
            "version": RECORD_VERSION,
            "vertices": [
                {
                    "id": v.vertex_id,
                    "frame_id": v.frame_id,
                    "translation": v.pose.t.tolist(),
                    "rotation": v.pose.to_quaternion().tolist(),
                }
                for v in self.vertices
            ],
            "edges": [
                {
                    "from": e.from_id,
                    "to": e.to_id,
                    "translation": e.relative_transform.t.tolist(),
                    "rotation": e.relative_transform.to_quaternion().tolist(),
                    "inliers": e.inliers,
                }
                for e in self.edges
            ],
            "prev_frame": [
                {
                    "id": vertex_id,
                    "translation": pose.t.tolist(),
                    "rotation": pose.to_quaternion().tolist(),
                }
                for vertex_id, pose in sorted(self.prev_frame_poses.items())
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "GraphSnapshot":
        version = data.get("version")
        if version != RECORD_VERSION:
            raise ValueError(f"Unsupported graph record version: {version}")

        vertices = [
            VertexRecord(
                vertex_id=int(v["id"]),
                pose=SE3.from_translation_quaternion(v["translation"], v["rotation"]),
                frame_id=None if v.get("frame_id") is None else int(v["frame_id"]),
            )
            for v in data["vertices"]
        ]
        ids = [v.vertex_id for v in vertices]
        if ids != list(range(len(ids))):
            raise ValueError("Vertex ids in a graph record must be 0..N-1 in ascending order")

        edges = []
        for e in data["edges"]:
            from_id, to_id = int(e["from"]), int(e["to"])
            if not (0 <= from_id < len(ids) and 0 <= to_id < len(ids)):
                raise ValueError(f"Edge {from_id} -> {to_id} references an unknown vertex")
            edges.append(
                EdgeRecord(
                    from_id,
                    to_id,
                    SE3.from_translation_quaternion(e["translation"], e["rotation"]),
                    int(e["inliers"]),
                )
            )

        prev_frame_poses = {}
        for p in data.get("prev_frame", []):
            vertex_id = int(p["id"])
            if not 0 <= vertex_id < len(ids):
                raise ValueError(f"Previous frame pose references an unknown vertex {vertex_id}")
            prev_frame_poses[vertex_id] = SE3.from_translation_quaternion(p["translation"], p["rotation"])
        return cls(vertices=vertices, edges=edges, prev_frame_poses=prev_frame_poses)


def _g2o_pose(pose: SE3) -> str:
    w, x, y, z = pose.to_quaternion().tolist()
    tx, ty, tz = pose.t.tolist()
    return f"{tx:.9f} {ty:.9f} {tz:.9f} {x:.9f} {y:.9f} {z:.9f} {w:.9f}"


def _g2o_information(inliers: int) -> str:
    info = np.eye(6) * float(inliers)
    upper = info[np.triu_indices(6)]
    return " ".join(f"{value:g}" for value in upper)


def to_g2o_lines(snapshot: GraphSnapshot) -> List[str]:
    lines = [f"VERTEX_SE3:QUAT {v.vertex_id} {_g2o_pose(v.pose)}" for v in snapshot.vertices]
    if snapshot.vertices:
        lines.append(f"FIX {snapshot.vertices[0].vertex_id}")
    lines.extend(
        f"EDGE_SE3:QUAT {e.from_id} {e.to_id} {_g2o_pose(e.relative_transform)} "
        f"{_g2o_information(e.inliers)}"
        for e in snapshot.edges
    )
    return lines


def save_graph(path: Union[str, Path], snapshot: GraphSnapshot, fmt: str = "json") -> Path:
    """
    Write a graph snapshot.

    Args:
        path: Output file
        snapshot: Graph snapshot
        fmt: "json" or "g2o"

    Returns:
        The written path
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if fmt == "json":
        with open(path, "w") as f:
            json.dump(snapshot.to_dict(), f, indent=2)
    elif fmt == "g2o":
        with open(path, "w") as f:
            f.write("\n".join(to_g2o_lines(snapshot)) + "\n")
    else:
        raise ValueError(f"Unsupported graph format: {fmt}")

    logger.debug(f"Wrote {fmt} graph record to {path}")
    return path


def load_graph(path: Union[str, Path]) -> GraphSnapshot:
    """Read a JSON graph record written by `save_graph`."""
    with open(path, "r") as f:
        data = json.load(f)
    return GraphSnapshot.from_dict(data)
