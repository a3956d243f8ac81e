from typing import TYPE_CHECKING, Dict, List, Optional
import logging
from collections import Counter

import numpy as np

from .config import SLAMConfig
from .errors import DegenerateHomography
from .graph import PoseGraph
from .models import (
    Channel, EdgeKind, LaserScan, NodeKind, PoseSample, TagDetectionList, TagSighting,
)
from .transforms import (
    compose, decode_tag_pose, matrix_to_xyt, quat_heading_delta, quat_pos_to_matrix,
    relative_motion, xyt_to_matrix,
)

if TYPE_CHECKING:
    from offline_slam_common.kpi_logging import KPILogger

logger = logging.getLogger("offline_slam.builder")


class GraphBuilder:
    """Turns decoded sensor events into pose-graph nodes and edges.

    Odometry is keyframed: a raw pose sample only becomes a node once at
    least ``step_time`` seconds of log time have passed since the last
    keyframe. Tag detections create (stranded) landmark nodes the first time
    an id is seen. Laser scans are only recorded.

    Every handler either fully commits its node/edge or leaves the graph
    untouched, so replay can be interrupted between events.
    """

    def __init__(self, graph: PoseGraph, config: Optional[SLAMConfig] = None,
                 kpi: Optional["KPILogger"] = None):
        self.graph = graph
        self.config = config or SLAMConfig()
        self.kpi = kpi
        self._reset_state()

    def _reset_state(self) -> None:
        self.last_keyframe_pose: Optional[PoseSample] = None
        self.last_sample_pose: Optional[PoseSample] = None
        self.keyframe_indices: List[int] = [self.graph.robot_pose_indices()[-1]]
        self.pose_history: List[PoseSample] = []
        self.laser_scans: List[LaserScan] = []
        self.tag_sightings: List[TagSighting] = []
        self.counts: Counter = Counter()

    def reset(self) -> None:
        """Reset the graph to its root and forget all replay state."""
        self.graph.reset()
        self._reset_state()

    def handlers(self) -> Dict[Channel, object]:
        return {
            Channel.POSE: self.handle_pose,
            Channel.TAG_DETECTIONS: self.handle_tags,
            Channel.LASER: self.handle_laser,
        }

    @property
    def current_keyframe(self) -> int:
        return self.keyframe_indices[-1]

    # ------------------------------------------------------------------
    # Odometry
    # ------------------------------------------------------------------
    def handle_pose(self, pose: PoseSample) -> bool:
        """Returns True when the sample was promoted to a new keyframe."""
        self.pose_history.append(pose)
        self.counts["pose_samples"] += 1
        self.last_sample_pose = pose
        if self.last_keyframe_pose is None:
            # Keyframe zero is already represented by the root node.
            self.last_keyframe_pose = pose
            logger.debug("First pose sample at t=%.3f anchors keyframe 0", pose.timestamp)
            return False

        # Compared in integer microseconds; a gap of exactly step_time counts.
        elapsed_us = pose.stamp_us - self.last_keyframe_pose.stamp_us
        if elapsed_us < int(round(self.config.step_time * 1e6)):
            return False
        elapsed = elapsed_us / 1e6

        last = self.last_keyframe_pose
        dq, dxyz = relative_motion(last.position, last.orientation, pose.position, pose.orientation)
        T = quat_pos_to_matrix(dq, dxyz)

        # Compose onto the previous node's estimate, not the raw previous sample.
        prev_index = self.current_keyframe
        prev_state = self.graph.node(prev_index).state
        estimate = matrix_to_xyt(compose(xyt_to_matrix(prev_state), T))

        measurement = np.array([dxyz[0], dxyz[1], quat_heading_delta(last.orientation, pose.orientation)])
        var = self.config.odom_noise ** 2
        new_index = self.graph.node_count
        self.graph.add_node(NodeKind.ROBOT_POSE, estimate, ground_truth=pose.ground_truth,
                            stamp=pose.timestamp)
        edge_id = self.graph.add_edge(
            EdgeKind.ODOMETRY,
            (prev_index, new_index),
            measurement,
            np.eye(3) * var,
            stamp=pose.timestamp,
        )
        self.keyframe_indices.append(new_index)
        self.last_keyframe_pose = pose
        self.counts["keyframes"] += 1
        logger.debug(
            "Keyframe %d at t=%.3f (dt=%.3f): edge %d z=(%.3f, %.3f, %.3f)",
            new_index, pose.timestamp, elapsed, edge_id, *measurement,
        )
        if self.kpi:
            self.kpi.keyframe_created(new_index, pose.timestamp, edge_id=edge_id)
        return True

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------
    def handle_tags(self, tags: TagDetectionList) -> bool:
        cam = self.config.camera
        for det in tags.detections:
            try:
                M = decode_tag_pose(det.homography, cam.fx, cam.fy, cam.cx, cam.cy, self.config.tag_size)
            except DegenerateHomography as exc:
                self.counts["degenerate"] += 1
                logger.warning("Skipping tag %d at t=%.3f: %s", det.id, tags.timestamp, exc)
                continue
            self.tag_sightings.append(TagSighting(
                timestamp=tags.timestamp,
                tag_id=det.id,
                pose=M,
                keyframe_index=self.current_keyframe,
            ))
            self.counts["sightings"] += 1

            # First sighting: add a landmark node. It stays stranded (no edge)
            # until an observation edge is attached.
            if det.id not in self.graph.landmarks:
                index = self.graph.add_node(NodeKind.LANDMARK, None, tag_id=det.id)
                self.graph.landmarks.register(det.id, index)
                self.counts["landmarks"] += 1
                logger.debug("Registered tag %d as landmark node %d", det.id, index)
                if self.kpi:
                    self.kpi.landmark_registered(det.id, index, tags.timestamp)
        return False

    # ------------------------------------------------------------------
    # Laser
    # ------------------------------------------------------------------
    def handle_laser(self, scan: LaserScan) -> bool:
        self.laser_scans.append(scan)
        self.counts["lasers"] += 1
        return False

    def sightings_of(self, tag_id: int) -> List[TagSighting]:
        return [s for s in self.tag_sightings if s.tag_id == tag_id]
