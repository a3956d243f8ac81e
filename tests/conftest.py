"""Shared fixtures: synthetic pose samples, tag homographies and log records."""
import numpy as np
import pytest

from offline_slam.builder import GraphBuilder
from offline_slam.codec import encode_laser, encode_pose, encode_tag_detections
from offline_slam.config import CameraIntrinsics, SLAMConfig
from offline_slam.graph import PoseGraph
from offline_slam.models import PoseSample, Quaternion, TagDetection, TagDetectionList, Translation
from offline_slam.transforms import pose_to_homography, yaw_to_quat


@pytest.fixture
def config():
    return SLAMConfig()


@pytest.fixture
def graph():
    return PoseGraph()


@pytest.fixture
def builder(graph, config):
    return GraphBuilder(graph, config)


@pytest.fixture
def make_pose():
    """PoseSample at (x, y) with heading ``yaw`` (z = 0)."""
    def _make(t, x=0.0, y=0.0, yaw=0.0, ground_truth=None):
        return PoseSample(
            timestamp=t,
            position=Translation(x, y, 0.0),
            orientation=Quaternion(*yaw_to_quat(yaw)),
            ground_truth=None if ground_truth is None else np.asarray(ground_truth, dtype=float),
        )
    return _make


@pytest.fixture
def tag_homography():
    """Homography of a tag facing the camera at (lateral, depth) metres."""
    cam = CameraIntrinsics()

    def _make(lateral=0.1, depth=1.0, tag_size=0.15):
        M = np.eye(4)
        M[:3, 3] = [lateral, 0.0, -depth]
        return pose_to_homography(cam.fx, cam.fy, cam.cx, cam.cy, M, tag_size)
    return _make


@pytest.fixture
def make_tags(tag_homography):
    def _make(t, *tag_ids):
        return TagDetectionList(t, [TagDetection(i, tag_homography()) for i in tag_ids])
    return _make


@pytest.fixture
def pose_record():
    """Raw log record for the pose channel."""
    def _make(t, x=0.0, y=0.0, yaw=0.0, channel="POSE", ground_truth=None):
        return {
            "timestamp": t,
            "channel": channel,
            "payload": encode_pose(t, [x, y, 0.0], yaw_to_quat(yaw), ground_truth=ground_truth),
        }
    return _make


@pytest.fixture
def tag_record(tag_homography):
    def _make(t, *tag_ids, channel="TAG_DETECTION_TX"):
        return {
            "timestamp": t,
            "channel": channel,
            "payload": encode_tag_detections(t, [(i, tag_homography()) for i in tag_ids]),
        }
    return _make


@pytest.fixture
def laser_record():
    def _make(t, channel="LASER"):
        return {"timestamp": t, "channel": channel, "payload": encode_laser(t, [1.0, 2.0, 3.0])}
    return _make


@pytest.fixture
def straight_line_records(pose_record, tag_record, laser_record):
    """5 s of 10 Hz poses moving +x at 0.5 m/s, with tags and laser scans."""
    records = []
    for k in range(51):
        t = k * 0.1
        x = 0.5 * t
        records.append(pose_record(t, x, 0.0, 0.0, ground_truth=[x, 0.0, 0.0]))
        if k % 10 == 5:
            records.append(tag_record(t, 3, 4))
        if k % 4 == 0:
            records.append(laser_record(t))
    return records
