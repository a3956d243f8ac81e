import math

import numpy as np
from numpy.testing import assert_allclose

from offline_slam.builder import GraphBuilder
from offline_slam.config import SLAMConfig
from offline_slam.graph import PoseGraph
from offline_slam.models import (
    EdgeKind, LaserScan, NodeKind, TagDetection, TagDetectionList,
)


class TestOdometryKeyframing:

    def test_one_keyframe_after_step_time(self, builder, graph, make_pose):
        assert builder.handle_pose(make_pose(0.0)) is False
        assert builder.handle_pose(make_pose(1.5, x=1.0)) is True
        assert graph.node_count == 2
        kinds = [e.kind for e in graph.edges]
        assert kinds == [EdgeKind.ANCHOR, EdgeKind.ODOMETRY]
        odo = graph.edges[1]
        assert odo.nodes == (0, 1)
        assert_allclose(odo.measurement, [1.0, 0.0, 0.0], atol=1e-12)
        assert_allclose(odo.covariance, np.eye(3) * 0.01)
        assert_allclose(graph.node(1).initial_estimate, [1.0, 0.0, 0.0], atol=1e-12)
        assert graph.node(1).attributes["stamp"] == 1.5

    def test_samples_below_step_time_add_nothing(self, builder, graph, make_pose):
        for t in (0.0, 0.3, 0.6, 0.9):
            assert builder.handle_pose(make_pose(t, x=t)) is False
        assert graph.node_count == 1
        assert graph.edge_count == 1
        assert builder.last_sample_pose.timestamp == 0.9

        assert builder.handle_pose(make_pose(1.0, x=1.0)) is True
        assert graph.node_count == 2
        assert graph.edge_count == 2
        assert graph.edges[-1].nodes == (0, 1)

    def test_step_time_measured_from_last_keyframe(self, builder, graph, make_pose):
        for t in (0.0, 0.6, 1.2, 1.8, 2.4):
            builder.handle_pose(make_pose(t))
        # Keyframes at 0.0 (root), 1.2 and 2.4; 1.8 is only 0.6 s after 1.2.
        assert builder.keyframe_indices == [0, 1, 2]
        assert [graph.node(i).attributes.get("stamp") for i in (1, 2)] == [1.2, 2.4]

    def test_gap_of_exactly_step_time_in_microseconds(self, builder, graph, make_pose):
        # 2.3 - 1.3 is just below 1.0 in floating point.
        first, second = make_pose(1.3), make_pose(2.3, x=0.5)
        first.utime, second.utime = 1_300_000, 2_300_000
        builder.handle_pose(first)
        assert builder.handle_pose(second) is True
        assert graph.node_count == 2

    def test_stamp_us_without_utime_rounds_seconds(self, make_pose):
        assert make_pose(2.3).stamp_us == 2_300_000
        assert make_pose(0.1 * 3).stamp_us == 300_000

    def test_composes_onto_previous_node_in_its_frame(self, builder, graph, make_pose):
        builder.handle_pose(make_pose(0.0))
        builder.handle_pose(make_pose(1.0, x=1.0, yaw=math.pi / 2))
        builder.handle_pose(make_pose(2.0, x=1.0, y=1.0, yaw=math.pi / 2))
        assert_allclose(graph.node(2).initial_estimate, [1.0, 1.0, math.pi / 2], atol=1e-12)
        assert_allclose(graph.edges[2].measurement, [1.0, 0.0, 0.0], atol=1e-12)
        assert_allclose(graph.edges[1].measurement, [1.0, 0.0, math.pi / 2], atol=1e-12)

    def test_odometry_links_robot_poses_across_landmarks(self, builder, graph, make_pose, make_tags):
        builder.handle_pose(make_pose(0.0))
        builder.handle_tags(make_tags(0.5, 11))
        builder.handle_pose(make_pose(1.5, x=1.0))
        assert graph.node(1).kind == NodeKind.LANDMARK
        assert graph.edges[-1].nodes == (0, 2)

    def test_ground_truth_carried_onto_node(self, builder, graph, make_pose):
        builder.handle_pose(make_pose(0.0, ground_truth=[0.0, 0.0, 0.0]))
        builder.handle_pose(make_pose(1.0, x=1.0, ground_truth=[1.1, 0.0, 0.0]))
        assert_allclose(graph.node(1).ground_truth, [1.1, 0.0, 0.0])

    def test_custom_step_time_and_noise(self, make_pose):
        g = PoseGraph()
        b = GraphBuilder(g, SLAMConfig(step_time=0.5, odom_noise=0.2))
        b.handle_pose(make_pose(0.0))
        assert b.handle_pose(make_pose(0.5, x=0.1)) is True
        assert_allclose(g.edges[1].covariance, np.eye(3) * 0.04)

    def test_counts_are_monotone(self, builder, graph, make_pose):
        sizes = []
        for k in range(10):
            builder.handle_pose(make_pose(0.4 * k, x=0.1 * k))
            sizes.append((graph.node_count, graph.edge_count))
        assert sizes == sorted(sizes)
        assert builder.counts["pose_samples"] == 10
        assert len(builder.pose_history) == 10


class TestTags:

    def test_first_sighting_creates_stranded_landmark(self, builder, graph, make_tags):
        builder.handle_tags(make_tags(0.2, 7))
        assert graph.node_count == 2
        lm = graph.node(1)
        assert lm.kind == NodeKind.LANDMARK
        assert lm.stranded
        assert lm.attributes["tag_id"] == 7
        assert graph.landmarks.get(7) == 1
        # No observation edge is attached.
        assert graph.edge_count == 1

    def test_repeat_sighting_adds_nothing(self, builder, graph, make_tags):
        builder.handle_tags(make_tags(0.2, 7))
        builder.handle_tags(make_tags(0.4, 7))
        assert graph.node_count == 2
        assert len(builder.sightings_of(7)) == 2

    def test_registry_size_equals_distinct_ids(self, builder, graph, make_tags):
        builder.handle_tags(make_tags(0.1, 1, 2))
        builder.handle_tags(make_tags(0.2, 2, 3))
        builder.handle_tags(make_tags(0.3, 1))
        assert len(graph.landmarks) == 3
        assert sorted(t for t, _ in graph.landmarks.items()) == [1, 2, 3]
        assert builder.counts["sightings"] == 5

    def test_sighting_pose_decoded(self, builder, make_tags):
        builder.handle_tags(make_tags(0.1, 5))
        s = builder.tag_sightings[0]
        assert s.keyframe_index == 0
        assert_allclose(s.pose[:3, 3], [0.1, 0.0, -1.0], atol=1e-9)

    def test_degenerate_detection_skipped(self, builder, graph, tag_homography):
        tags = TagDetectionList(0.3, [
            TagDetection(1, np.zeros((3, 3))),
            TagDetection(2, tag_homography()),
        ])
        builder.handle_tags(tags)
        assert builder.counts["degenerate"] == 1
        assert 1 not in graph.landmarks
        assert 2 in graph.landmarks


class TestLaserAndReset:

    def test_laser_recorded_only(self, builder, graph):
        assert builder.handle_laser(LaserScan(0.1, {"ranges": [1.0]})) is False
        assert len(builder.laser_scans) == 1
        assert graph.node_count == 1

    def test_reset(self, builder, graph, make_pose, make_tags):
        builder.handle_pose(make_pose(0.0))
        builder.handle_pose(make_pose(1.0, x=1.0))
        builder.handle_tags(make_tags(1.1, 4))
        builder.reset()
        assert graph.node_count == 1
        assert builder.keyframe_indices == [0]
        assert builder.last_keyframe_pose is None
        assert builder.tag_sightings == []
        # After reset the next sample is keyframe zero again.
        assert builder.handle_pose(make_pose(5.0, x=3.0)) is False
