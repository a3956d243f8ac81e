import csv
import json

import pytest

import main as cli
from offline_slam.errors import CorruptRecord, SingularSystem
from offline_slam.models import NodeKind
from offline_slam.optimizer import OptimizationStatus
from offline_slam.session import SLAMSession
from offline_slam.source import MemoryLogSource, write_jsonl_log
from offline_slam_common.kpi_logging import KPILogger


@pytest.fixture
def session(straight_line_records):
    with SLAMSession(MemoryLogSource(straight_line_records)) as s:
        yield s


class TestReplay:

    def test_drain_builds_graph(self, session):
        result = session.drain()
        assert result.end_of_log
        assert session.end_of_log
        robot = session.graph.robot_pose_indices()
        assert result.keyframes == len(robot) - 1
        assert result.keyframes == 5
        stamps = [session.graph.node(i).attributes["stamp"] for i in robot[1:]]
        assert stamps == pytest.approx([1.0, 2.0, 3.0, 4.0, 5.0])
        assert sorted(t for t, _ in session.graph.landmarks.items()) == [3, 4]

    def test_keyframe_at_exact_step_from_utime_stamps(self, pose_record):
        records = [pose_record(1.3), pose_record(2.3, x=0.5), pose_record(3.2, x=1.0)]
        with SLAMSession(MemoryLogSource(records)) as s:
            result = s.drain()
        assert result.keyframes == 1
        assert s.graph.node_count == 2
        assert s.graph.node(1).attributes["stamp"] == pytest.approx(2.3)

    def test_single_step_adds_one_keyframe(self, session):
        first = session.single_step()
        assert first.keyframes == 1
        assert not first.end_of_log
        assert len(session.graph.robot_pose_indices()) == 2
        session.single_step()
        assert len(session.graph.robot_pose_indices()) == 3

    def test_stop_request_is_consumed(self, session):
        session.request_stop()
        stopped = session.drain()
        assert stopped.stopped and stopped.events == 0
        resumed = session.drain()
        assert resumed.end_of_log and not resumed.stopped

    def test_corrupt_record_then_resume(self, pose_record):
        records = [pose_record(0.0), {"timestamp": 0.5, "channel": "POSE", "payload": "garbage"},
                   pose_record(1.0, x=1.0)]
        with SLAMSession(MemoryLogSource(records)) as s:
            with pytest.raises(CorruptRecord):
                s.drain()
            result = s.drain()
            assert result.end_of_log
            assert s.graph.node_count == 2

    def test_reset_keeps_source_position(self, session):
        session.single_step()
        session.reset()
        assert session.graph.node_count == 1
        assert session.last_report is None
        result = session.drain()
        assert result.end_of_log


class TestOptimize:

    def test_optimize_after_replay(self, session):
        session.drain()
        report = session.optimize()
        assert report.status == OptimizationStatus.CONVERGED
        assert session.last_report is report
        assert set(report.excluded_nodes) == set(session.graph.landmark_indices())

    def test_optimize_async(self, session):
        session.drain()
        future = session.optimize_async()
        report = future.result(timeout=30)
        assert report.converged
        snap = session.snapshot()
        assert all(n.state is None for n in snap.nodes_of_kind(NodeKind.LANDMARK))

    def test_kpi_counts(self, straight_line_records):
        kpi = KPILogger(emit_to_logger=False)
        with SLAMSession(MemoryLogSource(straight_line_records), kpi=kpi) as s:
            s.drain()
            s.optimize()
        assert kpi.counts["event_dispatched"] == len(straight_line_records)
        assert kpi.counts["landmark_registered"] == 2
        assert kpi.counts["optimization_end"] == 1


class TestCommandLine:

    def _write_log(self, tmp_path, records):
        path = tmp_path / "run.jsonl"
        write_jsonl_log(records, path)
        return path

    def test_end_to_end(self, tmp_path, straight_line_records):
        log = self._write_log(tmp_path, straight_line_records)
        out = tmp_path / "out"
        cli.main(["--log-file", str(log), "--export-path", str(out),
                  "--optimize", "--kpi", "--log", "WARNING"])
        for name in ("graph_snapshot.json", "trajectory.csv", "landmarks.csv", "graph_stats.json",
                     "trajectory_xy.png", "optimization.json", "kpi_events.jsonl"):
            assert (out / name).exists(), name

        stats = json.loads((out / "graph_stats.json").read_text())
        assert stats["optimization"]["status"] == "converged"
        assert stats["counts"]["landmark"] == 2
        assert stats["metrics"]["ate"]["rmse"] < 1e-6

        with (out / "landmarks.csv").open(newline="") as f:
            rows = list(csv.DictReader(f))
        assert [r["tag_id"] for r in rows] == ["3", "4"]
        assert all(r["stranded"] == "True" for r in rows)

        with (out / "trajectory.csv").open(newline="") as f:
            header = next(csv.reader(f))
        assert header == ["index", "x", "y", "theta", "x0", "y0", "theta0"]

    def test_optimized_plot_gets_ground_truth(self, tmp_path, straight_line_records, monkeypatch):
        seen = {}

        def fake_plot(initial, optimized, path, ground_truth=None):
            seen["ground_truth"] = ground_truth

        monkeypatch.setattr(cli, "plot_initial_vs_optimized", fake_plot)
        log = self._write_log(tmp_path, straight_line_records)
        cli.main(["--log-file", str(log), "--export-path", str(tmp_path / "out"),
                  "--optimize", "--log", "WARNING"])
        truth = seen["ground_truth"]
        assert truth.shape == (6, 3)
        assert truth[:, 0].tolist() == pytest.approx([0.0, 0.5, 1.0, 1.5, 2.0, 2.5])

    def test_steps_limit_replay(self, tmp_path, straight_line_records):
        log = self._write_log(tmp_path, straight_line_records)
        out = tmp_path / "out"
        cli.main(["--log-file", str(log), "--export-path", str(out), "--steps", "2",
                  "--log", "WARNING"])
        snap = json.loads((out / "graph_snapshot.json").read_text())
        robot = [n for n in snap["nodes"] if n["kind"] == "robot-pose"]
        assert len(robot) == 3
        assert not (out / "optimization.json").exists()

    def test_cli_overrides_config(self, tmp_path):
        cfg_path = tmp_path / "cfg.json"
        cfg_path.write_text(json.dumps({"step_time": 2.0, "optimizer": {"method": "levenberg-marquardt"}}))
        args = cli.parse_args(["--log-file", "x", "--export-path", "y", "--config", str(cfg_path),
                               "--odom-noise", "0.3", "--robust", "huber"])
        cfg = cli.config_from_args(args)
        assert cfg.step_time == 2.0
        assert cfg.odom_noise == 0.3
        assert cfg.optimizer.method == "levenberg-marquardt"
        assert cfg.optimizer.robust_kind == "huber"

    def test_singular_optimization_writes_report(self, tmp_path, pose_record):
        # A near-zero anchor weight leaves the gauge unconstrained.
        log = self._write_log(tmp_path, [pose_record(0.0), pose_record(1.0, x=1.0)])
        cfg_path = tmp_path / "cfg.json"
        cfg_path.write_text(json.dumps({"anchor_variance": 1e30}))
        out = tmp_path / "out"
        with pytest.raises(SingularSystem):
            cli.main(["--log-file", str(log), "--export-path", str(out), "--config", str(cfg_path),
                      "--optimize", "--log", "CRITICAL"])
        report = json.loads((out / "optimization.json").read_text())
        assert report["status"] == "singular_system"
