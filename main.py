import argparse, os, json, logging
from dataclasses import replace
from typing import Optional

from offline_slam.config import SLAMConfig, load_config
from offline_slam.errors import LogSourceError, SingularSystem
from offline_slam.session import SLAMSession
from offline_slam.source import JSONLLogSource
from offline_slam_common.kpi_logging import KPILogger
from offline_slam_common.export import (
    ensure_dir,
    export_landmarks_csv,
    export_snapshot_json,
    export_stats_json,
    export_trajectory_csv,
)
from offline_slam_common.metrics import trajectory_metrics
from offline_slam_common.viz import ground_truth_xy, plot_graph_xy, plot_initial_vs_optimized


def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="Offline pose-graph SLAM over a replayed robot log (odometry + AprilTags).")
    ap.add_argument("--log-file", required=True, help="Path to a JSON-lines robot log")
    ap.add_argument("--export-path", required=True, help="Directory to write outputs")
    ap.add_argument("--config", default=None, help="Optional JSON/TOML config file")
    ap.add_argument("--steps", type=int, default=None,
                    help="Single-step this many keyframes instead of draining the whole log")
    ap.add_argument("--optimize", action="store_true", help="Optimize the graph after replay")
    ap.add_argument("--solver", choices=["gauss-newton", "levenberg-marquardt", "gtsam"], default=None,
                    help="Optimizer backend (default from config: gauss-newton)")
    ap.add_argument("--max-iters", type=int, default=None, help="Optimizer iteration cap")
    ap.add_argument("--tolerance", type=float, default=None, help="Convergence threshold on the correction norm")
    ap.add_argument("--robust", choices=["none", "huber", "cauchy"], default=None, help="Robust kernel")
    ap.add_argument("--robust-k", type=float, default=None, help="Robust tuning parameter")
    ap.add_argument("--step-time", type=float, default=None, help="Seconds of log time between keyframes")
    ap.add_argument("--odom-noise", type=float, default=None, help="Odometry standard deviation")
    ap.add_argument("--tag-size", type=float, default=None, help="Tag edge length in metres")
    ap.add_argument("--quat-order", choices=["wxyz", "xyzw"], default="wxyz", help="Quaternion order in the log")
    ap.add_argument("--log", default="INFO", help="Logging level")
    ap.add_argument("--kpi", action="store_true", help="Write KPI events to <export-path>/kpi_events.jsonl")
    return ap.parse_args(argv)


def config_from_args(args) -> SLAMConfig:
    """Config file values, overridden by any CLI flag that was given."""
    cfg = load_config(args.config)
    top = {}
    if args.step_time is not None:
        top["step_time"] = args.step_time
    if args.odom_noise is not None:
        top["odom_noise"] = args.odom_noise
    if args.tag_size is not None:
        top["tag_size"] = args.tag_size
    opt = {}
    if args.solver is not None:
        opt["method"] = args.solver
    if args.max_iters is not None:
        opt["max_iterations"] = args.max_iters
    if args.tolerance is not None:
        opt["tolerance"] = args.tolerance
    if args.robust is not None:
        opt["robust_kind"] = None if args.robust == "none" else args.robust
    if args.robust_k is not None:
        opt["robust_k"] = args.robust_k
    cfg = replace(cfg, optimizer=replace(cfg.optimizer, **opt), **top)
    return cfg.validate()


def replay(session: SLAMSession, steps: Optional[int]) -> None:
    log = logging.getLogger("offline_slam.main")
    if steps is None:
        result = session.drain()
        log.info("Drained log: %d events, %d keyframes", result.events, result.keyframes)
        return
    for i in range(steps):
        result = session.single_step()
        if result.end_of_log:
            log.info("End of log after %d step(s)", i + 1)
            break


def run(args, cfg: SLAMConfig, out_dir: str) -> SLAMSession:
    log = logging.getLogger("offline_slam.main")
    kpi = None
    if args.kpi:
        kpi = KPILogger(extra_fields={"solver": cfg.optimizer.method},
                        log_path=os.path.join(out_dir, "kpi_events.jsonl"),
                        emit_to_logger=False)
    try:
        with JSONLLogSource(args.log_file) as src:
            session = SLAMSession(src, cfg, kpi=kpi, quat_order=args.quat_order)
            with session:
                replay(session, args.steps)
                initial = session.snapshot()
                report = None
                if args.optimize:
                    try:
                        report = session.optimize()
                    except SingularSystem as exc:
                        log.error("Optimization failed: %s", exc)
                        if exc.report is not None:
                            with open(os.path.join(out_dir, "optimization.json"), "w", encoding="utf-8") as f:
                                json.dump(exc.report.as_dict(), f, indent=2)
                        raise
                    with open(os.path.join(out_dir, "optimization.json"), "w", encoding="utf-8") as f:
                        json.dump(report.as_dict(), f, indent=2)
                    print(f"Optimization: {report.status.value} after {report.iterations} iteration(s), "
                          f"cost {report.initial_cost:.6g} -> {report.final_cost:.6g}")

                snap = session.snapshot()
                export_snapshot_json(snap, os.path.join(out_dir, "graph_snapshot.json"))
                export_trajectory_csv(snap, os.path.join(out_dir, "trajectory.csv"),
                                      initial=initial if report is not None else None)
                export_landmarks_csv(snap, dict(session.graph.landmarks.items()),
                                     os.path.join(out_dir, "landmarks.csv"))

                metrics = trajectory_metrics(snap)
                if metrics is not None:
                    print(f"ATE: matches={metrics['ate']['matches']}, rmse={metrics['ate']['rmse']}")
                counts = dict(session.graph.counts)
                counts.update({f"builder_{k}": v for k, v in session.builder.counts.items()})
                counts.update({f"dispatch_{k}": v for k, v in session.dispatcher.counts.items()})
                export_stats_json(counts, os.path.join(out_dir, "graph_stats.json"),
                                  report=report.as_dict() if report is not None else None,
                                  metrics=metrics)

                xy_png = os.path.join(out_dir, "trajectory_xy.png")
                if report is not None:
                    plot_initial_vs_optimized(initial, snap, xy_png, ground_truth=ground_truth_xy(snap))
                else:
                    plot_graph_xy(snap, xy_png)
                print(f"Artifacts written to: {out_dir}")
    finally:
        if kpi is not None:
            kpi.close()
    return session


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=args.log.upper(),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    out_dir = os.path.abspath(args.export_path)
    ensure_dir(out_dir)
    cfg = config_from_args(args)

    try:
        run(args, cfg, out_dir)
    except LogSourceError as exc:
        logging.getLogger("offline_slam.main").error("Failed to open log source: %s", exc)
        raise


if __name__ == "__main__":
    main()
