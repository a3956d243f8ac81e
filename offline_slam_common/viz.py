from typing import Dict, Optional, Sequence
import numpy as np

import matplotlib
matplotlib.use("Agg")  # for headless export
import matplotlib.pyplot as plt

from offline_slam.models import EdgeKind, GraphSnapshot, NodeKind


def trajectory_xy(snapshot: GraphSnapshot) -> np.ndarray:
    """Robot-pose states in index order as an (N, 3) array of x, y, theta."""
    rows = [n.state for n in snapshot.nodes_of_kind(NodeKind.ROBOT_POSE) if n.state is not None]
    return np.asarray(rows, dtype=float).reshape(-1, 3)


def ground_truth_xy(snapshot: GraphSnapshot) -> np.ndarray:
    """Ground truth of the robot poses that carry it, as an (N, 3) array."""
    rows = [n.ground_truth for n in snapshot.nodes_of_kind(NodeKind.ROBOT_POSE) if n.ground_truth is not None]
    return np.asarray(rows, dtype=float).reshape(-1, 3)


def landmarks_xy(snapshot: GraphSnapshot) -> Dict[int, np.ndarray]:
    return {
        n.index: np.asarray(n.state, dtype=float)
        for n in snapshot.nodes_of_kind(NodeKind.LANDMARK)
        if n.state is not None
    }


def _odometry_segments(snapshot: GraphSnapshot):
    by_index = {n.index: n for n in snapshot.nodes}
    for e in snapshot.edges_of_kind(EdgeKind.ODOMETRY):
        a, b = (by_index[i].state for i in e.nodes)
        if a is not None and b is not None:
            yield (a[0], b[0]), (a[1], b[1])


def plot_graph_xy(snapshot: GraphSnapshot, path_png: str, title: str = "Pose graph (XY)",
                  heading_every: int = 0):
    """Trajectory, odometry edges and landmarks of one snapshot."""
    traj = trajectory_xy(snapshot)
    plt.figure(figsize=(8, 6))
    for xs, ys in _odometry_segments(snapshot):
        plt.plot(xs, ys, color="0.8", linewidth=0.8, zorder=1)
    if len(traj):
        plt.plot(traj[:, 0], traj[:, 1], marker=".", label="robot poses", zorder=2)
        if heading_every > 0:
            sub = traj[::heading_every]
            plt.quiver(sub[:, 0], sub[:, 1], np.cos(sub[:, 2]), np.sin(sub[:, 2]),
                       angles="xy", scale_units="xy", scale=4.0, width=0.003)
    lms = landmarks_xy(snapshot)
    if lms:
        pts = np.stack(list(lms.values()))
        plt.scatter(pts[:, 0], pts[:, 1], marker="s", color="tab:red", label="landmarks", zorder=3)
    plt.axis("equal")
    plt.xlabel("x [m]"); plt.ylabel("y [m]")
    plt.legend()
    plt.title(title)
    plt.tight_layout()
    plt.savefig(path_png, dpi=150)
    plt.close()


def plot_initial_vs_optimized(initial: GraphSnapshot, optimized: GraphSnapshot, path_png: str,
                              ground_truth: Optional[Sequence[Sequence[float]]] = None):
    plt.figure(figsize=(10, 7))
    init = trajectory_xy(initial)
    opt = trajectory_xy(optimized)
    if len(init):
        plt.plot(init[:, 0], init[:, 1], linestyle="--", label="initial (odometry)")
    if len(opt):
        plt.plot(opt[:, 0], opt[:, 1], label="optimized")
    if ground_truth is not None and len(ground_truth):
        gt = np.asarray(ground_truth, dtype=float)
        plt.plot(gt[:, 0], gt[:, 1], linestyle=":", color="k", label="ground truth")
    lms = landmarks_xy(optimized)
    if lms:
        pts = np.stack(list(lms.values()))
        plt.scatter(pts[:, 0], pts[:, 1], marker="s", color="tab:red", label="landmarks")
    plt.xlabel("x [m]"); plt.ylabel("y [m]"); plt.title("Trajectory (XY): initial vs optimized")
    plt.axis("equal"); plt.legend(); plt.tight_layout()
    plt.savefig(path_png, dpi=180); plt.close()
