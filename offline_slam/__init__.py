"""offline_slam: incremental pose-graph SLAM over a replayed robot log.

This package provides:
- Rigid-body / quaternion / homography geometry helpers
- A tagged-variant pose graph with a landmark registry
- Log sources, payload decoding and an event dispatcher
- The incremental graph builder (odometry keyframing, tag landmarks)
- Pluggable nonlinear least-squares optimizers (sparse Gauss-Newton/LM, GTSAM)
- A session object tying them together for a driver (see main.py)

Design intent:
Keep modules small and single-purpose so a different log source or solver
can be swapped in while the rest of the pipeline remains stable.
"""
__all__ = [
    "builder",
    "codec",
    "config",
    "dispatcher",
    "errors",
    "graph",
    "models",
    "optimizer",
    "robust",
    "session",
    "source",
    "transforms",
]
__version__ = "0.1.0"
