from typing import Dict, List, Optional, Sequence, Tuple
import math
from statistics import mean, pstdev

import numpy as np

from offline_slam.models import GraphSnapshot, NodeKind
from offline_slam.transforms import wrap_angle, xyt_delta


def _umeyama(A: np.ndarray, B: np.ndarray, with_scale: bool = False):
    """Rigid (optionally similarity) alignment from A->B (NxD). Returns R, t, s."""
    assert A.shape == B.shape
    muA, muB = A.mean(0), B.mean(0)
    AA, BB = A - muA, B - muB
    C = AA.T @ BB / A.shape[0]
    U, S, Vt = np.linalg.svd(C)
    R = Vt.T @ U.T
    if np.linalg.det(R) < 0:
        Vt[-1, :] *= -1
        R = Vt.T @ U.T
    if with_scale:
        varA = (AA**2).sum() / A.shape[0]
        s = (S.sum() / varA) if varA > 0 else 1.0
    else:
        s = 1.0
    t = muB - s * (R @ muA)
    return R, t, s


def matched_poses(snapshot: GraphSnapshot) -> List[Tuple[int, np.ndarray, np.ndarray]]:
    """(index, estimate, ground truth) for robot poses carrying both."""
    out = []
    for n in snapshot.nodes_of_kind(NodeKind.ROBOT_POSE):
        if n.state is None or n.ground_truth is None:
            continue
        out.append((n.index, np.asarray(n.state, dtype=float), np.asarray(n.ground_truth, dtype=float)))
    return out


def align_and_ate(snapshot: GraphSnapshot, with_scale: bool = False) -> Dict[str, object]:
    """2-D alignment of the estimate onto ground truth and ATE-RMSE."""
    common = matched_poses(snapshot)
    if len(common) < 3:
        return {"matches": len(common), "rmse": None}
    X_est = np.array([est[:2] for _, est, _ in common])
    X_gt = np.array([gt[:2] for _, _, gt in common])
    R, t, s = _umeyama(X_est, X_gt, with_scale=with_scale)
    X_aligned = (X_est @ R.T) * s + t
    err = X_aligned - X_gt
    rmse = math.sqrt((err**2).sum(axis=1).mean())
    return {
        "matches": len(common),
        "rmse": rmse,
        "max": float(np.sqrt((err**2).sum(axis=1)).max()),
        "R": R.tolist(),
        "t": t.tolist(),
        "s": s,
    }


def compute_rpe(snapshot: GraphSnapshot, window_sizes: Sequence[int] = (1, 5)) -> Dict[str, Dict[str, float]]:
    """Relative Pose Error between keyframes ``window`` apart.

    Relative motion is expressed in the earlier pose's frame, so no global
    alignment is needed.
    """
    seq = matched_poses(snapshot)
    results: Dict[str, Dict[str, float]] = {}
    for window in window_sizes:
        window = int(window)
        if window <= 0:
            continue
        trans_err = []
        rot_err = []
        for i in range(0, len(seq) - window):
            _, est_i, gt_i = seq[i]
            _, est_j, gt_j = seq[i + window]
            rel_est = xyt_delta(est_i, est_j)
            rel_gt = xyt_delta(gt_i, gt_j)
            trans_err.append(float(np.hypot(*(rel_est[:2] - rel_gt[:2]))))
            rot_err.append(abs(wrap_angle(rel_est[2] - rel_gt[2])))
        if not trans_err:
            continue
        results[str(window)] = {
            "count": float(len(trans_err)),
            "rmse": math.sqrt(sum(e * e for e in trans_err) / len(trans_err)),
            "mean": mean(trans_err),
            "pstd": pstdev(trans_err) if len(trans_err) > 1 else 0.0,
            "rot_rmse": math.sqrt(sum(e * e for e in rot_err) / len(rot_err)),
        }
    return results


def trajectory_metrics(snapshot: GraphSnapshot,
                       window_sizes: Sequence[int] = (1, 5)) -> Optional[Dict[str, object]]:
    """ATE + RPE, or None when the log carried no ground truth."""
    ate = align_and_ate(snapshot)
    if ate["rmse"] is None:
        return None
    return {"ate": ate, "rpe": compute_rpe(snapshot, window_sizes)}
