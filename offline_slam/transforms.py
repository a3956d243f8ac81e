"""
Geometry helpers for the SLAM core.

Conventions:
    - Homogeneous rigid transforms are 3x3 (SE(2)) or 4x4 (SE(3)) ndarrays.
    - Planar poses ("xyt") are [x, y, theta] with theta in radians.
    - Quaternions are [w, x, y, z] (either a ``Quaternion`` or a 4-sequence).
    - Tag homographies map tag coordinates spanning [-1, 1] to pixels. The
      camera looks down -Z, so a visible tag has negative z.

Every function is pure; only homography decoding has a failure mode
(``DegenerateHomography``).
"""

import math
from typing import Sequence, Tuple, Union

import numpy as np

from .errors import DegenerateHomography
from .models import Quaternion, Translation

QuatLike = Union[Quaternion, Sequence[float], np.ndarray]
VecLike = Union[Translation, Sequence[float], np.ndarray]

# Side length of the tag in homography units (tag spans [-1, 1]).
HOMOGRAPHY_TAG_SIZE = 2.0


def _q(q: QuatLike) -> np.ndarray:
    if isinstance(q, Quaternion):
        return q.to_numpy()
    arr = np.asarray(q, dtype=float)
    if arr.shape != (4,):
        raise ValueError(f"Quaternion must have 4 components, got shape {arr.shape}")
    return arr


def _v(v: VecLike) -> np.ndarray:
    if isinstance(v, Translation):
        return v.to_numpy()
    return np.asarray(v, dtype=float)


def wrap_angle(theta: float) -> float:
    """Wrap an angle to [-pi, pi)."""
    return (theta + math.pi) % (2.0 * math.pi) - math.pi


# ---- Rigid transforms ----

def compose(A: np.ndarray, B: np.ndarray) -> np.ndarray:
    return np.asarray(A, dtype=float) @ np.asarray(B, dtype=float)


def invert(T: np.ndarray) -> np.ndarray:
    """Invert a rigid transform using R^T rather than a general inverse."""
    T = np.asarray(T, dtype=float)
    n = T.shape[0] - 1
    R = T[:n, :n]
    t = T[:n, n]
    out = np.eye(n + 1)
    out[:n, :n] = R.T
    out[:n, n] = -R.T @ t
    return out


def delta(A: np.ndarray, B: np.ndarray) -> np.ndarray:
    """Transform taking A to B, expressed in A's frame (A^-1 B)."""
    return compose(invert(A), B)


def xyt_to_matrix(xyt: Sequence[float]) -> np.ndarray:
    """Planar pose -> 4x4 transform (rotation about z)."""
    x, y, t = (float(v) for v in xyt)
    c, s = math.cos(t), math.sin(t)
    return np.array([[c, -s, 0.0, x],
                     [s, c, 0.0, y],
                     [0.0, 0.0, 1.0, 0.0],
                     [0.0, 0.0, 0.0, 1.0]])


def xyt_to_matrix2d(xyt: Sequence[float]) -> np.ndarray:
    x, y, t = (float(v) for v in xyt)
    c, s = math.cos(t), math.sin(t)
    return np.array([[c, -s, x],
                     [s, c, y],
                     [0.0, 0.0, 1.0]])


def matrix_to_xyt(M: np.ndarray) -> np.ndarray:
    """3x3 or 4x4 transform -> [x, y, theta]; out-of-plane terms are dropped."""
    M = np.asarray(M, dtype=float)
    n = M.shape[0] - 1
    return np.array([M[0, n], M[1, n], math.atan2(M[1, 0], M[0, 0])])


def xyt_compose(a: Sequence[float], b: Sequence[float]) -> np.ndarray:
    ax, ay, at = (float(v) for v in a)
    bx, by, bt = (float(v) for v in b)
    c, s = math.cos(at), math.sin(at)
    return np.array([ax + c * bx - s * by,
                     ay + s * bx + c * by,
                     wrap_angle(at + bt)])


def xyt_inverse(a: Sequence[float]) -> np.ndarray:
    ax, ay, at = (float(v) for v in a)
    c, s = math.cos(at), math.sin(at)
    return np.array([-c * ax - s * ay,
                     s * ax - c * ay,
                     wrap_angle(-at)])


def xyt_delta(a: Sequence[float], b: Sequence[float]) -> np.ndarray:
    """Relative pose of b seen from a."""
    return xyt_compose(xyt_inverse(a), b)


# ---- Quaternions ----

def quat_multiply(a: QuatLike, b: QuatLike) -> np.ndarray:
    aw, ax, ay, az = _q(a)
    bw, bx, by, bz = _q(b)
    return np.array([
        aw * bw - ax * bx - ay * by - az * bz,
        aw * bx + ax * bw + ay * bz - az * by,
        aw * by - ax * bz + ay * bw + az * bx,
        aw * bz + ax * by - ay * bx + az * bw,
    ])


def quat_inverse(q: QuatLike) -> np.ndarray:
    q = _q(q)
    n2 = float(q @ q)
    if n2 == 0.0:
        raise ValueError("Cannot invert a zero quaternion")
    return np.array([q[0], -q[1], -q[2], -q[3]]) / n2


def quat_to_matrix(q: QuatLike) -> np.ndarray:
    q = _q(q)
    w, x, y, z = q / np.linalg.norm(q)
    return np.array([
        [1 - 2 * (y * y + z * z), 2 * (x * y - w * z), 2 * (x * z + w * y)],
        [2 * (x * y + w * z), 1 - 2 * (x * x + z * z), 2 * (y * z - w * x)],
        [2 * (x * z - w * y), 2 * (y * z + w * x), 1 - 2 * (x * x + y * y)],
    ])


def quat_rotate(q: QuatLike, v: VecLike) -> np.ndarray:
    return quat_to_matrix(q) @ _v(v)


def quat_to_rpy(q: QuatLike) -> np.ndarray:
    q = _q(q)
    w, x, y, z = q / np.linalg.norm(q)
    roll = math.atan2(2 * (w * x + y * z), 1 - 2 * (x * x + y * y))
    pitch = math.asin(max(-1.0, min(1.0, 2 * (w * y - z * x))))
    yaw = math.atan2(2 * (w * z + x * y), 1 - 2 * (y * y + z * z))
    return np.array([roll, pitch, yaw])


def yaw_to_quat(yaw: float) -> np.ndarray:
    return np.array([math.cos(yaw / 2.0), 0.0, 0.0, math.sin(yaw / 2.0)])


def quat_pos_to_matrix(q: QuatLike, pos: VecLike) -> np.ndarray:
    M = np.eye(4)
    M[:3, :3] = quat_to_matrix(q)
    M[:3, 3] = _v(pos)
    return M


def quat_heading_delta(q_from: QuatLike, q_to: QuatLike) -> float:
    """Heading change between two orientations (yaw of q_to * q_from^-1)."""
    return float(quat_to_rpy(quat_multiply(q_to, quat_inverse(q_from)))[2])


def relative_motion(last_pos: VecLike, last_q: QuatLike,
                    pos: VecLike, q: QuatLike) -> Tuple[np.ndarray, np.ndarray]:
    """Return (dq, dxyz) between two raw odometry samples.

    dq is the quaternion difference q * last_q^-1; dxyz is the world-frame
    displacement re-expressed in the previous pose's local frame.
    """
    dq = quat_multiply(q, quat_inverse(last_q))
    dxyz = quat_rotate(quat_inverse(last_q), _v(pos) - _v(last_pos))
    return dq, dxyz


# ---- Homographies ----

def homography_to_pose(fx: float, fy: float, cx: float, cy: float,
                       H: np.ndarray, max_condition: float = 1e12) -> np.ndarray:
    """Recover the camera-from-tag 4x4 transform from a tag homography.

    Assumes H ~ K [r0 r1 t] with the tag spanning [-1, 1]; the resulting
    translation is in tag half-widths (see ``scale_pose``).
    """
    H = np.asarray(H, dtype=float)
    if H.shape != (3, 3) or not np.all(np.isfinite(H)):
        raise DegenerateHomography("Homography must be a finite 3x3 matrix")
    norm = np.linalg.norm(H)
    if norm == 0.0:
        raise DegenerateHomography("Homography is all zeros")
    H = H / norm
    cond = np.linalg.cond(H)
    if not np.isfinite(cond) or cond > max_condition:
        raise DegenerateHomography("Homography is near-singular", condition=float(cond))

    R20, R21, TZ = H[2, 0], H[2, 1], H[2, 2]
    R00 = (H[0, 0] - cx * R20) / fx
    R01 = (H[0, 1] - cx * R21) / fx
    TX = (H[0, 2] - cx * TZ) / fx
    R10 = (H[1, 0] - cy * R20) / fy
    R11 = (H[1, 1] - cy * R21) / fy
    TY = (H[1, 2] - cy * TZ) / fy

    # Rotation columns must be unit length; use the geometric mean of both.
    length1 = math.sqrt(R00 * R00 + R10 * R10 + R20 * R20)
    length2 = math.sqrt(R01 * R01 + R11 * R11 + R21 * R21)
    if length1 * length2 < 1e-12:
        raise DegenerateHomography("Homography rotation columns vanish")
    s = 1.0 / math.sqrt(length1 * length2)
    # Tag must be in front of the camera (negative z).
    if TZ > 0:
        s = -s

    r0 = np.array([R00, R10, R20]) * s
    r1 = np.array([R01, R11, R21]) * s
    t = np.array([TX, TY, TZ]) * s
    R = np.column_stack([r0, r1, np.cross(r0, r1)])

    # Polar decomposition gives the closest proper rotation.
    U, _, Vt = np.linalg.svd(R)
    R = U @ Vt
    if np.linalg.det(R) < 0:
        U[:, -1] *= -1
        R = U @ Vt

    M = np.eye(4)
    M[:3, :3] = R
    M[:3, 3] = t
    return M


def scale_pose(M: np.ndarray, size_orig: float, size_new: float) -> np.ndarray:
    M = np.array(M, dtype=float)
    M[:3, 3] *= size_new / size_orig
    return M


def decode_tag_pose(H: np.ndarray, fx: float, fy: float, cx: float, cy: float,
                    tag_size: float) -> np.ndarray:
    """Camera-from-tag transform with translation in metres."""
    M = homography_to_pose(fx, fy, cx, cy, H)
    return scale_pose(M, HOMOGRAPHY_TAG_SIZE, tag_size)


def pose_to_homography(fx: float, fy: float, cx: float, cy: float,
                       M: np.ndarray, tag_size: float) -> np.ndarray:
    """Forward model of ``decode_tag_pose``: the homography a tag at M produces."""
    M = np.asarray(M, dtype=float)
    K = np.array([[fx, 0.0, cx],
                  [0.0, fy, cy],
                  [0.0, 0.0, 1.0]])
    t = M[:3, 3] * (HOMOGRAPHY_TAG_SIZE / tag_size)
    return K @ np.column_stack([M[:3, 0], M[:3, 1], t])
