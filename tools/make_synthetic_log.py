#!/usr/bin/env python3
"""Write a synthetic JSON-lines robot log for trying out main.py.

The robot drives laps of a circle. Raw odometry accumulates Gaussian drift;
the true pose is attached as ``ground_truth`` so trajectory metrics can be
computed. Tags placed around the circle are "detected" whenever they are in
front of the camera, using the same pinhole model the decoder inverts.
"""
import argparse
import logging
import math
from typing import List, Tuple

import numpy as np

from offline_slam.codec import encode_laser, encode_pose, encode_tag_detections
from offline_slam.config import CameraIntrinsics
from offline_slam.models import LogRecord
from offline_slam.source import write_jsonl_log
from offline_slam.transforms import (
    pose_to_homography, wrap_angle, xyt_compose, xyt_delta, yaw_to_quat,
)

logger = logging.getLogger("offline_slam.tools.synthetic")


def true_pose(t: float, radius: float, speed: float) -> np.ndarray:
    w = speed / radius
    return np.array([radius * math.sin(w * t), radius * (1.0 - math.cos(w * t)), wrap_angle(w * t)])


def default_tags(radius: float) -> List[Tuple[int, np.ndarray]]:
    out = []
    for k, ang in enumerate(np.linspace(0.0, 2.0 * math.pi, 6, endpoint=False)):
        # Slightly outside the circle, so tags are seen ahead and to the side.
        r = radius * 1.6
        out.append((k, np.array([r * math.sin(ang), radius - r * math.cos(ang)])))
    return out


def visible_tags(pose: np.ndarray, tags, cam: CameraIntrinsics, tag_size: float,
                 max_range: float = 5.0, half_fov: float = 0.6):
    x, y, th = pose
    c, s = math.cos(th), math.sin(th)
    dets = []
    for tag_id, pos in tags:
        dx, dy = pos[0] - x, pos[1] - y
        fwd = c * dx + s * dy
        left = -s * dx + c * dy
        if fwd < 0.3 or math.hypot(fwd, left) > max_range or abs(math.atan2(left, fwd)) > half_fov:
            continue
        # Camera looks down -Z with x to the right; the tag faces the camera.
        M = np.eye(4)
        M[:3, 3] = [-left, 0.0, -fwd]
        dets.append((tag_id, pose_to_homography(cam.fx, cam.fy, cam.cx, cam.cy, M, tag_size)))
    return dets


def synthesize(duration: float = 120.0, rate_hz: float = 10.0, radius: float = 3.0, speed: float = 0.5,
               trans_noise: float = 0.01, rot_noise: float = 0.005, tag_every: int = 5,
               laser_every: int = 2, tag_size: float = 0.15, seed: int = 0) -> List[LogRecord]:
    rng = np.random.default_rng(seed)
    cam = CameraIntrinsics()
    tags = default_tags(radius)
    dt = 1.0 / rate_hz
    records: List[LogRecord] = []
    odom = np.zeros(3)
    prev_truth = true_pose(0.0, radius, speed)
    for k in range(int(duration * rate_hz) + 1):
        t = k * dt
        truth = true_pose(t, radius, speed)
        if k > 0:
            step = xyt_delta(prev_truth, truth)
            step = step + rng.normal(0.0, [trans_noise, trans_noise, rot_noise])
            odom = xyt_compose(odom, step)
        prev_truth = truth
        records.append(LogRecord(t, "POSE", encode_pose(
            t, [odom[0], odom[1], 0.0], yaw_to_quat(odom[2]), ground_truth=truth)))
        if tag_every and k % tag_every == 0:
            dets = visible_tags(truth, tags, cam, tag_size)
            if dets:
                records.append(LogRecord(t, "TAG_DETECTION_TX", encode_tag_detections(t, dets)))
        if laser_every and k % laser_every == 0:
            records.append(LogRecord(t, "LASER", encode_laser(t, np.full(181, 4.0), -math.pi / 2, math.pi / 180)))
    return records


def main():
    ap = argparse.ArgumentParser(description="Generate a synthetic odometry + tag log (JSON lines).")
    ap.add_argument("--out", required=True, help="Output .jsonl path")
    ap.add_argument("--duration", type=float, default=120.0, help="Seconds of log time")
    ap.add_argument("--rate", type=float, default=10.0, help="Pose sample rate (Hz)")
    ap.add_argument("--radius", type=float, default=3.0, help="Loop radius (m)")
    ap.add_argument("--speed", type=float, default=0.5, help="Forward speed (m/s)")
    ap.add_argument("--trans-noise", type=float, default=0.01, help="Per-sample odometry translation noise (m)")
    ap.add_argument("--rot-noise", type=float, default=0.005, help="Per-sample odometry heading noise (rad)")
    ap.add_argument("--seed", type=int, default=0)
    ap.add_argument("--log", default="INFO", help="Logging level")
    args = ap.parse_args()
    logging.basicConfig(level=args.log.upper(),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    records = synthesize(duration=args.duration, rate_hz=args.rate, radius=args.radius, speed=args.speed,
                         trans_noise=args.trans_noise, rot_noise=args.rot_noise, seed=args.seed)
    n = write_jsonl_log(records, args.out)
    logger.info("Wrote %d records to %s", n, args.out)


if __name__ == "__main__":
    main()
