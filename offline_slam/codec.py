"""Decode (and encode) sensor payloads carried by log records.

Payloads arrive either as JSON bytes/str or as an already-parsed mapping.
Field names follow the robot's message types:

    pose            {"utime", "pos": [x, y, z], "orientation": [w, x, y, z],
                     "ground_truth": [x, y, theta] (optional)}
    tag_detections  {"utime", "detections": [{"id", "H": 3x3}, ...]}
    laser           anything; passed through unmodified

``timestamp`` in seconds is accepted wherever ``utime`` (microseconds) is.
Any structural problem raises ``CorruptRecord``.
"""
import json
import logging
from typing import Any, Dict, List, Mapping, Optional

import numpy as np

from .errors import CorruptRecord
from .models import (
    LaserScan, PoseSample, Quaternion, TagDetection, TagDetectionList, Translation,
)

logger = logging.getLogger("offline_slam.codec")


def _as_mapping(payload: Any, what: str) -> Mapping[str, Any]:
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CorruptRecord(f"{what} payload is not UTF-8: {exc}") from exc
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise CorruptRecord(f"{what} payload is not valid JSON: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise CorruptRecord(f"{what} payload must be an object, got {type(payload).__name__}")
    return payload


def _timestamp(d: Mapping[str, Any], fallback: Optional[float], what: str) -> float:
    try:
        if "utime" in d:
            return int(d["utime"]) / 1e6
        if "timestamp" in d:
            return float(d["timestamp"])
    except (TypeError, ValueError) as exc:
        raise CorruptRecord(f"{what} has a malformed timestamp: {exc}") from exc
    if fallback is not None:
        return float(fallback)
    raise CorruptRecord(f"{what} payload has no utime/timestamp")


def _floats(value: Any, n: int, what: str) -> List[float]:
    if isinstance(value, (str, bytes, bytearray)):
        raise CorruptRecord(f"{what} must be a list of {n} numbers, got {value!r}")
    try:
        out = [float(v) for v in value]
    except (TypeError, ValueError) as exc:
        raise CorruptRecord(f"{what} must be {n} numbers: {exc}") from exc
    if len(out) != n or not np.all(np.isfinite(out)):
        raise CorruptRecord(f"{what} must be {n} finite numbers, got {value!r}")
    return out


def _q_from_list(q: List[float], order: str) -> Quaternion:
    if order == "wxyz":
        return Quaternion(q[0], q[1], q[2], q[3])
    if order == "xyzw":
        return Quaternion(q[3], q[0], q[1], q[2])
    raise ValueError(f"Unsupported quaternion order: {order}")


def decode_pose(payload: Any, timestamp: Optional[float] = None,
                quat_order: str = "wxyz") -> PoseSample:
    d = _as_mapping(payload, "pose")
    pos = d.get("pos", d.get("position"))
    if pos is None or "orientation" not in d:
        raise CorruptRecord("pose payload needs 'pos' and 'orientation'")
    xyz = _floats(pos, 3, "pose position")
    q = _floats(d["orientation"], 4, "pose orientation")
    if np.linalg.norm(q) < 1e-9:
        raise CorruptRecord("pose orientation is a zero quaternion")
    truth = None
    if d.get("ground_truth") is not None:
        truth = np.array(_floats(d["ground_truth"], 3, "pose ground_truth"))
    stamp = _timestamp(d, timestamp, "pose")
    return PoseSample(
        timestamp=stamp,
        position=Translation(*xyz),
        orientation=_q_from_list(q, quat_order),
        ground_truth=truth,
        utime=int(d["utime"]) if "utime" in d else int(round(stamp * 1e6)),
    )


def decode_tag_detections(payload: Any, timestamp: Optional[float] = None) -> TagDetectionList:
    d = _as_mapping(payload, "tag_detections")
    raw = d.get("detections")
    if not isinstance(raw, list):
        raise CorruptRecord("tag_detections payload needs a 'detections' list")
    detections = []
    for idx, item in enumerate(raw):
        if not isinstance(item, Mapping) or "id" not in item or "H" not in item:
            raise CorruptRecord(f"detection[{idx}] needs 'id' and 'H'")
        try:
            tag_id = int(item["id"])
            H = np.asarray(item["H"], dtype=float)
        except (TypeError, ValueError) as exc:
            raise CorruptRecord(f"detection[{idx}] is malformed: {exc}") from exc
        if H.size == 9:
            H = H.reshape(3, 3)
        if H.shape != (3, 3):
            raise CorruptRecord(f"detection[{idx}] homography must be 3x3, got {H.shape}")
        detections.append(TagDetection(id=tag_id, homography=H))
    return TagDetectionList(timestamp=_timestamp(d, timestamp, "tag_detections"),
                            detections=detections)


def decode_laser(payload: Any, timestamp: Optional[float] = None) -> LaserScan:
    """Laser scans are opaque; only the timestamp is interpreted when present."""
    stamp = timestamp
    if isinstance(payload, Mapping):
        try:
            stamp = _timestamp(payload, timestamp, "laser")
        except CorruptRecord:
            if timestamp is None:
                raise
    if stamp is None:
        raise CorruptRecord("laser record has no timestamp")
    return LaserScan(timestamp=float(stamp), data=payload)


# ---- Encoders (synthetic logs, tests) ----

def encode_pose(timestamp: float, pos, orientation, ground_truth=None) -> Dict[str, Any]:
    out = {
        "utime": int(round(timestamp * 1e6)),
        "pos": [float(v) for v in pos],
        "orientation": [float(v) for v in orientation],
    }
    if ground_truth is not None:
        out["ground_truth"] = [float(v) for v in ground_truth]
    return out


def encode_tag_detections(timestamp: float, detections) -> Dict[str, Any]:
    """detections: iterable of (tag_id, 3x3 homography)."""
    return {
        "utime": int(round(timestamp * 1e6)),
        "detections": [
            {"id": int(tag_id), "H": np.asarray(H, dtype=float).tolist()}
            for tag_id, H in detections
        ],
    }


def encode_laser(timestamp: float, ranges, rad0: float = 0.0, radstep: float = 0.0) -> Dict[str, Any]:
    return {
        "utime": int(round(timestamp * 1e6)),
        "ranges": [float(r) for r in ranges],
        "rad0": float(rad0),
        "radstep": float(radstep),
    }
