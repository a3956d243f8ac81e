from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import numpy as np


@dataclass
class Quaternion:
    """Quaternion in [w, x, y, z] order (the pose channel's layout)."""
    w: float
    x: float
    y: float
    z: float

    def to_numpy(self) -> np.ndarray:
        return np.array([self.w, self.x, self.y, self.z], dtype=float)


@dataclass
class Translation:
    x: float
    y: float
    z: float

    def to_numpy(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=float)


class NodeKind(str, Enum):
    ROBOT_POSE = "robot-pose"
    LANDMARK = "landmark"


class EdgeKind(str, Enum):
    ANCHOR = "anchor"
    ODOMETRY = "odometry"
    OBSERVATION = "observation"


# State dimension per node kind and measurement dimension per edge kind.
STATE_DIM: Dict[NodeKind, int] = {NodeKind.ROBOT_POSE: 3, NodeKind.LANDMARK: 2}
MEASUREMENT_DIM: Dict[EdgeKind, int] = {
    EdgeKind.ANCHOR: 3,
    EdgeKind.ODOMETRY: 3,
    EdgeKind.OBSERVATION: 2,
}
EDGE_ARITY: Dict[EdgeKind, int] = {
    EdgeKind.ANCHOR: 1,
    EdgeKind.ODOMETRY: 2,
    EdgeKind.OBSERVATION: 2,
}


@dataclass
class Node:
    index: int
    kind: NodeKind
    state: Optional[np.ndarray]
    initial_estimate: Optional[np.ndarray]
    ground_truth: Optional[np.ndarray] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    @property
    def stranded(self) -> bool:
        return self.state is None


@dataclass
class Edge:
    edge_id: int
    kind: EdgeKind
    nodes: Tuple[int, ...]
    measurement: np.ndarray
    covariance: np.ndarray
    ground_truth: Optional[np.ndarray] = None
    attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NodeView:
    index: int
    kind: NodeKind
    state: Optional[Tuple[float, ...]]
    ground_truth: Optional[Tuple[float, ...]]


@dataclass(frozen=True)
class EdgeView:
    edge_id: int
    kind: EdgeKind
    nodes: Tuple[int, ...]
    measurement: Tuple[float, ...]


@dataclass(frozen=True)
class GraphSnapshot:
    """Read-only copy of the graph handed to visualization/export."""
    nodes: Tuple[NodeView, ...]
    edges: Tuple[EdgeView, ...]

    def nodes_of_kind(self, kind: NodeKind) -> List[NodeView]:
        return [n for n in self.nodes if n.kind == kind]

    def edges_of_kind(self, kind: EdgeKind) -> List[EdgeView]:
        return [e for e in self.edges if e.kind == kind]


# ---- Decoded sensor payloads ----

class Channel(str, Enum):
    POSE = "pose"
    LASER = "laser"
    TAG_DETECTIONS = "tag_detections"


@dataclass
class PoseSample:
    timestamp: float
    position: Translation
    orientation: Quaternion
    ground_truth: Optional[np.ndarray] = None  # (x, y, theta) when the log carries it
    utime: Optional[int] = None  # integer microseconds when the log carries them

    @property
    def stamp_us(self) -> int:
        if self.utime is not None:
            return self.utime
        return int(round(self.timestamp * 1e6))


@dataclass
class TagDetection:
    id: int
    homography: np.ndarray  # 3x3


@dataclass
class TagDetectionList:
    timestamp: float
    detections: List[TagDetection]


@dataclass
class LaserScan:
    timestamp: float
    data: Any  # passed through unmodified


@dataclass
class LogRecord:
    timestamp: float
    channel: str
    payload: Any


@dataclass
class Event:
    channel: Channel
    timestamp: float
    payload: Any


class _EndOfLog:
    """Terminal signal from the dispatcher; not an error."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "END_OF_LOG"

    def __bool__(self) -> bool:
        return False


END_OF_LOG = _EndOfLog()


@dataclass
class TagSighting:
    """A decoded tag detection kept for later association/visualization."""
    timestamp: float
    tag_id: int
    pose: np.ndarray  # 4x4 camera-from-tag
    keyframe_index: int


def to_covariance(cov_list: Any, dim: int) -> np.ndarray:
    """Convert a flat row-major (dim*dim) or nested (dim x dim) list to an ndarray."""
    arr = np.asarray(cov_list, dtype=float)
    if arr.size == dim * dim and arr.ndim == 1:
        return arr.reshape(dim, dim)
    if arr.ndim == 2 and arr.shape == (dim, dim):
        return arr
    raise ValueError(
        f"Expected {dim * dim} elements for a {dim}x{dim} covariance, got shape {arr.shape} size {arr.size}"
    )
