from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple
import logging
from collections import Counter

import numpy as np

from .errors import InvalidReference
from .models import (
    EDGE_ARITY, MEASUREMENT_DIM, STATE_DIM,
    Edge, EdgeKind, EdgeView, GraphSnapshot, Node, NodeKind, NodeView, to_covariance,
)
from .robust import make_spd
from .transforms import xyt_compose

logger = logging.getLogger("offline_slam.graph")

ANCHOR_VARIANCE = 1e-6


def _vec(value: Optional[Sequence[float]], dim: int, what: str) -> Optional[np.ndarray]:
    if value is None:
        return None
    arr = np.asarray(value, dtype=float).reshape(-1)
    if arr.shape != (dim,):
        raise ValueError(f"{what} must have {dim} components, got {arr.shape}")
    return arr


def _frozen(value: Optional[np.ndarray]) -> Optional[Tuple[float, ...]]:
    if value is None:
        return None
    return tuple(float(v) for v in value)


class LandmarkRegistry:
    """Permanent mapping tag id -> landmark node index (one node per id)."""

    def __init__(self):
        self._by_tag: Dict[int, int] = {}

    def register(self, tag_id: int, index: int) -> None:
        if tag_id in self._by_tag:
            raise ValueError(f"Tag {tag_id} already registered to node {self._by_tag[tag_id]}")
        self._by_tag[tag_id] = index

    def get(self, tag_id: int) -> Optional[int]:
        return self._by_tag.get(tag_id)

    def items(self):
        return self._by_tag.items()

    def __contains__(self, tag_id: object) -> bool:
        return tag_id in self._by_tag

    def __len__(self) -> int:
        return len(self._by_tag)


class PoseGraph:
    """Append-only arena of nodes and edges.

    Nodes and edges reference each other only through integer indices, so
    there are no ownership cycles. The graph starts with a single robot-pose
    root at the origin pinned by a near-singular anchor edge.
    """

    def __init__(self, anchor_variance: float = ANCHOR_VARIANCE):
        self.anchor_variance = anchor_variance
        self.nodes: List[Node] = []
        self.edges: List[Edge] = []
        self.landmarks = LandmarkRegistry()
        self._incident: List[List[int]] = []
        self.counts: Counter = Counter()
        self._init_root()

    def _init_root(self) -> None:
        zero = np.zeros(3)
        root = self.add_node(NodeKind.ROBOT_POSE, zero, ground_truth=zero, stamp=None)
        self.add_edge(
            EdgeKind.ANCHOR,
            (root,),
            zero,
            np.eye(3) * self.anchor_variance,
            ground_truth=zero,
        )

    def reset(self) -> None:
        """Drop everything and rebuild the root node + anchor edge."""
        logger.info("Resetting pose graph (%d nodes, %d edges)", len(self.nodes), len(self.edges))
        self.nodes = []
        self.edges = []
        self.landmarks = LandmarkRegistry()
        self._incident = []
        self.counts = Counter()
        self._init_root()

    # ------------------------------------------------------------------
    # Insertion
    # ------------------------------------------------------------------
    def add_node(self, kind: NodeKind, initial_estimate: Optional[Sequence[float]],
                 ground_truth: Optional[Sequence[float]] = None, **attributes: Any) -> int:
        kind = NodeKind(kind)
        dim = STATE_DIM[kind]
        init = _vec(initial_estimate, dim, "initial_estimate")
        if init is None and kind != NodeKind.LANDMARK:
            raise ValueError("Only landmark nodes may be created without an initial estimate")
        truth = _vec(ground_truth, dim, "ground_truth")
        index = len(self.nodes)
        node = Node(
            index=index,
            kind=kind,
            state=None if init is None else init.copy(),
            initial_estimate=None if init is None else init.copy(),
            ground_truth=truth,
            attributes={k: v for k, v in attributes.items() if v is not None},
        )
        self.nodes.append(node)
        self._incident.append([])
        self.counts[kind.value] += 1
        logger.debug("Added %s node %d (stranded=%s)", kind.value, index, node.stranded)
        return index

    def add_edge(self, kind: EdgeKind, nodes: Sequence[int], measurement: Sequence[float],
                 covariance: np.ndarray, ground_truth: Optional[Sequence[float]] = None,
                 **attributes: Any) -> int:
        kind = EdgeKind(kind)
        nodes = tuple(int(i) for i in nodes)
        if len(nodes) != EDGE_ARITY[kind]:
            raise InvalidReference(
                f"{kind.value} edge needs {EDGE_ARITY[kind]} node(s), got {len(nodes)}",
                nodes=nodes,
            )
        for i in nodes:
            if i < 0 or i >= len(self.nodes):
                raise InvalidReference(f"Edge references missing node {i}", kind=kind.value, nodes=nodes)
        self._check_kinds(kind, nodes)

        dim = MEASUREMENT_DIM[kind]
        z = _vec(measurement, dim, "measurement")
        cov = make_spd(to_covariance(covariance, dim))
        truth = _vec(ground_truth, dim, "ground_truth")

        if kind == EdgeKind.OBSERVATION:
            self._initialise_landmark(nodes[0], nodes[1], z)

        edge_id = len(self.edges)
        self.edges.append(Edge(
            edge_id=edge_id,
            kind=kind,
            nodes=nodes,
            measurement=z,
            covariance=cov,
            ground_truth=truth,
            attributes={k: v for k, v in attributes.items() if v is not None},
        ))
        for i in set(nodes):
            self._incident[i].append(edge_id)
        self.counts[kind.value] += 1
        logger.debug("Added %s edge %d over %s", kind.value, edge_id, nodes)
        return edge_id

    def _check_kinds(self, kind: EdgeKind, nodes: Tuple[int, ...]) -> None:
        kinds = tuple(self.nodes[i].kind for i in nodes)
        if kind == EdgeKind.OBSERVATION:
            expected = (NodeKind.ROBOT_POSE, NodeKind.LANDMARK)
        else:
            expected = (NodeKind.ROBOT_POSE,) * len(nodes)
        if kinds != expected:
            raise InvalidReference(
                f"{kind.value} edge cannot connect {[k.value for k in kinds]}",
                nodes=nodes,
            )

    def _initialise_landmark(self, pose_idx: int, landmark_idx: int, z: np.ndarray) -> None:
        landmark = self.nodes[landmark_idx]
        if landmark.state is not None:
            return
        pose = self.nodes[pose_idx].state
        if pose is None:
            return
        landmark.state = xyt_compose(pose, (z[0], z[1], 0.0))[:2]
        logger.debug("Initialised stranded landmark %d from pose %d", landmark_idx, pose_idx)

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------
    def _check_index(self, index: int) -> None:
        if index < 0 or index >= len(self.nodes):
            raise InvalidReference(f"No node {index}", index=index)

    def node(self, index: int) -> Node:
        self._check_index(index)
        return self.nodes[index]

    def edge(self, edge_id: int) -> Edge:
        if edge_id < 0 or edge_id >= len(self.edges):
            raise InvalidReference(f"No edge {edge_id}", edge_id=edge_id)
        return self.edges[edge_id]

    def edges_of(self, index: int) -> List[Edge]:
        self._check_index(index)
        return [self.edges[e] for e in self._incident[index]]

    def degree(self, index: int) -> int:
        self._check_index(index)
        return len(self._incident[index])

    def robot_pose_indices(self) -> List[int]:
        return [n.index for n in self.nodes if n.kind == NodeKind.ROBOT_POSE]

    def landmark_indices(self) -> List[int]:
        return [n.index for n in self.nodes if n.kind == NodeKind.LANDMARK]

    def __iter__(self) -> Iterator[Node]:
        return iter(self.nodes)

    def __len__(self) -> int:
        return len(self.nodes)

    @property
    def node_count(self) -> int:
        return len(self.nodes)

    @property
    def edge_count(self) -> int:
        return len(self.edges)

    def snapshot(self) -> GraphSnapshot:
        """Immutable copy for visualization/export; never aliases node state."""
        return GraphSnapshot(
            nodes=tuple(
                NodeView(n.index, n.kind, _frozen(n.state), _frozen(n.ground_truth))
                for n in self.nodes
            ),
            edges=tuple(
                EdgeView(e.edge_id, e.kind, e.nodes, _frozen(e.measurement))
                for e in self.edges
            ),
        )
