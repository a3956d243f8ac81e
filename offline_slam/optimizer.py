"""Maximum-likelihood pose-graph optimization.

Two interchangeable backends share one contract, ``optimize(graph) ->
OptimizationReport``:

- ``SparseLeastSquaresOptimizer``: Gauss-Newton or Levenberg-Marquardt over
  scipy.sparse normal equations with analytic SE(2) Jacobians.
- ``GTSAMOptimizer``: the same problem handed to GTSAM's LM solver.

Node states are written back only when a call finishes without error, so a
``SingularSystem`` leaves the graph exactly as it was.
"""
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple
import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum

import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import splu

try:
    import gtsam
except Exception:
    gtsam = None

from .errors import SingularSystem
from .graph import PoseGraph
from .models import STATE_DIM, Edge, EdgeKind, NodeKind
from .robust import (
    check_robust_kind, gaussian_from_covariance, information_from_covariance,
    robust_cost, robust_weight, robustify,
)
from .transforms import wrap_angle

if TYPE_CHECKING:
    from offline_slam_common.kpi_logging import KPILogger

logger = logging.getLogger("offline_slam.optimizer")

# Pivots below this fraction of the largest diagonal entry count as zero.
PIVOT_TOLERANCE = 1e-12


class OptimizationStatus(str, Enum):
    CONVERGED = "converged"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    SINGULAR_SYSTEM = "singular_system"


@dataclass
class OptimizationReport:
    status: OptimizationStatus
    iterations: int
    initial_cost: float
    final_cost: float
    max_correction: float
    variables: int
    edges: int
    excluded_nodes: List[int] = field(default_factory=list)
    max_translation_delta: float = 0.0
    duration_s: float = 0.0
    backend: str = ""

    @property
    def converged(self) -> bool:
        return self.status == OptimizationStatus.CONVERGED

    def as_dict(self) -> Dict[str, object]:
        return {
            "status": self.status.value,
            "iterations": self.iterations,
            "initial_cost": self.initial_cost,
            "final_cost": self.final_cost,
            "max_correction": self.max_correction,
            "variables": self.variables,
            "edges": self.edges,
            "excluded_nodes": list(self.excluded_nodes),
            "max_translation_delta": self.max_translation_delta,
            "duration_s": self.duration_s,
            "backend": self.backend,
        }


@dataclass
class VariableLayout:
    """Which nodes are optimized and where they live in the state vector."""
    order: List[int]
    offsets: Dict[int, int]
    dims: Dict[int, int]
    size: int
    edges: List[Edge]
    excluded: List[int]

    def pack(self, graph: PoseGraph) -> np.ndarray:
        x = np.zeros(self.size)
        for idx in self.order:
            off = self.offsets[idx]
            x[off:off + self.dims[idx]] = graph.nodes[idx].state
        return x


def select_variables(graph: PoseGraph) -> VariableLayout:
    """Nodes with a state and at least one usable edge become variables.

    An edge is usable when every node it touches has a state. Stranded
    landmarks and nodes without usable edges are excluded.
    """
    edges = [e for e in graph.edges if all(graph.nodes[i].state is not None for i in e.nodes)]
    used = {i for e in edges for i in e.nodes}
    order: List[int] = []
    offsets: Dict[int, int] = {}
    dims: Dict[int, int] = {}
    excluded: List[int] = []
    size = 0
    for node in graph.nodes:
        if node.index not in used:
            excluded.append(node.index)
            continue
        order.append(node.index)
        offsets[node.index] = size
        dims[node.index] = STATE_DIM[node.kind]
        size += dims[node.index]
    return VariableLayout(order, offsets, dims, size, edges, excluded)


def linearize_edge(edge: Edge, states: List[np.ndarray]) -> Tuple[np.ndarray, List[np.ndarray]]:
    """Residual e = predicted - measurement and one Jacobian per node."""
    z = edge.measurement
    if edge.kind == EdgeKind.ANCHOR:
        e = states[0] - z
        e[2] = wrap_angle(e[2])
        return e, [np.eye(3)]

    xi, yi, ti = states[0]
    c, s = math.cos(ti), math.sin(ti)
    if edge.kind == EdgeKind.ODOMETRY:
        xj, yj, tj = states[1]
    else:
        xj, yj = states[1]
    dx, dy = xj - xi, yj - yi
    px = c * dx + s * dy
    py = -s * dx + c * dy
    d_px = -s * dx + c * dy
    d_py = -c * dx - s * dy

    if edge.kind == EdgeKind.ODOMETRY:
        e = np.array([px - z[0], py - z[1], wrap_angle(wrap_angle(tj - ti) - z[2])])
        Ji = np.array([[-c, -s, d_px],
                       [s, -c, d_py],
                       [0.0, 0.0, -1.0]])
        Jj = np.array([[c, s, 0.0],
                       [-s, c, 0.0],
                       [0.0, 0.0, 1.0]])
        return e, [Ji, Jj]

    e = np.array([px - z[0], py - z[1]])
    Ji = np.array([[-c, -s, d_px],
                   [s, -c, d_py]])
    Jj = np.array([[c, s],
                   [-s, c]])
    return e, [Ji, Jj]


def _max_translation_delta(before: Dict[int, np.ndarray], graph: PoseGraph) -> float:
    max_delta = 0.0
    for idx, prev in before.items():
        cur = graph.nodes[idx].state
        delta = float(np.hypot(cur[0] - prev[0], cur[1] - prev[1]))
        if delta > max_delta:
            max_delta = delta
    return max_delta


class SparseLeastSquaresOptimizer:
    """Iterative linearization over sparse normal equations.

    method: 'gauss-newton' | 'levenberg-marquardt'
    """

    METHODS = ("gauss-newton", "levenberg-marquardt")

    def __init__(self,
                 method: str = "gauss-newton",
                 max_iterations: int = 100,
                 tolerance: float = 1e-6,
                 robust_kind: Optional[str] = None,
                 robust_k: Optional[float] = None,
                 lambda_initial: float = 1e-3,
                 kpi: Optional["KPILogger"] = None):
        method = method.lower()
        if method not in self.METHODS:
            raise ValueError(f"Unsupported method: {method}")
        self.method = method
        self.max_iterations = int(max_iterations)
        self.tolerance = float(tolerance)
        self.robust_kind = check_robust_kind(robust_kind)
        self.robust_k = robust_k
        self.lambda_initial = float(lambda_initial)
        self.kpi = kpi
        self._run_id = 0

    @property
    def name(self) -> str:
        return self.method

    # ------------------------------------------------------------------
    # Problem evaluation
    # ------------------------------------------------------------------
    def _states(self, layout: VariableLayout, x: np.ndarray, edge: Edge) -> List[np.ndarray]:
        return [x[layout.offsets[i]:layout.offsets[i] + layout.dims[i]] for i in edge.nodes]

    def _cost(self, layout: VariableLayout, infos: List[np.ndarray], x: np.ndarray) -> float:
        total = 0.0
        for edge, info in zip(layout.edges, infos):
            e, _ = linearize_edge(edge, self._states(layout, x, edge))
            total += robust_cost(float(e @ info @ e), self.robust_kind, self.robust_k)
        return total

    def _normal_equations(self, layout: VariableLayout, infos: List[np.ndarray],
                          x: np.ndarray) -> Tuple[sp.csc_matrix, np.ndarray]:
        rows: List[np.ndarray] = []
        cols: List[np.ndarray] = []
        vals: List[np.ndarray] = []
        b = np.zeros(layout.size)
        for edge, info in zip(layout.edges, infos):
            e, jacs = linearize_edge(edge, self._states(layout, x, edge))
            w = robust_weight(float(e @ info @ e), self.robust_kind, self.robust_k)
            omega = info * w
            for a, Ja in zip(edge.nodes, jacs):
                oa = layout.offsets[a]
                JaT_omega = Ja.T @ omega
                b[oa:oa + Ja.shape[1]] += JaT_omega @ e
                for c, Jc in zip(edge.nodes, jacs):
                    oc = layout.offsets[c]
                    block = JaT_omega @ Jc
                    r, q = np.meshgrid(np.arange(oa, oa + block.shape[0]),
                                       np.arange(oc, oc + block.shape[1]), indexing="ij")
                    rows.append(r.ravel())
                    cols.append(q.ravel())
                    vals.append(block.ravel())
        H = sp.coo_matrix(
            (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
            shape=(layout.size, layout.size),
        ).tocsc()
        H = (H + H.T) * 0.5
        return H.tocsc(), b

    @staticmethod
    def _factorize(H: sp.csc_matrix):
        """Symmetric sparse factorization; raises unless H is positive definite.

        SuperLU with diagonal pivoting and a symmetric permutation yields
        P H P^T = L D L^T (U = D L^T); H is positive definite iff every pivot
        in D is positive.
        """
        try:
            lu = splu(H, permc_spec="MMD_AT_PLUS_A", diag_pivot_thresh=0.0,
                      options={"SymmetricMode": True})
        except RuntimeError as exc:
            raise SingularSystem(f"Normal equations are singular: {exc}") from exc
        if not np.array_equal(lu.perm_r, lu.perm_c):
            raise SingularSystem("Normal equations needed off-diagonal pivoting")
        pivots = lu.U.diagonal()
        scale = max(float(np.max(np.abs(H.diagonal()))), 1.0)
        bad = np.flatnonzero(pivots <= PIVOT_TOLERANCE * scale)
        if bad.size:
            raise SingularSystem(
                "Information matrix is not positive definite",
                min_pivot=float(pivots.min()),
                bad_pivots=int(bad.size),
            )
        return lu

    def _apply(self, layout: VariableLayout, x: np.ndarray, dx: np.ndarray) -> np.ndarray:
        out = x + dx
        for idx in layout.order:
            if layout.dims[idx] == 3:
                off = layout.offsets[idx] + 2
                out[off] = wrap_angle(out[off])
        return out

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def optimize(self, graph: PoseGraph) -> OptimizationReport:
        start = time.perf_counter()
        self._run_id += 1
        layout = select_variables(graph)
        infos = [information_from_covariance(e.covariance) for e in layout.edges]
        if layout.excluded:
            logger.debug("Excluding %d node(s) from optimization: %s", len(layout.excluded), layout.excluded)
        if self.kpi:
            self.kpi.optimization_start(self._run_id, len(layout.edges), len(layout.order))

        x = layout.pack(graph)
        initial_cost = cost = self._cost(layout, infos, x)
        report = OptimizationReport(
            status=OptimizationStatus.MAX_ITERATIONS_REACHED,
            iterations=0,
            initial_cost=initial_cost,
            final_cost=initial_cost,
            max_correction=0.0,
            variables=len(layout.order),
            edges=len(layout.edges),
            excluded_nodes=list(layout.excluded),
            backend=self.name,
        )
        if layout.size == 0:
            report.status = OptimizationStatus.CONVERGED
            report.duration_s = time.perf_counter() - start
            return report

        lam = self.lambda_initial
        try:
            for it in range(1, self.max_iterations + 1):
                report.iterations = it
                H, b = self._normal_equations(layout, infos, x)
                lu = self._factorize(H)
                if self.method == "gauss-newton":
                    dx = lu.solve(-b)
                    x = self._apply(layout, x, dx)
                    cost = self._cost(layout, infos, x)
                else:
                    dx, x, cost, lam = self._lm_step(layout, infos, x, cost, H, b, lam)
                step = float(np.linalg.norm(dx))
                report.max_correction = float(np.max(np.abs(dx)))
                logger.debug("iter %d: cost=%.6g |dx|=%.3g", it, cost, step)
                if step < self.tolerance:
                    report.status = OptimizationStatus.CONVERGED
                    break
        except SingularSystem as exc:
            report.status = OptimizationStatus.SINGULAR_SYSTEM
            report.duration_s = time.perf_counter() - start
            exc.report = report
            exc.with_context(iteration=report.iterations, variables=len(layout.order))
            logger.error("Optimization failed: %s", exc)
            if self.kpi:
                self.kpi.optimization_end(self._run_id, report.duration_s, status=report.status.value,
                                          iterations=report.iterations)
            raise

        before = {idx: graph.nodes[idx].state.copy() for idx in layout.order}
        for idx in layout.order:
            off = layout.offsets[idx]
            graph.nodes[idx].state = x[off:off + layout.dims[idx]].copy()
        report.final_cost = cost
        report.max_translation_delta = _max_translation_delta(before, graph)
        report.duration_s = time.perf_counter() - start
        logger.info(
            "Optimization %s after %d iteration(s): cost %.6g -> %.6g (%d variables, %d edges)",
            report.status.value, report.iterations, report.initial_cost, report.final_cost,
            report.variables, report.edges,
        )
        if self.kpi:
            self.kpi.optimization_end(
                self._run_id,
                report.duration_s,
                status=report.status.value,
                iterations=report.iterations,
                updated_nodes=report.variables,
                final_cost=report.final_cost,
                max_translation_delta=report.max_translation_delta,
            )
        return report

    def _lm_step(self, layout, infos, x, cost, H, b, lam):
        """One accepted (or maximally damped) Levenberg-Marquardt step."""
        diag = sp.diags(H.diagonal())
        while True:
            lu = self._factorize((H + diag * lam).tocsc())
            dx = lu.solve(-b)
            x_new = self._apply(layout, x, dx)
            new_cost = self._cost(layout, infos, x_new)
            if new_cost <= cost:
                return dx, x_new, new_cost, max(lam / 10.0, 1e-12)
            lam *= 10.0
            if lam > 1e12 or np.linalg.norm(dx) < self.tolerance:
                # No descent possible at this linearization point.
                return np.zeros_like(dx), x, cost, lam


class GTSAMOptimizer:
    """Same contract as ``SparseLeastSquaresOptimizer`` on GTSAM's LM solver."""

    name = "gtsam"

    def __init__(self,
                 max_iterations: int = 100,
                 tolerance: float = 1e-6,
                 robust_kind: Optional[str] = None,
                 robust_k: Optional[float] = None,
                 lambda_initial: float = 1e-3,
                 kpi: Optional["KPILogger"] = None):
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot run Levenberg-Marquardt")
        self.max_iterations = int(max_iterations)
        self.tolerance = float(tolerance)
        self.robust_kind = check_robust_kind(robust_kind)
        self.robust_k = robust_k
        self.lambda_initial = float(lambda_initial)
        self.kpi = kpi
        self._run_id = 0

    def _noise(self, cov):
        n = gaussian_from_covariance(cov)
        return robustify(n, self.robust_kind, self.robust_k)

    def _factor(self, edge: Edge):
        z = edge.measurement
        if edge.kind == EdgeKind.ANCHOR:
            return gtsam.PriorFactorPose2(edge.nodes[0], gtsam.Pose2(*z), self._noise(edge.covariance))
        if edge.kind == EdgeKind.ODOMETRY:
            return gtsam.BetweenFactorPose2(edge.nodes[0], edge.nodes[1], gtsam.Pose2(*z),
                                            self._noise(edge.covariance))
        # Relative xy -> bearing/range with first-order covariance propagation.
        rng = float(np.hypot(z[0], z[1]))
        if rng < 1e-9:
            raise ValueError(f"Observation edge {edge.edge_id} has zero range")
        J = np.array([[-z[1] / rng ** 2, z[0] / rng ** 2],
                      [z[0] / rng, z[1] / rng]])
        cov = J @ edge.covariance @ J.T
        return gtsam.BearingRangeFactor2D(edge.nodes[0], edge.nodes[1],
                                          gtsam.Rot2(math.atan2(z[1], z[0])), rng,
                                          self._noise(cov))

    def optimize(self, graph: PoseGraph) -> OptimizationReport:
        start = time.perf_counter()
        self._run_id += 1
        layout = select_variables(graph)
        if self.kpi:
            self.kpi.optimization_start(self._run_id, len(layout.edges), len(layout.order))

        fg = gtsam.NonlinearFactorGraph()
        initial = gtsam.Values()
        for idx in layout.order:
            node = graph.nodes[idx]
            if node.kind == NodeKind.ROBOT_POSE:
                initial.insert(idx, gtsam.Pose2(*node.state))
            else:
                initial.insert(idx, gtsam.Point2(*node.state))
        for edge in layout.edges:
            fg.add(self._factor(edge))

        report = OptimizationReport(
            status=OptimizationStatus.CONVERGED,
            iterations=0,
            initial_cost=float(fg.error(initial)),
            final_cost=0.0,
            max_correction=0.0,
            variables=len(layout.order),
            edges=len(layout.edges),
            excluded_nodes=list(layout.excluded),
            backend=self.name,
        )
        params = gtsam.LevenbergMarquardtParams()
        params.setlambdaInitial(self.lambda_initial)
        params.setMaxIterations(self.max_iterations)
        params.setRelativeErrorTol(self.tolerance)
        params.setAbsoluteErrorTol(self.tolerance)
        try:
            opt = gtsam.LevenbergMarquardtOptimizer(fg, initial, params)
            result = opt.optimize()
        except RuntimeError as exc:
            report.status = OptimizationStatus.SINGULAR_SYSTEM
            report.duration_s = time.perf_counter() - start
            logger.error("GTSAM optimization failed: %s", exc)
            raise SingularSystem(f"GTSAM could not solve the system: {exc}", report=report) from exc

        report.iterations = int(opt.iterations())
        if report.iterations >= self.max_iterations:
            report.status = OptimizationStatus.MAX_ITERATIONS_REACHED
        report.final_cost = float(fg.error(result))

        before = {idx: graph.nodes[idx].state.copy() for idx in layout.order}
        correction = 0.0
        for idx in layout.order:
            node = graph.nodes[idx]
            if node.kind == NodeKind.ROBOT_POSE:
                p = result.atPose2(idx)
                new = np.array([p.x(), p.y(), p.theta()])
            else:
                new = np.asarray(result.atPoint2(idx), dtype=float).reshape(2)
            correction = max(correction, float(np.max(np.abs(new - node.state))))
            node.state = new
        report.max_correction = correction
        report.max_translation_delta = _max_translation_delta(before, graph)
        report.duration_s = time.perf_counter() - start
        logger.info("GTSAM LM %s after %d iteration(s): error %.6g -> %.6g",
                    report.status.value, report.iterations, report.initial_cost, report.final_cost)
        if self.kpi:
            self.kpi.optimization_end(
                self._run_id,
                report.duration_s,
                status=report.status.value,
                iterations=report.iterations,
                updated_nodes=report.variables,
                final_cost=report.final_cost,
                max_translation_delta=report.max_translation_delta,
            )
        return report


def make_optimizer(method: str = "gauss-newton", **kwargs):
    """Select a backend: 'gauss-newton', 'levenberg-marquardt' or 'gtsam'."""
    method = (method or "gauss-newton").lower()
    if method == "gtsam":
        kwargs.pop("method", None)
        return GTSAMOptimizer(**kwargs)
    return SparseLeastSquaresOptimizer(method=method, **kwargs)
