"""Driver-facing session: replay a log into a pose graph and optimize it.

The session is the unit a driver (CLI, notebook, test) holds on to. It wires
a log source to the dispatcher, the dispatcher to the graph builder, and
exposes the optimizer. A single lock guarantees that graph mutation
(replay) and optimization never overlap.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import TYPE_CHECKING, Optional

from .builder import GraphBuilder
from .config import SLAMConfig
from .dispatcher import LogDispatcher, RunMode, RunResult
from .graph import PoseGraph
from .models import GraphSnapshot
from .optimizer import OptimizationReport, make_optimizer
from .source import LogSource

if TYPE_CHECKING:
    from offline_slam_common.kpi_logging import KPILogger

logger = logging.getLogger("offline_slam.session")


class SLAMSession:
    """Owns graph, builder, dispatcher and optimizer for one replayed log.

    The caller owns the source's lifetime unless ``close_source=True``.
    """

    def __init__(self,
                 source: LogSource,
                 config: Optional[SLAMConfig] = None,
                 kpi: Optional["KPILogger"] = None,
                 optimizer=None,
                 close_source: bool = False,
                 quat_order: str = "wxyz"):
        self.config = (config or SLAMConfig()).validate()
        self.source = source
        self.kpi = kpi
        self.graph = PoseGraph(anchor_variance=self.config.anchor_variance)
        self.builder = GraphBuilder(self.graph, self.config, kpi=kpi)
        self._stop = threading.Event()
        self.dispatcher = LogDispatcher(
            source,
            self.builder.handlers(),
            channel_map=self.config.channels,
            quat_order=quat_order,
            stop_event=self._stop,
            kpi=kpi,
        )
        if optimizer is None:
            opt = self.config.optimizer
            optimizer = make_optimizer(
                opt.method,
                max_iterations=opt.max_iterations,
                tolerance=opt.tolerance,
                robust_kind=opt.robust_kind,
                robust_k=opt.robust_k,
                lambda_initial=opt.lambda_initial,
                kpi=kpi,
            )
        self.optimizer = optimizer
        self._lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._close_source = close_source
        self.last_report: Optional[OptimizationReport] = None

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------
    def run(self, mode=RunMode.DRAIN) -> RunResult:
        with self._lock:
            result = self.dispatcher.run(mode)
        if result.stopped:
            # A stop request is consumed by the run it aborted.
            self._stop.clear()
        return result

    def single_step(self) -> RunResult:
        """Dispatch events until one keyframe is created or the log ends."""
        return self.run(RunMode.SINGLE_STEP)

    def drain(self) -> RunResult:
        """Dispatch every remaining event (unless a stop is requested)."""
        return self.run(RunMode.DRAIN)

    def request_stop(self) -> None:
        self._stop.set()

    @property
    def end_of_log(self) -> bool:
        return self.dispatcher.exhausted

    # ------------------------------------------------------------------
    # Optimization
    # ------------------------------------------------------------------
    def optimize(self) -> OptimizationReport:
        with self._lock:
            logger.info("Optimizing graph: %d nodes, %d edges",
                        self.graph.node_count, self.graph.edge_count)
            self.last_report = self.optimizer.optimize(self.graph)
            return self.last_report

    def optimize_async(self) -> "Future[OptimizationReport]":
        """Run ``optimize`` on a background worker; replay blocks until it ends."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="slam-opt")
        return self._executor.submit(self.optimize)

    # ------------------------------------------------------------------
    # Read access / lifecycle
    # ------------------------------------------------------------------
    def snapshot(self) -> GraphSnapshot:
        with self._lock:
            return self.graph.snapshot()

    def reset(self) -> None:
        """Forget the graph and builder state; the source is not rewound."""
        with self._lock:
            self.builder.reset()
            self.last_report = None

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        if self._close_source:
            self.source.close()

    def __enter__(self) -> "SLAMSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
