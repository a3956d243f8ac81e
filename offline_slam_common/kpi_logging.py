"""KPI logging helpers (replay and optimization events)."""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Optional

logger = logging.getLogger("offline_slam.kpi")


class KPILogger:
    """Emit structured KPI events as JSON lines for downstream analysis."""

    def __init__(
        self,
        enabled: bool = True,
        extra_fields: Optional[Dict[str, Any]] = None,
        log_path: Optional[str] = None,
        emit_to_logger: bool = True,
    ):
        self.enabled = enabled
        self._extra = extra_fields.copy() if extra_fields else {}
        self._emit_to_logger = emit_to_logger
        self._fh = None
        self.counts: Dict[str, int] = {}
        if log_path:
            self._fh = open(log_path, "w", encoding="utf-8")

    def _emit(self, event: str, **fields: Any) -> None:
        if not self.enabled:
            return
        self.counts[event] = self.counts.get(event, 0) + 1
        payload = {"event": event, "ts": time.time()}
        payload.update(self._extra)
        payload.update({k: v for k, v in fields.items() if v is not None})
        line = json.dumps(payload, sort_keys=True)
        if self._emit_to_logger:
            logger.debug("KPI %s", line)
        if self._fh:
            self._fh.write(line + "\n")
            self._fh.flush()

    def event_dispatched(self, channel: str, stamp: float, *, keyframe: bool = False) -> None:
        self._emit("event_dispatched", channel=channel, stamp=stamp, keyframe=keyframe)

    def keyframe_created(self, node_index: int, stamp: float, **fields: Any) -> None:
        self._emit("keyframe_created", node_index=node_index, stamp=stamp, **fields)

    def landmark_registered(self, tag_id: int, node_index: int, stamp: float) -> None:
        self._emit("landmark_registered", tag_id=tag_id, node_index=node_index, stamp=stamp)

    def optimization_start(self, run_id: int, edge_count: int, variable_count: int) -> None:
        self._emit(
            "optimization_start",
            run_id=run_id,
            edge_count=edge_count,
            variable_count=variable_count,
        )

    def optimization_end(
        self,
        run_id: int,
        duration_s: float,
        *,
        status: Optional[str] = None,
        iterations: Optional[int] = None,
        updated_nodes: Optional[int] = None,
        final_cost: Optional[float] = None,
        max_translation_delta: Optional[float] = None,
    ) -> None:
        self._emit(
            "optimization_end",
            run_id=run_id,
            duration_s=duration_s,
            status=status,
            iterations=iterations,
            updated_nodes=updated_nodes,
            final_cost=final_cost,
            max_translation_delta=max_translation_delta,
        )

    def close(self) -> None:
        if self._fh:
            try:
                self._fh.close()
            finally:
                self._fh = None
