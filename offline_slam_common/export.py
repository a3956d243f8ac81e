"""Write graph snapshots, trajectories and run statistics to disk."""
from __future__ import annotations

import csv
import json
import os
from typing import Any, Dict, Mapping, Optional

from offline_slam.models import GraphSnapshot, NodeKind


def ensure_dir(p: str) -> None:
    os.makedirs(p, exist_ok=True)


def snapshot_to_dict(snapshot: GraphSnapshot) -> Dict[str, Any]:
    return {
        "nodes": [
            {
                "index": n.index,
                "kind": n.kind.value,
                "state": list(n.state) if n.state is not None else None,
                "ground_truth": list(n.ground_truth) if n.ground_truth is not None else None,
            }
            for n in snapshot.nodes
        ],
        "edges": [
            {
                "id": e.edge_id,
                "kind": e.kind.value,
                "nodes": list(e.nodes),
                "measurement": list(e.measurement),
            }
            for e in snapshot.edges
        ],
    }


def export_snapshot_json(snapshot: GraphSnapshot, out_path: str) -> None:
    with open(out_path, "w", encoding="utf-8") as f:
        json.dump(snapshot_to_dict(snapshot), f, indent=2)


def export_trajectory_csv(snapshot: GraphSnapshot, out_path: str,
                          initial: Optional[GraphSnapshot] = None) -> int:
    """One row per robot-pose node; returns the number of rows written.

    When ``initial`` is given, its states are written alongside as x0/y0/theta0.
    """
    init_states = {n.index: n.state for n in initial.nodes} if initial is not None else {}
    headers = ["index", "x", "y", "theta"]
    if initial is not None:
        headers += ["x0", "y0", "theta0"]
    rows = 0
    with open(out_path, "w", newline="", encoding="utf-8") as f:
        w = csv.writer(f)
        w.writerow(headers)
        for n in snapshot.nodes_of_kind(NodeKind.ROBOT_POSE):
            if n.state is None:
                continue
            row = [n.index, *n.state]
            if initial is not None:
                row += list(init_states.get(n.index) or ("", "", ""))
            w.writerow(row)
            rows += 1
    return rows


def export_landmarks_csv(snapshot: GraphSnapshot, tag_ids: Mapping[int, int], out_path: str) -> int:
    """tag_ids: tag id -> node index (the graph's landmark registry)."""
    by_index = {n.index: n for n in snapshot.nodes}
    rows = 0
    with open(out_path, "w", newline="", encoding="utf-8") as f:
        w = csv.DictWriter(f, fieldnames=["tag_id", "index", "x", "y", "stranded"])
        w.writeheader()
        for tag_id, index in sorted(tag_ids.items()):
            state = by_index[index].state
            w.writerow({
                "tag_id": tag_id,
                "index": index,
                "x": state[0] if state is not None else "",
                "y": state[1] if state is not None else "",
                "stranded": state is None,
            })
            rows += 1
    return rows


def export_stats_json(counts: Mapping[str, Any], out_path: str,
                      report: Optional[Mapping[str, Any]] = None,
                      metrics: Optional[Mapping[str, Any]] = None) -> None:
    payload: Dict[str, Any] = {"counts": dict(counts)}
    if report is not None:
        payload["optimization"] = dict(report)
    if metrics is not None:
        payload["metrics"] = dict(metrics)
    with open(out_path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)
