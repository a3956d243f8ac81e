"""Configuration for log replay, graph building and optimization.

Defaults mirror the values the robot logs were recorded with. A config file
(JSON or TOML) may override any of them using nested groups:

    step_time = 1.0
    odom_noise = 0.1

    [camera]
    fx = 478.0

    [optimizer]
    method = "levenberg-marquardt"

    [channels]
    POSE = "pose"
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Union

try:  # Python 3.11+
    import tomllib  # type: ignore[attr-defined]
except Exception:  # pragma: no cover - optional TOML support
    tomllib = None  # type: ignore[assignment]

from .errors import ConfigError

logger = logging.getLogger("offline_slam.config")

# Raw log channel name -> logical channel.
DEFAULT_CHANNELS: Dict[str, str] = {
    "POSE": "pose",
    "LASER": "laser",
    "TAG_DETECTION_TX": "tag_detections",
}


@dataclass
class CameraIntrinsics:
    """Pinhole intrinsics of the tag camera (pixels)."""
    fx: float = 478.0
    fy: float = 478.0
    cx: float = 376.0
    cy: float = 240.0


@dataclass
class OptimizerConfig:
    method: str = "gauss-newton"  # gauss-newton | levenberg-marquardt | gtsam
    max_iterations: int = 100
    tolerance: float = 1e-6
    robust_kind: Optional[str] = None  # huber | cauchy | None
    robust_k: Optional[float] = None
    lambda_initial: float = 1e-3


@dataclass
class SLAMConfig:
    step_time: float = 1.0  # seconds of log time between keyframes
    odom_noise: float = 0.1  # std-dev applied to every odometry component
    anchor_variance: float = 1e-6
    tag_size: float = 0.15  # metres, outer black border
    camera: CameraIntrinsics = field(default_factory=CameraIntrinsics)
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    channels: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_CHANNELS))

    def validate(self) -> "SLAMConfig":
        if self.step_time <= 0.0:
            raise ConfigError("step_time must be positive", step_time=self.step_time)
        if self.odom_noise <= 0.0:
            raise ConfigError("odom_noise must be positive", odom_noise=self.odom_noise)
        if self.anchor_variance <= 0.0:
            raise ConfigError("anchor_variance must be positive")
        if self.tag_size <= 0.0:
            raise ConfigError("tag_size must be positive", tag_size=self.tag_size)
        if self.camera.fx == 0.0 or self.camera.fy == 0.0:
            raise ConfigError("camera focal lengths must be non-zero")
        if self.optimizer.max_iterations < 1:
            raise ConfigError("optimizer.max_iterations must be >= 1")
        if self.optimizer.tolerance <= 0.0:
            raise ConfigError("optimizer.tolerance must be positive")
        return self


def _apply(obj: Any, values: Dict[str, Any], where: str) -> Any:
    known = {f.name for f in fields(obj)}
    updates = {}
    for key, value in values.items():
        name = key.replace("-", "_")
        if name not in known:
            raise ConfigError(f"Unknown config key '{key}'", section=where)
        updates[name] = value
    return replace(obj, **updates)


def config_from_dict(raw: Dict[str, Any]) -> SLAMConfig:
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be an object/dict")
    raw = dict(raw)
    cfg = SLAMConfig()
    camera = raw.pop("camera", None)
    optimizer = raw.pop("optimizer", None)
    channels = raw.pop("channels", None)
    cfg = _apply(cfg, raw, "root")
    if isinstance(camera, dict):
        cfg.camera = _apply(cfg.camera, camera, "camera")
    if isinstance(optimizer, dict):
        cfg.optimizer = _apply(cfg.optimizer, optimizer, "optimizer")
    if isinstance(channels, dict):
        cfg.channels = {str(k): str(v) for k, v in channels.items()}
    return cfg.validate()


def load_config(path: Union[str, Path, None]) -> SLAMConfig:
    """Load configuration from a JSON or TOML file (None -> defaults)."""
    if path is None:
        return SLAMConfig()
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    suffix = path.suffix.lower()
    try:
        if suffix == ".json":
            with path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
        elif suffix == ".toml":
            if tomllib is None:
                raise ConfigError("TOML config requires Python 3.11+ (tomllib). Use JSON or upgrade.")
            with path.open("rb") as f:  # tomllib expects bytes
                raw = tomllib.load(f)  # type: ignore[union-attr]
        else:
            raise ConfigError(f"Unsupported config format: {path.suffix}. Use .json or .toml")
    except (OSError, ValueError) as exc:
        raise ConfigError(f"Could not read config {path}: {exc}") from exc
    cfg = config_from_dict(raw)
    logger.info("Loaded config from %s", path)
    return cfg
