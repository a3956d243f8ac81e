"""Route channel-tagged log records to the graph builder."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, Mapping, Optional, Union

from .codec import decode_laser, decode_pose, decode_tag_detections
from .config import DEFAULT_CHANNELS
from .errors import CorruptRecord, SlamError
from .models import END_OF_LOG, Channel, Event, _EndOfLog
from .source import LogSource

if TYPE_CHECKING:
    from offline_slam_common.kpi_logging import KPILogger

logger = logging.getLogger("offline_slam.dispatcher")

# A handler returns True when the event created a new keyframe.
Handler = Callable[[Any], Optional[bool]]


class RunMode(str, Enum):
    SINGLE_STEP = "single_step"
    DRAIN = "drain"


@dataclass
class RunResult:
    events: int = 0
    keyframes: int = 0
    end_of_log: bool = False
    stopped: bool = False


class LogDispatcher:
    """Pull records from a log source, decode them and call per-channel handlers.

    Single-threaded: one event at a time in the caller's thread. ``run`` may
    be called again after it returns (including after a ``CorruptRecord``);
    it resumes with the next unread record.
    """

    def __init__(self,
                 source: LogSource,
                 handlers: Mapping[Channel, Handler],
                 channel_map: Optional[Mapping[str, str]] = None,
                 *,
                 quat_order: str = "wxyz",
                 stop_event: Optional[threading.Event] = None,
                 kpi: Optional["KPILogger"] = None):
        self._source = source
        self._handlers: Dict[Channel, Handler] = dict(handlers)
        self._channel_map = {k: Channel(v) for k, v in (channel_map or DEFAULT_CHANNELS).items()}
        self._quat_order = quat_order
        self._stop_event = stop_event
        self._kpi = kpi
        self._exhausted = False
        self.counts: Dict[str, int] = {"records": 0, "events": 0, "skipped": 0, "corrupt": 0}

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    def _channel_of(self, raw: str) -> Optional[Channel]:
        if raw in self._channel_map:
            return self._channel_map[raw]
        try:
            return Channel(raw)
        except ValueError:
            return None

    def _decode(self, channel: Channel, payload: Any, stamp: float) -> Any:
        if channel == Channel.POSE:
            return decode_pose(payload, stamp, quat_order=self._quat_order)
        if channel == Channel.TAG_DETECTIONS:
            return decode_tag_detections(payload, stamp)
        return decode_laser(payload, stamp)

    def next_event(self) -> Union[Event, _EndOfLog]:
        """Next decodable event, or END_OF_LOG. Unknown channels are skipped."""
        if self._exhausted:
            return END_OF_LOG
        while True:
            try:
                rec = self._source.read_next()
            except CorruptRecord:
                self.counts["corrupt"] += 1
                raise
            if rec is None:
                self._exhausted = True
                logger.info("End of log reached after %d records", self.counts["records"])
                return END_OF_LOG
            self.counts["records"] += 1
            channel = self._channel_of(rec.channel)
            if channel is None:
                self.counts["skipped"] += 1
                logger.debug("Skipping record on unhandled channel %s", rec.channel)
                continue
            try:
                payload = self._decode(channel, rec.payload, rec.timestamp)
            except CorruptRecord as exc:
                self.counts["corrupt"] += 1
                raise exc.with_context(channel=rec.channel, timestamp=rec.timestamp)
            return Event(channel=channel, timestamp=rec.timestamp, payload=payload)

    def dispatch(self, event: Event) -> bool:
        handler = self._handlers.get(event.channel)
        if handler is None:
            return False
        try:
            created = bool(handler(event.payload))
        except SlamError as exc:
            exc.with_context(channel=event.channel.value, timestamp=event.timestamp)
            logger.error("Handler for %s failed: %s", event.channel.value, exc)
            raise
        except Exception:
            logger.error("Handler for %s failed at t=%.6f", event.channel.value, event.timestamp)
            raise
        self.counts["events"] += 1
        if self._kpi:
            self._kpi.event_dispatched(event.channel.value, event.timestamp, keyframe=created)
        return created

    def run(self, mode: Union[RunMode, str] = RunMode.DRAIN) -> RunResult:
        """Dispatch until a keyframe (SINGLE_STEP) or the end of the log (DRAIN)."""
        mode = RunMode(mode)
        result = RunResult()
        while True:
            if self._stop_event is not None and self._stop_event.is_set():
                result.stopped = True
                logger.info("Replay stopped by driver after %d events", result.events)
                break
            event = self.next_event()
            if event is END_OF_LOG:
                result.end_of_log = True
                break
            created = self.dispatch(event)
            result.events += 1
            if created:
                result.keyframes += 1
                if mode == RunMode.SINGLE_STEP:
                    break
        logger.debug("run(%s): %s", mode.value, result)
        return result

    def single_step(self) -> RunResult:
        return self.run(RunMode.SINGLE_STEP)

    def drain(self) -> RunResult:
        return self.run(RunMode.DRAIN)
