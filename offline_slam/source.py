"""Log source abstractions for offline replay."""

from __future__ import annotations

import json
import logging
from contextlib import AbstractContextManager
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Mapping, Optional, Union

from .errors import CorruptRecord, LogSourceError
from .models import LogRecord

logger = logging.getLogger("offline_slam.source")


def record_from_mapping(raw: Any, where: str = "record") -> LogRecord:
    """Build a ``LogRecord`` from {"timestamp"|"utime", "channel", "payload"}."""
    if isinstance(raw, LogRecord):
        return raw
    if not isinstance(raw, Mapping):
        raise CorruptRecord(f"{where} must be an object, got {type(raw).__name__}")
    channel = raw.get("channel")
    if not isinstance(channel, str) or not channel:
        raise CorruptRecord(f"{where} has no channel")
    try:
        if "utime" in raw:
            stamp = int(raw["utime"]) / 1e6
        else:
            stamp = float(raw["timestamp"])
    except (KeyError, TypeError, ValueError) as exc:
        raise CorruptRecord(f"{where} has no usable timestamp", channel=channel) from exc
    if "payload" not in raw:
        raise CorruptRecord(f"{where} has no payload", channel=channel, timestamp=stamp)
    return LogRecord(timestamp=stamp, channel=channel, payload=raw["payload"])


class LogSource(AbstractContextManager):
    """Sequential, read-once provider of ``LogRecord`` objects.

    ``read_next`` returns None at the end of the log. A malformed record raises
    ``CorruptRecord`` after it has been consumed, so the following call picks
    up at the next record.
    """

    def __enter__(self):
        return self

    def read_next(self) -> Optional[LogRecord]:  # pragma: no cover - interface method
        raise NotImplementedError

    def iter_records(self) -> Iterator[LogRecord]:
        while True:
            record = self.read_next()
            if record is None:
                return
            yield record

    def close(self) -> None:  # pragma: no cover - default no-op
        return None

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class MemoryLogSource(LogSource):
    """In-process list of records (or record mappings)."""

    def __init__(self, records: Iterable[Union[LogRecord, Mapping[str, Any]]]):
        self._records: List[Any] = list(records)
        self._pos = 0

    def read_next(self) -> Optional[LogRecord]:
        if self._pos >= len(self._records):
            return None
        raw = self._records[self._pos]
        self._pos += 1
        return record_from_mapping(raw, where=f"record {self._pos - 1}")

    def __len__(self) -> int:
        return len(self._records)


class JSONLLogSource(LogSource):
    """One JSON object per line: {"timestamp", "channel", "payload"}."""

    def __init__(self, path: Union[str, Path]):
        self._path = Path(path)
        self._fh = None
        self._line_no = 0

    @property
    def path(self) -> Path:
        return self._path

    def __enter__(self):
        self.open()
        return self

    def open(self) -> None:
        if self._fh is not None:
            return
        try:
            self._fh = self._path.open("r", encoding="utf-8")
        except OSError as exc:
            raise LogSourceError(f"Could not open log {self._path}: {exc}") from exc
        logger.info("Opened log %s", self._path)

    def read_next(self) -> Optional[LogRecord]:
        if self._fh is None:
            raise LogSourceError("JSONLLogSource must be opened before reading")
        while True:
            line = self._fh.readline()
            if not line:
                return None
            self._line_no += 1
            if line.strip():
                break
        where = f"{self._path.name}:{self._line_no}"
        try:
            raw = json.loads(line)
        except json.JSONDecodeError as exc:
            raise CorruptRecord(f"Malformed JSON at {where}: {exc}", line=self._line_no) from exc
        return record_from_mapping(raw, where=where)

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None
            logger.debug("Closed log %s after %d lines", self._path, self._line_no)


def write_jsonl_log(records: Iterable[Union[LogRecord, Mapping[str, Any]]], path: Union[str, Path]) -> int:
    """Write records as JSON lines; returns the number written."""
    count = 0
    with open(path, "w", encoding="utf-8") as f:
        for rec in records:
            rec = record_from_mapping(rec)
            f.write(json.dumps({
                "timestamp": rec.timestamp,
                "channel": rec.channel,
                "payload": rec.payload,
            }) + "\n")
            count += 1
    return count
