"""Append-only telemetry log shared between the simulator and the provider.

The log is a JSON-lines journal. Schema registrations and published records
are appended; readers follow the file from their last byte offset so a
provider process sees records written by a separate simulator process.
"""
from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


class TelemetryLogError(RuntimeError):
    pass


class TelemetryLogClient(Protocol):
    def register_schema(self, schema_id: str, schema: str) -> bool: ...

    def is_schema_registered(self, schema_id: str) -> bool: ...

    def append(self, schema_id: str, publisher: str, data: bytes, *, data_id: Optional[str] = None) -> int: ...

    def total(self, schema_id: str, publisher: str) -> int: ...

    def get_at_index(self, schema_id: str, publisher: str, index: int) -> bytes: ...


def _key(schema_id: str, publisher: str) -> Tuple[str, str]:
    return schema_id.lower(), publisher.lower()


def _record_data(entry: Dict[str, object]) -> bytes:
    return bytes.fromhex(str(entry["data"]).removeprefix("0x"))


class JsonlTelemetryLog:
    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.RLock()
        self._offset = 0
        self._schemas: Dict[str, str] = {}
        # Byte offset of each record line, per (schema, publisher) stream.
        self._records: Dict[Tuple[str, str], List[int]] = {}
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _refresh(self) -> None:
        if not self.path.exists():
            return
        try:
            with self.path.open("rb") as handle:
                handle.seek(self._offset)
                while True:
                    line = handle.readline()
                    if not line or not line.endswith(b"\n"):
                        # Writer may be mid-line; pick it up on the next read.
                        break
                    start = self._offset
                    self._offset = handle.tell()
                    self._apply(line, start)
        except OSError as exc:
            raise TelemetryLogError(f"Unable to read telemetry log {self.path}: {exc}") from exc

    def _apply(self, line: bytes, start: int) -> None:
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed telemetry log line at offset %s", start)
            return
        if not isinstance(entry, dict):
            return
        kind = entry.get("kind")
        if kind == "schema":
            schema_id = str(entry.get("schema_id", "")).lower()
            if schema_id and schema_id not in self._schemas:
                self._schemas[schema_id] = str(entry.get("schema", ""))
        elif kind == "record":
            try:
                key = _key(str(entry["schema_id"]), str(entry["publisher"]))
                _record_data(entry)
            except (KeyError, ValueError):
                logger.warning("Skipping malformed telemetry record at offset %s", start)
                return
            self._records.setdefault(key, []).append(start)

    def _write(self, entry: Dict[str, object]) -> None:
        entry.setdefault("published_at", datetime.now(timezone.utc).isoformat())
        try:
            with self.path.open("a", encoding="utf-8") as handle:
                json.dump(entry, handle, separators=(",", ":"))
                handle.write("\n")
        except OSError as exc:
            raise TelemetryLogError(f"Unable to append to telemetry log {self.path}: {exc}") from exc

    def register_schema(self, schema_id: str, schema: str) -> bool:
        """Register a schema; returns False when it is already registered."""
        with self._lock:
            self._refresh()
            if schema_id.lower() in self._schemas:
                return False
            self._write({"kind": "schema", "schema_id": schema_id.lower(), "schema": schema})
            self._refresh()
            return True

    def is_schema_registered(self, schema_id: str) -> bool:
        with self._lock:
            self._refresh()
            return schema_id.lower() in self._schemas

    def append(self, schema_id: str, publisher: str, data: bytes, *, data_id: Optional[str] = None) -> int:
        """Append a record and return its index within the publisher's stream."""
        with self._lock:
            self._refresh()
            if schema_id.lower() not in self._schemas:
                raise TelemetryLogError(f"Schema {schema_id} is not registered")
            entry: Dict[str, object] = {
                "kind": "record",
                "schema_id": schema_id.lower(),
                "publisher": publisher.lower(),
                "data": "0x" + bytes(data).hex(),
            }
            if data_id:
                entry["data_id"] = data_id
            self._write(entry)
            self._refresh()
            return len(self._records.get(_key(schema_id, publisher), [])) - 1

    def total(self, schema_id: str, publisher: str) -> int:
        with self._lock:
            self._refresh()
            return len(self._records.get(_key(schema_id, publisher), []))

    def get_at_index(self, schema_id: str, publisher: str, index: int) -> bytes:
        with self._lock:
            self._refresh()
            records = self._records.get(_key(schema_id, publisher), [])
            if index < 0 or index >= len(records):
                raise TelemetryLogError(
                    f"No record at index {index} for schema {schema_id} publisher {publisher}"
                )
            return self._read_record(records[index])

    def _read_record(self, offset: int) -> bytes:
        try:
            with self.path.open("rb") as handle:
                handle.seek(offset)
                line = handle.readline()
        except OSError as exc:
            raise TelemetryLogError(f"Unable to read telemetry log {self.path}: {exc}") from exc
        try:
            return _record_data(json.loads(line))
        except (KeyError, ValueError) as exc:
            raise TelemetryLogError(f"Telemetry record at offset {offset} changed on disk: {exc}") from exc
