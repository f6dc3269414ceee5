"""
Process record store.

Keeps a bounded, durable history per managed process: the most recent log
lines and classified errors, plus the last known snapshot of each process.
The in-memory view is authoritative for the running instance and is
mirrored to a HistoryBackend (SQLite via Peewee by default) so history
survives a restart of the supervisor. Backend failures are logged as
warnings and never interrupt process supervision.
"""

import json
import logging
import threading
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional, Union

from peewee import PeeweeException

from .classifier import ClassifiedError, LogLine, Severity
from .config import config
from .errors import StorageReadFailure, StorageWriteFailure
from .models import HistoryEntry, ProcessRecord, database

logger = logging.getLogger(__name__)

LINE = "line"
ERROR = "error"


class HistoryBackend:
    """Durable storage keyed by process id."""

    def append(self, process_id: str, kind: str, seq: int, payload: dict):
        raise NotImplementedError

    def read(self, process_id: str) -> list[tuple[str, int, dict]]:
        """Return (kind, seq, payload) tuples ordered by seq."""
        raise NotImplementedError

    def delete(self, process_id: str, seqs: Optional[list[int]] = None):
        """Delete the given entries, or all entries of the process when seqs is None."""
        raise NotImplementedError

    def save_record(self, process_id: str, state: str, payload: dict):
        raise NotImplementedError

    def read_records(self) -> list[dict]:
        raise NotImplementedError


class SqliteHistoryBackend(HistoryBackend):
    """HistoryBackend on top of the Peewee models."""

    def append(self, process_id: str, kind: str, seq: int, payload: dict):
        try:
            HistoryEntry.create(process_id=process_id, seq=seq, kind=kind, payload=json.dumps(payload))
        except (PeeweeException, OSError) as e:
            raise StorageWriteFailure(f"append {kind} #{seq} for {process_id}: {e}") from e

    def read(self, process_id: str) -> list[tuple[str, int, dict]]:
        try:
            rows = (
                HistoryEntry.select()
                .where(HistoryEntry.process_id == process_id)
                .order_by(HistoryEntry.seq.asc())
            )
            return [(row.kind, row.seq, json.loads(row.payload)) for row in rows]
        except (PeeweeException, OSError, json.JSONDecodeError) as e:
            raise StorageReadFailure(f"read history for {process_id}: {e}") from e

    def delete(self, process_id: str, seqs: Optional[list[int]] = None):
        if seqs is not None and not seqs:
            return
        try:
            query = HistoryEntry.delete().where(HistoryEntry.process_id == process_id)
            if seqs is not None:
                query = query.where(HistoryEntry.seq.in_(seqs))
            query.execute()
        except (PeeweeException, OSError) as e:
            raise StorageWriteFailure(f"delete history for {process_id}: {e}") from e

    def save_record(self, process_id: str, state: str, payload: dict):
        try:
            with database.atomic():
                ProcessRecord.insert(
                    process_id=process_id,
                    state=state,
                    payload=json.dumps(payload),
                    updated_at=datetime.now(),
                ).on_conflict_replace().execute()
        except (PeeweeException, OSError) as e:
            raise StorageWriteFailure(f"save record for {process_id}: {e}") from e

    def read_records(self) -> list[dict]:
        try:
            return [json.loads(row.payload) for row in ProcessRecord.select()]
        except (PeeweeException, OSError, json.JSONDecodeError) as e:
            raise StorageReadFailure(f"read process records: {e}") from e


@dataclass
class ProcessHistory:
    """Bounded view of a process's recent output and errors."""

    process_id: str
    log_lines: list[LogLine] = field(default_factory=list)
    errors: list[ClassifiedError] = field(default_factory=list)
    total_bytes: int = 0

    def latest_error(self) -> Optional[ClassifiedError]:
        return self.errors[-1] if self.errors else None

    def latest_critical(self) -> Optional[ClassifiedError]:
        for error in reversed(self.errors):
            if error.severity == Severity.CRITICAL:
                return error
        return None

    def to_dict(self, limit: Optional[int] = None) -> dict:
        lines = self.log_lines[-limit:] if limit else self.log_lines
        errors = self.errors[-limit:] if limit else self.errors
        return {
            "process_id": self.process_id,
            "log_lines": [line.to_dict() for line in lines],
            "errors": [error.to_dict() for error in errors],
            "total_bytes": self.total_bytes,
        }


@dataclass
class _Entry:
    seq: int
    kind: str
    item: Union[LogLine, ClassifiedError]
    size: int


@dataclass
class _ProcessLog:
    lines: deque = field(default_factory=deque)
    errors: deque = field(default_factory=deque)
    total_bytes: int = 0
    next_seq: int = 1
    pinned_seq: Optional[int] = None  # most recent Critical error

    def repin(self):
        self.pinned_seq = None
        for entry in reversed(self.errors):
            if entry.item.severity == Severity.CRITICAL:
                self.pinned_seq = entry.seq
                return


class ProcessRecordStore:
    """Size-bounded, durable history of managed processes."""

    def __init__(
        self,
        backend: HistoryBackend = None,
        max_entries: int = None,
        max_bytes: int = None,
    ):
        self._backend = backend if backend is not None else SqliteHistoryBackend()
        self._max_entries = max(1, max_entries or config.max_history_entries_per_process)
        self._max_bytes = max(1, max_bytes or config.max_history_bytes_per_process)
        self._logs: dict[str, _ProcessLog] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def max_entries(self) -> int:
        return self._max_entries

    @property
    def max_bytes(self) -> int:
        return self._max_bytes

    def _lock(self, process_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(process_id)
            if lock is None:
                lock = self._locks[process_id] = threading.Lock()
            return lock

    def _load(self, process_id: str) -> _ProcessLog:
        """Get the in-memory log for a process, rebuilding it from the backend once."""
        log = self._logs.get(process_id)
        if log is not None:
            return log

        log = _ProcessLog()
        try:
            rows = self._backend.read(process_id)
        except StorageReadFailure as e:
            logger.warning(f"Could not load history for {process_id}: {e}")
            rows = []

        for kind, seq, payload in rows:
            try:
                if kind == ERROR:
                    item = ClassifiedError.from_dict(payload)
                    target = log.errors
                else:
                    item = LogLine.from_dict(payload)
                    target = log.lines
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping unreadable history entry {seq} for {process_id}: {e}")
                continue
            entry = _Entry(seq=seq, kind=kind, item=item, size=item.size)
            target.append(entry)
            log.total_bytes += entry.size
            log.next_seq = max(log.next_seq, seq + 1)

        log.repin()
        self._persist_eviction(process_id, self._rotate(log))
        self._logs[process_id] = log
        return log

    def _truncate(self, item):
        if item.size <= self._max_bytes:
            return item
        if isinstance(item, LogLine):
            text = item.text.encode("utf-8")[: self._max_bytes].decode("utf-8", errors="ignore")
            return replace(item, text=text)
        raw = item.raw_line.encode("utf-8")[: self._max_bytes].decode("utf-8", errors="ignore")
        return replace(item, raw_line=raw)

    def _pop_error(self, log: _ProcessLog, allow_pinned: bool) -> Optional[_Entry]:
        """Remove the oldest error, skipping the pinned Critical one unless allowed."""
        for index, entry in enumerate(log.errors):
            if entry.seq != log.pinned_seq:
                del log.errors[index]
                return entry
        if allow_pinned and log.errors:
            entry = log.errors.popleft()
            log.repin()
            return entry
        return None

    def _rotate(self, log: _ProcessLog) -> list[_Entry]:
        """Apply entry and byte caps, oldest first. Returns evicted entries."""
        evicted = []

        while len(log.lines) > self._max_entries:
            evicted.append(log.lines.popleft())
        while len(log.errors) > self._max_entries:
            entry = self._pop_error(log, allow_pinned=True)
            evicted.append(entry)

        log.total_bytes -= sum(e.size for e in evicted)

        while log.total_bytes > self._max_bytes:
            oldest_error = next((e for e in log.errors if e.seq != log.pinned_seq), None)
            if log.lines and (oldest_error is None or log.lines[0].seq < oldest_error.seq):
                entry = log.lines.popleft()
            else:
                entry = self._pop_error(log, allow_pinned=True)
            if entry is None:
                break
            log.total_bytes -= entry.size
            evicted.append(entry)

        return evicted

    def _persist_eviction(self, process_id: str, evicted: list[_Entry]):
        if not evicted:
            return
        try:
            self._backend.delete(process_id, [e.seq for e in evicted])
        except StorageWriteFailure as e:
            logger.warning(f"Failed to persist history rotation for {process_id}: {e}")

    def _append(self, process_id: str, kind: str, item):
        item = self._truncate(item)
        with self._lock(process_id):
            log = self._load(process_id)
            entry = _Entry(seq=log.next_seq, kind=kind, item=item, size=item.size)
            log.next_seq += 1

            if kind == ERROR:
                log.errors.append(entry)
                if item.severity == Severity.CRITICAL:
                    log.pinned_seq = entry.seq
            else:
                log.lines.append(entry)
            log.total_bytes += entry.size

            evicted = self._rotate(log)

            try:
                self._backend.append(process_id, kind, entry.seq, item.to_dict())
            except StorageWriteFailure as e:
                logger.warning(f"Failed to persist history for {process_id}: {e}")
            self._persist_eviction(process_id, evicted)

    def append_line(self, process_id: str, line: LogLine):
        """Record a line of output."""
        self._append(process_id, LINE, line)

    def append_error(self, process_id: str, error: ClassifiedError):
        """Record a classified error."""
        self._append(process_id, ERROR, error)

    def append(self, process_id: str, entry: Union[LogLine, ClassifiedError]):
        if isinstance(entry, ClassifiedError):
            self.append_error(process_id, entry)
        elif isinstance(entry, LogLine):
            self.append_line(process_id, entry)
        else:
            raise TypeError(f"Cannot store {type(entry).__name__} in process history")

    def history(self, process_id: str) -> ProcessHistory:
        """Snapshot of the current bounded history of a process."""
        with self._lock(process_id):
            log = self._load(process_id)
            return ProcessHistory(
                process_id=process_id,
                log_lines=[e.item for e in log.lines],
                errors=[e.item for e in log.errors],
                total_bytes=log.total_bytes,
            )

    def clear(self, process_id: str):
        """Drop all history for a process."""
        with self._lock(process_id):
            self._logs[process_id] = _ProcessLog()
            try:
                self._backend.delete(process_id)
            except StorageWriteFailure as e:
                logger.warning(f"Failed to clear persisted history for {process_id}: {e}")
        logger.info(f"Cleared history for {process_id}")

    def save_record(self, process) -> bool:
        """Persist the snapshot of a managed process. Returns False on failure."""
        try:
            self._backend.save_record(process.id, process.state.value, process.to_dict())
            return True
        except StorageWriteFailure as e:
            logger.warning(f"Failed to persist record for {process.id}: {e}")
            return False

    def load_records(self) -> list[dict]:
        """Snapshots persisted by this or a previous supervisor instance."""
        try:
            return self._backend.read_records()
        except StorageReadFailure as e:
            logger.warning(f"Failed to load process records: {e}")
            return []
