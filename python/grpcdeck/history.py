"""
grpcdeck/history.py

Call history: record every completed invocation, filter, delete, replay.
"""
from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Optional

from grpcdeck.domain import (
    STATUS_ERROR,
    STATUS_SUCCESS,
    CallRecord,
    Endpoint,
    StreamType,
)
from grpcdeck.errors import StorageIOError, ValidationError
from grpcdeck.schema import split_method_path
from grpcdeck.state import AppState
from grpcdeck.storage import Repository

log = logging.getLogger(__name__)


def now_rfc3339(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class HistoryController:

    def __init__(self, repo: Repository) -> None:
        self._repo    = repo
        self._lock    = threading.Lock()
        self._last_id = self._newest_id()

    def _newest_id(self) -> int:
        """Clock floor carried over from stored history."""
        for entry in self.entries(1):
            if entry.id.isdigit():
                return int(entry.id)
        return 0

    def _next_stamp(self) -> tuple[str, str]:
        """Id and timestamp from one clock, clamped so neither steps backwards."""
        with self._lock:
            self._last_id = max(time.time_ns(), self._last_id + 1)
            stamp = self._last_id
        return str(stamp), now_rfc3339(datetime.fromtimestamp(stamp / 1e9, timezone.utc))

    # ── Record ───────────────────────────────────────────────────────────────

    def record(
        self,
        endpoint:          Optional[Endpoint],
        method:            str,
        request:           str,
        response:          str = "",
        duration_ms:       float = 0.0,
        error:             str = "",
        request_metadata:  tuple = (),
        response_metadata: tuple = (),
        stream_type:       StreamType = StreamType.UNARY,
        message_count:     int = 0,
    ) -> CallRecord:
        """
        Push a completed call to the front of history. A storage failure
        is logged and the record is still returned.
        """
        record_id, timestamp = self._next_stamp()
        entry = CallRecord(
            id=record_id,
            timestamp=timestamp,
            endpoint=endpoint,
            method=method,
            request=request,
            response=response,
            duration_ms=duration_ms,
            status=STATUS_ERROR if error else STATUS_SUCCESS,
            error=error,
            request_metadata=tuple(request_metadata),
            response_metadata=tuple(response_metadata),
            stream_type=stream_type,
            message_count=message_count,
        )
        try:
            self._repo.add_history(entry)
        except StorageIOError as exc:
            log.warning("history not saved: %s", exc)
        return entry

    # ── Query ────────────────────────────────────────────────────────────────

    def entries(self, limit: int = 0) -> list[CallRecord]:
        try:
            return self._repo.history(limit)
        except StorageIOError as exc:
            log.warning("history unavailable: %s", exc)
            return []

    def filter(self, text: str = "", status: str = "") -> list[CallRecord]:
        """Substring match over method, request and error; exact status."""
        needle = text.lower()
        out = []
        for entry in self.entries():
            if status and entry.status != status:
                continue
            if needle and not any(
                needle in field.lower() for field in (entry.method, entry.request, entry.error)
            ):
                continue
            out.append(entry)
        return out

    def get(self, record_id: str) -> CallRecord:
        for entry in self.entries():
            if entry.id == record_id:
                return entry
        raise ValidationError(f"no history entry {record_id!r}")

    # ── Mutate ───────────────────────────────────────────────────────────────

    def delete(self, record_id: str) -> None:
        self._repo.delete_history(record_id)

    def clear(self) -> None:
        self._repo.clear_history()

    # ── Replay ───────────────────────────────────────────────────────────────

    @staticmethod
    def apply(entry: CallRecord, state: AppState) -> None:
        """Make the entry the current request. Does not send."""
        service, method = split_method_path(entry.method)

        def _write() -> None:
            state.selected_service.set(service)
            state.selected_method.set(method)
            state.request.text.set(entry.request)
            state.request.metadata.set(tuple(entry.request_metadata))
            state.response.clear()
        state.batch(_write)
