from __future__ import annotations

import json
from collections import deque
from pathlib import Path
from threading import Condition, Thread
from typing import Any

from relay_gateway.gateway.quota_ledger import UsageRecord

USAGE_EVENT = "usage"
DROPPED_EVENT = "usage_records_dropped"


def usage_record_payload(record: UsageRecord) -> dict[str, Any]:
    """The JSON shape every usage sink emits for one settled request."""
    return {
        "ts": int(record.created_at_epoch),
        "event": USAGE_EVENT,
        **record.to_dict(),
    }


def serialize_usage_record(record: UsageRecord) -> str:
    return json.dumps(
        usage_record_payload(record), ensure_ascii=True, separators=(",", ":")
    )


class JsonlUsageLogger:
    """Usage sink appending one JSON line per ``UsageRecord``.

    Records are serialized on the caller's thread and written in batches by
    a single writer thread, so settlement never blocks on disk. When more
    than ``max_backlog`` lines are waiting, new records are counted instead
    of queued and the count is written as a ``usage_records_dropped`` line
    with the next batch.
    """

    def __init__(
        self,
        path: str,
        enabled: bool = True,
        max_backlog: int = 8192,
        batch_size: int = 256,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._max_backlog = max(1, int(max_backlog))
        self._batch_size = max(1, int(batch_size))
        self._backlog: deque[str] = deque()
        self._cond = Condition()
        self._writing = False
        self._closing = False
        self._dropped = 0
        self._unreported_drops = 0
        self._written = 0
        self._worker: Thread | None = None
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._worker = Thread(
                target=self._run, name="usage-log-writer", daemon=True
            )
            self._worker.start()

    @property
    def written_records(self) -> int:
        with self._cond:
            return self._written

    @property
    def dropped_records(self) -> int:
        with self._cond:
            return self._dropped

    def record(self, record: UsageRecord) -> None:
        if not self.enabled or self._worker is None:
            return
        line = serialize_usage_record(record)
        with self._cond:
            if self._closing:
                return
            if len(self._backlog) >= self._max_backlog:
                self._dropped += 1
                self._unreported_drops += 1
                return
            self._backlog.append(line)
            self._cond.notify_all()

    def flush(self, timeout: float | None = 2.0) -> bool:
        """Wait until every accepted record is on disk."""
        if self._worker is None:
            return True
        with self._cond:
            return self._cond.wait_for(
                lambda: not self._backlog and not self._writing, timeout=timeout
            )

    def close(self) -> None:
        worker = self._worker
        if worker is None:
            return
        with self._cond:
            self._closing = True
            self._cond.notify_all()
        worker.join(timeout=2.0)

    def _next_batch(self) -> tuple[list[str], int] | None:
        with self._cond:
            self._cond.wait_for(lambda: self._backlog or self._closing)
            if not self._backlog:
                return None
            count = min(self._batch_size, len(self._backlog))
            batch = [self._backlog.popleft() for _ in range(count)]
            dropped, self._unreported_drops = self._unreported_drops, 0
            self._writing = True
            return batch, dropped

    def _run(self) -> None:
        while True:
            next_batch = self._next_batch()
            if next_batch is None:
                return
            batch, dropped = next_batch
            if dropped:
                batch.append(
                    json.dumps(
                        {"event": DROPPED_EVENT, "dropped_count": dropped},
                        separators=(",", ":"),
                    )
                )
            try:
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write("\n".join(batch) + "\n")
            finally:
                with self._cond:
                    self._writing = False
                    self._written += len(batch) - (1 if dropped else 0)
                    self._cond.notify_all()
