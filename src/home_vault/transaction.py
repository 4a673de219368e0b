"""Structured transaction logging.

Every backup, mirror, repair, prune and snapshot operation is appended to a
JSON-lines file so that ``home-vault status`` can report the last runs and
failures can be audited after unattended execution.
"""

import json
import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

TRANSACTION_LOG_NAME = "transactions.jsonl"


class TransactionLog:
    """Append-only JSON-lines transaction log.

    A log constructed with ``path=None`` is disabled and ignores records.
    """

    def __init__(self, path: Path | str | None) -> None:
        self.path = Path(path).expanduser() if path is not None else None
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def enabled(self) -> bool:
        return self.path is not None

    def log(
        self,
        action: str,
        status: str,
        source: str | None = None,
        destination: str | None = None,
        version: str | None = None,
        snapshot: str | None = None,
        size_bytes: int | None = None,
        duration_seconds: float | None = None,
        error: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Append one record. None values are left out."""
        if self.path is None:
            return

        record: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "pid": os.getpid(),
            "action": action,
            "status": status,
        }
        optional = {
            "source": source,
            "destination": destination,
            "version": version,
            "snapshot": snapshot,
            "size_bytes": size_bytes,
            "duration_seconds": (
                round(duration_seconds, 3) if duration_seconds is not None else None
            ),
            "error": error,
            "details": details,
        }
        record.update({k: v for k, v in optional.items() if v is not None})

        try:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record) + "\n")
        except OSError as e:
            logger.warning("Could not write transaction log %s: %s", self.path, e)

    def read(
        self,
        limit: int | None = None,
        action_filter: str | None = None,
        status_filter: str | None = None,
    ) -> list[dict[str, Any]]:
        """Read records, oldest first; ``limit`` keeps the most recent ones."""
        if self.path is None or not self.path.exists():
            return []

        records = []
        with open(self.path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if action_filter and record.get("action") != action_filter:
                    continue
                if status_filter and record.get("status") != status_filter:
                    continue
                records.append(record)

        if limit is not None:
            records = records[-limit:] if limit > 0 else []
        return records

    def last(self, action: str) -> dict[str, Any] | None:
        """Most recent finished (completed or failed) record for ``action``."""
        for record in reversed(self.read(action_filter=action)):
            if record.get("status") in ("completed", "failed"):
                return record
        return None

    def stats(self) -> dict[str, Any]:
        """Count finished records per action."""
        records = self.read()
        stats: dict[str, Any] = {"total_records": len(records), "actions": {}}
        for record in records:
            status = record.get("status")
            if status == "started":
                continue
            per_action = stats["actions"].setdefault(
                record.get("action", "unknown"), {"completed": 0, "failed": 0}
            )
            if status in per_action:
                per_action[status] += 1
        return stats


class TransactionContext:
    """Log ``started`` on enter and ``completed`` or ``failed`` on exit.

    Exceptions are recorded and re-raised.
    """

    def __init__(self, log: TransactionLog, action: str, **fields: Any) -> None:
        self.log = log
        self.action = action
        self.fields = fields
        self.details: dict[str, Any] = {}
        self._failure: str | None = None
        self._start = 0.0

    def __enter__(self) -> "TransactionContext":
        self._start = time.monotonic()
        self.log.log(self.action, "started", **self.fields)
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        duration = time.monotonic() - self._start
        error = str(exc) if exc is not None else self._failure
        self.log.log(
            self.action,
            "failed" if error else "completed",
            duration_seconds=duration,
            error=error,
            details=self.details or None,
            **self.fields,
        )
        return False

    def set(self, **fields: Any) -> None:
        self.fields.update(fields)

    def add_detail(self, key: str, value: Any) -> None:
        self.details[key] = value

    def fail(self, message: str) -> None:
        """Mark the transaction failed without raising."""
        self._failure = message
