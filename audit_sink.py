"""Durable, append-only record of every attempt and run.

Writes are best-effort: every failure is caught and logged, and the loop
carries on as if auditing were disabled. Nothing here is read back during a
run; ``fetch_*`` helpers exist for post-hoc analysis.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Optional

from models import RunMetadataRecord, TierAttemptRecord, utc_now

logger = logging.getLogger(__name__)

_UPDATABLE_RUN_FIELDS = ("completed_at", "outcome", "resolved_tier_name", "resolved_iteration")

_DDL = """
CREATE TABLE IF NOT EXISTS tier_attempts (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id              TEXT    NOT NULL,
    tier_index          INTEGER NOT NULL,
    tier_name           TEXT    NOT NULL,
    tier_mode           TEXT    NOT NULL CHECK (tier_mode IN ('simple', 'full')),
    model_artisan       TEXT    NOT NULL,
    model_librarian     TEXT,
    model_critic        TEXT,
    iteration           INTEGER NOT NULL,
    code_change_summary TEXT    NOT NULL DEFAULT '',
    test_status         TEXT    NOT NULL CHECK (test_status IN ('passed', 'failed', 'error')),
    failed_tests        TEXT    NOT NULL DEFAULT '[]',
    error_messages      TEXT    NOT NULL DEFAULT '[]',
    cost_usd            REAL    NOT NULL DEFAULT 0.0,
    duration_ms         INTEGER NOT NULL DEFAULT 0,
    timestamp           TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS run_metadata (
    run_id              TEXT    PRIMARY KEY,
    objective           TEXT    NOT NULL,
    working_directory   TEXT    NOT NULL,
    test_command        TEXT    NOT NULL,
    tier_config_path    TEXT    NOT NULL,
    started_at          TEXT    NOT NULL,
    completed_at        TEXT,
    outcome             TEXT    CHECK (outcome IN ('success', 'failed', 'budget_exhausted', 'in_progress')),
    resolved_tier_name  TEXT,
    resolved_iteration  INTEGER
);

CREATE INDEX IF NOT EXISTS idx_tier_attempts_run_id ON tier_attempts(run_id);
CREATE INDEX IF NOT EXISTS idx_tier_attempts_run_tier ON tier_attempts(run_id, tier_index);
CREATE INDEX IF NOT EXISTS idx_tier_attempts_timestamp ON tier_attempts(timestamp);
"""


class AuditSink:
    """No-op sink. Subclasses persist somewhere."""

    def write_attempt_record(self, record: TierAttemptRecord) -> None:
        pass

    def write_run_metadata(self, metadata: RunMetadataRecord) -> bool:
        """Store the run row. Returns False when the row could not be written."""
        return True

    def update_run_metadata(self, run_id: str, **fields: Any) -> None:
        pass

    def close(self) -> None:
        pass


def _updatable(fields: dict[str, Any]) -> dict[str, Any]:
    unknown = set(fields) - set(_UPDATABLE_RUN_FIELDS)
    if unknown:
        logger.warning("[audit] ignoring non-updatable run_metadata fields: %s", sorted(unknown))
    return {k: v for k, v in fields.items() if k in _UPDATABLE_RUN_FIELDS}


class SqliteAuditSink(AuditSink):
    """SQLite-backed audit store with ``tier_attempts`` and ``run_metadata`` tables."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row
        self.conn.executescript(_DDL)
        self.conn.commit()

    def write_attempt_record(self, record: TierAttemptRecord) -> None:
        try:
            self.conn.execute(
                """
                INSERT INTO tier_attempts (
                    run_id, tier_index, tier_name, tier_mode,
                    model_artisan, model_librarian, model_critic,
                    iteration, code_change_summary, test_status,
                    failed_tests, error_messages, cost_usd, duration_ms, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.run_id,
                    record.tier_index,
                    record.tier_name,
                    record.tier_mode,
                    record.model_artisan,
                    record.model_librarian,
                    record.model_critic,
                    record.iteration,
                    record.code_change_summary,
                    record.test_status,
                    json.dumps(record.failed_tests),
                    json.dumps(record.error_messages),
                    record.cost_usd,
                    record.duration_ms,
                    record.timestamp,
                ),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            logger.warning("[audit] DB write failed (tier_attempts): %s, continuing", e)

    def write_run_metadata(self, metadata: RunMetadataRecord) -> bool:
        try:
            self.conn.execute(
                """
                INSERT INTO run_metadata (
                    run_id, objective, working_directory, test_command,
                    tier_config_path, started_at, completed_at, outcome,
                    resolved_tier_name, resolved_iteration
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    metadata.run_id,
                    metadata.objective,
                    metadata.working_directory,
                    metadata.test_command,
                    metadata.tier_config_path,
                    metadata.started_at,
                    metadata.completed_at,
                    metadata.outcome,
                    metadata.resolved_tier_name,
                    metadata.resolved_iteration,
                ),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            logger.warning("[audit] DB write failed (run_metadata insert): %s, continuing", e)
            return False
        return True

    def update_run_metadata(self, run_id: str, **fields: Any) -> None:
        updates = _updatable(fields)
        if not updates:
            return
        assignments = ", ".join(f"{column} = ?" for column in updates)
        try:
            self.conn.execute(
                f"UPDATE run_metadata SET {assignments} WHERE run_id = ?",
                (*updates.values(), run_id),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            logger.warning("[audit] DB write failed (run_metadata update): %s, continuing", e)

    def fetch_attempts(self, run_id: str) -> list[TierAttemptRecord]:
        rows = self.conn.execute(
            "SELECT * FROM tier_attempts WHERE run_id = ? ORDER BY id", (run_id,)
        ).fetchall()
        records = []
        for row in rows:
            data = dict(row)
            data.pop("id")
            data["failed_tests"] = json.loads(data["failed_tests"])
            data["error_messages"] = json.loads(data["error_messages"])
            records.append(TierAttemptRecord.model_validate(data))
        return records

    def fetch_run_metadata(self, run_id: str) -> Optional[RunMetadataRecord]:
        row = self.conn.execute(
            "SELECT * FROM run_metadata WHERE run_id = ?", (run_id,)
        ).fetchone()
        return RunMetadataRecord.model_validate(dict(row)) if row else None

    def close(self) -> None:
        try:
            self.conn.close()
        except sqlite3.Error as e:
            logger.warning("[audit] DB close failed: %s", e)


class JsonlAuditSink(AuditSink):
    """Append-only JSON Lines audit log, one event per line."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _append(self, event_type: str, **data: Any) -> bool:
        event = {"timestamp": utc_now(), "event_type": event_type, **data}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(event) + "\n")
        except (OSError, TypeError, ValueError) as e:
            logger.warning("[audit] failed to write %s event: %s", event_type, e)
            return False
        return True

    def write_attempt_record(self, record: TierAttemptRecord) -> None:
        self._append("tier_attempt", **record.model_dump())

    def write_run_metadata(self, metadata: RunMetadataRecord) -> bool:
        return self._append("run_metadata", **metadata.model_dump())

    def update_run_metadata(self, run_id: str, **fields: Any) -> None:
        updates = _updatable(fields)
        if updates:
            self._append("run_metadata_update", run_id=run_id, **updates)


def open_audit_sink(path: Optional[str | Path]) -> AuditSink:
    """Pick a sink by file suffix: ``.jsonl`` for JSON Lines, anything else SQLite.

    Returns the no-op sink when no path is given or the store cannot be opened.
    """
    if not path:
        return AuditSink()
    path = Path(path).expanduser()
    if path.suffix == ".jsonl":
        return JsonlAuditSink(path)
    try:
        return SqliteAuditSink(path)
    except (sqlite3.Error, OSError) as e:
        logger.warning("[audit] cannot open %s (%s), auditing disabled", path, e)
        return AuditSink()
