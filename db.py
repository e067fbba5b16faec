"""SQLite persistence for photoshoot runs and the generated-image history."""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

log = logging.getLogger(__name__)

DB_PATH = Path(os.environ.get("PHOTOSET_DB_PATH") or Path(__file__).parent / "runs.db")

_JSON_COLUMNS = ("analysis", "prompts", "tasks", "settings", "metadata")


def _conn() -> sqlite3.Connection:
    con = sqlite3.connect(str(DB_PATH))
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA journal_mode=WAL")
    return con


def init_db() -> None:
    with _conn() as con:
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                id              TEXT PRIMARY KEY,
                created_at      DATETIME DEFAULT (datetime('now')),
                photoshoot_type TEXT NOT NULL,
                mode            TEXT NOT NULL DEFAULT 'simple',
                pack            TEXT NOT NULL,
                status          TEXT DEFAULT 'pending',
                error_msg       TEXT,
                analysis        TEXT,   -- JSON  AnalysisResult
                qa_image        TEXT,
                prompts         TEXT,   -- JSON  [{title, prompt}]
                tasks           TEXT,   -- JSON  [GenerationTask]
                anchor          TEXT,
                settings        TEXT,   -- JSON
                duration        REAL
            )
            """
        )
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS history (
                id           TEXT PRIMARY KEY,
                created_at   DATETIME DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now')),
                run_id       TEXT,
                prompt       TEXT NOT NULL,
                image_url    TEXT NOT NULL,
                title        TEXT,
                aspect_ratio TEXT,
                metadata     TEXT    -- JSON  {model, editHistory: [...]}
            )
            """
        )


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------

def create_run(
    run_id: str,
    photoshoot_type: str,
    mode: str,
    pack: str,
    settings: Dict,
) -> None:
    with _conn() as con:
        con.execute(
            "INSERT INTO runs (id, photoshoot_type, mode, pack, settings, status) "
            "VALUES (?, ?, ?, ?, ?, 'pending')",
            (run_id, photoshoot_type, mode, pack, json.dumps(settings)),
        )


def set_run_status(run_id: str, status: str) -> None:
    with _conn() as con:
        con.execute("UPDATE runs SET status=? WHERE id=?", (status, run_id))


def save_artifacts(run_id: str, snapshot: Dict) -> None:
    """Store whatever the pipeline has produced so far (see PhotoshootPipeline.snapshot)."""
    with _conn() as con:
        con.execute(
            """
            UPDATE runs SET
                analysis = ?,
                qa_image = ?,
                prompts  = ?,
                tasks    = ?,
                anchor   = ?
            WHERE id = ?
            """,
            (
                json.dumps(snapshot.get("analysis")) if snapshot.get("analysis") else None,
                snapshot.get("qa_image"),
                json.dumps(snapshot.get("prompts") or []),
                json.dumps(snapshot.get("tasks") or []),
                snapshot.get("anchor"),
                run_id,
            ),
        )


def finish_run(run_id: str, result: Dict) -> None:
    save_artifacts(run_id, result)
    with _conn() as con:
        con.execute(
            "UPDATE runs SET status=?, duration=?, error_msg=NULL WHERE id=?",
            (result.get("status", "complete"), result.get("duration"), run_id),
        )


def fail_run(run_id: str, error_msg: str) -> None:
    with _conn() as con:
        con.execute(
            "UPDATE runs SET status='failed', error_msg=? WHERE id=?",
            (error_msg, run_id),
        )


def get_run(run_id: str) -> Optional[Dict]:
    with _conn() as con:
        row = con.execute("SELECT * FROM runs WHERE id=?", (run_id,)).fetchone()
    if not row:
        return None
    return _deserialise(dict(row))


def list_runs(limit: int = 50) -> List[Dict]:
    with _conn() as con:
        rows = con.execute(
            "SELECT * FROM runs ORDER BY created_at DESC, rowid DESC LIMIT ?", (limit,)
        ).fetchall()
    return [_deserialise(dict(r)) for r in rows]


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

def save_history(record: Dict, run_id: Optional[str] = None) -> str:
    """Archive one generated image; ``record`` is ``{prompt, imageUrl, title, aspectRatio, model?}``."""
    history_id = uuid.uuid4().hex[:12]
    metadata = {"model": record.get("model"), "editHistory": []}
    with _conn() as con:
        con.execute(
            "INSERT INTO history (id, run_id, prompt, image_url, title, aspect_ratio, metadata) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                history_id,
                run_id,
                record["prompt"],
                record["imageUrl"],
                record.get("title"),
                record.get("aspectRatio"),
                json.dumps(metadata),
            ),
        )
    log.debug("History saved: %s (%s)", history_id, record.get("title"))
    return history_id


def history_saver(run_id: Optional[str]):
    """Callback for the orchestrator's ``on_image`` hook, bound to one run."""
    def _save(record: Dict) -> None:
        save_history(record, run_id=run_id)
    return _save


def list_history(limit: int = 100) -> List[Dict]:
    with _conn() as con:
        rows = con.execute(
            "SELECT * FROM history ORDER BY created_at DESC, rowid DESC LIMIT ?", (limit,)
        ).fetchall()
    return [_history_row(dict(r)) for r in rows]


def get_history(history_id: str) -> Optional[Dict]:
    with _conn() as con:
        row = con.execute("SELECT * FROM history WHERE id=?", (history_id,)).fetchone()
    return _history_row(dict(row)) if row else None


def delete_history(history_id: str) -> bool:
    with _conn() as con:
        cur = con.execute("DELETE FROM history WHERE id=?", (history_id,))
    return cur.rowcount > 0


def append_edit(history_id: str, prompt: str, image_url: str) -> Optional[Dict]:
    """Record a follow-up edit against an archived image."""
    item = get_history(history_id)
    if item is None:
        return None
    metadata = item.get("metadata") or {}
    edits = list(metadata.get("editHistory") or [])
    edits.append({"prompt": prompt, "imageUrl": image_url})
    metadata["editHistory"] = edits
    with _conn() as con:
        con.execute(
            "UPDATE history SET metadata=? WHERE id=?",
            (json.dumps(metadata), history_id),
        )
    item["metadata"] = metadata
    return item


# ---------------------------------------------------------------------------
# Row helpers
# ---------------------------------------------------------------------------

def _history_row(row: Dict) -> Dict:
    row = _deserialise(row)
    return {
        "id": row["id"],
        "createdAt": row["created_at"],
        "runId": row.get("run_id"),
        "prompt": row["prompt"],
        "imageUrl": row["image_url"],
        "title": row.get("title"),
        "aspectRatio": row.get("aspect_ratio"),
        "metadata": row.get("metadata") or {},
    }


def _deserialise(row: Dict[str, Any]) -> Dict[str, Any]:
    for key in _JSON_COLUMNS:
        val = row.get(key)
        if val:
            try:
                row[key] = json.loads(val)
            except (json.JSONDecodeError, TypeError):
                log.warning("Unreadable %s column in row %s", key, row.get("id"))
                row[key] = None
    return row
