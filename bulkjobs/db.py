import os
import sqlite3

# -------------------- basics --------------------

SCHEMA = """
CREATE TABLE IF NOT EXISTS bulk_jobs (
  id                TEXT PRIMARY KEY,
  owner             TEXT NOT NULL,
  kind              TEXT NOT NULL,
  status            TEXT NOT NULL,
  total_items       INTEGER NOT NULL,
  cursor            INTEGER NOT NULL DEFAULT 0,
  processed_count   INTEGER NOT NULL DEFAULT 0,
  success_count     INTEGER NOT NULL DEFAULT 0,
  fail_count        INTEGER NOT NULL DEFAULT 0,
  error_message     TEXT,
  source_label      TEXT,
  recovery_attempts INTEGER NOT NULL DEFAULT 0,
  lease_owner       TEXT,
  lease_expires_at  TEXT,
  created_at        TEXT NOT NULL,
  updated_at        TEXT NOT NULL,
  completed_at      TEXT
);

CREATE INDEX IF NOT EXISTS idx_bulk_jobs_owner_created
  ON bulk_jobs(owner, created_at);

CREATE INDEX IF NOT EXISTS idx_bulk_jobs_status_updated
  ON bulk_jobs(status, updated_at);

CREATE TABLE IF NOT EXISTS bulk_job_items (
  job_id       TEXT NOT NULL REFERENCES bulk_jobs(id) ON DELETE CASCADE,
  idx          INTEGER NOT NULL,
  input_json   TEXT NOT NULL,
  status       TEXT NOT NULL,
  result_json  TEXT,
  error_reason TEXT,
  PRIMARY KEY (job_id, idx)
);
"""


def _db_path() -> str:
    # Prefer DATABASE_URL if set; otherwise fall back to DATABASE_PATH; otherwise dev.db
    url = os.environ.get("DATABASE_URL")
    if url:
        if not url.startswith("sqlite:///"):
            raise RuntimeError(f"Only sqlite supported; got {url}")
        return url.removeprefix("sqlite:///")
    path = os.environ.get("DATABASE_PATH")
    if path:
        return path
    return "dev.db"


def get_connection(db_path: str | None = None) -> sqlite3.Connection:
    """
    Shared SQLite connection helper.

    - If db_path is None, uses _db_path() (DATABASE_URL/DATABASE_PATH/dev.db).
    - Ensures foreign key enforcement.
    - Sets row_factory to sqlite3.Row for dict-like access.
    - Waits up to 30s on a locked database; the worker and the API write
      concurrently from different threads/processes.
    """
    if db_path is None:
        db_path = _db_path()
    con = sqlite3.connect(db_path, timeout=30.0)
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA foreign_keys=ON")
    return con


def ensure_schema(db_path: str | None = None) -> None:
    con = get_connection(db_path)
    try:
        con.execute("PRAGMA journal_mode=WAL")
        con.executescript(SCHEMA)
        con.commit()
    finally:
        con.close()


__all__ = ["SCHEMA", "get_connection", "ensure_schema"]
