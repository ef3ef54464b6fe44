from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
import sqlite3
import threading
import time
from typing import cast

from labeldelay.models import ALL_ACTIONS, ActionKind, JobPayload, ScheduledJob


_JOB_COLUMNS = (
    "job_key, owner, repo, number, installation_id, action, fire_at_ms, notified, "
    "attempts, revision, last_error, leased_until_ms, notice_comment_id"
)


class QueueOperationError(RuntimeError):
    """A create, replace, cancel or claim call against the job store failed."""


def now_ms() -> int:
    return int(time.time() * 1000)


class JobStore:
    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self, *, write: bool = False) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self._db_path, timeout=30.0, isolation_level=None)
        except sqlite3.Error as exc:
            raise QueueOperationError(f"Unable to open job store {self._db_path}: {exc}") from exc
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            # IMMEDIATE takes the write lock up front so read-then-write stays atomic
            # across processes sharing the database file.
            conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            _rollback_quietly(conn)
            raise QueueOperationError(f"Job store operation failed: {exc}") from exc
        except Exception:
            _rollback_quietly(conn)
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._lock, self._connect(write=True) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS scheduled_jobs (
                    job_key TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    repo TEXT NOT NULL,
                    number INTEGER NOT NULL,
                    installation_id INTEGER NULL,
                    action TEXT NOT NULL,
                    fire_at_ms INTEGER NOT NULL,
                    notified INTEGER NOT NULL DEFAULT 0,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    revision INTEGER NOT NULL DEFAULT 1,
                    last_error TEXT NULL,
                    leased_until_ms INTEGER NULL,
                    notice_comment_id INTEGER NULL,
                    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_scheduled_jobs_fire_at
                ON scheduled_jobs(fire_at_ms)
                """
            )

    def get_job(self, key: str) -> ScheduledJob | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM scheduled_jobs WHERE job_key = ?",
                (key,),
            ).fetchone()
        if row is None:
            return None
        return _parse_job_row(row)

    def create_or_replace(
        self,
        key: str,
        payload: JobPayload,
        *,
        fire_at_ms: int,
        claim_notification: bool = False,
    ) -> tuple[ScheduledJob, bool]:
        """Upsert the job for ``key``.

        Returns the stored job and whether this call flipped ``notified`` from
        false to true. Only the caller that gets ``True`` may post the notice.
        """
        with self._lock, self._connect(write=True) as conn:
            existing = conn.execute(
                "SELECT notified FROM scheduled_jobs WHERE job_key = ?",
                (key,),
            ).fetchone()
            already_notified = existing is not None and bool(existing[0])
            claimed = claim_notification and not already_notified
            notified = 1 if (already_notified or claimed) else 0
            conn.execute(
                """
                INSERT INTO scheduled_jobs(
                    job_key, owner, repo, number, installation_id, action,
                    fire_at_ms, notified
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(job_key) DO UPDATE SET
                    owner=excluded.owner,
                    repo=excluded.repo,
                    number=excluded.number,
                    installation_id=excluded.installation_id,
                    action=excluded.action,
                    fire_at_ms=excluded.fire_at_ms,
                    notified=excluded.notified,
                    notice_comment_id=CASE
                        WHEN excluded.notified = 1 THEN scheduled_jobs.notice_comment_id
                        ELSE NULL
                    END,
                    attempts=0,
                    revision=scheduled_jobs.revision + 1,
                    last_error=NULL,
                    leased_until_ms=NULL,
                    updated_at=strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                """,
                (
                    key,
                    payload.owner,
                    payload.repo,
                    payload.number,
                    payload.installation_id,
                    payload.action,
                    fire_at_ms,
                    notified,
                ),
            )
            row = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM scheduled_jobs WHERE job_key = ?",
                (key,),
            ).fetchone()
        if row is None:
            raise QueueOperationError(f"Job {key} vanished during create_or_replace")
        return _parse_job_row(row), claimed

    def release_notification(self, key: str) -> bool:
        with self._lock, self._connect(write=True) as conn:
            cursor = conn.execute(
                """
                UPDATE scheduled_jobs
                SET notified=0, notice_comment_id=NULL,
                    updated_at=strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                WHERE job_key = ? AND notified = 1
                """,
                (key,),
            )
        return cursor.rowcount > 0

    def record_notice_comment(self, key: str, *, comment_id: int) -> bool:
        with self._lock, self._connect(write=True) as conn:
            cursor = conn.execute(
                """
                UPDATE scheduled_jobs
                SET notice_comment_id = ?, updated_at=strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                WHERE job_key = ? AND notified = 1
                """,
                (comment_id, key),
            )
        return cursor.rowcount > 0

    def release_notification_for_comment(
        self, *, owner: str, repo: str, number: int, comment_id: int
    ) -> tuple[str, ...]:
        with self._lock, self._connect(write=True) as conn:
            rows = conn.execute(
                """
                SELECT job_key
                FROM scheduled_jobs
                WHERE owner = ? AND repo = ? AND number = ? AND notice_comment_id = ?
                ORDER BY job_key
                """,
                (owner, repo, number, comment_id),
            ).fetchall()
            keys = tuple(str(row[0]) for row in rows)
            for key in keys:
                conn.execute(
                    """
                    UPDATE scheduled_jobs
                    SET notified=0, notice_comment_id=NULL,
                        updated_at=strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                    WHERE job_key = ?
                    """,
                    (key,),
                )
        return keys

    def remove_job(self, key: str) -> bool:
        with self._lock, self._connect(write=True) as conn:
            cursor = conn.execute("DELETE FROM scheduled_jobs WHERE job_key = ?", (key,))
        return cursor.rowcount > 0

    def list_jobs(
        self,
        *,
        owner: str | None = None,
        repo: str | None = None,
        number: int | None = None,
    ) -> tuple[ScheduledJob, ...]:
        clauses: list[str] = []
        params: list[object] = []
        if owner is not None:
            clauses.append("owner = ?")
            params.append(owner)
        if repo is not None:
            clauses.append("repo = ?")
            params.append(repo)
        if number is not None:
            clauses.append("number = ?")
            params.append(number)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM scheduled_jobs {where} ORDER BY fire_at_ms, job_key",
                tuple(params),
            ).fetchall()
        return tuple(_parse_job_row(row) for row in rows)

    def claim_due_jobs(
        self, *, now_ms: int, limit: int, lease_ms: int
    ) -> tuple[ScheduledJob, ...]:
        if limit < 1:
            return ()
        with self._lock, self._connect(write=True) as conn:
            rows = conn.execute(
                f"""
                SELECT {_JOB_COLUMNS}
                FROM scheduled_jobs
                WHERE fire_at_ms <= ?
                  AND (leased_until_ms IS NULL OR leased_until_ms <= ?)
                ORDER BY fire_at_ms, job_key
                LIMIT ?
                """,
                (now_ms, now_ms, limit),
            ).fetchall()
            leased_until_ms = now_ms + lease_ms
            claimed: list[ScheduledJob] = []
            for row in rows:
                job = _parse_job_row(row)
                conn.execute(
                    """
                    UPDATE scheduled_jobs
                    SET leased_until_ms = ?, updated_at=strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                    WHERE job_key = ? AND revision = ?
                    """,
                    (leased_until_ms, job.key, job.revision),
                )
                claimed.append(replace(job, leased_until_ms=leased_until_ms))
        return tuple(claimed)

    def complete_job(self, key: str, *, revision: int) -> bool:
        with self._lock, self._connect(write=True) as conn:
            cursor = conn.execute(
                "DELETE FROM scheduled_jobs WHERE job_key = ? AND revision = ?",
                (key, revision),
            )
        return cursor.rowcount > 0

    def fail_job(
        self,
        key: str,
        *,
        revision: int,
        error: str,
        retry_at_ms: int | None,
    ) -> bool:
        with self._lock, self._connect(write=True) as conn:
            if retry_at_ms is None:
                cursor = conn.execute(
                    "DELETE FROM scheduled_jobs WHERE job_key = ? AND revision = ?",
                    (key, revision),
                )
            else:
                cursor = conn.execute(
                    """
                    UPDATE scheduled_jobs
                    SET attempts = attempts + 1,
                        fire_at_ms = ?,
                        last_error = ?,
                        leased_until_ms = NULL,
                        updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                    WHERE job_key = ? AND revision = ?
                    """,
                    (retry_at_ms, error, key, revision),
                )
        return cursor.rowcount > 0


def _rollback_quietly(conn: sqlite3.Connection) -> None:
    try:
        conn.execute("ROLLBACK")
    except sqlite3.Error:
        pass


def _parse_job_row(row: tuple[object, ...]) -> ScheduledJob:
    (
        job_key,
        owner,
        repo,
        number,
        installation_id,
        action,
        fire_at_ms,
        notified,
        attempts,
        revision,
        last_error,
        leased_until_ms,
        notice_comment_id,
    ) = row
    if not isinstance(job_key, str) or not isinstance(owner, str) or not isinstance(repo, str):
        raise QueueOperationError("Invalid scheduled_jobs row: expected string coordinates")
    if not isinstance(number, int) or not isinstance(fire_at_ms, int):
        raise QueueOperationError(f"Invalid scheduled_jobs row for {job_key}")
    if installation_id is not None and not isinstance(installation_id, int):
        raise QueueOperationError(f"Invalid installation_id for {job_key}")
    if not isinstance(attempts, int) or not isinstance(revision, int):
        raise QueueOperationError(f"Invalid attempt bookkeeping for {job_key}")
    if last_error is not None and not isinstance(last_error, str):
        raise QueueOperationError(f"Invalid last_error for {job_key}")
    if leased_until_ms is not None and not isinstance(leased_until_ms, int):
        raise QueueOperationError(f"Invalid lease for {job_key}")
    if notice_comment_id is not None and not isinstance(notice_comment_id, int):
        raise QueueOperationError(f"Invalid notice_comment_id for {job_key}")
    return ScheduledJob(
        key=job_key,
        payload=JobPayload(
            owner=owner,
            repo=repo,
            number=number,
            installation_id=installation_id,
            action=_parse_action(action),
        ),
        fire_at_ms=fire_at_ms,
        notified=bool(notified),
        attempts=attempts,
        revision=revision,
        last_error=last_error,
        leased_until_ms=leased_until_ms,
        notice_comment_id=notice_comment_id,
    )


def _parse_action(value: object) -> ActionKind:
    if not isinstance(value, str) or value not in ALL_ACTIONS:
        raise QueueOperationError(f"Invalid job action: {value!r}")
    return cast(ActionKind, value)
