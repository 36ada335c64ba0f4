"""SQLite persistence for photo jobs and credit balances.

The store is the transactional boundary of the pipeline.  Two tables are
kept:

- ``photo_jobs`` — one row per batch request, with a monotonic status
  (``pending`` → ``processing`` → ``completed`` | ``failed``).
- ``user_credits`` — one row per user, created lazily on first read.

Credit settlement and job completion are applied together by
:meth:`JobStore.atomic_settle_credits` inside a single ``BEGIN IMMEDIATE``
transaction.  The balance update is one conditional ``UPDATE`` so that two
concurrent jobs for the same user cannot both spend the same paid credits:
the second one finds the guard false, the transaction rolls back, and
neither the job nor the balance changes.  Free-trial usage is clamped at
the allowance instead of guarded.
"""

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path

from .errors import InsufficientCredits, JobAccessDenied, JobNotFound, PersistenceError

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Permitted predecessors for every target status.
_TRANSITIONS: dict[JobStatus, tuple[JobStatus, ...]] = {
    JobStatus.PROCESSING: (JobStatus.PENDING,),
    JobStatus.COMPLETED: (JobStatus.PENDING, JobStatus.PROCESSING),
    JobStatus.FAILED: (JobStatus.PENDING, JobStatus.PROCESSING),
}


@dataclass(frozen=True)
class JobRecord:
    """A persisted batch-processing request."""

    id: int
    user_id: str | None
    prompt: str
    photo_count: int
    cost: Decimal
    status: JobStatus
    download_url: str | None
    group_name: str | None
    created_at: str
    updated_at: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "prompt": self.prompt,
            "photoCount": self.photo_count,
            "cost": float(self.cost),
            "status": self.status.value,
            "downloadUrl": self.download_url,
            "groupName": self.group_name,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True)
class CreditBalance:
    """Free-trial usage and paid credits of one user."""

    user_id: str
    free_used: int
    credits: Decimal


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _decimal(value) -> Decimal:
    return Decimal(str(value if value is not None else 0))


def _row_to_job(row: sqlite3.Row) -> JobRecord:
    return JobRecord(
        id=row["id"],
        user_id=row["user_id"],
        prompt=row["prompt"],
        photo_count=row["photo_count"],
        cost=_decimal(row["cost"]),
        status=JobStatus(row["status"]),
        download_url=row["download_url"],
        group_name=row["group_name"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class JobStore:
    """Manage jobs and credit balances using SQLite.

    Every public method opens its own connection, so a single store can be
    shared between threads (the coordinator calls it through
    ``asyncio.to_thread``).  Write transactions start with ``BEGIN
    IMMEDIATE`` which takes the database write lock up front.
    """

    def __init__(self, db_path: Path, timeout: float = 30.0):
        """Initialize the store and create the schema.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds to wait for the write lock
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._timeout = timeout
        self._initialize_db()
        logger.info("Initialized job store at %s", self.db_path)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=self._timeout, isolation_level=None)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open database: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as e:
            raise PersistenceError(str(e)) from e
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _initialize_db(self) -> None:
        """Create database schema if it doesn't exist."""
        with self._connect() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS photo_jobs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT,
                    prompt TEXT NOT NULL,
                    photo_count INTEGER NOT NULL,
                    cost NUMERIC NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'pending',
                    download_url TEXT,
                    group_name TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_photo_jobs_user_id ON photo_jobs(user_id);
                CREATE INDEX IF NOT EXISTS idx_photo_jobs_created_at
                    ON photo_jobs(created_at DESC);

                CREATE TABLE IF NOT EXISTS user_credits (
                    user_id TEXT PRIMARY KEY,
                    free_used INTEGER NOT NULL DEFAULT 0 CHECK (free_used >= 0),
                    credits NUMERIC NOT NULL DEFAULT 0 CHECK (credits >= 0),
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """)

    # -- Jobs ---------------------------------------------------------------

    def create_job(
        self,
        user_id: str | None,
        prompt: str,
        photo_count: int,
        cost: Decimal,
        group_name: str | None = None,
    ) -> JobRecord:
        """Insert a new job in ``pending`` state."""
        now = _now()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO photo_jobs
                    (user_id, prompt, photo_count, cost, status, group_name, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    prompt,
                    photo_count,
                    str(cost),
                    JobStatus.PENDING.value,
                    group_name,
                    now,
                    now,
                ),
            )
            job_id = cursor.lastrowid
            row = conn.execute("SELECT * FROM photo_jobs WHERE id = ?", (job_id,)).fetchone()

        logger.info("Created job %s for user %s (%d photos)", job_id, user_id, photo_count)
        return _row_to_job(row)

    def get_job(self, job_id: int) -> JobRecord | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM photo_jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row else None

    def update_job_status(
        self, job_id: int, status: JobStatus, download_url: str | None = None
    ) -> JobRecord:
        """Move a job to a new status.

        Only forward transitions are applied; a terminal job is never
        touched again.

        Raises:
            JobNotFound: If the job does not exist
            PersistenceError: If the transition is not permitted
        """
        status = JobStatus(status)
        allowed = _TRANSITIONS.get(status)
        if allowed is None:
            raise PersistenceError(f"Cannot move a job back to '{status.value}'")

        placeholders = ", ".join("?" for _ in allowed)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE photo_jobs
                SET status = ?, download_url = COALESCE(?, download_url), updated_at = ?
                WHERE id = ? AND status IN ({placeholders})
                """,
                (status.value, download_url, _now(), job_id, *(s.value for s in allowed)),
            )
            row = conn.execute("SELECT * FROM photo_jobs WHERE id = ?", (job_id,)).fetchone()

        if row is None:
            raise JobNotFound(f"Job {job_id} not found")
        if cursor.rowcount == 0:
            raise PersistenceError(
                f"Job {job_id} cannot move from '{row['status']}' to '{status.value}'"
            )
        return _row_to_job(row)

    def list_jobs(self, user_id: str, limit: int = 50) -> list[JobRecord]:
        """Return the user's most recent jobs, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM photo_jobs WHERE user_id = ?
                ORDER BY created_at DESC, id DESC LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
        return [_row_to_job(row) for row in rows]

    def job_stats(self, user_id: str) -> dict:
        """Aggregate job counts and spend for the dashboard."""
        month_start = (
            datetime.now(timezone.utc)
            .replace(day=1, hour=0, minute=0, second=0, microsecond=0)
            .isoformat()
        )
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total_jobs,
                    COALESCE(SUM(photo_count), 0) AS total_photos,
                    COALESCE(SUM(cost), 0) AS total_spent,
                    COALESCE(SUM(CASE WHEN created_at >= ? THEN cost ELSE 0 END), 0)
                        AS this_month_spent
                FROM photo_jobs WHERE user_id = ?
                """,
                (month_start, user_id),
            ).fetchone()
        return {
            "totalJobs": row["total_jobs"],
            "totalPhotos": row["total_photos"],
            "totalSpent": float(row["total_spent"]),
            "thisMonthSpent": float(row["this_month_spent"]),
        }

    def _owned_job(self, conn: sqlite3.Connection, job_id: int, user_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM photo_jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            raise JobNotFound(f"Job {job_id} not found")
        if str(row["user_id"]) != str(user_id):
            raise JobAccessDenied(f"Job {job_id} belongs to another user")
        return row

    def set_group_name(self, job_id: int, user_id: str, group_name: str | None) -> JobRecord:
        """Rename (or clear the label of) a job owned by ``user_id``."""
        with self._transaction() as conn:
            self._owned_job(conn, job_id, user_id)
            conn.execute(
                "UPDATE photo_jobs SET group_name = ?, updated_at = ? WHERE id = ?",
                (group_name, _now(), job_id),
            )
            row = conn.execute("SELECT * FROM photo_jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row)

    def delete_job(self, job_id: int, user_id: str) -> None:
        """Delete a job owned by ``user_id``."""
        with self._transaction() as conn:
            self._owned_job(conn, job_id, user_id)
            conn.execute("DELETE FROM photo_jobs WHERE id = ?", (job_id,))
        logger.info("Deleted job %s for user %s", job_id, user_id)

    # -- Credits ------------------------------------------------------------

    def read_credit_balance(self, user_id: str) -> CreditBalance:
        """Return the user's balance, creating an empty one on first use."""
        now = _now()
        with self._connect() as conn:
            # INSERT OR IGNORE keeps the lazy creation race-free.
            conn.execute(
                """
                INSERT OR IGNORE INTO user_credits (user_id, free_used, credits, created_at, updated_at)
                VALUES (?, 0, 0, ?, ?)
                """,
                (user_id, now, now),
            )
            row = conn.execute(
                "SELECT user_id, free_used, credits FROM user_credits WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        return CreditBalance(
            user_id=row["user_id"],
            free_used=row["free_used"],
            credits=_decimal(row["credits"]),
        )

    def add_credits(self, user_id: str, amount: Decimal) -> CreditBalance:
        """Top up a user's paid balance (used by the billing flow)."""
        if Decimal(amount) <= 0:
            raise ValueError("Credit top-up must be positive")

        self.read_credit_balance(user_id)
        with self._transaction() as conn:
            conn.execute(
                "UPDATE user_credits SET credits = credits + ?, updated_at = ? WHERE user_id = ?",
                (str(amount), _now(), user_id),
            )
        logger.info("Added %s credits for user %s", amount, user_id)
        return self.read_credit_balance(user_id)

    def atomic_settle_credits(
        self,
        user_id: str,
        free_applied: int,
        paid_applied: int,
        free_allowance: int,
        job_id: int,
        download_url: str,
    ) -> CreditBalance:
        """Complete a job and debit the user in one transaction.

        The job must be ``processing``.  ``free_used`` is clamped at the
        allowance, so a concurrent job that used the same free items cannot
        push it past the limit.  The paid side is guarded by
        ``credits >= paid``; if that guard fails the transaction rolls back
        and nothing changes.

        Raises:
            InsufficientCredits: If a concurrent job spent the balance first
            PersistenceError: If the job is not in ``processing`` state
        """
        now = _now()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE photo_jobs
                SET status = ?, download_url = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    JobStatus.COMPLETED.value,
                    download_url,
                    now,
                    job_id,
                    JobStatus.PROCESSING.value,
                ),
            )
            if cursor.rowcount != 1:
                raise PersistenceError(f"Job {job_id} is not processing")

            cursor = conn.execute(
                """
                UPDATE user_credits
                SET
                    free_used = MIN(:allowance, free_used + :free),
                    credits = MAX(0, credits - :paid),
                    updated_at = :now
                WHERE user_id = :user_id
                    AND credits >= :paid
                """,
                {
                    "allowance": free_allowance,
                    "free": free_applied,
                    "paid": paid_applied,
                    "now": now,
                    "user_id": user_id,
                },
            )
            if cursor.rowcount != 1:
                row = conn.execute(
                    "SELECT credits FROM user_credits WHERE user_id = ?", (user_id,)
                ).fetchone()
                balance = _decimal(row["credits"]) if row else Decimal(0)
                raise InsufficientCredits(needed=paid_applied, balance=balance)

            row = conn.execute(
                "SELECT user_id, free_used, credits FROM user_credits WHERE user_id = ?",
                (user_id,),
            ).fetchone()

        logger.info(
            "Settled job %s for user %s (free=%d, paid=%d)",
            job_id,
            user_id,
            free_applied,
            paid_applied,
        )
        return CreditBalance(
            user_id=row["user_id"],
            free_used=row["free_used"],
            credits=_decimal(row["credits"]),
        )
