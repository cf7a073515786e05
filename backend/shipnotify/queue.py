"""Durable lease-based task queue.

The queue is a table of task rows partitioned by a key column (an event
topic or a notification channel). Workers claim a batch, own it for the
length of a lease, and acknowledge each task as completed or failed:

- claim: select candidates with ``FOR UPDATE SKIP LOCKED`` and move them to
  PROCESSING with a conditional UPDATE that re-checks the claim predicate,
  so concurrent claimers never receive the same row.
- lease: ``available_at`` is pushed to ``now + visibility_timeout``; a worker
  that dies without acknowledging loses the task once the lease lapses.
- mark_failed: reschedules with exponential backoff until ``max_attempts``
  is reached, then parks the row in FAILED for triage.

Subclasses bind the queue to a model and translate rows into snapshots.
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite

from .models import TaskStatus, utcnow

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10
DEFAULT_VISIBILITY_TIMEOUT_MS = 60_000
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_RETRY_BASE_SECONDS = 30.0
DEFAULT_RETRY_MAX_SECONDS = 900.0

LEASE_EXPIRED_ERROR = "Lease expired on final attempt without acknowledgement"

Clock = Callable[[], datetime]


@dataclass
class ClaimOptions:
    """Per-call claim overrides. ``None`` falls back to the queue defaults."""

    batch_size: Optional[int] = None
    visibility_timeout_ms: Optional[int] = None


@dataclass
class RetryPolicy:
    """Exponential backoff between failed attempts.

    Attributes:
        base_delay: Delay after the first failed attempt
        max_delay: Upper bound for any single delay
        jitter: Fraction of the delay added as random spread (0 disables)
    """

    base_delay: timedelta = timedelta(seconds=DEFAULT_RETRY_BASE_SECONDS)
    max_delay: timedelta = timedelta(seconds=DEFAULT_RETRY_MAX_SECONDS)
    jitter: float = 0.0

    def delay_for(self, attempts: int) -> timedelta:
        """Delay before the next attempt after ``attempts`` claims."""
        exponent = max(attempts - 1, 0)
        delay = min(self.base_delay * (2**exponent), self.max_delay)
        if self.jitter > 0:
            delay += delay * random.uniform(0, self.jitter)
        return delay


def _insert_ignoring_conflicts(session, model):
    """INSERT ... ON CONFLICT DO NOTHING for the session's dialect."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model.__table__).on_conflict_do_nothing()
    if dialect == "sqlite":
        return sqlite.insert(model.__table__).on_conflict_do_nothing()
    raise NotImplementedError(f"Unsupported database dialect: {dialect}")


class TaskQueue:
    """Enqueue / claim / complete / fail protocol over one task table.

    Subclasses set ``model`` and ``partition_field`` and implement
    ``_snapshot`` to turn a row into the type handed to workers.
    """

    model = None
    partition_field: str = ""
    name: str = ""

    def __init__(
        self,
        session_factory,
        clock: Clock = utcnow,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        visibility_timeout_ms: int = DEFAULT_VISIBILITY_TIMEOUT_MS,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.max_attempts = max_attempts
        self.batch_size = batch_size
        self.visibility_timeout_ms = visibility_timeout_ms
        self.retry_policy = retry_policy or RetryPolicy()

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def _snapshot(self, row):
        raise NotImplementedError

    def _completion_values(self, now: datetime) -> dict:
        """Extra columns set when tasks complete."""
        return {}

    def _after_completed(
        self, session, ids: list[str], now: datetime, provider_ids: dict
    ) -> None:
        """Called inside the completion transaction."""

    def _after_permanent_failure(self, session, row, now: datetime) -> None:
        """Called inside the transaction that parks a row in FAILED."""

    # ------------------------------------------------------------------
    # Protocol
    # ------------------------------------------------------------------

    def _enqueue_rows(self, rows: list[dict], session=None) -> int:
        """Insert rows, silently skipping dedupe-key collisions.

        Args:
            rows: Column values per task
            session: Join the caller's transaction instead of committing

        Returns:
            Number of rows actually inserted
        """
        if not rows:
            return 0

        now = self.clock()
        inserted = 0
        db = session or self.session_factory()
        try:
            for values in rows:
                values.setdefault("available_at", now)
                values.setdefault("max_attempts", self.max_attempts)
                values.setdefault("status", TaskStatus.PENDING.value)
                values.setdefault("attempts", 0)
                values.setdefault("created_at", now)
                values.setdefault("updated_at", now)

                stmt = _insert_ignoring_conflicts(db, self.model).values(**values)
                result = db.execute(stmt)
                if result.rowcount == 1:
                    inserted += 1
                else:
                    logger.debug(
                        f"{self.name}: skipped duplicate dedupe_key "
                        f"{values.get('dedupe_key')}"
                    )
            if session is None:
                db.commit()
        except Exception:
            if session is None:
                db.rollback()
            raise
        finally:
            if session is None:
                db.close()

        if inserted:
            logger.info(f"{self.name}: enqueued {inserted}/{len(rows)} tasks")
        return inserted

    def _claimable(self, key: str, now: datetime) -> list:
        model = self.model
        return [
            getattr(model, self.partition_field) == key,
            model.available_at <= now,
            model.attempts < model.max_attempts,
            # PROCESSING with a lapsed lease is reclaimable
            model.status.in_(
                [
                    TaskStatus.PENDING.value,
                    TaskStatus.FAILED.value,
                    TaskStatus.PROCESSING.value,
                ]
            ),
        ]

    def claim(self, key: str, options: Optional[ClaimOptions] = None) -> list:
        """Atomically take ownership of up to ``batch_size`` ready tasks.

        Args:
            key: Partition to claim from (topic or channel)
            options: Batch size / visibility timeout overrides

        Returns:
            Claimed task snapshots, oldest ``available_at`` first
        """
        options = options or ClaimOptions()
        batch_size = (
            options.batch_size if options.batch_size is not None else self.batch_size
        )
        timeout_ms = (
            options.visibility_timeout_ms
            if options.visibility_timeout_ms is not None
            else self.visibility_timeout_ms
        )
        if batch_size <= 0:
            return []

        model = self.model
        now = self.clock()
        claimable = self._claimable(key, now)

        db = self.session_factory()
        try:
            self._expire_exhausted_leases(db, key, now)

            candidates = (
                db.execute(
                    select(model.id)
                    .where(*claimable)
                    .order_by(model.available_at.asc(), model.created_at.asc())
                    .limit(batch_size)
                    .with_for_update(skip_locked=True)
                )
                .scalars()
                .all()
            )
            if not candidates:
                db.commit()
                return []

            # Re-check the predicate: a concurrent claimer may have won a row
            # between our SELECT and this UPDATE.
            claimed_ids = (
                db.execute(
                    update(model)
                    .where(model.id.in_(candidates), *claimable)
                    .values(
                        status=TaskStatus.PROCESSING.value,
                        attempts=model.attempts + 1,
                        locked_at=now,
                        available_at=now + timedelta(milliseconds=timeout_ms),
                        updated_at=now,
                    )
                    .returning(model.id)
                    .execution_options(synchronize_session=False)
                )
                .scalars()
                .all()
            )

            rows = []
            if claimed_ids:
                rows = (
                    db.execute(select(model).where(model.id.in_(claimed_ids)))
                    .scalars()
                    .all()
                )
            snapshots = [self._snapshot(row) for row in rows]
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        order = {task_id: index for index, task_id in enumerate(candidates)}
        snapshots.sort(key=lambda task: order[task.id])

        if snapshots:
            logger.info(f"{self.name}: claimed {len(snapshots)} tasks for {key}")
        return snapshots

    def _expire_exhausted_leases(self, db, key: str, now: datetime) -> None:
        """Park lapsed leases that have no attempts left in FAILED."""
        model = self.model
        expired = (
            db.execute(
                select(model)
                .where(
                    getattr(model, self.partition_field) == key,
                    model.status == TaskStatus.PROCESSING.value,
                    model.available_at <= now,
                    model.attempts >= model.max_attempts,
                )
                .with_for_update(skip_locked=True)
            )
            .scalars()
            .all()
        )
        for row in expired:
            row.status = TaskStatus.FAILED.value
            row.locked_at = None
            row.last_error = LEASE_EXPIRED_ERROR
            row.updated_at = now
            self._after_permanent_failure(db, row, now)
            logger.error(
                f"{self.name}: task {row.id} lease expired after "
                f"{row.attempts}/{row.max_attempts} attempts, marked FAILED"
            )

    def mark_completed(
        self, ids: list[str], provider_ids: Optional[dict[str, str]] = None
    ) -> int:
        """Mark tasks COMPLETED. Already-completed ids are left untouched.

        Args:
            ids: Tasks to complete
            provider_ids: Optional task id to provider message id mapping

        Returns:
            Number of rows transitioned
        """
        if not ids:
            return 0

        model = self.model
        now = self.clock()
        db = self.session_factory()
        try:
            completed_ids = (
                db.execute(
                    update(model)
                    .where(
                        model.id.in_(ids),
                        model.status != TaskStatus.COMPLETED.value,
                    )
                    .values(
                        status=TaskStatus.COMPLETED.value,
                        locked_at=None,
                        last_error=None,
                        updated_at=now,
                        **self._completion_values(now),
                    )
                    .returning(model.id)
                    .execution_options(synchronize_session=False)
                )
                .scalars()
                .all()
            )
            if completed_ids:
                self._after_completed(
                    db, list(completed_ids), now, provider_ids or {}
                )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.debug(f"{self.name}: completed {len(completed_ids)} tasks")
        return len(completed_ids)

    def mark_failed(
        self, task_id: str, error: str, retry_at: Optional[datetime] = None
    ) -> Optional[TaskStatus]:
        """Record a failed attempt and reschedule or park the task.

        Args:
            task_id: Task to fail
            error: Failure reason, stored as ``last_error``
            retry_at: Explicit retry time; defaults to the retry policy

        Returns:
            Resulting status, or None if the task does not exist
        """
        model = self.model
        now = self.clock()
        db = self.session_factory()
        try:
            row = db.execute(
                select(model).where(model.id == task_id).with_for_update()
            ).scalar_one_or_none()
            if row is None:
                logger.warning(f"{self.name}: mark_failed on unknown task {task_id}")
                return None

            if row.status == TaskStatus.COMPLETED.value:
                logger.warning(
                    f"{self.name}: ignoring failure for completed task {task_id}"
                )
                return TaskStatus.COMPLETED

            row.locked_at = None
            row.last_error = error
            row.updated_at = now

            if row.attempts < row.max_attempts:
                row.status = TaskStatus.PENDING.value
                row.available_at = retry_at or now + self.retry_policy.delay_for(
                    row.attempts
                )
                logger.warning(
                    f"{self.name}: task {task_id} failed attempt "
                    f"{row.attempts}/{row.max_attempts}, retry at "
                    f"{row.available_at.isoformat()}: {error}"
                )
            else:
                row.status = TaskStatus.FAILED.value
                self._after_permanent_failure(db, row, now)
                logger.error(
                    f"{self.name}: task {task_id} permanently failed after "
                    f"{row.attempts} attempts: {error}"
                )

            status = TaskStatus(row.status)
            db.commit()
            return status
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Inspection and triage
    # ------------------------------------------------------------------

    def get(self, task_id: str):
        """Snapshot of one task, or None."""
        db = self.session_factory()
        try:
            row = db.get(self.model, task_id)
            return self._snapshot(row) if row else None
        finally:
            db.close()

    def stats(self, key: Optional[str] = None) -> dict[str, int]:
        """Count tasks per status, optionally within one partition."""
        model = self.model
        counts = {status.value: 0 for status in TaskStatus}
        db = self.session_factory()
        try:
            query = select(model.status, func.count(model.id)).group_by(model.status)
            if key is not None:
                query = query.where(getattr(model, self.partition_field) == key)
            for status, count in db.execute(query).all():
                counts[status] = count
        finally:
            db.close()
        return counts

    def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        key: Optional[str] = None,
        limit: int = 50,
    ) -> list:
        """Most recently updated tasks, for audit and triage."""
        model = self.model
        db = self.session_factory()
        try:
            query = select(model).order_by(model.updated_at.desc()).limit(limit)
            if status is not None:
                query = query.where(model.status == TaskStatus(status).value)
            if key is not None:
                query = query.where(getattr(model, self.partition_field) == key)
            return [self._snapshot(row) for row in db.execute(query).scalars().all()]
        finally:
            db.close()

    def requeue(self, task_id: str) -> bool:
        """Re-drive a FAILED task with a fresh attempt budget.

        Returns:
            True if the task was FAILED and is now PENDING
        """
        model = self.model
        now = self.clock()
        db = self.session_factory()
        try:
            result = db.execute(
                update(model)
                .where(
                    model.id == task_id,
                    model.status == TaskStatus.FAILED.value,
                )
                .values(
                    status=TaskStatus.PENDING.value,
                    attempts=0,
                    available_at=now,
                    locked_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
        finally:
            db.close()

        requeued = result.rowcount == 1
        if requeued:
            logger.info(f"{self.name}: requeued task {task_id}")
        return requeued
