"""Outbox compensation: republish tasks whose first delivery did not complete."""

from collections.abc import Sequence
from datetime import timedelta

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from db.connection import PartitionRouter, session_scope
from db.enums import TaskState
from db.models import Tasks
from raffle.services._helpers import now_iso, now_utc
from raffle.services._types import PendingTask
from raffle.services.broker import MessagePublisher
from raffle.services.schemas import CompensationResult

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_UNDELIVERED: tuple[str, ...] = (TaskState.CREATE.value, TaskState.FAIL.value)


def mark_task_state(router: PartitionRouter, user_id: str, message_id: str, state: TaskState) -> int:
    """Update one task, addressed by its shard key so only the owning partition is touched."""
    with router.session_for(user_id) as session:
        result = session.execute(
            update(Tasks)
            .where(Tasks.user_id == user_id, Tasks.message_id == message_id)
            .values(state=state.value, updated_at=now_iso())
        )
        return int(result.rowcount or 0)


def _pending_rows(session: Session, cutoff: str, limit: int) -> Sequence[Tasks]:
    return session.scalars(
        select(Tasks)
        .where(Tasks.state.in_(_UNDELIVERED), Tasks.updated_at <= cutoff)
        .order_by(Tasks.updated_at, Tasks.id)
        .limit(limit)
    ).all()


class OutboxCompensator:
    """Scans every partition for undelivered tasks and republishes them.

    Messages keep their original ``message_id`` so consumers can deduplicate.
    Tasks younger than ``grace_seconds`` are left to the write path that
    created them.
    """

    def __init__(
        self,
        router: PartitionRouter,
        publisher: MessagePublisher,
        batch_limit: int = 100,
        grace_seconds: int = 60,
    ) -> None:
        self.router: PartitionRouter = router
        self.publisher: MessagePublisher = publisher
        self.batch_limit: int = batch_limit
        self.grace_seconds: int = grace_seconds

    def _cutoff(self) -> str:
        return (now_utc() - timedelta(seconds=self.grace_seconds)).isoformat()

    def query_pending_tasks(self, limit: int | None = None) -> list[PendingTask]:
        cutoff: str = self._cutoff()
        pending: list[PendingTask] = []
        for index, factory in self.router.partitions():
            with session_scope(factory) as session:
                for row in _pending_rows(session, cutoff, limit or self.batch_limit):
                    pending.append(
                        PendingTask(
                            partition=index,
                            user_id=row.user_id,
                            topic=row.topic,
                            message_id=row.message_id,
                            state=row.state,
                            updated_at=row.updated_at,
                        )
                    )
        return pending

    def run_once(self) -> CompensationResult:
        result: CompensationResult = CompensationResult()
        cutoff: str = self._cutoff()
        for index, factory in self.router.partitions():
            self._compensate_partition(index, factory, cutoff, result)
            result.partitions_scanned += 1

        logger.info(
            "outbox_compensation_complete",
            partitions=result.partitions_scanned,
            scanned=result.tasks_scanned,
            completed=result.tasks_completed,
            failed=result.tasks_failed,
        )
        return result

    def _compensate_partition(
        self,
        index: int,
        factory: sessionmaker[Session],
        cutoff: str,
        result: CompensationResult,
    ) -> None:
        with session_scope(factory) as session:
            rows: Sequence[Tasks] = _pending_rows(session, cutoff, self.batch_limit)

        for task in rows:
            result.tasks_scanned += 1
            try:
                self.publisher.publish(task.topic, task.message_id, task.message)
                mark_task_state(self.router, task.user_id, task.message_id, TaskState.COMPLETE)
                result.tasks_completed += 1
            except Exception as exc:
                result.tasks_failed += 1
                result.errors.append(f"{task.message_id}: {exc}")
                logger.warning(
                    "outbox_republish_failed",
                    partition=index,
                    user_id=task.user_id,
                    message_id=task.message_id,
                    error=str(exc),
                )
                self._mark_failed(task)

    def _mark_failed(self, task: Tasks) -> None:
        try:
            mark_task_state(self.router, task.user_id, task.message_id, TaskState.FAIL)
        except Exception:
            logger.exception("outbox_mark_failed_error", user_id=task.user_id, message_id=task.message_id)
