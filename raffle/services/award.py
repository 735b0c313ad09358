"""Award records: the business fact of a draw, written together with its outbox task."""

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from db.connection import PartitionRouter
from db.enums import AwardState, TaskState
from db.models import Tasks, UserAwardRecords
from raffle.services._helpers import dump_json, new_id, now_iso
from raffle.services.broker import MessagePublisher
from raffle.services.errors import DuplicateSubmissionError
from raffle.services.outbox import mark_task_state
from raffle.services.schemas import AwardRecordResult

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


class AwardService:
    """Persists award records with their notification task in one transaction.

    Publishing happens after commit. A failed publish leaves the task in FAIL
    for the outbox compensator; the record itself is never rolled back.
    """

    def __init__(
        self,
        router: PartitionRouter,
        publisher: MessagePublisher,
        topic: str = "send_award",
    ) -> None:
        self.router: PartitionRouter = router
        self.publisher: MessagePublisher = publisher
        self.topic: str = topic

    def find_record(self, user_id: str, order_id: str) -> UserAwardRecords | None:
        with self.router.session_for(user_id) as session:
            return session.scalars(
                select(UserAwardRecords).where(
                    UserAwardRecords.user_id == user_id,
                    UserAwardRecords.order_id == order_id,
                )
            ).first()

    def save_award_record(
        self,
        user_id: str,
        strategy_id: int,
        order_id: str,
        award_id: int,
        award_title: str,
        award_config: str | None = None,
    ) -> AwardRecordResult:
        message_id: str = new_id()
        created_at: str = now_iso()
        payload: str = dump_json(
            {
                "message_id": message_id,
                "user_id": user_id,
                "strategy_id": strategy_id,
                "order_id": order_id,
                "award_id": award_id,
                "award_title": award_title,
                "award_config": award_config,
                "created_at": created_at,
            }
        )

        record: UserAwardRecords = UserAwardRecords(
            user_id=user_id,
            strategy_id=strategy_id,
            order_id=order_id,
            award_id=award_id,
            award_title=award_title,
            award_config=award_config,
            award_state=AwardState.CREATE.value,
            created_at=created_at,
        )
        task: Tasks = Tasks(
            user_id=user_id,
            topic=self.topic,
            message_id=message_id,
            message=payload,
            state=TaskState.CREATE.value,
            created_at=created_at,
            updated_at=created_at,
        )

        try:
            self._insert(record, task)
        except DuplicateSubmissionError:
            existing: UserAwardRecords | None = self.find_record(user_id, order_id)
            logger.info("award_record_duplicate", user_id=user_id, order_id=order_id)
            return AwardRecordResult(
                user_id=user_id,
                order_id=order_id,
                award_id=existing.award_id if existing is not None else award_id,
                message_id=None,
                award_title=existing.award_title if existing is not None else award_title,
                award_config=existing.award_config if existing is not None else award_config,
                duplicate=True,
            )

        published: bool = self._publish(user_id, message_id, payload)
        return AwardRecordResult(
            user_id=user_id,
            order_id=order_id,
            award_id=award_id,
            message_id=message_id,
            award_title=award_title,
            award_config=award_config,
            published=published,
        )

    def _insert(self, record: UserAwardRecords, task: Tasks) -> None:
        try:
            with self.router.session_for(record.user_id) as session:
                session.add(record)
                session.add(task)
                session.flush()
        except IntegrityError as exc:
            raise DuplicateSubmissionError(
                f"order {record.order_id} already recorded for {record.user_id}"
            ) from exc

    def _publish(self, user_id: str, message_id: str, payload: str) -> bool:
        try:
            self.publisher.publish(self.topic, message_id, payload)
        except Exception as exc:
            logger.warning("award_publish_failed", user_id=user_id, message_id=message_id, error=str(exc))
            self._mark_state(user_id, message_id, TaskState.FAIL)
            return False
        self._mark_state(user_id, message_id, TaskState.COMPLETE)
        logger.info("award_published", user_id=user_id, message_id=message_id, topic=self.topic)
        return True

    def _mark_state(self, user_id: str, message_id: str, state: TaskState) -> None:
        # the record is committed; a stale task state is left for the compensator
        try:
            mark_task_state(self.router, user_id, message_id, state)
        except Exception:
            logger.exception(
                "award_task_state_update_failed", user_id=user_id, message_id=message_id, state=state.value
            )

    def count_records(self, user_id: str, strategy_id: int) -> int:
        """Cumulative award records of a user in a strategy; the default draw count."""
        with self.router.session_for(user_id) as session:
            count: int | None = session.scalar(
                select(func.count())
                .select_from(UserAwardRecords)
                .where(
                    UserAwardRecords.user_id == user_id,
                    UserAwardRecords.strategy_id == strategy_id,
                )
            )
        return int(count or 0)
