"""
SQLAlchemy-backed collaborators for the occurrence materializer.

SqlDefinitionStore persists definitions, cursors and generated-instance
records. SqlTaskCreator creates one task per occurrence, together with its
instance record, activity event and owner notification, in one transaction.
"""

import logging
from datetime import datetime
from typing import Any, List, Optional, Sequence

from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

import models
from activity import create_notification, create_task_event
from time_utils import ensure_utc
from recurrence.errors import InfrastructureError, TaskCreationError

logger = logging.getLogger(__name__)


def _is_connectivity_error(error: Exception) -> bool:
    if isinstance(error, (OperationalError, InterfaceError)):
        return True
    return isinstance(error, DBAPIError) and bool(error.connection_invalidated)


class SqlDefinitionStore:
    """Definition and cursor persistence over a SQLAlchemy session."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def _fail(self, action: str, error: Exception) -> InfrastructureError:
        self.db.rollback()
        logger.error(f"Recurring task store failed to {action}: {error}")
        return InfrastructureError(f"Failed to {action}: {error}")

    def list_active_definitions(self, definition_ids: Optional[Sequence[int]] = None) -> List[models.RecurringTask]:
        try:
            query = self.db.query(models.RecurringTask).filter(models.RecurringTask.active == True)  # noqa: E712
            if definition_ids is not None:
                query = query.filter(models.RecurringTask.id.in_(list(definition_ids)))
            return query.order_by(models.RecurringTask.id).all()
        except SQLAlchemyError as e:
            raise self._fail("list recurring tasks", e) from e

    def load_cursor(self, definition_id: int) -> Optional[datetime]:
        try:
            row = (
                self.db.query(models.RecurringTask.last_processed_at)
                .filter(models.RecurringTask.id == definition_id)
                .first()
            )
        except SQLAlchemyError as e:
            raise self._fail("load cursor", e) from e
        return ensure_utc(row.last_processed_at) if row else None

    def save_cursor(self, definition_id: int, instant: datetime) -> None:
        """Persist the cursor; an older instant than the stored one is ignored."""
        instant = ensure_utc(instant)
        try:
            definition = self.db.query(models.RecurringTask).filter(models.RecurringTask.id == definition_id).first()
            if definition is None:
                logger.info(f"Recurring task {definition_id} disappeared before cursor save")
                return
            current = ensure_utc(definition.last_processed_at)
            if current is not None and instant <= current:
                logger.debug(f"Cursor for recurring task {definition_id} already at {current.isoformat()}")
                return
            definition.last_processed_at = instant
            self.db.commit()
        except SQLAlchemyError as e:
            raise self._fail("save cursor", e) from e

    def instance_exists(self, definition_id: int, occurrence: datetime) -> bool:
        try:
            return (
                self.db.query(models.RecurringTaskInstance.id)
                .filter(
                    models.RecurringTaskInstance.recurring_task_id == definition_id,
                    models.RecurringTaskInstance.scheduled_date == ensure_utc(occurrence),
                )
                .first()
                is not None
            )
        except SQLAlchemyError as e:
            raise self._fail("check generated instance", e) from e

    def resume_expired_pauses(self, now: datetime, commit: bool = True) -> int:
        """
        Reactivate paused definitions whose pause_until has passed.

        With commit=False the change is only flushed, so queries in the same
        transaction see the definitions as active until the caller rolls back.
        """
        try:
            paused = (
                self.db.query(models.RecurringTask)
                .filter(
                    models.RecurringTask.active == False,  # noqa: E712
                    models.RecurringTask.paused_until.isnot(None),
                    models.RecurringTask.paused_until <= ensure_utc(now),
                )
                .all()
            )
            for definition in paused:
                definition.active = True
                definition.paused_until = None
                definition.pause_reason = None
            if paused and commit:
                self.db.commit()
                logger.info(f"Resumed {len(paused)} recurring task(s) whose pause expired")
            elif paused:
                self.db.flush()
            return len(paused)
        except SQLAlchemyError as e:
            raise self._fail("resume paused recurring tasks", e) from e


def _checklist_items(raw: Any) -> list:
    items = []
    for entry in raw or []:
        if isinstance(entry, str):
            items.append({"text": entry, "completed": False})
        elif isinstance(entry, dict) and entry.get("text"):
            items.append({"text": entry["text"], "completed": False})
    return items


class SqlTaskCreator:
    """Creates concrete tasks from recurring task templates."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def create_task(self, definition: models.RecurringTask, occurrence: datetime) -> models.Task:
        occurrence = ensure_utc(occurrence)
        template = dict(definition.task_template or {})
        definition_id = definition.id
        owner_id = definition.user_id
        definition_title = definition.title

        try:
            priority = models.TaskPriority(template.get("priority") or models.TaskPriority.medium.value)
        except ValueError as e:
            raise TaskCreationError(f"Invalid template priority: {template.get('priority')!r}") from e

        try:
            task = models.Task(
                title=template.get("title") or definition_title,
                description=template.get("description") or definition.description,
                priority=priority,
                status=models.TaskStatus.todo,
                project_id=definition.project_id,
                author_id=owner_id,
                owner_id=owner_id,
                due_date=occurrence,
                estimated_hours=template.get("estimated_hours"),
                tags=list(template.get("tags") or []),
                checklist=_checklist_items(template.get("checklist")),
                attachments=list(template.get("attachments") or []),
                custom_metadata={
                    "recurring_task_id": definition_id,
                    "occurrence": occurrence.isoformat(),
                },
            )
            self.db.add(task)
            self.db.flush()

            parent = self.db.get(models.RecurringTask, definition_id)
            if parent is None:
                raise TaskCreationError(f"Recurring task {definition_id} no longer exists")
            self.db.add(models.RecurringTaskInstance(
                recurring_task=parent,
                task=task,
                scheduled_date=occurrence,
            ))
            parent.created_tasks_count = (parent.created_tasks_count or 0) + 1

            create_task_event(
                self.db,
                task_id=task.id,
                event_type=models.TaskEventType.task_created,
                actor_id=owner_id,
                metadata={
                    "title": task.title,
                    "recurring_task_id": definition_id,
                    "occurrence": occurrence.isoformat(),
                },
                commit=False,
            )
            create_notification(
                self.db,
                user_id=owner_id,
                notification_type=models.NotificationType.recurring_task_created,
                title="Recurring Task Created",
                message=f'A new task "{task.title}" has been created from your recurring task "{definition_title}"',
                data={"task_id": task.id, "recurring_task_id": definition_id},
                commit=False,
            )

            self.db.commit()
            self.db.refresh(task)
        except TaskCreationError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            if _is_connectivity_error(e):
                logger.error(f"Task store unreachable while materializing recurring task {definition_id}: {e}")
                raise InfrastructureError(f"Task store unreachable: {e}") from e
            if isinstance(e, IntegrityError):
                raise TaskCreationError(f"Task for occurrence {occurrence.isoformat()} conflicts with existing data") from e
            raise TaskCreationError(f"Failed to create task: {e}") from e

        logger.debug(f"Task {task.id} created for recurring task {definition_id} at {occurrence.isoformat()}")
        return task
