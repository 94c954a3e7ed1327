"""
Activity and notification fan-out.

State changes elsewhere in the system (task creation, status changes,
recurring task materialization) record a TaskEvent for the audit trail and,
where a user should be told, a Notification.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

import models

logger = logging.getLogger(__name__)


def create_task_event(
    db: Session,
    task_id: int,
    event_type: models.TaskEventType,
    actor_id: Optional[int] = None,
    field_name: Optional[str] = None,
    old_value: Optional[str] = None,
    new_value: Optional[str] = None,
    metadata: Optional[dict] = None,
    commit: bool = True
) -> models.TaskEvent:
    """
    Create a task event for the activity timeline.

    Args:
        db: Database session
        task_id: ID of the task
        event_type: Type of event (from TaskEventType enum)
        actor_id: ID of the user who triggered the event (optional)
        field_name: Name of the field that changed (for field_update and status_change)
        old_value: Previous value (optional)
        new_value: New value (optional)
        metadata: Additional context (optional)
        commit: Whether to commit immediately (set False inside a larger unit of work)

    Returns:
        Created TaskEvent instance
    """
    logger.debug(f"Creating event: type={event_type}, task_id={task_id}, actor_id={actor_id}, field={field_name}")

    event = models.TaskEvent(
        task_id=task_id,
        event_type=event_type.value if hasattr(event_type, "value") else event_type,
        actor_id=actor_id,
        field_name=field_name,
        old_value=old_value,
        new_value=new_value,
        event_metadata=metadata
    )

    db.add(event)
    db.flush()

    if commit:
        db.commit()
        db.refresh(event)

    logger.debug(f"Event created: id={event.id}, type={event_type}")
    return event


def create_notification(
    db: Session,
    user_id: int,
    notification_type: models.NotificationType,
    title: str,
    message: str,
    data: Optional[dict] = None,
    commit: bool = True
) -> models.Notification:
    """Queue an in-app notification for a user."""
    notification = models.Notification(
        user_id=user_id,
        type=notification_type.value,
        title=title,
        message=message,
        data=data or {},
        is_read=False,
    )
    db.add(notification)
    db.flush()

    if commit:
        db.commit()
        db.refresh(notification)

    logger.debug(f"Notification {notification.id} ({notification_type.value}) queued for user {user_id}")
    return notification
