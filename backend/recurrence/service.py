"""
Recurring task definitions: CRUD, lifecycle and processing.

RecurringTaskService wraps a request-scoped session and is used by the
/api/recurring-tasks routes. Access rules:
- Admins see and manage every definition.
- The owner (user_id) sees and manages their own definitions.
- Users with access to the definition's project can see it; editors and
  above can change it.
Anything else is reported as 404.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from fastapi import HTTPException, status
from sqlalchemy import or_
from sqlalchemy.orm import Session

import models
import schemas
from auth.permissions import (
    check_project_permission,
    has_project_access,
    is_admin,
    require_project_permission,
    require_team_permission,
    require_workspace_access,
)
from time_utils import ensure_utc, utc_now
from recurrence.errors import DefinitionError
from recurrence.evaluator import RecurrenceRule, next_occurrences, next_run_date
from recurrence.materializer import BatchOptions, BatchResult, OccurrenceMaterializer
from recurrence.store import SqlDefinitionStore, SqlTaskCreator

logger = logging.getLogger(__name__)

SORTABLE_FIELDS = {
    "created_at": models.RecurringTask.created_at,
    "updated_at": models.RecurringTask.updated_at,
    "title": models.RecurringTask.title,
    "start_date": models.RecurringTask.start_date,
    "frequency": models.RecurringTask.frequency,
    "created_tasks_count": models.RecurringTask.created_tasks_count,
}
RULE_FIELDS = ("frequency", "interval", "days_of_week", "days_of_month", "months_of_year", "start_date", "end_date")
NEXT_DUE_LIMIT = 10


def _not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Recurring task not found")


def compute_next_run(definition: models.RecurringTask) -> Optional[datetime]:
    """
    Next occurrence the materializer will create: the first one after the
    cursor (or from start_date when nothing has been processed yet).
    """
    if not definition.active:
        return None
    try:
        rule = RecurrenceRule.from_definition(definition)
    except DefinitionError as e:
        logger.warning(f"Recurring task {definition.id} has an unusable rule: {e}")
        return None
    cursor = ensure_utc(definition.last_processed_at)
    after = rule.start_date if cursor is None else cursor + timedelta(microseconds=1)
    return next_run_date(rule, after)


def to_schema(definition: models.RecurringTask) -> schemas.RecurringTask:
    result = schemas.RecurringTask.model_validate(definition)
    return result.model_copy(update={"next_run_date": compute_next_run(definition)})


class RecurringTaskService:
    """
    Service for recurring task definitions.

    Args:
        db: Request-scoped database session
        max_occurrences_per_pass: Per-definition cap for a single processing pass
    """

    def __init__(self, db: Session, max_occurrences_per_pass: int = 100):
        self.db = db
        self.max_occurrences_per_pass = max_occurrences_per_pass

    # ============== Access ==============

    def _can_view(self, user: models.User, definition: models.RecurringTask) -> bool:
        if is_admin(user) or definition.user_id == user.id:
            return True
        return bool(definition.project_id) and has_project_access(user, definition.project_id, self.db)

    def _can_edit(self, user: models.User, definition: models.RecurringTask) -> bool:
        if is_admin(user) or definition.user_id == user.id:
            return True
        return bool(definition.project_id) and check_project_permission(
            user, definition.project_id, "editor", self.db
        )

    def _load(self, user: models.User, definition_id: int, for_update: bool = False) -> models.RecurringTask:
        definition = self.db.query(models.RecurringTask).filter(models.RecurringTask.id == definition_id).first()
        if definition is None or not self._can_view(user, definition):
            logger.info(f"Recurring task {definition_id} not found or not visible to user {user.id}")
            raise _not_found()
        if for_update and not self._can_edit(user, definition):
            logger.info(f"User {user.id} cannot modify recurring task {definition_id}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions to modify this recurring task",
            )
        return definition

    def _check_targets(
        self,
        user: models.User,
        project_id: Optional[int] = None,
        team_id: Optional[int] = None,
        workspace_id: Optional[int] = None,
    ) -> None:
        if project_id is not None:
            require_project_permission(user, project_id, "editor", self.db)
        if team_id is not None:
            require_team_permission(user, team_id, "member", self.db)
        if workspace_id is not None:
            require_workspace_access(user, workspace_id, self.db)

    # ============== CRUD ==============

    def create(self, user: models.User, payload: schemas.RecurringTaskCreate) -> models.RecurringTask:
        logger.info(f"Creating recurring task '{payload.title}' ({payload.frequency.value}) for user {user.id}")
        self._check_targets(user, payload.project_id, payload.team_id, payload.workspace_id)

        definition = models.RecurringTask(
            title=payload.title,
            description=payload.description,
            user_id=user.id,
            project_id=payload.project_id,
            team_id=payload.team_id,
            workspace_id=payload.workspace_id,
            frequency=payload.frequency.value,
            interval=payload.interval,
            days_of_week=payload.days_of_week,
            days_of_month=payload.days_of_month,
            months_of_year=payload.months_of_year,
            start_date=payload.start_date,
            end_date=payload.end_date,
            active=payload.active,
            created_tasks_count=0,
            task_template=payload.task_template.model_dump(mode="json"),
        )
        self.db.add(definition)
        self.db.commit()
        self.db.refresh(definition)

        logger.info(f"Recurring task created: id={definition.id}")
        return definition

    def list_definitions(
        self,
        user: models.User,
        page: int = 1,
        limit: int = 20,
        frequency: Optional[str] = None,
        active: Optional[bool] = None,
        project_id: Optional[int] = None,
        team_id: Optional[int] = None,
        workspace_id: Optional[int] = None,
        search: Optional[str] = None,
        has_end_date: Optional[bool] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Tuple[List[models.RecurringTask], int]:
        query = self.db.query(models.RecurringTask)

        # Non-admins only list their own definitions
        if not is_admin(user):
            query = query.filter(models.RecurringTask.user_id == user.id)

        if frequency:
            query = query.filter(models.RecurringTask.frequency == frequency)
        if active is not None:
            query = query.filter(models.RecurringTask.active == active)
        if project_id is not None:
            query = query.filter(models.RecurringTask.project_id == project_id)
        if team_id is not None:
            query = query.filter(models.RecurringTask.team_id == team_id)
        if workspace_id is not None:
            query = query.filter(models.RecurringTask.workspace_id == workspace_id)
        if search:
            pattern = f"%{search}%"
            query = query.filter(or_(
                models.RecurringTask.title.ilike(pattern),
                models.RecurringTask.description.ilike(pattern),
            ))
        if has_end_date is True:
            query = query.filter(models.RecurringTask.end_date.isnot(None))
        elif has_end_date is False:
            query = query.filter(models.RecurringTask.end_date.is_(None))

        total = query.count()

        column = SORTABLE_FIELDS.get(sort_by, models.RecurringTask.created_at)
        ordering = column.asc() if sort_order == "asc" else column.desc()
        items = (
            query.order_by(ordering, models.RecurringTask.id.asc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        logger.debug(f"Listed {len(items)} of {total} recurring tasks for user {user.id}")
        return items, total

    def get(self, user: models.User, definition_id: int) -> models.RecurringTask:
        return self._load(user, definition_id)

    def update(
        self, user: models.User, definition_id: int, payload: schemas.RecurringTaskUpdate
    ) -> models.RecurringTask:
        definition = self._load(user, definition_id, for_update=True)
        changes = payload.model_dump(exclude_unset=True)
        logger.info(f"Updating recurring task {definition_id}: fields={sorted(changes)}")

        if "project_id" in changes and changes["project_id"] != definition.project_id:
            self._check_targets(user, project_id=changes["project_id"])

        if any(name in changes for name in RULE_FIELDS):
            merged = {name: changes.get(name, getattr(definition, name)) for name in RULE_FIELDS}
            for name in ("days_of_week", "days_of_month", "months_of_year"):
                merged[name] = merged[name] or []
            if merged["frequency"] is None:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="frequency cannot be null")
            if merged["start_date"] is None:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start_date cannot be null")
            try:
                schemas.validate_rule_shape(
                    merged["frequency"], merged["start_date"], merged["end_date"],
                    merged["days_of_week"], merged["days_of_month"], merged["months_of_year"],
                )
            except ValueError as e:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

        for name, value in changes.items():
            if name == "frequency" and value is not None:
                value = value.value if hasattr(value, "value") else value
            if name == "task_template":
                if value is None:
                    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="task_template cannot be null")
                value = payload.task_template.model_dump(mode="json")
            if name in ("days_of_week", "days_of_month", "months_of_year") and value is None:
                value = []
            if name == "active" and value is None:
                continue
            if name == "title" and value is None:
                continue
            setattr(definition, name, value)

        if changes.get("active") is True:
            definition.paused_until = None
            definition.pause_reason = None

        self.db.commit()
        self.db.refresh(definition)
        logger.info(f"Recurring task {definition_id} updated")
        return definition

    def delete(self, user: models.User, definition_id: int, delete_generated_tasks: bool = False) -> Dict:
        """
        Delete a definition.

        Generated tasks outlive their definition only on request: without
        delete_generated_tasks a definition that already produced tasks is
        kept and 409 is returned, so callers decide explicitly.
        """
        definition = self._load(user, definition_id, for_update=True)
        generated = [instance.task for instance in definition.instances if instance.task is not None]

        if generated and not delete_generated_tasks:
            logger.info(
                f"Refusing to delete recurring task {definition_id}: "
                f"{len(generated)} generated task(s) and delete_generated_tasks not set"
            )
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=(
                    f"Recurring task has {len(generated)} generated task(s). "
                    "Pass delete_generated_tasks=true to delete them as well."
                ),
            )

        self.db.delete(definition)
        for task in generated:
            self.db.delete(task)
        self.db.commit()

        logger.info(f"Recurring task {definition_id} deleted (generated tasks deleted: {len(generated)})")
        return {"deleted": True, "id": definition_id, "deleted_tasks": len(generated)}

    # ============== Lifecycle ==============

    def toggle_active(self, user: models.User, definition_id: int) -> models.RecurringTask:
        definition = self._load(user, definition_id, for_update=True)
        definition.active = not definition.active
        definition.paused_until = None
        definition.pause_reason = None
        self.db.commit()
        self.db.refresh(definition)
        logger.info(f"Recurring task {definition_id} {'activated' if definition.active else 'deactivated'}")
        return definition

    def pause(
        self, user: models.User, definition_id: int, payload: schemas.PauseRecurringTask
    ) -> models.RecurringTask:
        definition = self._load(user, definition_id, for_update=True)
        definition.active = False
        definition.paused_until = payload.pause_until
        definition.pause_reason = payload.reason
        self.db.commit()
        self.db.refresh(definition)
        until = payload.pause_until.isoformat() if payload.pause_until else "manually resumed"
        logger.info(f"Recurring task {definition_id} paused until {until}")
        return definition

    def resume(self, user: models.User, definition_id: int) -> models.RecurringTask:
        definition = self._load(user, definition_id, for_update=True)
        definition.active = True
        definition.paused_until = None
        definition.pause_reason = None
        self.db.commit()
        self.db.refresh(definition)
        logger.info(f"Recurring task {definition_id} resumed")
        return definition

    def duplicate(
        self, user: models.User, definition_id: int, payload: Optional[schemas.DuplicateRecurringTask] = None
    ) -> models.RecurringTask:
        """
        Copy a definition's rule and template into a new, inactive definition
        owned by the caller. The copy starts with no cursor and no history.
        """
        source = self._load(user, definition_id)
        title = (payload.title if payload and payload.title else None) or f"{source.title} (Copy)"

        copy = models.RecurringTask(
            title=title[:200],
            description=source.description,
            user_id=user.id,
            project_id=source.project_id,
            team_id=source.team_id,
            workspace_id=source.workspace_id,
            frequency=source.frequency,
            interval=source.interval,
            days_of_week=list(source.days_of_week or []),
            days_of_month=list(source.days_of_month or []),
            months_of_year=list(source.months_of_year or []),
            start_date=source.start_date,
            end_date=source.end_date,
            active=False,
            created_tasks_count=0,
            task_template=dict(source.task_template or {}),
        )
        self.db.add(copy)
        self.db.commit()
        self.db.refresh(copy)
        logger.info(f"Recurring task {definition_id} duplicated as {copy.id}")
        return copy

    # ============== Evaluation ==============

    def occurrences(
        self,
        user: models.User,
        definition_id: int,
        count: int = 10,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
    ) -> List[datetime]:
        """Upcoming occurrences from the rule alone; nothing is created."""
        definition = self._load(user, definition_id)
        try:
            rule = RecurrenceRule.from_definition(definition)
        except DefinitionError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

        start = ensure_utc(from_date) or utc_now()
        return next_occurrences(rule, start, count, ensure_utc(to_date))

    def stats(self, user: models.User) -> schemas.RecurringTaskStats:
        query = self.db.query(models.RecurringTask)
        if not is_admin(user):
            query = query.filter(models.RecurringTask.user_id == user.id)
        definitions = query.all()

        by_frequency = {frequency.value: 0 for frequency in models.RecurrenceFrequency}
        for definition in definitions:
            by_frequency[definition.frequency] = by_frequency.get(definition.frequency, 0) + 1

        due = []
        for definition in definitions:
            upcoming = compute_next_run(definition)
            if upcoming is not None:
                due.append(schemas.RecurringTaskDue(id=definition.id, title=definition.title, next_run_date=upcoming))
        due.sort(key=lambda item: item.next_run_date)

        active = sum(1 for d in definitions if d.active)
        return schemas.RecurringTaskStats(
            total=len(definitions),
            active=active,
            inactive=len(definitions) - active,
            paused=sum(1 for d in definitions if not d.active and d.paused_until is not None),
            by_frequency=by_frequency,
            tasks_created=sum(d.created_tasks_count or 0 for d in definitions),
            next_due=due[:NEXT_DUE_LIMIT],
        )

    def process(self, request: schemas.ProcessRecurringTasks, now: Optional[datetime] = None) -> BatchResult:
        """
        Run one materialization pass over active definitions.

        Expired pauses are lifted first, then due occurrences are created (or
        previewed on dry run) up to request.max_tasks. A dry run lifts them
        inside the transaction only and rolls back afterwards.
        """
        now = ensure_utc(now) or utc_now()
        store = SqlDefinitionStore(self.db)
        store.resume_expired_pauses(now, commit=not request.dry_run)

        materializer = OccurrenceMaterializer(store, SqlTaskCreator(self.db))
        options = BatchOptions(
            dry_run=request.dry_run,
            max_tasks=request.max_tasks,
            definition_ids=request.recurring_task_ids,
            process_until=request.process_until,
            max_occurrences_per_definition=self.max_occurrences_per_pass,
        )
        try:
            return materializer.process_all(now, options)
        finally:
            if request.dry_run:
                self.db.rollback()


def page_count(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit else 0


def batch_to_schema(batch: BatchResult) -> schemas.ProcessRecurringTasksResult:
    return schemas.ProcessRecurringTasksResult(
        dry_run=batch.dry_run,
        tasks_created=batch.tasks_created,
        definitions_processed=batch.definitions_processed,
        created=[
            schemas.GeneratedTask(
                recurring_task_id=item.definition_id,
                occurrence=item.occurrence,
                title=item.title,
                task_id=item.task_id,
            )
            for item in batch.created
        ],
        errors=[
            schemas.ProcessingError(
                recurring_task_id=error.definition_id,
                occurrence=error.occurrence,
                kind=error.kind,
                message=error.message,
            )
            for error in batch.errors
        ],
    )
