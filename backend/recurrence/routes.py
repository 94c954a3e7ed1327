"""
Recurring task API endpoints (/api/recurring-tasks).

Static paths (/stats, /process) are declared before /{recurring_task_id}.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

import schemas
from database import get_db
from models import User
from auth.dependencies import get_current_admin, get_current_user
from time_utils import ensure_utc
from recurrence.errors import InfrastructureError
from recurrence.materializer import DEFAULT_MAX_OCCURRENCES_PER_PASS
from recurrence.service import RecurringTaskService, batch_to_schema, page_count, to_schema

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/recurring-tasks", tags=["recurring-tasks"])


def get_recurring_task_service(request: Request, db: Session = Depends(get_db)) -> RecurringTaskService:
    settings = getattr(request.app.state, "settings", None)
    cap = settings.recurring_max_occurrences_per_pass if settings else DEFAULT_MAX_OCCURRENCES_PER_PASS
    return RecurringTaskService(db, max_occurrences_per_pass=cap)


@router.post("", response_model=schemas.RecurringTask, status_code=status.HTTP_201_CREATED)
def create_recurring_task(
    payload: schemas.RecurringTaskCreate,
    current_user: User = Depends(get_current_user),
    service: RecurringTaskService = Depends(get_recurring_task_service),
):
    """
    Create a recurring task definition.

    The rule shape (frequency-specific day/month sets, interval 1-365,
    end_date after start_date) and the template are validated by the schema;
    project/team/workspace targets must be accessible to the caller.
    """
    return to_schema(service.create(current_user, payload))


@router.get("", response_model=schemas.RecurringTaskList)
def list_recurring_tasks(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    frequency: Optional[schemas.RecurrenceFrequency] = Query(None),
    active: Optional[bool] = Query(None),
    project_id: Optional[int] = Query(None),
    team_id: Optional[int] = Query(None),
    workspace_id: Optional[int] = Query(None),
    search: Optional[str] = Query(None, max_length=255, description="Search in title and description"),
    has_end_date: Optional[bool] = Query(None),
    sort_by: str = Query("created_at", description="created_at, updated_at, title, start_date, frequency, created_tasks_count"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    current_user: User = Depends(get_current_user),
    service: RecurringTaskService = Depends(get_recurring_task_service),
):
    items, total = service.list_definitions(
        current_user,
        page=page,
        limit=limit,
        frequency=frequency.value if frequency else None,
        active=active,
        project_id=project_id,
        team_id=team_id,
        workspace_id=workspace_id,
        search=search,
        has_end_date=has_end_date,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return schemas.RecurringTaskList(
        items=[to_schema(item) for item in items],
        total=total,
        page=page,
        limit=limit,
        pages=page_count(total, limit),
    )


@router.get("/stats", response_model=schemas.RecurringTaskStats)
def recurring_task_stats(
    current_user: User = Depends(get_current_user),
    service: RecurringTaskService = Depends(get_recurring_task_service),
):
    return service.stats(current_user)


@router.post("/process", response_model=schemas.ProcessRecurringTasksResult)
def process_recurring_tasks(
    request: Optional[schemas.ProcessRecurringTasks] = Body(None),
    current_user: User = Depends(get_current_admin),
    service: RecurringTaskService = Depends(get_recurring_task_service),
):
    """
    Run a materialization pass now (admin only).

    With dry_run the would-be tasks are returned and nothing is written.
    """
    request = request or schemas.ProcessRecurringTasks()
    logger.info(
        f"Manual recurring task processing by {current_user.email}: "
        f"dry_run={request.dry_run}, max_tasks={request.max_tasks}, ids={request.recurring_task_ids}"
    )
    try:
        batch = service.process(request)
    except InfrastructureError as e:
        logger.error(f"Recurring task processing aborted: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Task store unavailable, processing did not complete",
        )
    return batch_to_schema(batch)


@router.get("/{recurring_task_id}", response_model=schemas.RecurringTask)
def get_recurring_task(
    recurring_task_id: int,
    current_user: User = Depends(get_current_user),
    service: RecurringTaskService = Depends(get_recurring_task_service),
):
    return to_schema(service.get(current_user, recurring_task_id))


@router.put("/{recurring_task_id}", response_model=schemas.RecurringTask)
def update_recurring_task(
    recurring_task_id: int,
    payload: schemas.RecurringTaskUpdate,
    current_user: User = Depends(get_current_user),
    service: RecurringTaskService = Depends(get_recurring_task_service),
):
    return to_schema(service.update(current_user, recurring_task_id, payload))


@router.delete("/{recurring_task_id}")
def delete_recurring_task(
    recurring_task_id: int,
    delete_generated_tasks: bool = Query(False, description="Also delete tasks generated by this definition"),
    current_user: User = Depends(get_current_user),
    service: RecurringTaskService = Depends(get_recurring_task_service),
):
    return service.delete(current_user, recurring_task_id, delete_generated_tasks)


@router.patch("/{recurring_task_id}/toggle-active", response_model=schemas.RecurringTask)
def toggle_recurring_task(
    recurring_task_id: int,
    current_user: User = Depends(get_current_user),
    service: RecurringTaskService = Depends(get_recurring_task_service),
):
    return to_schema(service.toggle_active(current_user, recurring_task_id))


@router.post("/{recurring_task_id}/pause", response_model=schemas.RecurringTask)
def pause_recurring_task(
    recurring_task_id: int,
    payload: Optional[schemas.PauseRecurringTask] = Body(None),
    current_user: User = Depends(get_current_user),
    service: RecurringTaskService = Depends(get_recurring_task_service),
):
    """Pause until pause_until (resumed automatically by the next pass after it) or until resumed."""
    return to_schema(service.pause(current_user, recurring_task_id, payload or schemas.PauseRecurringTask()))


@router.post("/{recurring_task_id}/resume", response_model=schemas.RecurringTask)
def resume_recurring_task(
    recurring_task_id: int,
    current_user: User = Depends(get_current_user),
    service: RecurringTaskService = Depends(get_recurring_task_service),
):
    return to_schema(service.resume(current_user, recurring_task_id))


@router.post("/{recurring_task_id}/duplicate", response_model=schemas.RecurringTask, status_code=status.HTTP_201_CREATED)
def duplicate_recurring_task(
    recurring_task_id: int,
    payload: Optional[schemas.DuplicateRecurringTask] = Body(None),
    current_user: User = Depends(get_current_user),
    service: RecurringTaskService = Depends(get_recurring_task_service),
):
    return to_schema(service.duplicate(current_user, recurring_task_id, payload))


@router.get("/{recurring_task_id}/occurrences", response_model=schemas.Occurrences)
def upcoming_occurrences(
    recurring_task_id: int,
    count: int = Query(10, ge=1, le=100),
    from_date: Optional[datetime] = Query(None, description="Defaults to now"),
    to_date: Optional[datetime] = Query(None),
    current_user: User = Depends(get_current_user),
    service: RecurringTaskService = Depends(get_recurring_task_service),
):
    """Preview upcoming occurrences; no tasks are created."""
    if from_date and to_date and ensure_utc(to_date) < ensure_utc(from_date):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="to_date must not be before from_date")
    values = service.occurrences(current_user, recurring_task_id, count, from_date, to_date)
    return schemas.Occurrences(recurring_task_id=recurring_task_id, occurrences=values)
