from fastapi import FastAPI, HTTPException, Depends, Query
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session
from sqlalchemy import or_
from typing import List, Optional
import logging
import os
import sys

from config import load_settings
from database import Database, get_db
import models
import schemas
from activity import create_notification, create_task_event
from auth.routes import router as auth_router
from auth.dependencies import get_current_user, get_current_admin
from auth.permissions import (
    get_user_projects,
    has_project_access,
    is_admin,
    require_project_permission,
    require_team_permission,
)
from recurrence.jobs import RecurringTaskJob
from recurrence.routes import router as recurring_tasks_router

settings = load_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Task Manager API",
    description="Projects, tasks, and recurring task definitions",
    version="1.0.0"
)
app.state.settings = settings
app.state.database = Database(settings.database_url)
app.state.recurring_job = None

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router)
app.include_router(recurring_tasks_router)


# ============== Lifecycle ==============

def ensure_admin_user(db: Session) -> None:
    """
    Ensure an admin account exists.

    Uses ADMIN_EMAIL / ADMIN_PASSWORD if set, otherwise admin@example.com /
    admin123 for local development. Production-like environments refuse to
    start with the default password.
    """
    from auth.security import hash_password

    admin_email = os.getenv("ADMIN_EMAIL", "admin@example.com").lower()
    if db.query(models.User).filter(models.User.email == admin_email).first():
        logger.info(f"Admin user already exists (email: {admin_email})")
        return

    admin_password = os.getenv("ADMIN_PASSWORD", "admin123")
    is_default_password = admin_password.strip() == "admin123"
    if settings.is_production_like and (is_default_password or len(admin_password.strip()) < 8):
        logger.error("❌ STARTUP FAILED: a secure ADMIN_PASSWORD (8+ chars, not the default) is required in production/staging")
        sys.exit(1)

    db.add(models.User(
        name="Admin",
        email=admin_email,
        role="admin",
        password_hash=hash_password(admin_password),
        is_active=True
    ))
    db.commit()

    if is_default_password:
        logger.warning(
            f"⚠️  Admin user created with DEFAULT password 'admin123' ({admin_email}). "
            "Set ADMIN_PASSWORD for anything but local development."
        )
    else:
        logger.info(f"✅ Admin user created: {admin_email}")


@app.on_event("startup")
def startup():
    database: Database = app.state.database
    database.open()

    db = database.session()
    try:
        ensure_admin_user(db)
    finally:
        db.close()

    if settings.enable_jobs:
        job = RecurringTaskJob(
            database,
            interval_seconds=settings.recurring_tasks_interval_seconds,
            max_tasks=settings.recurring_max_tasks_per_batch,
            max_occurrences_per_pass=settings.recurring_max_occurrences_per_pass,
        )
        job.start()
        app.state.recurring_job = job
    else:
        logger.info("Background jobs disabled (ENABLE_JOBS not set)")


@app.on_event("shutdown")
def shutdown():
    job: Optional[RecurringTaskJob] = app.state.recurring_job
    if job is not None:
        job.stop()
        app.state.recurring_job = None
    app.state.database.close()


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy"}


# ============== Users ==============

@app.get("/api/users", response_model=List[schemas.UserSummary])
def list_users(
    current_user: models.User = Depends(get_current_admin),
    db: Session = Depends(get_db)
):
    """List all users (admin only)."""
    logger.debug(f"Admin {current_user.id} listing all users")
    return db.query(models.User).order_by(models.User.id).all()


@app.get("/api/users/{user_id}", response_model=schemas.UserSummary)
def get_user(
    user_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get a user (admin or self)."""
    if current_user.id != user_id and not is_admin(current_user):
        raise HTTPException(status_code=404, detail="User not found")

    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


# ============== Teams ==============

@app.post("/api/teams", response_model=schemas.Team, status_code=201)
def create_team(
    team: schemas.TeamCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Create a new team and add creator as admin."""
    db_team = models.Team(name=team.name, description=team.description, created_by=current_user.id)
    db.add(db_team)
    db.flush()

    db.add(models.TeamMember(team_id=db_team.id, user_id=current_user.id, role="admin"))
    db.commit()
    db.refresh(db_team)

    logger.info(f"Team created: {db_team.name} (ID: {db_team.id}) by user {current_user.id}")
    return db_team


@app.get("/api/teams", response_model=List[schemas.Team])
def list_teams(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List teams the current user belongs to (all teams for admins)."""
    query = db.query(models.Team)
    if not is_admin(current_user):
        team_ids = [
            t.team_id for t in
            db.query(models.TeamMember.team_id).filter(models.TeamMember.user_id == current_user.id).all()
        ]
        query = query.filter(models.Team.id.in_(team_ids))
    return query.order_by(models.Team.id).all()


@app.post("/api/teams/{team_id}/members", response_model=schemas.TeamMember, status_code=201)
def add_team_member(
    team_id: int,
    member: schemas.TeamMemberAdd,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Add a member to a team (requires team admin)."""
    require_team_permission(current_user, team_id, "admin", db)

    if not db.query(models.User).filter(models.User.id == member.user_id).first():
        raise HTTPException(status_code=404, detail="User not found")

    existing = (
        db.query(models.TeamMember)
        .filter(models.TeamMember.team_id == team_id, models.TeamMember.user_id == member.user_id)
        .first()
    )
    if existing:
        raise HTTPException(status_code=400, detail="User is already a member of this team")

    db_member = models.TeamMember(team_id=team_id, user_id=member.user_id, role=member.role)
    db.add(db_member)
    db.commit()
    db.refresh(db_member)

    logger.info(f"User {member.user_id} added to team {team_id} with role {member.role}")
    return db_member


# ============== Workspaces ==============

@app.post("/api/workspaces", response_model=schemas.Workspace, status_code=201)
def create_workspace(
    workspace: schemas.WorkspaceCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    db_workspace = models.Workspace(name=workspace.name, description=workspace.description, owner_id=current_user.id)
    db.add(db_workspace)
    db.commit()
    db.refresh(db_workspace)
    logger.info(f"Workspace created: {db_workspace.name} (ID: {db_workspace.id})")
    return db_workspace


@app.get("/api/workspaces", response_model=List[schemas.Workspace])
def list_workspaces(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    query = db.query(models.Workspace)
    if not is_admin(current_user):
        query = query.filter(models.Workspace.owner_id == current_user.id)
    return query.order_by(models.Workspace.id).all()


# ============== Projects ==============

@app.get("/api/projects", response_model=List[schemas.Project])
def list_projects(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List projects the current user can access."""
    project_ids = get_user_projects(current_user, db)
    return db.query(models.Project).filter(models.Project.id.in_(project_ids)).order_by(models.Project.id).all()


@app.post("/api/projects", response_model=schemas.Project, status_code=201)
def create_project(
    project: schemas.ProjectCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Create a project. The creator becomes its owner; team projects need team membership."""
    if project.team_id is not None:
        require_team_permission(current_user, project.team_id, "member", db)
    if project.workspace_id is not None:
        workspace = db.query(models.Workspace).filter(models.Workspace.id == project.workspace_id).first()
        if not workspace or (workspace.owner_id != current_user.id and not is_admin(current_user)):
            raise HTTPException(status_code=404, detail="Workspace not found")

    db_project = models.Project(**project.model_dump(), author_id=current_user.id)
    db.add(db_project)
    db.flush()
    db.add(models.ProjectMember(project_id=db_project.id, user_id=current_user.id, role="owner"))
    db.commit()
    db.refresh(db_project)

    logger.info(f"Project created: {db_project.name} (ID: {db_project.id}) by user {current_user.id}")
    return db_project


@app.get("/api/projects/{project_id}", response_model=schemas.Project)
def get_project(
    project_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return require_project_permission(current_user, project_id, "viewer", db)


# ============== Tasks ==============

def _task_or_404(task_id: int, current_user: models.User, db: Session, required_role: str = "viewer") -> models.Task:
    """
    Load a task the user may act on.

    Project tasks follow project permissions. Tasks without a project
    (generated from personal recurring tasks) belong to their owner/author.
    """
    task = db.query(models.Task).filter(models.Task.id == task_id).first()
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")

    if task.project_id is not None:
        require_project_permission(current_user, task.project_id, required_role, db)
    elif not is_admin(current_user) and current_user.id not in (task.owner_id, task.author_id):
        raise HTTPException(status_code=404, detail="Task not found")
    return task


@app.get("/api/tasks", response_model=schemas.TaskList)
def list_tasks(
    project_id: Optional[int] = Query(None),
    status: Optional[schemas.TaskStatus] = Query(None),
    recurring_task_id: Optional[int] = Query(None, description="Only tasks generated by this recurring task"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List tasks visible to the current user."""
    query = db.query(models.Task)

    if not is_admin(current_user):
        project_ids = get_user_projects(current_user, db)
        query = query.filter(or_(
            models.Task.project_id.in_(project_ids),
            models.Task.owner_id == current_user.id,
            models.Task.author_id == current_user.id,
        ))

    if project_id is not None:
        query = query.filter(models.Task.project_id == project_id)
    if status is not None:
        query = query.filter(models.Task.status == status)
    if recurring_task_id is not None:
        query = query.join(models.RecurringTaskInstance, models.RecurringTaskInstance.task_id == models.Task.id).filter(
            models.RecurringTaskInstance.recurring_task_id == recurring_task_id
        )

    total = query.count()
    items = (
        query.order_by(models.Task.due_date.asc(), models.Task.id.asc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    logger.debug(f"User {current_user.id} listed {len(items)} of {total} tasks")
    return schemas.TaskList(items=[schemas.Task.model_validate(t) for t in items], total=total, page=page, limit=limit)


@app.post("/api/tasks", response_model=schemas.Task, status_code=201)
def create_task(
    task: schemas.TaskCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Create a new task (requires editor access to project)."""
    logger.info(f"User {current_user.id} creating task: {task.title} in project {task.project_id}")
    require_project_permission(current_user, task.project_id, "editor", db)

    owner_id = task.owner_id if task.owner_id is not None else current_user.id
    if owner_id != current_user.id:
        owner = db.query(models.User).filter(models.User.id == owner_id).first()
        if not owner:
            raise HTTPException(status_code=404, detail=f"Owner with ID {owner_id} not found")
        if not has_project_access(owner, task.project_id, db):
            raise HTTPException(
                status_code=400,
                detail=f"Cannot assign task to user {owner.email}: user is not a member of this project"
            )

    task_data = task.model_dump()
    task_data["owner_id"] = owner_id
    # Always the authenticated user, never request data
    task_data["author_id"] = current_user.id

    db_task = models.Task(**task_data)
    db.add(db_task)
    db.commit()
    db.refresh(db_task)

    create_task_event(
        db=db,
        task_id=db_task.id,
        event_type=models.TaskEventType.task_created,
        actor_id=current_user.id,
        metadata={"title": db_task.title, "status": db_task.status.value, "priority": db_task.priority.value}
    )
    if owner_id != current_user.id:
        create_notification(
            db,
            user_id=owner_id,
            notification_type=models.NotificationType.task_assigned,
            title="Task Assigned",
            message=f'You have been assigned "{db_task.title}"',
            data={"task_id": db_task.id},
        )

    logger.info(f"Task created successfully: id={db_task.id}")
    return db_task


@app.get("/api/tasks/{task_id}", response_model=schemas.Task)
def get_task(
    task_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return _task_or_404(task_id, current_user, db)


@app.put("/api/tasks/{task_id}", response_model=schemas.Task)
def update_task(
    task_id: int,
    task_update: schemas.TaskUpdate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Update a task, recording one activity event per changed field."""
    db_task = _task_or_404(task_id, current_user, db, "editor")
    changes = task_update.model_dump(exclude_unset=True)

    for field, new_value in changes.items():
        old_value = getattr(db_task, field)
        if old_value == new_value:
            continue
        if field == "title" and new_value is None:
            continue
        setattr(db_task, field, new_value)

        if field == "status":
            event_type = models.TaskEventType.status_change
        elif field == "owner_id":
            event_type = models.TaskEventType.ownership_change
        else:
            event_type = models.TaskEventType.field_update

        create_task_event(
            db=db,
            task_id=db_task.id,
            event_type=event_type,
            actor_id=current_user.id,
            field_name=field,
            old_value=None if old_value is None else str(getattr(old_value, "value", old_value)),
            new_value=None if new_value is None else str(getattr(new_value, "value", new_value)),
            commit=False
        )

        if field == "owner_id" and new_value is not None and new_value != current_user.id:
            create_notification(
                db,
                user_id=new_value,
                notification_type=models.NotificationType.task_assigned,
                title="Task Assigned",
                message=f'You have been assigned "{db_task.title}"',
                data={"task_id": db_task.id},
                commit=False,
            )

    db.commit()
    db.refresh(db_task)
    logger.info(f"Task {task_id} updated: fields={sorted(changes)}")
    return db_task


@app.delete("/api/tasks/{task_id}")
def delete_task(
    task_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    db_task = _task_or_404(task_id, current_user, db, "editor")
    db.delete(db_task)
    db.commit()
    logger.info(f"Task {task_id} deleted by user {current_user.id}")
    return {"message": "Task deleted successfully"}


@app.get("/api/tasks/{task_id}/events", response_model=List[schemas.TaskEvent])
def get_task_events(
    task_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Activity timeline of a task, oldest first."""
    _task_or_404(task_id, current_user, db)
    return (
        db.query(models.TaskEvent)
        .filter(models.TaskEvent.task_id == task_id)
        .order_by(models.TaskEvent.created_at.asc(), models.TaskEvent.id.asc())
        .all()
    )


# ============== Notifications ==============

@app.get("/api/notifications", response_model=List[schemas.Notification])
def list_notifications(
    unread_only: bool = Query(False),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    query = db.query(models.Notification).filter(models.Notification.user_id == current_user.id)
    if unread_only:
        query = query.filter(models.Notification.is_read == False)  # noqa: E712
    return query.order_by(models.Notification.id.desc()).all()


@app.patch("/api/notifications/{notification_id}/read", response_model=schemas.Notification)
def mark_notification_read(
    notification_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    notification = (
        db.query(models.Notification)
        .filter(models.Notification.id == notification_id, models.Notification.user_id == current_user.id)
        .first()
    )
    if not notification:
        raise HTTPException(status_code=404, detail="Notification not found")

    notification.is_read = True
    db.commit()
    db.refresh(notification)
    return notification


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")), reload=not settings.is_production_like)
