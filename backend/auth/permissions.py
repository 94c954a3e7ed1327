"""
Project, team and workspace permission checks.

Project roles resolve from, in order:
1. Global admin role (bypasses all checks)
2. Team membership, when the project belongs to a team
   (team admin -> project owner, team member -> project editor).
   Team projects do not fall back to direct membership.
3. Direct project membership (personal projects)

The require_* helpers report "no access" as 404 so callers cannot discover
the existence of resources they cannot see.
"""

import logging
from typing import List, Optional

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from models import Project, ProjectMember, Team, TeamMember, User, Workspace

logger = logging.getLogger(__name__)

PROJECT_ROLE_LEVELS = {"viewer": 0, "editor": 1, "owner": 2, "admin": 3}
TEAM_ROLE_LEVELS = {"member": 0, "admin": 1}
TEAM_TO_PROJECT_ROLE = {"admin": "owner", "member": "editor"}


def is_admin(user: User) -> bool:
    return user.role == "admin"


def effective_project_role(user: User, project: Project, db: Session) -> Optional[str]:
    """
    Resolve the role a user holds on a project, or None when they have no access.
    """
    if is_admin(user):
        return "admin"

    if project.team_id:
        team_membership = (
            db.query(TeamMember)
            .filter(TeamMember.team_id == project.team_id, TeamMember.user_id == user.id)
            .first()
        )
        if team_membership is None:
            logger.debug(f"User {user.id} is not in team {project.team_id} owning project {project.id}")
            return None
        return TEAM_TO_PROJECT_ROLE.get(team_membership.role, "editor")

    membership = (
        db.query(ProjectMember)
        .filter(ProjectMember.project_id == project.id, ProjectMember.user_id == user.id)
        .first()
    )
    return membership.role if membership else None


def check_project_permission(user: User, project_id: int, required_role: str, db: Session) -> bool:
    """
    Check if a user has at least the required role on a project.

    Example:
        >>> if not check_project_permission(user, 42, "editor", db):
        ...     raise HTTPException(status_code=403, detail="Access denied")
    """
    project = db.query(Project).filter(Project.id == project_id).first()
    if project is None:
        return False

    role = effective_project_role(user, project, db)
    if role is None:
        logger.info(f"User {user.id} has no access to project {project_id}")
        return False

    granted = PROJECT_ROLE_LEVELS.get(role, 0) >= PROJECT_ROLE_LEVELS.get(required_role, 0)
    if not granted:
        logger.info(f"User {user.id} has role '{role}' in project {project_id}, but '{required_role}' is required")
    return granted


def has_project_access(user: User, project_id: int, db: Session) -> bool:
    return check_project_permission(user, project_id, "viewer", db)


def require_project_permission(user: User, project_id: int, required_role: str, db: Session) -> Project:
    """
    Require a role on a project, or raise.

    Returns:
        The project

    Raises:
        HTTPException: 404 if the project does not exist or the user has no access,
            403 if the user has access but an insufficient role
    """
    project = db.query(Project).filter(Project.id == project_id).first()
    role = effective_project_role(user, project, db) if project else None
    if role is None:
        logger.info(f"Project {project_id} not found or not visible to user {user.id}")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")

    if PROJECT_ROLE_LEVELS.get(role, 0) < PROJECT_ROLE_LEVELS.get(required_role, 0):
        logger.info(f"User {user.id} has insufficient permissions for project {project_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Insufficient permissions. Required role: {required_role}",
        )
    return project


def get_user_projects(user: User, db: Session) -> List[int]:
    """IDs of all projects the user can see, via direct or team membership."""
    if is_admin(user):
        return [p.id for p in db.query(Project.id).all()]

    project_ids = {
        m.project_id
        for m in db.query(ProjectMember.project_id).filter(ProjectMember.user_id == user.id).all()
    }
    team_ids = [tm.team_id for tm in db.query(TeamMember.team_id).filter(TeamMember.user_id == user.id).all()]
    if team_ids:
        project_ids.update(p.id for p in db.query(Project.id).filter(Project.team_id.in_(team_ids)).all())

    logger.debug(f"User {user.id} has access to {len(project_ids)} projects")
    return list(project_ids)


def check_team_permission(user: User, team_id: int, required_role: str, db: Session) -> bool:
    if is_admin(user):
        return True

    membership = (
        db.query(TeamMember)
        .filter(TeamMember.team_id == team_id, TeamMember.user_id == user.id)
        .first()
    )
    if membership is None:
        logger.info(f"User {user.id} has no membership in team {team_id}")
        return False
    return TEAM_ROLE_LEVELS.get(membership.role, 0) >= TEAM_ROLE_LEVELS.get(required_role, 0)


def require_team_permission(user: User, team_id: int, required_role: str, db: Session) -> Team:
    """
    Require a role in a team, or raise 404 (no access) / 403 (insufficient role).
    """
    team = db.query(Team).filter(Team.id == team_id).first()
    if team is None or not check_team_permission(user, team_id, "member", db):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Team not found")

    if not check_team_permission(user, team_id, required_role, db):
        logger.info(f"User {user.id} has insufficient permissions for team {team_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Insufficient permissions. Required role: {required_role}",
        )
    return team


def require_workspace_access(user: User, workspace_id: int, db: Session) -> Workspace:
    """Workspaces are visible to their owner and to global admins."""
    workspace = db.query(Workspace).filter(Workspace.id == workspace_id).first()
    if workspace is None or (workspace.owner_id != user.id and not is_admin(user)):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Workspace not found")
    return workspace
