"""Persistence primitives for the project service."""

from persistence.database import (
    DB_URL_ENV_VAR,
    DEFAULT_DB_FILENAME,
    DEFAULT_DB_PATH,
    SessionLocal,
    build_engine,
    get_database_url,
    get_engine,
    init_db,
)
from persistence.models import AuditEvent, Base, Expense, Milestone, Project
from persistence.repository import (
    ExpenseRepository,
    MilestoneRepository,
    ProjectNotFoundError,
    ProjectRepository,
    ProjectStatus,
)

__all__ = [
    "AuditEvent",
    "Base",
    "DB_URL_ENV_VAR",
    "DEFAULT_DB_FILENAME",
    "DEFAULT_DB_PATH",
    "Expense",
    "ExpenseRepository",
    "Milestone",
    "MilestoneRepository",
    "Project",
    "ProjectNotFoundError",
    "ProjectRepository",
    "ProjectStatus",
    "SessionLocal",
    "build_engine",
    "get_database_url",
    "get_engine",
    "init_db",
]
