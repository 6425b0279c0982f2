"""
Project Service records construction expenses and milestones, suggests expense
categories (via a language model with a keyword fallback), and keeps each
project's milestone order dense across appends, moves and deletes.
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy.orm import Session

SRC_DIR = Path(__file__).resolve().parent
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

SERVICES_ROOT = SRC_DIR.parents[1]
if str(SERVICES_ROOT) not in sys.path:
    sys.path.insert(0, str(SERVICES_ROOT))

from shared.observability.telemetry import (  # noqa: E402
    CORRELATION_ID_HEADER,
    bind_request_context,
    ensure_request_id,
    reset_request_context,
    resolve_actor_id,
    setup_telemetry,
)
from shared.provider_settings import ProviderSettings, ProviderSettingsError, load_provider_settings  # noqa: E402

from batch_categorizer import BatchItem, categorize_batch  # noqa: E402
from categorization_provider import (  # noqa: E402
    CategorizationValidationError,
    build_categorization_provider,
    categorize_expense,
)
from expense_category import ExpenseCategory, should_auto_apply  # noqa: E402
from expense_ledger import ExpenseApprovalError, ExpenseNotFoundError, resolve_category  # noqa: E402
from middleware.rate_limit import (  # noqa: E402
    SimpleRateLimiter,
    build_default_rate_limiter,
    is_rate_limited_path,
    rate_limit_key,
)
from milestone_sequencer import (  # noqa: E402
    MilestoneNotFoundError,
    MilestoneOrderError,
    MilestonePriority,
    MilestoneScheduleError,
    MilestoneSequencer,
    MilestoneStatus,
    derive_display_status,
)
from persistence.database import get_session, init_db  # noqa: E402
from persistence.models import Expense, Milestone, Project  # noqa: E402
from persistence.repository import (  # noqa: E402
    ExpenseRepository,
    MilestoneRepository,
    ProjectNotFoundError,
    ProjectRepository,
    ProjectStatus,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Project Service")
setup_telemetry(app, service_name="project-service")
app.state.rate_limiter = build_default_rate_limiter()


def _load_categorizer_settings() -> ProviderSettings:
    return load_provider_settings(
        provider_env="CATEGORIZER_PROVIDER",
        timeout_env="CATEGORIZER_TIMEOUT_SECONDS",
        temperature_env="CATEGORIZER_TEMPERATURE",
        max_tokens_env="CATEGORIZER_MAX_TOKENS",
    )


try:
    CATEGORIZER_SETTINGS = _load_categorizer_settings()
except ProviderSettingsError as exc:
    logger.error("Failed to load categorizer settings: %s", exc)
    raise


def _initialize_categorizer():
    provider_name = CATEGORIZER_SETTINGS.provider_name
    try:
        return build_categorization_provider(provider_name, settings=CATEGORIZER_SETTINGS)
    except ValueError as exc:
        logger.error("Unsupported categorization provider '%s'", provider_name)
        raise RuntimeError(f"Unsupported categorization provider '{provider_name}'") from exc


CATEGORIZER = _initialize_categorizer()


def reload_categorizer_for_tests() -> None:
    """
    Refresh categorizer wiring after tests mutate environment variables.
    """

    global CATEGORIZER_SETTINGS
    global CATEGORIZER

    CATEGORIZER_SETTINGS = _load_categorizer_settings()
    CATEGORIZER = _initialize_categorizer()


DEFAULT_CORS_ORIGINS: List[str] = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]

CORS_ENV_KEYS = (
    "PROJECT_SERVICE_CORS_ORIGINS",
    "CORS_ORIGINS",
)


def _resolve_cors_origins() -> List[str]:
    """
    Determine which origins are allowed to call the service.

    Accepts a comma-separated list via any env var in `CORS_ENV_KEYS` and
    falls back to localhost dev-server origins.
    """

    for key in CORS_ENV_KEYS:
        raw_value = os.getenv(key)
        if not raw_value:
            continue
        candidates = [origin.strip() for origin in raw_value.split(",")]
        origins = [origin for origin in candidates if origin]
        if origins:
            # FastAPI expects ["*"] instead of mixing '*' with explicit origins.
            if any(origin == "*" for origin in origins):
                return ["*"]
            return origins
    return DEFAULT_CORS_ORIGINS


def error_response(status_code: int, error_code: str, details: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error_code, "details": details},
    )


def _client_ip(request: Request) -> str | None:
    client = request.client
    if client:
        return client.host
    return None


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = ensure_request_id(request)
    token = bind_request_context(request_id, resolve_actor_id(request))
    try:
        response = await call_next(request)
        response.headers.setdefault(CORRELATION_ID_HEADER, request_id)
        return response
    finally:
        reset_request_context(token)


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    if not is_rate_limited_path(request.url.path):
        return await call_next(request)

    limiter: SimpleRateLimiter = app.state.rate_limiter
    client_id = rate_limit_key(resolve_actor_id(request), _client_ip(request))
    allowed, retry_after = await limiter.allow(client_id)
    if allowed:
        return await call_next(request)

    retry_after_header = str(max(1, int(retry_after or 1)))
    logger.warning(
        {
            "event": "rate_limited",
            "request_id": getattr(request.state, "request_id", None),
            "client_id": client_id,
            "path": request.url.path,
            "retry_after_seconds": retry_after,
        }
    )
    response = error_response(
        429,
        "rate_limit_exceeded",
        "Too many categorization requests. Please retry shortly.",
    )
    response.headers["Retry-After"] = retry_after_header
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=_resolve_cors_origins(),
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=False,
)


@app.exception_handler(RequestValidationError)
async def handle_request_validation(_request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(400, "invalid_request", jsonable_encoder(exc.errors()))


@app.exception_handler(CategorizationValidationError)
async def handle_categorization_validation(_request: Request, exc: CategorizationValidationError) -> JSONResponse:
    return error_response(400, "invalid_categorization_request", str(exc))


@app.exception_handler(MilestoneOrderError)
async def handle_milestone_order(_request: Request, exc: MilestoneOrderError) -> JSONResponse:
    return error_response(400, "invalid_milestone_order", str(exc))


@app.exception_handler(MilestoneScheduleError)
async def handle_milestone_schedule(_request: Request, exc: MilestoneScheduleError) -> JSONResponse:
    return error_response(400, "invalid_milestone_schedule", str(exc))


@app.exception_handler(MilestoneNotFoundError)
async def handle_milestone_not_found(_request: Request, exc: MilestoneNotFoundError) -> JSONResponse:
    return error_response(404, "milestone_not_found", str(exc))


@app.exception_handler(ExpenseNotFoundError)
async def handle_expense_not_found(_request: Request, exc: ExpenseNotFoundError) -> JSONResponse:
    return error_response(404, "expense_not_found", str(exc))


@app.exception_handler(ProjectNotFoundError)
async def handle_project_not_found(_request: Request, exc: ProjectNotFoundError) -> JSONResponse:
    return error_response(404, "project_not_found", str(exc))


@app.exception_handler(ExpenseApprovalError)
async def handle_expense_approval(request: Request, exc: ExpenseApprovalError) -> JSONResponse:
    logger.warning(
        {
            "event": "expense_approval_rejected",
            "request_id": getattr(request.state, "request_id", None),
            "reason": exc.error_code,
        }
    )
    return error_response(exc.status_code, exc.error_code, str(exc))


@app.on_event("startup")
def on_startup() -> None:
    """Initialize persistence before serving requests."""
    init_db()


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _money(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


def _project_to_dict(project: Project) -> Dict[str, Any]:
    return {
        "id": project.id,
        "name": project.name,
        "description": project.description,
        "status": project.status,
        "budget": _money(project.budget),
        "start_date": _iso(project.start_date),
        "end_date": _iso(project.end_date),
        "manager_id": project.manager_id,
        "created_at": _iso(project.created_at),
        "updated_at": _iso(project.updated_at),
    }


def _expense_to_dict(expense: Expense) -> Dict[str, Any]:
    return {
        "id": expense.id,
        "project_id": expense.project_id,
        "category": expense.category,
        "description": expense.description,
        "vendor": expense.vendor,
        "amount": _money(expense.amount),
        "tax_amount": _money(expense.tax_amount),
        "total_amount": _money(expense.total_amount),
        "date_incurred": _iso(expense.date_incurred),
        "submitted_by": expense.submitted_by,
        "is_approved": expense.is_approved,
        "approved_by": expense.approved_by,
        "approved_at": _iso(expense.approved_at),
        "created_at": _iso(expense.created_at),
        "updated_at": _iso(expense.updated_at),
    }


def _milestone_to_dict(milestone: Milestone, now: datetime | None = None) -> Dict[str, Any]:
    return {
        "id": milestone.id,
        "project_id": milestone.project_id,
        "title": milestone.title,
        "description": milestone.description,
        "start_date": _iso(milestone.start_date),
        "end_date": _iso(milestone.end_date),
        "status": milestone.status,
        "display_status": derive_display_status(milestone.status, milestone.end_date, now),
        "priority": milestone.priority,
        "progress": milestone.progress,
        "position": milestone.position,
        "assigned_to": milestone.assigned_to,
        "dependencies": list(milestone.dependencies or []),
        "color": milestone.color,
        "created_at": _iso(milestone.created_at),
        "updated_at": _iso(milestone.updated_at),
    }


class ProjectPayload(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    status: ProjectStatus = ProjectStatus.ACTIVE
    budget: Optional[Decimal] = Field(default=None, ge=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("name must not be blank")
        return cleaned


class ExpensePayload(BaseModel):
    project_id: str
    description: str = Field(min_length=1)
    vendor: Optional[str] = None
    amount: Decimal = Field(ge=0)
    tax_amount: Decimal = Field(default=Decimal("0"), ge=0)
    category: Optional[ExpenseCategory] = None
    date_incurred: Optional[datetime] = None
    auto_categorize: bool = False

    @field_validator("description")
    @classmethod
    def _strip_description(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("description must not be blank")
        return cleaned


def _reject_explicit_nulls(payload: BaseModel, required: frozenset[str]) -> None:
    nulled = sorted(name for name in payload.model_fields_set & required if getattr(payload, name) is None)
    if nulled:
        raise ValueError(f"{', '.join(nulled)} cannot be cleared")


class ExpenseUpdatePayload(BaseModel):
    category: Optional[ExpenseCategory] = None
    description: Optional[str] = Field(default=None, min_length=1)
    vendor: Optional[str] = None
    amount: Optional[Decimal] = Field(default=None, ge=0)
    tax_amount: Optional[Decimal] = Field(default=None, ge=0)
    date_incurred: Optional[datetime] = None

    @field_validator("description")
    @classmethod
    def _strip_description(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("description must not be blank")
        return cleaned

    @model_validator(mode="after")
    def _keep_required_fields(self) -> "ExpenseUpdatePayload":
        _reject_explicit_nulls(self, frozenset({"category", "description", "amount", "tax_amount", "date_incurred"}))
        return self


class CategorizePayload(BaseModel):
    description: str
    vendor: Optional[str] = None
    amount: Optional[float] = None


class BatchExpensePayload(BaseModel):
    id: str
    description: str
    vendor: Optional[str] = None
    amount: Optional[float] = None


class BatchCategorizePayload(BaseModel):
    expenses: List[BatchExpensePayload]


class MilestonePayload(BaseModel):
    project_id: str
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    start_date: datetime
    end_date: datetime
    status: MilestoneStatus = MilestoneStatus.PENDING
    priority: MilestonePriority = MilestonePriority.MEDIUM
    progress: int = Field(default=0, ge=0, le=100)
    assigned_to: Optional[str] = None
    dependencies: List[str] = Field(default_factory=list)
    color: str = Field(default="#3b82f6", pattern=r"^#[0-9a-fA-F]{6}$")


class MilestoneUpdatePayload(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    status: Optional[MilestoneStatus] = None
    priority: Optional[MilestonePriority] = None
    progress: Optional[int] = Field(default=None, ge=0, le=100)
    assigned_to: Optional[str] = None
    dependencies: Optional[List[str]] = None
    color: Optional[str] = Field(default=None, pattern=r"^#[0-9a-fA-F]{6}$")

    @model_validator(mode="after")
    def _keep_required_fields(self) -> "MilestoneUpdatePayload":
        _reject_explicit_nulls(
            self, frozenset({"title", "start_date", "end_date", "status", "priority", "progress", "color"})
        )
        return self


class ReorderPayload(BaseModel):
    project_id: str
    milestone_id: str
    target_index: int


@app.get("/health")
def health_check() -> dict:
    """Reports service uptime plus which categorization provider is active."""
    return {"status": "ok", "service": "project-service", "categorizer": CATEGORIZER.name}


@app.post("/projects", status_code=201)
def create_project(
    payload: ProjectPayload,
    request: Request,
    db: Session = Depends(get_session),
) -> Dict[str, Any]:
    actor_id = resolve_actor_id(request)
    repo = ProjectRepository(db, actor_id=actor_id, source_ip=_client_ip(request))
    values = payload.model_dump()
    values["manager_id"] = actor_id
    project = repo.create_project(values)
    logger.info({"event": "project_created", "project_id": project.id})
    return _project_to_dict(project)


@app.get("/projects")
def list_projects(db: Session = Depends(get_session)) -> Dict[str, Any]:
    projects = ProjectRepository(db).list_projects()
    return {"projects": [_project_to_dict(project) for project in projects]}


@app.get("/projects/{project_id}")
def get_project(project_id: str, db: Session = Depends(get_session)) -> Dict[str, Any]:
    project = ProjectRepository(db).require_project(project_id)
    return _project_to_dict(project)


@app.post("/expenses", status_code=201, response_model=None)
def create_expense(
    payload: ExpensePayload,
    request: Request,
    db: Session = Depends(get_session),
) -> Dict[str, Any] | JSONResponse:
    """
    Record an expense. With `auto_categorize` and no explicit category, the
    configured categorizer is asked; its suggestion is applied only when it is
    confident enough, otherwise it is returned for the submitter to confirm.
    """
    actor_id = resolve_actor_id(request)
    if actor_id is None:
        return error_response(401, "actor_required", "The x-user-id header is required to submit expenses.")

    ProjectRepository(db).require_project(payload.project_id)
    # The model call can take seconds; do not hold the database lock across it.
    db.commit()
    resolution = resolve_category(
        CATEGORIZER,
        description=payload.description,
        vendor=payload.vendor,
        amount=payload.amount,
        category=payload.category,
        auto_categorize=payload.auto_categorize,
    )

    repo = ExpenseRepository(db, actor_id=actor_id, source_ip=_client_ip(request))
    values = payload.model_dump(exclude={"project_id", "auto_categorize", "category"})
    values["category"] = resolution.category
    details: Dict[str, Any] = {"auto_applied": resolution.auto_applied}
    if resolution.suggestion is not None:
        details["suggestion_source"] = resolution.suggestion.source
    expense = repo.create_expense(payload.project_id, values, submitted_by=actor_id, details=details)

    logger.info(
        {
            "event": "expense_created",
            "expense_id": expense.id,
            "project_id": expense.project_id,
            "category": expense.category,
            "auto_applied": resolution.auto_applied,
        }
    )
    return {
        "expense": _expense_to_dict(expense),
        "suggestion": resolution.suggestion.to_dict() if resolution.suggestion else None,
        "auto_applied": resolution.auto_applied,
    }


@app.get("/expenses")
def list_expenses(
    project_id: str = Query(...),
    db: Session = Depends(get_session),
) -> Dict[str, Any]:
    expenses = ExpenseRepository(db).list_for_project(project_id)
    return {"expenses": [_expense_to_dict(expense) for expense in expenses]}


@app.patch("/expenses/{expense_id}")
def update_expense(
    expense_id: str,
    payload: ExpenseUpdatePayload,
    request: Request,
    db: Session = Depends(get_session),
) -> Dict[str, Any]:
    repo = ExpenseRepository(db, actor_id=resolve_actor_id(request), source_ip=_client_ip(request))
    expense = repo.require_expense(expense_id)
    changes = payload.model_dump(exclude_unset=True)
    expense = repo.update_expense(expense, changes)
    logger.info({"event": "expense_updated", "expense_id": expense.id, "fields": sorted(changes.keys())})
    return _expense_to_dict(expense)


@app.post("/expenses/{expense_id}/approve", response_model=None)
def approve_expense(
    expense_id: str,
    request: Request,
    db: Session = Depends(get_session),
) -> Dict[str, Any] | JSONResponse:
    approver_id = resolve_actor_id(request)
    if approver_id is None:
        return error_response(401, "actor_required", "The x-user-id header is required to approve expenses.")

    repo = ExpenseRepository(db, actor_id=approver_id, source_ip=_client_ip(request))
    expense = repo.approve_expense(expense_id, approver_id)
    logger.info({"event": "expense_approved", "expense_id": expense.id, "project_id": expense.project_id})
    return _expense_to_dict(expense)


@app.post("/expenses/categorize")
def categorize(payload: CategorizePayload) -> Dict[str, Any]:
    """Suggest a category for a single expense description."""
    suggestion = categorize_expense(CATEGORIZER, payload.description, payload.vendor, payload.amount)
    return {**suggestion.to_dict(), "auto_apply": should_auto_apply(suggestion)}


@app.post("/expenses/categorize/batch")
async def categorize_many(payload: BatchCategorizePayload) -> Dict[str, Any]:
    """
    Suggest categories for up to 50 expenses. Items that could not be
    categorized are left out of `results`.
    """
    items = [
        BatchItem(id=item.id, description=item.description, vendor=item.vendor, amount=item.amount)
        for item in payload.expenses
    ]
    results = await categorize_batch(CATEGORIZER, items)
    return {
        "results": [{"id": result.id, "suggestion": result.suggestion.to_dict()} for result in results],
        "requested": len(items),
        "categorized": len(results),
    }


@app.post("/milestones", status_code=201)
def create_milestone(
    payload: MilestonePayload,
    request: Request,
    db: Session = Depends(get_session),
) -> Dict[str, Any]:
    repo = MilestoneRepository(db, actor_id=resolve_actor_id(request), source_ip=_client_ip(request))
    values = payload.model_dump(exclude={"project_id"})
    milestone = MilestoneSequencer(repo).append(payload.project_id, values)
    return _milestone_to_dict(repo.refresh(milestone))


@app.get("/milestones")
def list_milestones(
    project_id: str = Query(...),
    db: Session = Depends(get_session),
) -> Dict[str, Any]:
    milestones = MilestoneRepository(db).list_for_project(project_id)
    now = datetime.now(timezone.utc)
    return {"milestones": [_milestone_to_dict(milestone, now) for milestone in milestones]}


@app.patch("/milestones/{milestone_id}")
def update_milestone(
    milestone_id: str,
    payload: MilestoneUpdatePayload,
    request: Request,
    db: Session = Depends(get_session),
) -> Dict[str, Any]:
    repo = MilestoneRepository(db, actor_id=resolve_actor_id(request), source_ip=_client_ip(request))
    milestone = repo.require_milestone(milestone_id)
    changes = payload.model_dump(exclude_unset=True)
    milestone = repo.update_milestone(milestone, changes)
    return _milestone_to_dict(milestone)


@app.delete("/milestones/{milestone_id}")
def delete_milestone(
    milestone_id: str,
    request: Request,
    db: Session = Depends(get_session),
) -> Dict[str, Any]:
    repo = MilestoneRepository(db, actor_id=resolve_actor_id(request), source_ip=_client_ip(request))
    milestone = repo.require_milestone(milestone_id)
    project_id = milestone.project_id
    plan = MilestoneSequencer(repo).remove(project_id, milestone_id)
    return {"id": milestone_id, "deleted": True, "ordering": plan.ordering}


@app.post("/milestones/reorder")
def reorder_milestones(
    payload: ReorderPayload,
    request: Request,
    db: Session = Depends(get_session),
) -> Dict[str, Any]:
    """Move one milestone to `target_index`; only milestones whose position changed are written."""
    repo = MilestoneRepository(db, actor_id=resolve_actor_id(request), source_ip=_client_ip(request))
    plan = MilestoneSequencer(repo).reorder(payload.project_id, payload.milestone_id, payload.target_index)
    return {
        "project_id": payload.project_id,
        "ordering": plan.ordering,
        "updates": plan.updates,
    }
