"""FastAPI application factory and HTTP schemas for the mail scheduler.

This module provides the REST API interface of the scheduled dispatch
service. It includes:

- Pydantic models defining request/response schemas for all endpoints
- A factory function to create and configure the FastAPI application
- Authentication via API token in the X-API-Token header
- Translation of the error taxonomy into HTTP status codes

Error mapping:
    - ``WorkItemNotFound`` -> 404
    - ``InvalidTransition`` -> 409
    - ``RecordStoreUnavailable`` -> 503
    - duplicate dedupe key -> 200 with ``created: false`` (201 otherwise)

Example:
    Creating and running the API application::

        from mail_scheduler.core import MailScheduler
        from mail_scheduler.api import create_app

        scheduler = MailScheduler(settings)
        app = create_app(scheduler, api_token="secret-token")

        # Run with uvicorn
        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from datetime import datetime
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional
import logging

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel

from .core import MailScheduler
from .errors import InvalidTransition, MailSchedulerError, RecordStoreUnavailable, WorkItemNotFound
from .models import WorkItem, WorkItemCreate, WorkItemStatus

logger = logging.getLogger(__name__)

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)

_ERROR_STATUS = {
    WorkItemNotFound: status.HTTP_404_NOT_FOUND,
    InvalidTransition: status.HTTP_409_CONFLICT,
    RecordStoreUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


def get_service(request: Request) -> MailScheduler:
    svc = getattr(request.app.state, "service", None)
    if svc is None:
        raise HTTPException(500, "Service not initialized")
    return svc


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class ItemInfo(BaseModel):
    """Work item as exposed on queries, including ``last_error``."""
    id: str
    owner_id: str
    payload: Dict[str, Any]
    scheduled_at: datetime
    status: WorkItemStatus
    attempt_count: int
    last_error: Optional[str] = None
    dedupe_key: Optional[str] = None
    executed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_item(cls, item: WorkItem) -> "ItemInfo":
        return cls.model_validate(item.model_dump())


class ItemResponse(CommandStatus):
    item: ItemInfo


class SubmitResponse(ItemResponse):
    created: bool


class ItemsResponse(CommandStatus):
    items: List[ItemInfo]


class AuditEntry(BaseModel):
    id: int
    item_id: str
    status: str
    message: str
    created_at: str


class AuditResponse(CommandStatus):
    entries: List[AuditEntry]


class RateLimitResponse(CommandStatus):
    owner_id: str
    allowed: bool
    current: int
    limit: int
    reset_at: datetime
    window: str


class ResetRateLimitResponse(CommandStatus):
    removed: bool


class QueueStatsResponse(CommandStatus):
    jobs: Dict[str, int]
    items: Dict[str, int]
    inflight: int


class RecoverResponse(CommandStatus):
    requeued: int
    already_queued: int
    expired: int
    swept: int
    errors: List[str] = []


class RunNowResponse(CommandStatus):
    processed: int


def create_app(
    svc: MailScheduler,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`mail_scheduler.core.MailScheduler` that
        implements the business logic for each endpoint.
    api_token:
        Optional secret used to protect every endpoint except ``/health``.
        When provided, the ``X-API-Token`` header must match this value.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn or any ASGI
        server.
    """
    api = FastAPI(title="Mail Scheduler", lifespan=lifespan)
    api.state.api_token = api_token
    api.state.service = svc
    router = APIRouter(dependencies=[auth_dependency])

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Log validation errors with full details."""
        logger.error("Validation error on %s %s: %s", request.method, request.url.path, exc.errors())
        return JSONResponse(status_code=422, content={"detail": jsonable_errors(exc)})

    @api.exception_handler(MailSchedulerError)
    async def scheduler_exception_handler(request: Request, exc: MailSchedulerError):
        code = next(
            (http_status for err_type, http_status in _ERROR_STATUS.items() if isinstance(exc, err_type)),
            status.HTTP_400_BAD_REQUEST,
        )
        if code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=code, content={"ok": False, "error": str(exc), "code": exc.code})

    @api.get("/health")
    async def health(svc: MailScheduler = Depends(get_service)):
        """Health check endpoint for container monitoring (no authentication required)."""
        result = await svc.health()
        code = status.HTTP_200_OK if result["record_store"] else status.HTTP_503_SERVICE_UNAVAILABLE
        return JSONResponse(status_code=code, content=result)

    @router.post("/items", response_model=SubmitResponse, response_model_exclude_none=True)
    async def submit_item(payload: WorkItemCreate, response: Response, svc: MailScheduler = Depends(get_service)):
        """Schedule an email; a repeated dedupe key returns the existing item."""
        item, created = await svc.submit(payload)
        response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
        return SubmitResponse(ok=True, created=created, item=ItemInfo.from_item(item))

    @router.get("/items", response_model=ItemsResponse, response_model_exclude_none=True)
    async def list_items(
        status_filter: Optional[WorkItemStatus] = Query(None, alias="status"),
        owner_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
        svc: MailScheduler = Depends(get_service),
    ):
        """List work items, filtered by ``status`` and/or ``owner_id``."""
        items = await svc.list_items(status=status_filter, owner_id=owner_id, limit=limit, offset=offset)
        return ItemsResponse(ok=True, items=[ItemInfo.from_item(item) for item in items])

    @router.get("/items/{item_id}", response_model=ItemResponse, response_model_exclude_none=True)
    async def get_item(item_id: str, svc: MailScheduler = Depends(get_service)):
        item = await svc.get_status(item_id)
        return ItemResponse(ok=True, item=ItemInfo.from_item(item))

    @router.delete("/items/{item_id}", response_model=ItemResponse, response_model_exclude_none=True)
    async def cancel_item(item_id: str, svc: MailScheduler = Depends(get_service)):
        """Cancel an item that has not started yet."""
        item = await svc.cancel(item_id)
        return ItemResponse(ok=True, item=ItemInfo.from_item(item))

    @router.get("/items/{item_id}/audit", response_model=AuditResponse, response_model_exclude_none=True)
    async def audit_trail(item_id: str, svc: MailScheduler = Depends(get_service)):
        entries = await svc.audit_trail(item_id)
        return AuditResponse(ok=True, entries=[AuditEntry(**entry) for entry in entries])

    @router.get("/rate-limit/{owner_id}", response_model=RateLimitResponse, response_model_exclude_none=True)
    async def rate_status(owner_id: str, svc: MailScheduler = Depends(get_service)):
        """Current hourly usage of an owner."""
        result = await svc.rate_status(owner_id)
        return RateLimitResponse(ok=True, owner_id=owner_id, **result.to_dict())

    @router.delete("/rate-limit/{owner_id}", response_model=ResetRateLimitResponse, response_model_exclude_none=True)
    async def reset_rate_limit(owner_id: str, svc: MailScheduler = Depends(get_service)):
        """Drop the owner's counter for the current hour (admin operation)."""
        removed = await svc.reset_rate_limit(owner_id)
        return ResetRateLimitResponse(ok=True, removed=removed)

    @router.get("/queue", response_model=QueueStatsResponse, response_model_exclude_none=True)
    async def queue_stats(svc: MailScheduler = Depends(get_service)):
        stats = await svc.queue_stats()
        return QueueStatsResponse(ok=True, **stats)

    @router.post("/commands/recover", response_model=RecoverResponse, response_model_exclude_none=True)
    async def recover(svc: MailScheduler = Depends(get_service)):
        """Re-run the restart recovery; safe to call repeatedly."""
        report = await svc.recover()
        return RecoverResponse.model_validate(report.to_dict())

    @router.post("/commands/run-now", response_model=RunNowResponse, response_model_exclude_none=True)
    async def run_now(svc: MailScheduler = Depends(get_service)):
        processed = await svc.run_now()
        return RunNowResponse(ok=True, processed=processed)

    @router.get("/metrics")
    async def metrics(svc: MailScheduler = Depends(get_service)):
        """Expose Prometheus metrics collected by the dispatcher."""
        return Response(content=svc.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api


def jsonable_errors(exc: RequestValidationError) -> List[Dict[str, Any]]:
    """Return validation errors without the non-serialisable ``ctx`` values."""
    return [{key: value for key, value in err.items() if key != "ctx"} for err in exc.errors()]
