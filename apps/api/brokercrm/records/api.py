from __future__ import annotations

import secrets
from collections.abc import Callable
from typing import Any

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from brokercrm.context import get_correlation_id
from brokercrm.core.auth import AuthUser, actor_for, get_current_user
from brokercrm.core.config import get_settings
from brokercrm.core.rbac import require_role
from brokercrm.errors import error_response
from brokercrm.records.concurrency import conflict_payload
from brokercrm.records.entities import EntityType, get_definition
from brokercrm.records.results import Conflict, Invalid, MutationResult, NotFound, Ok
from brokercrm.records.service import EnquiryService, StageHistoryService, VersionedRecordService
from brokercrm.records.versioning import utcnow

DATA_TIMESTAMP_HEADER = "X-Data-Timestamp"
WEBHOOK_SECRET_HEADER = "X-Webhook-Secret"
FORMS_WEBHOOK_PATH = "/api/enquiries/webhook/microsoft-forms"

_PAGING_PARAMS = {"page", "limit"}


def get_service(entity_type: EntityType) -> Callable[[Request], VersionedRecordService]:
    def dependency(request: Request) -> VersionedRecordService:
        return request.app.state.services[entity_type]

    return dependency


def render_result(result: MutationResult) -> JSONResponse:
    if isinstance(result, Ok):
        status_code = status.HTTP_201_CREATED if result.created else status.HTTP_200_OK
        return JSONResponse(status_code=status_code, content=result.record)
    if isinstance(result, Conflict):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=conflict_payload(result.details, get_correlation_id()),
        )
    if isinstance(result, NotFound):
        return error_response(
            status.HTTP_404_NOT_FOUND,
            "record_not_found",
            f"{result.entity_type} {result.record_id} not found",
            details={"entityType": result.entity_type, "id": result.record_id},
        )
    return _render_invalid(result)


def _render_invalid(result: Invalid) -> JSONResponse:
    return error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "validation_failed",
        "Validation failed",
        details={"reason": result.reason, "errors": result.errors},
    )


async def _with_snapshot(service: VersionedRecordService, content: Any) -> JSONResponse:
    response = JSONResponse(content=content)
    token = await service.snapshot_token()
    if token is not None:
        response.headers[DATA_TIMESTAMP_HEADER] = token
    return response


def build_resource_router(entity_type: EntityType, mutation_guard: Callable[..., Any] = get_current_user) -> APIRouter:
    """CRUD routes for one collection under ``/api/<resource>``."""
    definition = get_definition(entity_type)
    router = APIRouter(
        prefix=f"/api/{definition.resource}",
        tags=[definition.resource],
        dependencies=[Depends(get_current_user)],
    )
    service_dependency = get_service(entity_type)

    @router.get("")
    async def list_records(
        request: Request,
        page: int = Query(default=1, ge=1),
        limit: int | None = Query(default=None, ge=1, le=500),
        service: VersionedRecordService = Depends(service_dependency),
    ) -> JSONResponse:
        filters = {key: value for key, value in request.query_params.items() if key not in _PAGING_PARAMS}
        return await _with_snapshot(service, await service.search(filters, page, limit))

    @router.get("/{record_id}")
    async def get_record(
        record_id: str,
        service: VersionedRecordService = Depends(service_dependency),
    ) -> JSONResponse:
        result = await service.get(record_id)
        if isinstance(result, NotFound):
            return render_result(result)
        return await _with_snapshot(service, result.record)

    @router.post("", status_code=status.HTTP_201_CREATED)
    async def create_record(
        payload: dict[str, Any] = Body(...),
        data_timestamp: str | None = Header(default=None, alias=DATA_TIMESTAMP_HEADER),
        user: AuthUser | None = Depends(mutation_guard),
        service: VersionedRecordService = Depends(service_dependency),
    ) -> JSONResponse:
        result = await service.create(payload, actor_for(user), precondition=data_timestamp)
        return render_result(result)

    @router.api_route("/{record_id}", methods=["PATCH", "PUT"])
    async def update_record(
        record_id: str,
        payload: dict[str, Any] = Body(...),
        data_timestamp: str | None = Header(default=None, alias=DATA_TIMESTAMP_HEADER),
        user: AuthUser | None = Depends(mutation_guard),
        service: VersionedRecordService = Depends(service_dependency),
    ) -> JSONResponse:
        result = await service.update(record_id, payload, actor_for(user), precondition=data_timestamp)
        return render_result(result)

    @router.delete("/{record_id}")
    async def delete_record(
        record_id: str,
        version: int | None = Query(default=None, ge=0),
        data_timestamp: str | None = Header(default=None, alias=DATA_TIMESTAMP_HEADER),
        user: AuthUser | None = Depends(mutation_guard),
        service: VersionedRecordService = Depends(service_dependency),
    ) -> JSONResponse:
        result = await service.delete(record_id, version, actor_for(user), precondition=data_timestamp)
        if isinstance(result, Ok):
            return JSONResponse(content={"status": "deleted", "id": record_id})
        return render_result(result)

    return router


stage_history_router = APIRouter(
    prefix="/api/stage-history",
    tags=["stage-history"],
    dependencies=[Depends(get_current_user)],
)


@stage_history_router.get("/customer/{customer_id}")
async def customer_stage_history(
    customer_id: str,
    service: StageHistoryService = Depends(get_service(EntityType.STAGE_HISTORY)),
) -> JSONResponse:
    return await _with_snapshot(service, await service.customer_history(customer_id))


forms_webhook_router = APIRouter(tags=["enquiries"])


def check_webhook_secret(secret: str | None = Header(default=None, alias=WEBHOOK_SECRET_HEADER)) -> None:
    expected = get_settings().forms_webhook_secret
    if expected and not secrets.compare_digest(secret or "", expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook secret")


@forms_webhook_router.post(
    FORMS_WEBHOOK_PATH,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(check_webhook_secret)],
)
async def microsoft_forms_intake(
    payload: dict[str, Any] = Body(...),
    service: EnquiryService = Depends(get_service(EntityType.ENQUIRY)),
) -> JSONResponse:
    result = await service.create_from_form(payload)
    if isinstance(result, Invalid) and result.reason == "missing_fields":
        return error_response(
            status.HTTP_400_BAD_REQUEST,
            "missing_fields",
            "Missing required fields",
            details={"missingFields": [error["loc"][0] for error in result.errors]},
        )
    if not isinstance(result, Ok):
        return render_result(result)
    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content={
            "message": "Enquiry received successfully",
            "enquiryId": result.record["id"],
            "assignedTo": result.record["assignedTo"],
            "success": True,
        },
    )


@forms_webhook_router.get(FORMS_WEBHOOK_PATH)
async def microsoft_forms_status() -> dict[str, str]:
    return {
        "message": "Microsoft Forms webhook endpoint is active",
        "timestamp": utcnow().isoformat(),
        "endpoint": FORMS_WEBHOOK_PATH,
    }


def record_routers() -> list[APIRouter]:
    routers = [forms_webhook_router, stage_history_router]
    for entity_type in EntityType:
        guard = require_role("admin") if entity_type is EntityType.USER else get_current_user
        routers.append(build_resource_router(entity_type, guard))
    return routers
