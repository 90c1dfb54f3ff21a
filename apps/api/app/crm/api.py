from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.context import get_request_context
from app.core.database import get_db
from app.crm.schemas import (
    ContactCreate,
    ContactRead,
    ContactUpdate,
    DealCreate,
    DealRead,
    DealUpdate,
    PipelineStageCreate,
    PipelineStageRead,
)
from app.crm.service import ActorUser, ContactService, DealService, StageService

contacts_router = APIRouter(prefix="/api/crm/contacts", tags=["crm.contacts"])
deals_router = APIRouter(prefix="/api/crm/deals", tags=["crm.deals"])
stages_router = APIRouter(prefix="/api/crm/stages", tags=["crm.stages"])
contact_service = ContactService()
deal_service = DealService()
stage_service = StageService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    context = get_request_context(request)
    correlation_id = get_correlation_id() or getattr(context, "request_id", None)
    tenant_id = auth_user.tenant_id or getattr(context, "tenant_id", None)
    return ActorUser(
        user_id=auth_user.sub,
        tenant_id=tenant_id,
        permissions=set(auth_user.roles),
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


@contacts_router.post("", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    request: Request,
    dto: ContactCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.write")
        return contact_service.create_contact(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_contact_create_failed")


@contacts_router.get("", response_model=list[ContactRead])
def list_contacts(
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ContactRead] | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return contact_service.list_entities(db, user, limit=limit)
    except HTTPException as exc:
        return _failed(request, exc, "crm_contact_list_failed")


@contacts_router.get("/{contact_id}", response_model=ContactRead)
def get_contact(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return contact_service.get(db, user, contact_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_contact_get_failed")


@contacts_router.patch("/{contact_id}", response_model=ContactRead)
def patch_contact(
    request: Request,
    contact_id: uuid.UUID,
    dto: ContactUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.write")
        return contact_service.update_contact(db, user, contact_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_contact_update_failed")


@contacts_router.delete("/{contact_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_contact(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.contacts.write")
        contact_service.soft_delete(db, user, contact_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _failed(request, exc, "crm_contact_delete_failed")


@deals_router.post("", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    request: Request,
    dto: DealCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return deal_service.create_deal(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_create_failed")


@deals_router.get("", response_model=list[DealRead])
def list_deals(
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DealRead] | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return deal_service.list_entities(db, user, limit=limit)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_list_failed")


@deals_router.get("/{deal_id}", response_model=DealRead)
def get_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return deal_service.get(db, user, deal_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_get_failed")


@deals_router.patch("/{deal_id}", response_model=DealRead)
def patch_deal(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return deal_service.update_deal(db, user, deal_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_update_failed")


@deals_router.delete("/{deal_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.deals.write")
        deal_service.soft_delete(db, user, deal_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _failed(request, exc, "crm_deal_delete_failed")


@stages_router.post("", response_model=PipelineStageRead, status_code=status.HTTP_201_CREATED)
def create_stage(
    request: Request,
    dto: PipelineStageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineStageRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return stage_service.create_stage(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_stage_create_failed")


@stages_router.get("", response_model=list[PipelineStageRead])
def list_stages(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PipelineStageRead] | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return stage_service.list_stages(db, user)
    except HTTPException as exc:
        return _failed(request, exc, "crm_stage_list_failed")
