from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.automation.schemas import (
    AutomationCreate,
    AutomationLogRead,
    AutomationRead,
    AutomationToggleRequest,
    AutomationUpdate,
    DryRunResponse,
    EnrollResponse,
    EnrollmentRead,
    EnrollmentStatus,
    EnrollmentSummary,
    EntityRef,
    PreviewEnrollmentResponse,
    ProcessEnrollmentResponse,
    SweepResponse,
    UnenrollRequest,
    WorkflowValidationResult,
)
from app.automation.service import automation_service
from app.core.database import get_db
from app.crm.api import error_response, get_current_user, require_permission
from app.crm.service import ActorUser

router = APIRouter(prefix="/api/automations", tags=["automations"])


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    detail = exc.detail
    message = str(detail.get("message", detail)) if isinstance(detail, dict) else str(detail)
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=detail,
    )


@router.post("", response_model=AutomationRead, status_code=status.HTTP_201_CREATED)
def create_automation(
    request: Request,
    dto: AutomationCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRead | JSONResponse:
    try:
        require_permission(user, "crm.automations.manage")
        return automation_service.create_automation(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "automation_create_failed")


@router.get("", response_model=list[AutomationRead])
def list_automations(
    request: Request,
    is_active: bool | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AutomationRead] | JSONResponse:
    try:
        require_permission(user, "crm.automations.read")
        return automation_service.list_automations(db, user, is_active=is_active)
    except HTTPException as exc:
        return _failed(request, exc, "automation_list_failed")


@router.post("/validate", response_model=WorkflowValidationResult)
def validate_automation_payload(
    request: Request,
    dto: AutomationCreate,
    user: ActorUser = Depends(get_current_user),
) -> WorkflowValidationResult | JSONResponse:
    try:
        require_permission(user, "crm.automations.manage")
        return automation_service.validate_payload(dto)
    except HTTPException as exc:
        return _failed(request, exc, "automation_validate_failed")


@router.post("/sweep", response_model=SweepResponse)
def run_sweep(
    request: Request,
    user: ActorUser = Depends(get_current_user),
) -> SweepResponse | JSONResponse:
    try:
        require_permission(user, "crm.automations.execute")
        return automation_service.sweep(user)
    except HTTPException as exc:
        return _failed(request, exc, "automation_sweep_failed")


@router.post("/enrollments/{enrollment_id}/process", response_model=ProcessEnrollmentResponse)
def process_enrollment(
    request: Request,
    enrollment_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ProcessEnrollmentResponse | JSONResponse:
    try:
        require_permission(user, "crm.automations.execute")
        return automation_service.process_enrollment(db, user, enrollment_id)
    except HTTPException as exc:
        return _failed(request, exc, "automation_process_failed")


@router.get("/{automation_id}", response_model=AutomationRead)
def get_automation(
    request: Request,
    automation_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRead | JSONResponse:
    try:
        require_permission(user, "crm.automations.read")
        return automation_service.get_automation(db, user, automation_id)
    except HTTPException as exc:
        return _failed(request, exc, "automation_get_failed")


@router.patch("/{automation_id}", response_model=AutomationRead)
def patch_automation(
    request: Request,
    automation_id: uuid.UUID,
    dto: AutomationUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRead | JSONResponse:
    try:
        require_permission(user, "crm.automations.manage")
        return automation_service.update_automation(db, user, automation_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "automation_update_failed")


@router.post("/{automation_id}/toggle", response_model=AutomationRead)
def toggle_automation(
    request: Request,
    automation_id: uuid.UUID,
    dto: AutomationToggleRequest | None = None,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRead | JSONResponse:
    try:
        require_permission(user, "crm.automations.manage")
        return automation_service.toggle_automation(db, user, automation_id, dto or AutomationToggleRequest())
    except HTTPException as exc:
        return _failed(request, exc, "automation_toggle_failed")


@router.delete("/{automation_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_automation(
    request: Request,
    automation_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "crm.automations.manage")
        automation_service.soft_delete_automation(db, user, automation_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _failed(request, exc, "automation_delete_failed")


@router.get("/{automation_id}/logs", response_model=list[AutomationLogRead])
def list_automation_logs(
    request: Request,
    automation_id: uuid.UUID,
    limit: int = Query(default=50, ge=1, le=500),
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AutomationLogRead] | JSONResponse:
    try:
        require_permission(user, "crm.automations.read")
        return automation_service.list_logs(db, user, automation_id, limit=limit, status_filter=status_filter)
    except HTTPException as exc:
        return _failed(request, exc, "automation_logs_failed")


@router.get("/{automation_id}/enrollments", response_model=EnrollmentSummary)
def list_automation_enrollments(
    request: Request,
    automation_id: uuid.UUID,
    limit: int = Query(default=20, ge=1, le=200),
    status_filter: EnrollmentStatus | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EnrollmentSummary | JSONResponse:
    try:
        require_permission(user, "crm.automations.read")
        return automation_service.enrollment_summary(db, user, automation_id, limit=limit, status_filter=status_filter)
    except HTTPException as exc:
        return _failed(request, exc, "automation_enrollments_failed")


@router.post("/{automation_id}/enroll", response_model=EnrollResponse)
def enroll_entity(
    request: Request,
    automation_id: uuid.UUID,
    dto: EntityRef,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EnrollResponse | JSONResponse:
    try:
        require_permission(user, "crm.automations.execute")
        return automation_service.enroll_entity(db, user, automation_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "automation_enroll_failed")


@router.post("/{automation_id}/unenroll", response_model=EnrollmentRead)
def unenroll_entity(
    request: Request,
    automation_id: uuid.UUID,
    dto: UnenrollRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EnrollmentRead | JSONResponse:
    try:
        require_permission(user, "crm.automations.execute")
        return automation_service.unenroll_entity(db, user, automation_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "automation_unenroll_failed")


@router.get("/{automation_id}/preview-enrollment", response_model=PreviewEnrollmentResponse)
def preview_enrollment(
    request: Request,
    automation_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PreviewEnrollmentResponse | JSONResponse:
    try:
        require_permission(user, "crm.automations.read")
        return automation_service.preview_enrollment(db, user, automation_id)
    except HTTPException as exc:
        return _failed(request, exc, "automation_preview_failed")


@router.post("/{automation_id}/test", response_model=DryRunResponse)
def test_automation(
    request: Request,
    automation_id: uuid.UUID,
    dto: EntityRef,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DryRunResponse | JSONResponse:
    try:
        require_permission(user, "crm.automations.read")
        return automation_service.test_automation(db, user, automation_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "automation_test_failed")


@router.get("/{automation_id}/validate", response_model=WorkflowValidationResult)
def validate_automation(
    request: Request,
    automation_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowValidationResult | JSONResponse:
    try:
        require_permission(user, "crm.automations.read")
        return automation_service.validate_automation(db, user, automation_id)
    except HTTPException as exc:
        return _failed(request, exc, "automation_validate_failed")
