"""FastAPI application exposing account management to the web controllers."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, status
from pydantic import BaseModel, Field, field_validator

from .config import Settings, load_settings
from .database import Database
from .events import EventAggregator
from .models import User
from .roles import SERVER_ADMIN
from .security import AdminTokenAuth
from .storage import FileService, StoredFileRepository
from .users import UserService

logger = logging.getLogger("payserver.api")


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1)


class LoginResponse(BaseModel):
    user_id: str


class UserResponse(BaseModel):
    id: str
    email: Optional[str]
    email_confirmed: bool
    requires_email_confirmation: bool
    approved: bool
    requires_approval: bool
    created: Optional[datetime]
    roles: List[str]
    disabled: bool


class AdminStatusResponse(BaseModel):
    user_id: str
    is_admin: bool


class AdminStatusRequest(BaseModel):
    enabled: bool


class ApprovalRequest(BaseModel):
    approved: bool


class LockoutRequest(BaseModel):
    locked_until: Optional[datetime] = None

    @field_validator("locked_until")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class ExternalServiceResponse(BaseModel):
    name: str
    display_name: str


def _admin_router(settings: Settings, service: UserService, database: Database) -> APIRouter:
    auth = AdminTokenAuth.from_settings(settings)
    router = APIRouter(prefix="/v1", dependencies=[Depends(auth)])

    def _require_user(user_id: str) -> User:
        user = database.get_user(user_id)
        if user is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
        return user

    def _guard_last_admin(user: User, action: str) -> None:
        if service.is_user_the_only_one_admin(user):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"The last active administrator cannot be {action}",
            )

    @router.get("/users", response_model=List[UserResponse])
    def list_users() -> List[UserResponse]:
        return [UserResponse(**data.to_dict()) for data in service.get_users_with_roles()]

    @router.get("/users/{user_id}/admin", response_model=AdminStatusResponse)
    def get_admin_status(user_id: str) -> AdminStatusResponse:
        return AdminStatusResponse(user_id=user_id, is_admin=service.is_admin_user(user_id))

    @router.put("/users/{user_id}/admin", response_model=AdminStatusResponse)
    def set_admin_status(user_id: str, payload: AdminStatusRequest) -> AdminStatusResponse:
        user = _require_user(user_id)
        if not payload.enabled:
            _guard_last_admin(user, "demoted")
        if not service.set_admin_user(user_id, payload.enabled):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Admin status was not changed")
        return AdminStatusResponse(user_id=user_id, is_admin=payload.enabled)

    @router.put("/users/{user_id}/approval", status_code=status.HTTP_204_NO_CONTENT)
    def set_approval(user_id: str, payload: ApprovalRequest, request: Request) -> Response:
        if not service.set_user_approval(user_id, payload.approved, str(request.base_url)):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Approval status was not changed")
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @router.put("/users/{user_id}/lockout", status_code=status.HTTP_204_NO_CONTENT)
    def set_lockout(user_id: str, payload: LockoutRequest) -> Response:
        user = _require_user(user_id)
        if payload.locked_until is not None:
            _guard_last_admin(user, "locked")
        result = service.toggle_user(user_id, payload.locked_until)
        if result is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
        if not result:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Lockout could not be updated")
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @router.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_user(user_id: str) -> Response:
        user = _require_user(user_id)
        _guard_last_admin(user, "deleted")
        await service.delete_user_and_associated_data(user)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @router.get("/server/services", response_model=List[ExternalServiceResponse])
    def list_external_services() -> List[ExternalServiceResponse]:
        return [
            ExternalServiceResponse(name=external.service_name, display_name=external.display_name)
            for external in settings.external_services
        ]

    return router


def create_app(
    *,
    settings: Settings | None = None,
    database: Database | None = None,
    events: EventAggregator | None = None,
) -> FastAPI:
    """Instantiate the FastAPI application for account management."""

    app_settings = settings or load_settings()
    db = database or Database(app_settings.database_path)
    db.initialize()

    event_bus = events or EventAggregator()
    stored_files = StoredFileRepository(db)
    file_service = FileService(stored_files, app_settings.storage_dir)
    service = UserService(db, stored_files, file_service, event_bus)

    app = FastAPI(
        title="PayServer Accounts API",
        version="0.1.0",
        description="Account administration for the payment server.",
    )
    app.state.settings = app_settings
    app.state.database = db
    app.state.events = event_bus
    app.state.file_service = file_service
    app.state.user_service = service

    @app.get("/healthz")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/v1/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
    def register(payload: LoginRequest) -> UserResponse:
        first_user = db.count_users() == 0
        try:
            user = db.create_user(
                payload.email,
                payload.password,
                requires_email_confirmation=app_settings.requires_email_confirmation and not first_user,
                requires_approval=app_settings.requires_approval and not first_user,
            )
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

        if first_user:
            service.set_admin_user(user.id, True)
        logger.info("Registered user %s", user.id)
        roles = [SERVER_ADMIN] if first_user else []
        return UserResponse(**UserService.from_model(user, roles).to_dict())

    @app.post("/v1/login", response_model=LoginResponse)
    def login(payload: LoginRequest) -> LoginResponse:
        user = db.authenticate_user(payload.email, payload.password)
        allowed, error = UserService.try_can_login(user)
        if not allowed or user is None:
            logger.warning("Rejected login attempt for %s: %s", payload.email, error)
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=error)
        logger.info("User %s signed in", user.id)
        return LoginResponse(user_id=user.id)

    if app_settings.admin_tokens:
        app.include_router(_admin_router(app_settings, service, db))
    else:
        logger.warning("No admin tokens configured; account administration endpoints are disabled.")

    return app


__all__ = ["create_app"]
