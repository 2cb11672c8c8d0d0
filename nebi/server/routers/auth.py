"""Login and current-user endpoints."""

from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, HTTPException, status

from nebi.server.auth.tokens import create_token
from nebi.server.db.tables import User
from nebi.server.deps import CurrentUser, DbSession, Settings
from nebi.server.managers import users as users_mgr
from nebi.server.models.api import LoginRequest, LoginResponse, UserResponse

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=LoginResponse)
async def login(body: LoginRequest, db: DbSession, settings: Settings) -> LoginResponse:
    """Exchange username and password for a bearer token."""
    user = await users_mgr.authenticate(db, body.username, body.password)
    if user is None:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Invalid username or password")

    token = create_token(
        user.id,
        user.username,
        settings.auth_jwt_secret.get_secret_value(),
        ttl=timedelta(hours=settings.auth_token_ttl_hours),
    )
    return LoginResponse(token=token, user=UserResponse.model_validate(user))


@router.get("/me", response_model=UserResponse)
async def me(user: CurrentUser) -> User:
    return user
