from __future__ import annotations

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .config import Settings, get_settings
from .errors import InvalidCode, SubmissionError
from .store import InviteCodeRegistry
from .supabase_client import get_supabase_client
from .utils import canonicalize_invite_code

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: Optional[str] = Field(default=None, max_length=200)


class LoginResponse(BaseModel):
    success: bool
    message: str


class LoginFailure(BaseModel):
    success: bool = False
    error: str


def get_invite_registry() -> InviteCodeRegistry:
    return InviteCodeRegistry(get_supabase_client(service_role=True))


def check_invite_code(registry: InviteCodeRegistry, code: str, bypass_code: Optional[str]) -> str:
    """Accept the bypass code or any issued invite code; raise ``InvalidCode`` otherwise.

    Returns the login message for the accepted code.
    """
    if bypass_code and secrets.compare_digest(code, bypass_code):
        logger.info("Login with bypass code")
        return "Login successful, Goddess."
    if registry.contains(code):
        return "Login successful."
    raise InvalidCode()


@router.post(
    "/login",
    response_model=LoginResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": LoginFailure},
        status.HTTP_401_UNAUTHORIZED: {"model": LoginFailure},
    },
)
def login(
    payload: LoginRequest,
    settings: Settings = Depends(get_settings),
    registry: InviteCodeRegistry = Depends(get_invite_registry),
):
    try:
        code = canonicalize_invite_code(payload.code)
    except ValueError as exc:
        failure = LoginFailure(error=str(exc))
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=failure.model_dump())

    try:
        message = check_invite_code(registry, code, settings.invite_bypass_code)
    except SubmissionError as exc:
        failure = LoginFailure(error=exc.message)
        return JSONResponse(status_code=exc.status_code, content=failure.model_dump())

    return LoginResponse(success=True, message=message)
