from __future__ import annotations

import asyncio
import hmac
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from classportal.api.error_handling import FunctionRoute
from classportal.api.schemas import (
    AuthenticatedRowResponse,
    AuthenticateRequest,
    CompleteInvitationRequest,
    CompleteInvitationResponse,
    ForgotPasswordRequest,
    LogoutRequest,
    MessageResponse,
    ProfileResponse,
    ResetPasswordRequest,
    SendInvitationRequest,
    SendInvitationResponse,
    TokenRequest,
    TokenValidationResponse,
)
from classportal.logging import get_logger
from classportal.service.errors import ProfileNotFound
from classportal.service.runtime import get_runtime

logger = get_logger(__name__)


def _extract_api_key(authorization: Optional[str], apikey: Optional[str]) -> Optional[str]:
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
    if apikey:
        return apikey.strip()
    return None


async def require_api_key(
    authorization: Optional[str] = Header(None),
    apikey: Optional[str] = Header(None),
) -> None:
    """Gate requests on the public or service-role key when one is configured."""
    allowed = get_runtime().settings.api_keys
    if not allowed:
        return
    presented = _extract_api_key(authorization, apikey)
    if not presented or not any(
        hmac.compare_digest(presented, key) for key in allowed
    ):
        logger.warning("api_key_rejected", presented=bool(presented))
        raise HTTPException(status_code=401, detail="Invalid API key")


functions_router = APIRouter(
    prefix="/functions",
    tags=["functions"],
    dependencies=[Depends(require_api_key)],
    route_class=FunctionRoute,
)
rpc_router = APIRouter(prefix="/rpc", tags=["rpc"], dependencies=[Depends(require_api_key)])
profiles_router = APIRouter(
    prefix="/profiles", tags=["profiles"], dependencies=[Depends(require_api_key)]
)


@functions_router.post("/send-invitation", response_model=SendInvitationResponse)
async def send_invitation(body: SendInvitationRequest):
    runtime = get_runtime()
    result = await asyncio.to_thread(
        runtime.provisioning.send_invitation,
        body.email,
        body.full_name,
        body.role,
        body.created_by,
    )
    return SendInvitationResponse(**result)


@functions_router.post("/forgot-password", response_model=MessageResponse)
async def forgot_password(body: ForgotPasswordRequest):
    runtime = get_runtime()
    result = await asyncio.to_thread(runtime.provisioning.forgot_password, body.email)
    return MessageResponse(**result)


@functions_router.post(
    "/validate-reset-token",
    response_model=TokenValidationResponse,
    response_model_exclude_none=True,
)
async def validate_reset_token(body: TokenRequest):
    runtime = get_runtime()
    result = await asyncio.to_thread(runtime.provisioning.validate_reset_token, body.token)
    return TokenValidationResponse(**result)


@functions_router.post(
    "/validate-invitation-token",
    response_model=TokenValidationResponse,
    response_model_exclude_none=True,
)
async def validate_invitation_token(body: TokenRequest):
    runtime = get_runtime()
    result = await asyncio.to_thread(
        runtime.provisioning.validate_invitation_token, body.token
    )
    return TokenValidationResponse(**result)


@functions_router.post("/reset-password", response_model=MessageResponse)
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    result = await asyncio.to_thread(
        runtime.provisioning.reset_password, body.token, body.password
    )
    return MessageResponse(**result)


@functions_router.post("/complete-invitation", response_model=CompleteInvitationResponse)
async def complete_invitation(body: CompleteInvitationRequest):
    runtime = get_runtime()
    result = await asyncio.to_thread(
        runtime.provisioning.complete_invitation, body.token, body.password
    )
    return CompleteInvitationResponse(**result)


@rpc_router.post("/authenticate", response_model=List[AuthenticatedRowResponse])
async def authenticate(body: AuthenticateRequest):
    runtime = get_runtime()
    row = await asyncio.to_thread(runtime.store.authenticate, body.email, body.password)
    if row is None:
        return []
    return [AuthenticatedRowResponse(**row.to_dict())]


@rpc_router.post("/logout", response_model=MessageResponse)
async def logout(body: LogoutRequest):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.store.logout, body.token)
    return MessageResponse(message="Logged out")


@profiles_router.get("/{user_id}", response_model=ProfileResponse)
async def get_profile(user_id: str):
    runtime = get_runtime()
    profile = await asyncio.to_thread(runtime.store.get_profile, user_id)
    if profile is None:
        raise ProfileNotFound()
    return ProfileResponse(
        id=profile.id,
        email=profile.email,
        full_name=profile.full_name,
        role=profile.role,
        avatar_url=profile.avatar_url,
    )


routers = [functions_router, rpc_router, profiles_router]
