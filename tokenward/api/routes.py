from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request

from tokenward.api.schemas import (
    Envelope,
    LogoutAllResponse,
    LogoutRequest,
    RefreshResponse,
    SessionListResponse,
    SessionResponse,
    SessionRevokeResponse,
    TokenRefreshRequest,
)
from tokenward.logging import get_logger
from tokenward.service.errors import NotFoundError
from tokenward.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

# Audit columns only; clipped so a hostile client cannot bloat rows
_MAX_USER_AGENT_LENGTH = 512


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _client_metadata(request: Request) -> tuple[Optional[str], Optional[str]]:
    user_agent = request.headers.get("user-agent")
    if user_agent:
        user_agent = user_agent[:_MAX_USER_AGENT_LENGTH]
    ip_address = request.client.host if request.client else None
    return user_agent, ip_address


async def get_user_id(authorization: Optional[str] = Header(None)) -> str:
    """Resolve the caller through the host application's identity resolver."""
    runtime = get_runtime()
    user_id = runtime.resolve_identity(authorization)
    if not user_id:
        raise _http_error("unauthorized", "invalid credentials", status_code=401)
    return user_id


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    """Rotate a refresh token.

    The presented token is consumed. Presenting it again later is treated as
    theft and closes every session of its owner.

    Raises:
        401 invalid_refresh_token: unknown, expired or idle token
        401 token_reuse_detected: token was already used or revoked
    """
    runtime = get_runtime()
    user_agent, ip_address = _client_metadata(request)
    issued = await runtime.refresh_tokens.rotate(
        body.refresh_token, user_agent=user_agent, ip_address=ip_address
    )
    return Envelope(
        status="ok",
        data=RefreshResponse(
            user_id=issued.user_id,
            session_id=issued.session_id,
            refresh_token=issued.token,
            refresh_token_expires_at=issued.expires_at,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest):
    runtime = get_runtime()
    await runtime.refresh_tokens.revoke(body.refresh_token)
    return Envelope(status="ok", data={"message": "session revoked"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(user_id: str = Depends(get_user_id)):
    runtime = get_runtime()
    count = await runtime.refresh_tokens.revoke_all(user_id)
    return Envelope(status="ok", data=LogoutAllResponse(sessions_closed=count))


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(user_id: str = Depends(get_user_id)):
    runtime = get_runtime()
    sessions = await runtime.refresh_tokens.list_sessions(user_id)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[
                SessionResponse(
                    id=s.id,
                    created_at=s.created_at,
                    last_used_at=s.last_used_at,
                    expires_at=s.expires_at,
                    user_agent=s.user_agent,
                    ip_address=s.ip_address,
                )
                for s in sessions
            ]
        ),
    )


@router.post(
    "/auth/sessions/{session_id}/revoke", response_model=Envelope, tags=["auth"]
)
async def revoke_session(
    session_id: str = Path(..., max_length=64),
    user_id: str = Depends(get_user_id),
):
    runtime = get_runtime()
    revoked = await runtime.refresh_tokens.revoke_session(session_id, user_id)
    if not revoked:
        # Same answer for foreign and unknown sessions
        raise NotFoundError("session not found")
    return Envelope(status="ok", data=SessionRevokeResponse(id=session_id))
