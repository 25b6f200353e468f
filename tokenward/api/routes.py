from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from tokenward.api.schemas import (
    CreateUserRequest,
    Envelope,
    LoginAttemptListResponse,
    LoginAttemptResponse,
    LoginRequest,
    RevokeTokensResponse,
    TokenDisableRequest,
    TokenPairResponse,
    TokenRefreshRequest,
    TokenValidateRequest,
    TokenValidateResponse,
    UpdateUserRequest,
    UserListResponse,
    UserResponse,
    UserRoleRequest,
)
from tokenward.service.login_attempts import ClientInfo
from tokenward.service.runtime import get_runtime
from tokenward.service.sessions import Principal, extract_bearer
from tokenward.storage.models import Role, TokenKind, TokenPair

router = APIRouter(prefix="/v1")


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


def _pair_response(pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
    )


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    runtime = get_runtime()
    return await runtime.sessions.authenticate_bearer(authorization)


async def get_admin_principal(
    principal: Principal = Depends(get_principal),
) -> Principal:
    if not principal.is_admin:
        raise _http_error("forbidden", "admin access required", status_code=403)
    return principal


def _require_self_or_admin(principal: Principal, user_id: str) -> None:
    if principal.user_id != user_id and not principal.is_admin:
        raise _http_error("forbidden", "cannot access other users", status_code=403)


# auth


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Exchange email and password for a fresh access/refresh pair.

    Any tokens the user already held are revoked.

    Raises:
        400: blank email or password
        401: unknown user, inactive account or wrong password
        403: too many recent failed attempts
    """
    runtime = get_runtime()
    pair = await runtime.sessions.authenticate(
        body.email, body.password, client=ClientInfo.from_request(request)
    )
    return Envelope(status="ok", data=_pair_response(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    await runtime.sessions.logout(extract_bearer(authorization))
    return Envelope(status="ok", data={"message": "logged out"})


# tokens


@router.post("/token/refresh", response_model=Envelope, tags=["token"])
async def refresh_tokens(
    body: Optional[TokenRefreshRequest] = None,
    authorization: Optional[str] = Header(None),
):
    """Trade a refresh token, from the body or the bearer header, for a new pair."""
    runtime = get_runtime()
    value = (body.refresh_token if body else None) or extract_bearer(authorization)
    pair = await runtime.sessions.refresh(value)
    return Envelope(status="ok", data=_pair_response(pair))


@router.post("/token/validate", response_model=Envelope, tags=["token"])
async def validate_token(body: TokenValidateRequest):
    runtime = get_runtime()
    kind = TokenKind(body.kind) if body.kind else None
    verdict = await runtime.sessions.validate(body.token, kind)
    return Envelope(
        status="ok",
        data=TokenValidateResponse(
            valid=verdict.valid, subject=verdict.subject, roles=verdict.roles
        ),
    )


@router.post("/token/disable", response_model=Envelope, tags=["token"])
async def disable_token(body: TokenDisableRequest):
    runtime = get_runtime()
    await runtime.sessions.disable(body.token)
    return Envelope(status="ok", data={"message": "token disabled"})


# users


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def create_user(body: CreateUserRequest, authorization: Optional[str] = Header(None)):
    """Register an account. Creating an ADMIN requires an admin bearer token."""
    runtime = get_runtime()
    role = Role(body.role) if body.role else Role.USER
    if role == Role.ADMIN:
        principal = await runtime.sessions.authenticate_bearer(authorization)
        if not principal.is_admin:
            raise _http_error("forbidden", "admin access required", status_code=403)
    user = runtime.users.register_user(
        body.email,
        body.password,
        firstname=body.firstname,
        lastname=body.lastname,
        role=role,
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    limit: int = Query(100, ge=1, le=500),
    principal: Principal = Depends(get_admin_principal),
):
    runtime = get_runtime()
    users = runtime.users.list_users(limit=limit)
    return Envelope(
        status="ok",
        data=UserListResponse(items=[UserResponse.from_user(u) for u in users]),
    )


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user(
    user_id: str,
    principal: Principal = Depends(get_principal),
):
    _require_self_or_admin(principal, user_id)
    runtime = get_runtime()
    user = runtime.users.get_user(user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.put("/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_user(
    body: UpdateUserRequest,
    user_id: str,
    principal: Principal = Depends(get_principal),
):
    _require_self_or_admin(principal, user_id)
    runtime = get_runtime()
    user = runtime.users.update_user(
        user_id, firstname=body.firstname, lastname=body.lastname
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/users/{user_id}/role", response_model=Envelope, tags=["users"])
async def set_user_role(
    body: UserRoleRequest,
    user_id: str,
    principal: Principal = Depends(get_admin_principal),
):
    runtime = get_runtime()
    user = await runtime.users.set_role(user_id, Role(body.role))
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/users/{user_id}/deactivate", response_model=Envelope, tags=["users"])
async def deactivate_user(
    user_id: str,
    principal: Principal = Depends(get_admin_principal),
):
    runtime = get_runtime()
    user = await runtime.users.deactivate_user(user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/users/{user_id}/revoke-tokens", response_model=Envelope, tags=["users"])
async def revoke_user_tokens(
    user_id: str,
    principal: Principal = Depends(get_admin_principal),
):
    runtime = get_runtime()
    runtime.users.get_user(user_id)
    revoked = await runtime.sessions.revoke_all(user_id)
    return Envelope(
        status="ok", data=RevokeTokensResponse(user_id=user_id, revoked=revoked)
    )


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def delete_user(
    user_id: str,
    principal: Principal = Depends(get_admin_principal),
):
    if user_id == principal.user_id:
        raise _http_error("forbidden", "cannot delete your own account", status_code=403)
    runtime = get_runtime()
    await runtime.users.delete_user(user_id)
    return Envelope(status="ok", data={"id": user_id, "deleted": True})


@router.get("/users/{user_id}/login-attempts", response_model=Envelope, tags=["users"])
async def list_login_attempts(
    user_id: str,
    limit: int = Query(50, ge=1, le=500),
    principal: Principal = Depends(get_admin_principal),
):
    runtime = get_runtime()
    runtime.users.get_user(user_id)
    attempts = runtime.login_attempts.recent_attempts(user_id, limit=limit)
    return Envelope(
        status="ok",
        data=LoginAttemptListResponse(
            user_id=user_id,
            suspicious=runtime.login_attempts.is_suspicious(user_id),
            items=[LoginAttemptResponse.from_attempt(a) for a in attempts],
        ),
    )
