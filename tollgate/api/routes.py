from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from tollgate.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    PasswordChangeRequest,
    PasswordConfirmRequest,
    PrincipalResponse,
    RecoveryCodesResponse,
    SessionInfo,
    TwoFactorCodeRequest,
    TwoFactorDisableRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    TwoFactorVerifyResponse,
)
from tollgate.service.errors import AuthenticationError
from tollgate.service.gateway import to_service_error
from tollgate.service.outcomes import AuthFailure, Principal
from tollgate.service.runtime import get_runtime
from tollgate.storage.models import session_key

router = APIRouter(prefix="/v1")


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def _unwrap(result):
    """Raise the transport error for a failure value, else pass it through."""
    if isinstance(result, AuthFailure):
        raise to_service_error(result)
    return result


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def get_token(authorization: Optional[str] = Header(None)) -> str:
    token = _extract_bearer(authorization)
    if not token:
        raise AuthenticationError("missing bearer token")
    return token


async def get_verified_principal(token: str = Depends(get_token)) -> Principal:
    """Authenticated principal with a fresh second factor when 2FA is on."""
    return _unwrap(get_runtime().gateway.guard(token, requires_two_factor=True))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Raises:
        401: invalid credentials (with attempts_remaining when known)
        403: account inactive
        429: account locked (with minutes_remaining)
    """
    runtime = get_runtime()
    result = await asyncio.to_thread(
        runtime.gateway.login,
        body.email,
        body.password,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    success = _unwrap(result)
    return Envelope(
        status="ok",
        data=LoginResponse(
            token=success.token,
            credential_id=success.credential_id,
            requires_two_factor=success.requires_two_factor,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(token: str = Depends(get_token)):
    revoked = get_runtime().gateway.logout(token)
    return Envelope(status="ok", data={"revoked": revoked})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_everywhere(token: str = Depends(get_token)):
    count = _unwrap(get_runtime().gateway.logout_everywhere(token))
    return Envelope(status="ok", data={"revoked": count})


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(token: str = Depends(get_token)):
    sessions = _unwrap(get_runtime().gateway.list_sessions(token))
    current_key = session_key(token)
    return Envelope(
        status="ok",
        data=[
            SessionInfo(
                created_at=s.created_at,
                last_activity_at=s.last_activity_at,
                two_factor_verified_at=s.two_factor.verified_at if s.two_factor else None,
                user_agent=s.user_agent,
                ip_addr=s.ip_addr,
                current=s.key == current_key,
            )
            for s in sessions
        ],
    )


@router.post("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(body: PasswordChangeRequest, token: str = Depends(get_token)):
    """Change the password; every other session of the credential is revoked."""
    runtime = get_runtime()
    revoked = _unwrap(
        await asyncio.to_thread(
            runtime.gateway.change_password, token, body.current_password, body.new_password
        )
    )
    return Envelope(status="ok", data={"sessions_revoked": revoked})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def whoami(principal: Principal = Depends(get_verified_principal)):
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            credential_id=principal.credential_id,
            email=principal.email,
            two_factor_enabled=principal.two_factor_enabled,
            two_factor_verified_at=principal.two_factor_verified_at,
        ),
    )


@router.get("/auth/2fa/status", response_model=Envelope, tags=["two-factor"])
async def two_factor_status(token: str = Depends(get_token)):
    status = _unwrap(get_runtime().gateway.two_factor_status(token))
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(
            enabled=status.enabled,
            pending=status.pending,
            confirmed_at=status.confirmed_at,
            recovery_codes_remaining=status.recovery_codes_remaining,
        ),
    )


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["two-factor"])
async def two_factor_setup(token: str = Depends(get_token)):
    """Start enrollment; the secret stays pending until confirmed."""
    enrollment = _unwrap(get_runtime().gateway.setup_two_factor(token))
    return Envelope(
        status="ok",
        data=TwoFactorSetupResponse(
            secret=enrollment.secret,
            otpauth_uri=enrollment.otpauth_uri,
            recovery_codes=enrollment.recovery_codes,
        ),
    )


@router.post("/auth/2fa/confirm", response_model=Envelope, tags=["two-factor"])
async def two_factor_confirm(body: TwoFactorCodeRequest, token: str = Depends(get_token)):
    codes = _unwrap(get_runtime().gateway.confirm_two_factor(token, body.code))
    return Envelope(
        status="ok", data=RecoveryCodesResponse(codes=codes, remaining=len(codes))
    )


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["two-factor"])
async def two_factor_verify(body: TwoFactorCodeRequest, token: str = Depends(get_token)):
    verified = _unwrap(get_runtime().gateway.verify_two_factor(token, body.code))
    return Envelope(status="ok", data=TwoFactorVerifyResponse(verified_at=verified.verified_at))


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["two-factor"])
async def two_factor_disable(body: TwoFactorDisableRequest, token: str = Depends(get_token)):
    runtime = get_runtime()
    disabled = _unwrap(
        await asyncio.to_thread(
            runtime.gateway.disable_two_factor, token, body.password, body.code
        )
    )
    return Envelope(status="ok", data={"disabled": disabled})


@router.get("/auth/2fa/recovery-codes", response_model=Envelope, tags=["two-factor"])
async def recovery_codes(token: str = Depends(get_token)):
    codes = _unwrap(get_runtime().gateway.recovery_codes(token))
    return Envelope(
        status="ok", data=RecoveryCodesResponse(codes=codes, remaining=len(codes))
    )


@router.post(
    "/auth/2fa/recovery-codes/regenerate", response_model=Envelope, tags=["two-factor"]
)
async def regenerate_recovery_codes(
    body: PasswordConfirmRequest, token: str = Depends(get_token)
):
    runtime = get_runtime()
    codes = _unwrap(
        await asyncio.to_thread(
            runtime.gateway.regenerate_recovery_codes, token, body.password
        )
    )
    return Envelope(
        status="ok", data=RecoveryCodesResponse(codes=codes, remaining=len(codes))
    )
