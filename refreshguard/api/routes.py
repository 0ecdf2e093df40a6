from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header

from refreshguard.api.schemas import (
    AccessClaimsResponse,
    RevokeAllRequest,
    RevokeAllResponse,
    RevokeRequest,
    RevokeResponse,
    TokenPairResponse,
    TokenRefreshRequest,
)
from refreshguard.service.claims import AccessClaims
from refreshguard.service.errors import InvalidTokenError
from refreshguard.service.runtime import get_runtime

router = APIRouter()


def get_principal(authorization: Optional[str] = Header(None)) -> AccessClaims:
    """Resolve the bearer access token into verified claims."""

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise InvalidTokenError("missing bearer token")
    return get_runtime().verifier.verify(token.strip())


@router.get("/healthz", tags=["system"])
def healthz():
    runtime = get_runtime()
    return {
        "status": "ok",
        "environment": runtime.settings.environment.value,
        "store": type(runtime.store).__name__,
    }


@router.post(
    "/token/refresh",
    response_model=TokenPairResponse,
    response_model_by_alias=True,
    tags=["token"],
)
def refresh_token(body: TokenRefreshRequest):
    pair = get_runtime().rotation.rotate(body.refresh_token)
    return TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=pair.expires_in,
    )


@router.post(
    "/token/revoke",
    response_model=RevokeResponse,
    response_model_by_alias=True,
    tags=["token"],
)
def revoke_token(body: RevokeRequest):
    revoked = get_runtime().rotation.revoke_presented(body.refresh_token)
    return RevokeResponse(revoked=revoked)


@router.post(
    "/token/revoke-all",
    response_model=RevokeAllResponse,
    response_model_by_alias=True,
    tags=["token"],
)
def revoke_all_tokens(
    body: RevokeAllRequest, principal: AccessClaims = Depends(get_principal)
):
    revoked = get_runtime().rotation.revoke_all_for_user(
        principal.sub, terminate_sessions=body.terminate_sessions
    )
    return RevokeAllResponse(revoked=revoked, terminate_sessions=body.terminate_sessions)


@router.get(
    "/token/claims",
    response_model=AccessClaimsResponse,
    response_model_by_alias=True,
    response_model_exclude_none=True,
    tags=["token"],
)
def token_claims(principal: AccessClaims = Depends(get_principal)):
    return AccessClaimsResponse(**principal.model_dump(exclude={"token_type"}))
