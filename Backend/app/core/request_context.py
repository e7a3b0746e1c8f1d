"""
Request Context Resolution Module

This module provides the SINGLE SOURCE OF TRUTH for caller identity.
Credentials are managed by the external identity provider; the scheduling
engine only verifies the bearer token it issues and reads the claims.

ARCHITECTURE:
    1. resolve_request_context() extracts the bearer token from the request
    2. It verifies the token signature with PyJWT
    3. Returns a standardized RequestContext (user id + role)
    4. Route dependencies gate on role via require_client / require_business

EXPECTED CLAIMS:
    sub    -> user id
    role   -> "client" | "business"
    email, name, phone -> optional, used to bootstrap client profiles
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request, status

from .config import get_settings

logger = logging.getLogger(__name__)


class UserRole(str, Enum):
    CLIENT = "client"
    BUSINESS = "business"


@dataclass(frozen=True)
class RequestContext:
    """
    Resolved identity of the caller.
    """
    user_id: str
    role: UserRole
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None

    # Request metadata
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


def decode_identity_token(token: str) -> dict:
    """Verify an identity-provider token and return its claims."""
    settings = get_settings()
    return jwt.decode(
        token,
        settings.identity_jwt_secret,
        algorithms=[settings.identity_jwt_algorithm],
        options={"require": ["sub"]},
    )


def resolve_request_context(request: Request) -> RequestContext:
    """
    Resolve the identity and role from a request.

    Raises:
        HTTPException 401: No bearer token, bad signature, expired token,
            or an unknown role claim.
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        logger.warning("Authentication failed: No bearer token found")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required. Please sign in.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = auth_header[7:]
    try:
        claims = decode_identity_token(token)
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Session expired. Please sign in again.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        logger.warning(f"Identity token verification failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token. Please sign in again.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        role = UserRole(claims.get("role", ""))
    except ValueError:
        logger.warning(f"Identity token for {claims.get('sub')} has unknown role {claims.get('role')!r}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token does not carry a recognised role.",
        )

    return RequestContext(
        user_id=str(claims["sub"]),
        role=role,
        email=claims.get("email"),
        name=claims.get("name"),
        phone=claims.get("phone"),
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
    )


async def get_request_context(request: Request) -> RequestContext:
    """
    FastAPI dependency for getting request context.

        @router.get("/something")
        async def handler(ctx: RequestContext = Depends(get_request_context)):
            ...
    """
    return resolve_request_context(request)


def require_role(role: UserRole):
    """Build a dependency that only admits callers with the given role."""

    async def dependency(ctx: RequestContext = Depends(get_request_context)) -> RequestContext:
        if ctx.role != role:
            logger.warning(f"Authorization failed: User {ctx.user_id} has role {ctx.role.value}, needs {role.value}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Only {role.value} accounts can perform this action.",
            )
        return ctx

    return dependency


require_client = require_role(UserRole.CLIENT)
require_business = require_role(UserRole.BUSINESS)
