"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and RBAC.

The Authorizer on app.state makes every decision; this module only pulls
the Authorization header and request metadata out of the Request and hands
them over.

get_current_user() verifies the bearer access token, attaches the User to
request.state.user, and returns it.
require_role(*roles), require_permission(resource, action) and
require_ownership_or_permission(resource, action) are dependency factories
layered on top of get_current_user(). audit_request() records a successful
admin action with the same request metadata the Authorizer uses for denials.

Failures propagate as AuthError subclasses (Unauthenticated -> 401,
Forbidden -> 403); api/main.py renders them into the error envelope.

Layer rule: no imports from api/ or core/.
  auth/dependencies.py may import from fastapi (for Depends/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from typing import Callable

from fastapi import Depends, Request

from auth.authorizer import Authorizer, RequestContext
from auth.models import User


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        endpoint=request.url.path,
        method=request.method,
    )


def _authorizer(request: Request) -> Authorizer:
    return request.app.state.authorizer


def get_current_user(request: Request) -> User:
    """Require a valid bearer access token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = _authorizer(request).authenticate(request.headers.get("Authorization"))
    request.state.user = user
    return user


def require_role(*roles: str) -> Callable[..., User]:
    """Dependency factory: the caller's role must be one of `roles`.

        @router.get("/admin-only")
        async def route(user: User = Depends(require_role("admin"))): ...
    """

    def dependency(request: Request, user: User = Depends(get_current_user)) -> User:
        return _authorizer(request).check_role(user, roles, request_context(request))

    return dependency


def require_permission(resource: str, action: str) -> Callable[..., User]:
    """Dependency factory: the caller's role must grant resource:action."""

    def dependency(request: Request, user: User = Depends(get_current_user)) -> User:
        return _authorizer(request).check_permission(user, resource, action, request_context(request))

    return dependency


def require_ownership_or_permission(resource: str, action: str, param: str = "user_id") -> Callable[..., User]:
    """Dependency factory: self access, or resource:action for anyone else.

    The target id is read from the path parameter named `param`.
    """

    def dependency(request: Request, user: User = Depends(get_current_user)) -> User:
        return _authorizer(request).check_ownership_or_permission(
            user, resource, action, request.path_params.get(param), request_context(request)
        )

    return dependency


def audit_request(
    request: Request,
    user: User,
    action: str,
    resource: str,
    details: dict | None = None,
    severity: str = "low",
) -> None:
    """Record a successful admin action with the request's endpoint and client metadata."""
    ctx = request_context(request)
    request.app.state.audit.record(
        action=action,
        resource=resource,
        user_id=user.id,
        ip_address=ctx.ip,
        user_agent=ctx.user_agent,
        severity=severity,
        details={**(details or {}), "endpoint": ctx.endpoint, "method": ctx.method},
    )
