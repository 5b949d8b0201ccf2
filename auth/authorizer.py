"""
auth/authorizer.py -- Per-request access decisions for protected endpoints.

Authorizer combines the identity proven by a bearer access token with the
PermissionTable. It knows nothing about FastAPI; auth/dependencies.py adapts
it to Depends() and supplies the RequestContext.

Every denial (role or permission) writes one permission_denied / medium
audit entry before Forbidden is raised. Unauthenticated requests are not
audited here: there is no identity to attribute them to.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from auth.audit import AuditSink
from auth.errors import Forbidden, InvalidToken, MalformedHeader, Unauthenticated
from auth.models import AuditAction, AuditResource, AuditStatus, Severity, User
from auth.permissions import PermissionTable
from auth.store import UserStore
from auth.tokens import TokenService

_AUDIT_RESOURCES: frozenset[str] = frozenset(r.value for r in AuditResource)


@dataclass
class RequestContext:
    """Where a decision was made, for the audit trail."""

    ip: str
    user_agent: str | None = None
    endpoint: str = ""
    method: str = ""


class Authorizer:
    """Authenticate bearer tokens and enforce role / permission / ownership rules.

    Usage:
        authz = Authorizer(user_store, token_service, permission_table, audit_sink)
        user = authz.authenticate("Bearer eyJ...")
        authz.check_permission(user, "logs", "delete", ctx)   # raises Forbidden
    """

    def __init__(
        self,
        users: UserStore,
        tokens: TokenService,
        permissions: PermissionTable,
        audit: AuditSink,
    ) -> None:
        self._users = users
        self._tokens = tokens
        self.permissions = permissions
        self._audit = audit

    def authenticate(self, authorization: str | None) -> User:
        """Resolve an Authorization header value to an active User.

        Every failure (absent header, wrong scheme, bad or expired token,
        deleted or deactivated account) surfaces as Unauthenticated.
        """
        if not authorization:
            raise Unauthenticated("Access token required.")
        try:
            token = TokenService.extract_bearer(authorization)
            claims = self._tokens.verify_access(token)
        except MalformedHeader as exc:
            raise Unauthenticated("Access token required.") from exc
        except InvalidToken as exc:
            raise Unauthenticated("Invalid or expired token.") from exc

        user = self._users.find_user_by_id(claims["sub"])
        if user is None or not user.is_active:
            raise Unauthenticated("Invalid token or user inactive.")
        return user

    def check_role(self, user: User | None, allowed: Iterable[str], ctx: RequestContext) -> User:
        if user is None:
            raise Unauthenticated()
        allowed = [str(getattr(role, "value", role)) for role in allowed]
        if user.role not in allowed:
            self._deny(
                user,
                AuditResource.system.value,
                ctx,
                {"required_roles": allowed, "user_role": user.role},
            )
        return user

    def check_permission(
        self,
        user: User | None,
        resource: str,
        action: str,
        ctx: RequestContext,
        resource_id: str | None = None,
    ) -> User:
        if user is None:
            raise Unauthenticated()
        if not self.permissions.allows(user.role, resource, action):
            details = {"required_permission": f"{resource}:{action}", "user_role": user.role}
            if resource_id is not None:
                details["resource_id"] = resource_id
            self._deny(user, resource, ctx, details)
        return user

    def check_ownership_or_permission(
        self,
        user: User | None,
        resource: str,
        action: str,
        target_id: str | None,
        ctx: RequestContext,
    ) -> User:
        """Allow a user to act on their own record; otherwise require the permission."""
        if user is None:
            raise Unauthenticated()
        if target_id is not None and target_id == user.id:
            return user
        return self.check_permission(user, resource, action, ctx, resource_id=target_id)

    def _deny(self, user: User, resource: str, ctx: RequestContext, details: dict) -> None:
        # Resource names outside the audit vocabulary (a custom matrix entry)
        # are filed under "system".
        audit_resource = resource if resource in _AUDIT_RESOURCES else AuditResource.system.value
        self._audit.record(
            action=AuditAction.permission_denied,
            resource=audit_resource,
            user_id=user.id,
            ip_address=ctx.ip,
            user_agent=ctx.user_agent,
            status=AuditStatus.failed,
            severity=Severity.medium,
            details={**details, "endpoint": ctx.endpoint, "method": ctx.method},
        )
        raise Forbidden()
