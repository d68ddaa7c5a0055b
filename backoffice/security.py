from __future__ import annotations

import logging
from typing import Any, Callable

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from backoffice.db import get_db
from backoffice.errors import ApiError, forbidden
from backoffice.services.context_cache import get_permission_cache
from backoffice.services.context_resolver import resolve_permission_context
from backoffice.services.enforcement import is_granted, is_module_allowed
from backoffice.services.permission_context import PermissionContext
from backoffice.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)
logger = logging.getLogger("backoffice.authz")


def decode_access_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    token_type = payload.get("typ", "access")
    if token_type != "access":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token type is invalid.")
    return payload


def _employee_id_from_claims(claims: dict[str, Any]) -> int:
    subject = claims.get("sub")
    try:
        employee_id = int(str(subject))
    except (TypeError, ValueError) as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token subject is invalid.") from exc
    if employee_id < 1:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token subject is invalid.")
    return employee_id


def require_employee(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> int:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    claims = decode_access_token(credentials.credentials)
    employee_id = _employee_id_from_claims(claims)

    request.state.actor = "employee"
    request.state.actor_id = str(employee_id)
    return employee_id


def get_permission_context(
    employee_id: int = Depends(require_employee),
    db: Session = Depends(get_db),
) -> PermissionContext:
    return get_permission_cache().get(
        employee_id,
        lambda key: resolve_permission_context(db, key),
    )


def _deny(ctx: PermissionContext, **fields: Any) -> ApiError:
    logger.info("permission_denied", extra={"employee_id": ctx.employee_id, **fields})
    return forbidden()


def require_module(module: str) -> Callable[..., PermissionContext]:
    def _dependency(ctx: PermissionContext = Depends(get_permission_context)) -> PermissionContext:
        if not is_module_allowed(ctx, module):
            raise _deny(ctx, permission_module=module)
        return ctx

    return _dependency


def require_permission(
    module: str,
    sub_module: str | None = None,
    action: str | None = None,
) -> Callable[..., PermissionContext]:
    if not module:
        raise ValueError("module is required")

    def _dependency(ctx: PermissionContext = Depends(get_permission_context)) -> PermissionContext:
        if not is_granted(ctx, module, sub_module, action):
            raise _deny(ctx, permission_module=module, sub_module=sub_module, action=action)
        return ctx

    return _dependency
